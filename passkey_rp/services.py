"""Ceremony orchestration for the relying party."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .challenges import CeremonyStore, generate_request_id
from .config import RPSettings
from .errors import (
    CeremonyError,
    CeremonyVerificationFailed,
    MalformedRequest,
    UnknownCeremony,
    UnknownUser,
    VerificationFailed,
)
from .metadata import AttestationMetadataResolver, derive_nickname
from .records import (
    NEW_CREDENTIAL_NICKNAME,
    AuthenticationOutcome,
    AuthenticatorSelection,
    CeremonyKind,
    CredentialDescriptor,
    CredentialRegistration,
    PendingCeremonyRequest,
    UserIdentity,
    b64url_encode,
    utc_now,
)
from .repository import CredentialRepository
from .schemas import (
    AuthenticationStartResponse,
    CredentialRequest,
    FinishCeremonyRequest,
    RegistrationStartResponse,
    RPResponse,
    StartAuthenticationRequest,
    StartRegistrationRequest,
    UpdateNicknameRequest,
    UsernameRequest,
)
from .verifier import WebAuthnVerifier

LOGGER = logging.getLogger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)

ATTACHMENTS = {
    "PLATFORM": "platform",
    "CROSS_PLATFORM": "cross-platform",
}

STAGE_LABELS = {
    "register": "Register",
    "authn": "Authenticate",
    "manage": "Manage",
}

EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "user.resolve"): "Resolved user identity",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.expired"): "Registration Challenge Expired",
    ("register", "verify.failed"): "Registration Rejected",
    ("register", "metadata"): "Resolved Attestation Metadata",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.unknown_user"): "Authentication Unknown User",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.expired"): "Authentication Challenge Expired",
    ("authn", "verify.failed"): "Authentication Rejected",
    ("authn", "counter.failed"): "Signature Count Update Failed",
    ("authn", "verify.success"): "Authentication Completed",
    ("manage", "nickname"): "Updated Credential Nickname",
    ("manage", "remove"): "Removed Credential",
    ("manage", "remove_all"): "Removed All Credentials",
}


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": _truncate(req, 16)}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bytes):
            value = b64url_encode(value)
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def _log(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True, default=str)
    message = f"[RP Server: {stage_label}]: {event_label}\n{payload}"
    LOGGER.log(level, message)


def parse_request(model: Type[RequestT], payload: Optional[Mapping[str, Any]]) -> RequestT:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}"
            for error in exc.errors()
        )
        raise MalformedRequest(problems) from exc


class CeremonyService:
    """Runs the start/finish state machines for registration and authentication.

    A ceremony moves from started to pending when its request is stored, and
    leaves the pending state exactly once: either a finish call consumes the
    request, or the request store lets it expire.
    """

    def __init__(
        self,
        settings: RPSettings,
        repository: CredentialRepository,
        verifier: WebAuthnVerifier,
        metadata: AttestationMetadataResolver,
        requests: CeremonyStore,
        clock: Callable = utc_now,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.verifier = verifier
        self.metadata = metadata
        self.requests = requests
        self._clock = clock

    def _new_request_id(self) -> str:
        return generate_request_id(self.settings.request_id_bytes)

    def _consume(self, request_id: str, kind: CeremonyKind, stage: str) -> PendingCeremonyRequest:
        pending = self.requests.consume(request_id, kind)
        if pending is None:
            _log(stage, "verify.expired", request_id, level=logging.WARNING)
            raise UnknownCeremony(f"No such {kind.value} in progress: {_truncate(request_id, 16)}")
        return pending

    # Registration ------------------------------------------------------
    def start_registration(self, request: StartRegistrationRequest) -> RegistrationStartResponse:
        req_id = self._new_request_id()
        _log(
            "register",
            "options.start",
            req_id,
            user=request.username,
            display=request.display_name,
            require_resident_key=request.require_resident_key,
            attachment=request.require_authenticator_attachment,
        )
        identity = self.repository.user_identity_for_username(request.username)
        if identity is None:
            owner = self.repository.username_for_user_handle(request.user_handle)
            if owner is not None:
                raise MalformedRequest("uid is already bound to another user")
            identity = UserIdentity(
                id=request.user_handle, name=request.username, display_name=request.display_name
            )
        _log("register", "user.resolve", req_id, user=identity.name, user_handle=identity.id)

        selection = AuthenticatorSelection(
            resident_key="required" if request.require_resident_key else "preferred",
            authenticator_attachment=ATTACHMENTS.get(request.require_authenticator_attachment or ""),
            user_verification="preferred",
        )
        challenge = self.verifier.start_registration(identity, selection)
        pending = PendingCeremonyRequest(
            request_id=req_id,
            kind=CeremonyKind.REGISTRATION,
            created_at=self._clock(),
            challenge=challenge,
            username=request.username,
            user_identity=identity,
        )
        self.requests.put(req_id, pending)
        _log("register", "options.success", req_id, user=identity.name, user_handle=identity.id)
        return RegistrationStartResponse(
            requestId=req_id,
            username=request.username,
            displayName=request.display_name,
            credentialNickname=NEW_CREDENTIAL_NICKNAME,
            requireResidentKey=request.require_resident_key,
            publicKeyCredentialCreationOptions=challenge.public_key,
        )

    def finish_registration(self, request: FinishCeremonyRequest) -> CredentialRegistration:
        req_id = request.request_id
        _log("register", "verify.start", req_id)
        pending = self._consume(req_id, CeremonyKind.REGISTRATION, "register")
        identity = pending.user_identity
        if identity is None:
            raise MalformedRequest("Registration request has no user identity")
        try:
            result = self.verifier.finish_registration(pending.challenge, request.credential)
        except VerificationFailed as exc:
            _log("register", "verify.failed", req_id, level=logging.ERROR, user=identity.name, reason=str(exc))
            raise CeremonyVerificationFailed(str(exc)) from exc

        attestation = self.metadata.resolve(result)
        nickname = derive_nickname(attestation, pending.challenge.authenticator_attachment)
        _log(
            "register",
            "metadata",
            req_id,
            aaguid=result.aaguid.hex(),
            found=attestation is not None,
            nickname=nickname,
        )
        now = self._clock()
        registration = CredentialRegistration(
            user_identity=identity,
            credential_id=result.credential_id,
            public_key=result.public_key,
            signature_count=result.signature_count,
            nickname=nickname,
            registration_time=now,
            last_used_time=now,
            last_updated_time=now,
            attestation_metadata=attestation,
        )
        stored = self.repository.add_registration(identity.name, registration)
        _log(
            "register",
            "verify.success",
            req_id,
            user=identity.name,
            user_handle=stored.user_identity.id,
            credential_id=stored.credential_id,
            sign_count=stored.signature_count,
        )
        return stored

    # Authentication ----------------------------------------------------
    def start_authentication(self, request: StartAuthenticationRequest) -> AuthenticationStartResponse:
        req_id = self._new_request_id()
        username = request.username
        _log("authn", "options.start", req_id, user=username)
        # usernameless (discoverable credential) flows skip the existence check
        if username is not None and not self.repository.user_exists(username):
            _log("authn", "options.unknown_user", req_id, level=logging.WARNING, user=username)
            raise UnknownUser(f'The username "{username}" is not registered.')
        challenge = self.verifier.start_assertion(username, "preferred")
        self.requests.put(
            req_id,
            PendingCeremonyRequest(
                request_id=req_id,
                kind=CeremonyKind.AUTHENTICATION,
                created_at=self._clock(),
                challenge=challenge,
                username=username,
            ),
        )
        _log("authn", "options.success", req_id, user=username)
        return AuthenticationStartResponse(
            requestId=req_id,
            username=username,
            publicKeyCredentialRequestOptions=challenge.public_key,
        )

    def finish_authentication(self, request: FinishCeremonyRequest) -> AuthenticationOutcome:
        req_id = request.request_id
        _log("authn", "verify.start", req_id)
        pending = self._consume(req_id, CeremonyKind.AUTHENTICATION, "authn")
        try:
            result = self.verifier.finish_assertion(pending.challenge, request.credential)
        except VerificationFailed as exc:
            _log("authn", "verify.failed", req_id, level=logging.ERROR, user=pending.username, reason=str(exc))
            raise CeremonyVerificationFailed(str(exc)) from exc
        if not result.success:
            _log("authn", "verify.failed", req_id, level=logging.ERROR, user=pending.username)
            raise CeremonyVerificationFailed("Assertion failed: Invalid assertion.")

        outcome = AuthenticationOutcome(assertion=result)
        try:
            self.repository.update_signature_count(result)
        except CeremonyError as exc:
            outcome.signature_counter_updated = False
            outcome.counter_update_error = f"{exc.code}: {exc}"
            _log(
                "authn",
                "counter.failed",
                req_id,
                level=logging.ERROR,
                user=result.username,
                credential_id=result.credential_id,
                reason=str(exc),
            )
        _log(
            "authn",
            "verify.success",
            req_id,
            user=result.username,
            credential_id=result.credential_id,
            sign_count=result.new_signature_count,
        )
        return outcome

    # Management --------------------------------------------------------
    def credential_ids_for_username(self, request: UsernameRequest) -> List[CredentialDescriptor]:
        return self.repository.credential_ids_for_username(request.username)

    def registrations_by_username(self, request: UsernameRequest) -> List[CredentialRegistration]:
        return self.repository.registrations_by_username(request.username)

    def update_credential_nickname(self, request: UpdateNicknameRequest) -> bool:
        self.repository.update_credential_nickname(
            request.username, request.credential_id_bytes, request.nickname
        )
        _log("manage", "nickname", "-", user=request.username, credential_id=request.credential_id)
        return True

    def remove_registration_by_username(self, request: CredentialRequest) -> bool:
        registration = self.repository.registration_by_username_and_credential_id(
            request.username, request.credential_id_bytes
        )
        if registration is None:
            return False
        removed = self.repository.remove_registration(request.username, registration)
        _log("manage", "remove", "-", user=request.username, credential_id=request.credential_id, removed=removed)
        return removed

    def remove_all_registrations(self, request: UsernameRequest) -> bool:
        removed = self.repository.remove_all_registrations(request.username)
        _log("manage", "remove_all", "-", user=request.username, removed=removed)
        return removed

    # Single entry point ------------------------------------------------
    def dispatch(self, payload: Mapping[str, Any]) -> RPResponse:
        """Route a ``{"type": ...}`` document to the matching operation."""
        operation = payload.get("type") if isinstance(payload, Mapping) else None
        handler = self._handlers().get(operation) if isinstance(operation, str) else None
        if handler is None:
            return RPResponse(
                success=False,
                error=MalformedRequest.code,
                message=f"Unknown request type: {operation!r}",
            )
        try:
            return RPResponse(success=True, data=handler(payload))
        except CeremonyError as exc:
            return RPResponse(success=False, error=exc.code, message=exc.message)

    def _handlers(self) -> Dict[str, Callable[[Mapping[str, Any]], Any]]:
        return {
            "startRegistration": lambda p: self.start_registration(
                parse_request(StartRegistrationRequest, p)
            ).model_dump(),
            "finishRegistration": lambda p: self.finish_registration(
                parse_request(FinishCeremonyRequest, p)
            ).to_dict(),
            "startAuthentication": lambda p: self.start_authentication(
                parse_request(StartAuthenticationRequest, p)
            ).model_dump(),
            "finishAuthentication": lambda p: self.finish_authentication(
                parse_request(FinishCeremonyRequest, p)
            ).to_dict(),
            "getCredentialIdsForUsername": lambda p: [
                d.to_dict()
                for d in self.credential_ids_for_username(parse_request(UsernameRequest, p))
            ],
            "getRegistrationsByUsername": lambda p: [
                r.to_dict()
                for r in self.registrations_by_username(parse_request(UsernameRequest, p))
            ],
            "updateCredentialNickname": lambda p: self.update_credential_nickname(
                parse_request(UpdateNicknameRequest, p)
            ),
            "removeRegistrationByUsername": lambda p: self.remove_registration_by_username(
                parse_request(CredentialRequest, p)
            ),
            "removeAllRegistrations": lambda p: self.remove_all_registrations(
                parse_request(UsernameRequest, p)
            ),
        }
