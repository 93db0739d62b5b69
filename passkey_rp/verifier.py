"""WebAuthn verification capability and its python-fido2 binding."""

from __future__ import annotations

import hashlib
import logging
import struct
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

import cbor2
from fido2.attestation.base import InvalidAttestation
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.webauthn import (
    AttestationConveyancePreference,
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorAttachment,
    AuthenticatorData,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .config import RPSettings
from .errors import VerificationFailed
from .records import (
    AssertionResult,
    AuthenticatorSelection,
    ChallengeOptions,
    CredentialRegistration,
    RegistrationResult,
    UserIdentity,
    b64url_decode,
    b64url_encode,
)
from .repository import CredentialRepository

LOGGER = logging.getLogger(__name__)

# truncated CBOR surfaces as IndexError or struct.error from fido2's decoder
_REJECTIONS = (ValueError, KeyError, TypeError, IndexError, struct.error, InvalidAttestation)


class WebAuthnVerifier(Protocol):
    def start_registration(
        self, user: UserIdentity, selection: AuthenticatorSelection
    ) -> ChallengeOptions:
        ...

    def finish_registration(
        self, challenge: ChallengeOptions, response: Mapping[str, Any]
    ) -> RegistrationResult:
        ...

    def start_assertion(self, username: Optional[str], user_verification: str) -> ChallengeOptions:
        ...

    def finish_assertion(
        self, challenge: ChallengeOptions, response: Mapping[str, Any]
    ) -> AssertionResult:
        ...


def json_safe(value: Any) -> Any:
    """Recursively turn fido2 option objects into plain JSON values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return b64url_encode(bytes(value))
    if isinstance(value, Mapping):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    return value


def _credential_data(registration: CredentialRegistration) -> AttestedCredentialData:
    public_key = CoseKey.parse(cbor2.loads(registration.public_key))
    return AttestedCredentialData.create(bytes(16), registration.credential_id, public_key)


def _client_response(response: Mapping[str, Any]) -> Mapping[str, Any]:
    inner = response.get("response")
    if not isinstance(inner, Mapping):
        raise VerificationFailed("Missing authenticator response")
    return inner


class Fido2Verifier:
    """Binds the verifier contract to ``fido2.server.Fido2Server``."""

    def __init__(self, settings: RPSettings, repository: CredentialRepository) -> None:
        self.settings = settings
        self.repository = repository
        origins = frozenset(settings.origins)
        self.server = Fido2Server(
            PublicKeyCredentialRpEntity(id=settings.rp_id, name=settings.rp_name),
            attestation=AttestationConveyancePreference(settings.attestation),
            verify_origin=lambda origin: origin in origins,
        )

    def start_registration(
        self, user: UserIdentity, selection: AuthenticatorSelection
    ) -> ChallengeOptions:
        existing = [
            _credential_data(registration)
            for registration in self.repository.registrations_by_username(user.name)
        ]
        attachment = selection.authenticator_attachment
        options, state = self.server.register_begin(
            PublicKeyCredentialUserEntity(
                name=user.name, id=user.id, display_name=user.display_name
            ),
            existing,
            resident_key_requirement=ResidentKeyRequirement(selection.resident_key),
            user_verification=UserVerificationRequirement(selection.user_verification),
            authenticator_attachment=AuthenticatorAttachment(attachment) if attachment else None,
        )
        return ChallengeOptions(
            public_key=json_safe(dict(options)["publicKey"]),
            state=json_safe(state),
            username=user.name,
        )

    def finish_registration(
        self, challenge: ChallengeOptions, response: Mapping[str, Any]
    ) -> RegistrationResult:
        try:
            client_response = _client_response(response)
            auth_data = self.server.register_complete(challenge.state, response)
            attestation_object = AttestationObject(
                b64url_decode(client_response["attestationObject"])
            )
            client_data_hash = hashlib.sha256(
                b64url_decode(client_response["clientDataJSON"])
            ).digest()
        except _REJECTIONS as exc:
            raise VerificationFailed(f"Registration rejected: {exc}") from exc
        credential_data = auth_data.credential_data
        if credential_data is None:
            raise VerificationFailed("Registration response carries no attested credential")
        return RegistrationResult(
            credential_id=bytes(credential_data.credential_id),
            public_key=cbor2.dumps(dict(credential_data.public_key)),
            signature_count=auth_data.counter,
            aaguid=bytes(credential_data.aaguid),
            attestation_object=bytes(attestation_object),
            client_data_hash=client_data_hash,
        )

    def start_assertion(self, username: Optional[str], user_verification: str) -> ChallengeOptions:
        credentials = None
        if username is not None:
            credentials = [
                _credential_data(registration)
                for registration in self.repository.registrations_by_username(username)
            ]
        options, state = self.server.authenticate_begin(
            credentials,
            user_verification=UserVerificationRequirement(user_verification),
        )
        return ChallengeOptions(
            public_key=json_safe(dict(options)["publicKey"]),
            state=json_safe(state),
            username=username,
        )

    def _resolve_username(self, challenge: ChallengeOptions, user_handle: Optional[bytes]) -> str:
        if challenge.username is None:
            if user_handle is None:
                raise VerificationFailed("Usernameless assertion without a user handle")
            username = self.repository.username_for_user_handle(user_handle)
            if username is None:
                raise VerificationFailed("Unknown user handle")
            return username
        if user_handle is not None and self.repository.user_handle_for_username(challenge.username) != user_handle:
            raise VerificationFailed("User handle does not belong to the requested user")
        return challenge.username

    def finish_assertion(
        self, challenge: ChallengeOptions, response: Mapping[str, Any]
    ) -> AssertionResult:
        try:
            client_response = _client_response(response)
            credential_id = b64url_decode(response.get("rawId") or response["id"])
            raw_handle = client_response.get("userHandle")
            user_handle = b64url_decode(raw_handle) if raw_handle else None
            auth_data = AuthenticatorData(b64url_decode(client_response["authenticatorData"]))
        except _REJECTIONS as exc:
            raise VerificationFailed(f"Malformed assertion: {exc}") from exc

        username = self._resolve_username(challenge, user_handle)
        registration = self.repository.registration_by_username_and_credential_id(
            username, credential_id
        )
        if registration is None:
            raise VerificationFailed(f"Unknown credential {b64url_encode(credential_id)}")
        try:
            self.server.authenticate_complete(
                challenge.state, [_credential_data(registration)], response
            )
        except _REJECTIONS as exc:
            raise VerificationFailed(f"Assertion rejected: {exc}") from exc
        return AssertionResult(
            success=True,
            username=username,
            credential_id=credential_id,
            new_signature_count=auth_data.counter,
            user_handle=registration.user_identity.id,
        )
