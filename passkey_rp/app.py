"""Flask application exposing the ceremony service."""

from __future__ import annotations

from typing import Any, Callable, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .challenges import CeremonyStore, DatabaseCeremonyStore, MemoryCeremonyStore
from .config import RPSettings
from .database import Database
from .errors import CeremonyError
from .metadata import AttestationMetadataResolver, MetadataSource, build_metadata_source
from .records import utc_now
from .repository import CredentialRepository
from .schemas import (
    CredentialRequest,
    FinishCeremonyRequest,
    RPResponse,
    StartAuthenticationRequest,
    StartRegistrationRequest,
    UpdateNicknameRequest,
    UsernameRequest,
)
from .services import CeremonyService, parse_request
from .verifier import Fido2Verifier, WebAuthnVerifier


def build_service(
    settings: RPSettings,
    verifier: Optional[WebAuthnVerifier] = None,
    metadata_source: Optional[MetadataSource] = None,
    clock: Callable = utc_now,
) -> CeremonyService:
    db = Database(settings)
    db.create_all()
    repository = CredentialRepository(db, clock=clock)
    requests: CeremonyStore
    if settings.ceremony_store == "database":
        requests = DatabaseCeremonyStore(db, settings.ceremony_ttl_seconds, clock=clock)
    else:
        requests = MemoryCeremonyStore(settings.ceremony_ttl_seconds, clock=clock)
    return CeremonyService(
        settings,
        repository,
        verifier or Fido2Verifier(settings, repository),
        AttestationMetadataResolver(metadata_source or build_metadata_source(settings)),
        requests,
        clock=clock,
    )


def _ok(data: Any = None):
    return jsonify(RPResponse(success=True, data=data).model_dump())


def create_app(
    settings: RPSettings | None = None,
    service: CeremonyService | None = None,
) -> Flask:
    settings = settings or RPSettings()
    service = service or build_service(settings)

    app = Flask(__name__)
    app.extensions["ceremony_service"] = service
    CORS(app)

    def body() -> dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    @app.post("/register/options")
    def register_options():
        payload = parse_request(StartRegistrationRequest, body())
        return _ok(service.start_registration(payload).model_dump())

    @app.post("/register/verify")
    def register_verify():
        payload = parse_request(FinishCeremonyRequest, body())
        return _ok(service.finish_registration(payload).to_dict())

    @app.post("/authenticate/options")
    def authenticate_options():
        payload = parse_request(StartAuthenticationRequest, body())
        return _ok(service.start_authentication(payload).model_dump())

    @app.post("/authenticate/verify")
    def authenticate_verify():
        payload = parse_request(FinishCeremonyRequest, body())
        return _ok(service.finish_authentication(payload).to_dict())

    @app.post("/credentials/ids")
    def credential_ids():
        payload = parse_request(UsernameRequest, body())
        return _ok([d.to_dict() for d in service.credential_ids_for_username(payload)])

    @app.post("/credentials/list")
    def credentials_list():
        payload = parse_request(UsernameRequest, body())
        return _ok([r.to_dict() for r in service.registrations_by_username(payload)])

    @app.post("/credentials/nickname")
    def credentials_nickname():
        payload = parse_request(UpdateNicknameRequest, body())
        return _ok(service.update_credential_nickname(payload))

    @app.post("/credentials/remove")
    def credentials_remove():
        payload = parse_request(CredentialRequest, body())
        return _ok(service.remove_registration_by_username(payload))

    @app.post("/credentials/remove-all")
    def credentials_remove_all():
        payload = parse_request(UsernameRequest, body())
        return _ok(service.remove_all_registrations(payload))

    @app.post("/dispatch")
    def dispatch():
        response = service.dispatch(body())
        return jsonify(response.model_dump()), 200 if response.success else 400

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(error: CeremonyError):
        return (
            jsonify(
                RPResponse(success=False, error=error.code, message=error.message).model_dump()
            ),
            error.status,
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
