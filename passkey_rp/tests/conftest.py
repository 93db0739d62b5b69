from __future__ import annotations

import secrets
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from passkey_rp.app import build_service
from passkey_rp.config import RPSettings
from passkey_rp.database import Database
from passkey_rp.errors import VerificationFailed
from passkey_rp.records import (
    AssertionResult,
    AuthenticatorSelection,
    ChallengeOptions,
    RegistrationResult,
    UserIdentity,
    b64url_decode,
)
from passkey_rp.repository import CredentialRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVerifier:
    """Accepts any response that echoes the issued challenge."""

    def __init__(self) -> None:
        self.selections: List[AuthenticatorSelection] = []

    def start_registration(self, user: UserIdentity, selection: AuthenticatorSelection) -> ChallengeOptions:
        self.selections.append(selection)
        challenge = secrets.token_urlsafe(16)
        authenticator_selection: Dict[str, Any] = {
            "residentKey": selection.resident_key,
            "userVerification": selection.user_verification,
        }
        if selection.authenticator_attachment:
            authenticator_selection["authenticatorAttachment"] = selection.authenticator_attachment
        return ChallengeOptions(
            public_key={
                "challenge": challenge,
                "rp": {"id": "example.com", "name": "Example"},
                "user": user.to_dict(),
                "authenticatorSelection": authenticator_selection,
            },
            state={"challenge": challenge},
            username=user.name,
        )

    def finish_registration(self, challenge: ChallengeOptions, response: Dict[str, Any]) -> RegistrationResult:
        if response.get("challenge") != challenge.state["challenge"]:
            raise VerificationFailed("Challenge mismatch")
        if response.get("reject"):
            raise VerificationFailed("Invalid attestation signature")
        return RegistrationResult(
            credential_id=b64url_decode(response["id"]),
            public_key=b"cose-" + b64url_decode(response["id"]),
            signature_count=response.get("signCount", 0),
            aaguid=bytes.fromhex(response.get("aaguid", "00" * 16)),
        )

    def start_assertion(self, username: Optional[str], user_verification: str) -> ChallengeOptions:
        challenge = secrets.token_urlsafe(16)
        return ChallengeOptions(
            public_key={"challenge": challenge, "rpId": "example.com", "userVerification": user_verification},
            state={"challenge": challenge},
            username=username,
        )

    def finish_assertion(self, challenge: ChallengeOptions, response: Dict[str, Any]) -> AssertionResult:
        if response.get("challenge") != challenge.state["challenge"]:
            raise VerificationFailed("Challenge mismatch")
        return AssertionResult(
            success=response.get("success", True),
            username=challenge.username or response["username"],
            credential_id=b64url_decode(response["id"]),
            new_signature_count=response["signCount"],
        )


class FakeMetadataSource:
    def __init__(self, entries=None, error: Optional[Exception] = None) -> None:
        self.entries = list(entries or [])
        self.error = error

    def find_entries(self, result):
        if self.error is not None:
            raise self.error
        return self.entries


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def temp_settings(tmp_path: Path) -> RPSettings:
    return RPSettings(
        database_url=f"sqlite:///{tmp_path / 'rp.db'}",
        rp_id="example.com",
        rp_name="Example RP",
        origins=["https://example.com"],
        attestation="none",
        ceremony_ttl_seconds=60,
    )


@pytest.fixture
def database(temp_settings: RPSettings) -> Database:
    db = Database(temp_settings)
    db.create_all()
    return db


@pytest.fixture
def repository(database: Database, clock: FakeClock) -> CredentialRepository:
    return CredentialRepository(database, clock=clock)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def make_metadata_source():
    return FakeMetadataSource


@pytest.fixture
def metadata_source() -> FakeMetadataSource:
    return FakeMetadataSource()


@pytest.fixture
def service(temp_settings, verifier, metadata_source, clock):
    return build_service(temp_settings, verifier=verifier, metadata_source=metadata_source, clock=clock)
