"""Plain data records passed between the ceremony components."""

from __future__ import annotations

import base64
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

PLATFORM_NICKNAME = "My Trusted Device"
SECURITY_KEY_NICKNAME = "My Security Key"
NEW_CREDENTIAL_NICKNAME = "New Credential"


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class UserIdentity:
    id: bytes
    name: str
    display_name: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": b64url_encode(self.id), "name": self.name, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "UserIdentity":
        return cls(id=b64url_decode(data["id"]), name=data["name"], display_name=data["displayName"])


@dataclass(frozen=True)
class AuthenticatorSelection:
    resident_key: str = "preferred"
    authenticator_attachment: Optional[str] = None
    user_verification: str = "preferred"


@dataclass(frozen=True)
class ChallengeOptions:
    """Verifier-issued options: ``public_key`` goes to the client, ``state`` stays here."""

    public_key: Dict[str, Any]
    state: Dict[str, Any]
    username: Optional[str] = None

    @property
    def authenticator_attachment(self) -> Optional[str]:
        selection = self.public_key.get("authenticatorSelection") or {}
        return selection.get("authenticatorAttachment")

    def to_dict(self) -> Dict[str, Any]:
        return {"publicKey": self.public_key, "state": self.state, "username": self.username}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChallengeOptions":
        return cls(public_key=data["publicKey"], state=data["state"], username=data.get("username"))


@dataclass(frozen=True)
class PendingCeremonyRequest:
    request_id: str
    kind: CeremonyKind
    created_at: datetime
    challenge: ChallengeOptions
    username: Optional[str] = None
    user_identity: Optional[UserIdentity] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "kind": self.kind.value,
            "createdAt": self.created_at.timestamp(),
            "challenge": self.challenge.to_dict(),
            "username": self.username,
            "userIdentity": self.user_identity.to_dict() if self.user_identity else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingCeremonyRequest":
        identity = data.get("userIdentity")
        return cls(
            request_id=data["requestId"],
            kind=CeremonyKind(data["kind"]),
            created_at=datetime.fromtimestamp(data["createdAt"], tz=timezone.utc),
            challenge=ChallengeOptions.from_dict(data["challenge"]),
            username=data.get("username"),
            user_identity=UserIdentity.from_dict(identity) if identity else None,
        )


@dataclass(frozen=True)
class AttestationMetadata:
    aaguid: Optional[str] = None
    aaid: Optional[str] = None
    attachment_hints: FrozenSet[str] = frozenset()
    icon: Optional[str] = None
    description: Optional[str] = None
    transports: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aaguid": self.aaguid,
            "aaid": self.aaid,
            "attachmentHint": sorted(self.attachment_hints),
            "icon": self.icon,
            "description": self.description,
            "authenticatorTransport": sorted(self.transports),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttestationMetadata":
        return cls(
            aaguid=data.get("aaguid"),
            aaid=data.get("aaid"),
            attachment_hints=frozenset(data.get("attachmentHint") or ()),
            icon=data.get("icon"),
            description=data.get("description"),
            transports=frozenset(data.get("authenticatorTransport") or ()),
        )


@dataclass(frozen=True)
class CredentialDescriptor:
    id: bytes
    transports: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        descriptor: Dict[str, Any] = {"type": "public-key", "id": b64url_encode(self.id)}
        if self.transports:
            descriptor["transports"] = list(self.transports)
        return descriptor


@dataclass(frozen=True)
class CredentialRegistration:
    user_identity: UserIdentity
    credential_id: bytes
    public_key: bytes
    signature_count: int
    registration_time: datetime
    last_used_time: datetime
    last_updated_time: datetime
    nickname: Optional[str] = None
    attestation_metadata: Optional[AttestationMetadata] = None

    @property
    def username(self) -> str:
        return self.user_identity.name

    def descriptor(self) -> CredentialDescriptor:
        transports: Tuple[str, ...] = ()
        if self.attestation_metadata is not None:
            transports = tuple(sorted(self.attestation_metadata.transports))
        return CredentialDescriptor(id=self.credential_id, transports=transports)

    def with_identity(self, identity: UserIdentity) -> "CredentialRegistration":
        return replace(self, user_identity=identity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userIdentity": self.user_identity.to_dict(),
            "credentialId": b64url_encode(self.credential_id),
            "publicKeyCose": b64url_encode(self.public_key),
            "signatureCount": self.signature_count,
            "credentialNickname": self.nickname,
            "registrationTime": self.registration_time.isoformat(),
            "lastUsedTime": self.last_used_time.isoformat(),
            "lastUpdatedTime": self.last_updated_time.isoformat(),
            "attestationMetadata": (
                self.attestation_metadata.to_dict() if self.attestation_metadata else None
            ),
        }


@dataclass(frozen=True)
class RegistrationResult:
    credential_id: bytes
    public_key: bytes
    signature_count: int
    aaguid: bytes = bytes(16)
    attestation_object: bytes = b""
    client_data_hash: bytes = b""


@dataclass(frozen=True)
class AssertionResult:
    success: bool
    username: str
    credential_id: bytes
    new_signature_count: int
    user_handle: Optional[bytes] = None
    # set only when the verifier vouches for a legitimate counter reset
    signature_counter_reset: bool = False


@dataclass
class AuthenticationOutcome:
    assertion: AssertionResult
    signature_counter_updated: bool = True
    counter_update_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.assertion.success,
            "username": self.assertion.username,
            "credentialId": b64url_encode(self.assertion.credential_id),
            "userHandle": (
                b64url_encode(self.assertion.user_handle) if self.assertion.user_handle else None
            ),
            "signatureCount": self.assertion.new_signature_count,
            "signatureCounterUpdated": self.signature_counter_updated,
            "counterUpdateError": self.counter_update_error,
        }
