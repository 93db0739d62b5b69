"""Attestation metadata resolution for newly registered credentials."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from fido2.mds3 import MdsAttestationVerifier, parse_blob
from fido2.webauthn import Aaguid, AttestationObject

from .config import RPSettings
from .errors import MetadataLookupFailure
from .records import (
    PLATFORM_NICKNAME,
    SECURITY_KEY_NICKNAME,
    AttestationMetadata,
    RegistrationResult,
)

LOGGER = logging.getLogger(__name__)


class MetadataSource(Protocol):
    def find_entries(self, result: RegistrationResult) -> Sequence[Any]:
        """Return metadata BLOB entries for the attestation's trust anchor."""
        ...


class EmptyMetadataSource:
    def find_entries(self, result: RegistrationResult) -> Sequence[Any]:
        return []


class MdsMetadataSource:
    """Entries from a FIDO MDS3 BLOB; BLOB signature checks happen in ``parse_blob``."""

    def __init__(self, verifier: MdsAttestationVerifier) -> None:
        self.verifier = verifier

    @classmethod
    def from_files(cls, blob_path: str, trust_root_path: Optional[str]) -> "MdsMetadataSource":
        blob = Path(blob_path).read_bytes()
        trust_root = Path(trust_root_path).read_bytes() if trust_root_path else None
        return cls(MdsAttestationVerifier(parse_blob(blob, trust_root)))

    def find_entries(self, result: RegistrationResult) -> Sequence[Any]:
        entries: List[Any] = []
        if result.attestation_object:
            entry = self.verifier.find_entry(
                AttestationObject(result.attestation_object), result.client_data_hash
            )
            if entry is not None:
                entries.append(entry)
        by_aaguid = self.verifier.find_entry_by_aaguid(Aaguid(result.aaguid))
        if by_aaguid is not None and all(by_aaguid is not entry for entry in entries):
            entries.append(by_aaguid)
        return entries


def build_metadata_source(settings: RPSettings) -> MetadataSource:
    if not settings.mds_blob_path:
        return EmptyMetadataSource()
    return MdsMetadataSource.from_files(settings.mds_blob_path, settings.mds_trust_root_path)


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.replace("-", "").lower()
    return bytes(value).hex()


def _guid(value: Any) -> Optional[str]:
    hex_value = _hex(value)
    if not hex_value or len(hex_value) != 32:
        return hex_value
    return "-".join(
        (hex_value[:8], hex_value[8:12], hex_value[12:16], hex_value[16:20], hex_value[20:])
    )


def _string_set(values: Optional[Iterable[Any]]) -> frozenset:
    if not values:
        return frozenset()
    return frozenset(str(getattr(value, "value", value)) for value in values)


def _transports(statement: Any) -> frozenset:
    info = getattr(statement, "authenticator_get_info", None)
    if not info:
        return frozenset()
    if hasattr(info, "get"):
        return _string_set(info.get("transports"))
    return _string_set(getattr(info, "transports", None))


def select_entry(entries: Sequence[Any], aaguid: bytes) -> Optional[Any]:
    """Prefer an entry whose AAGUID matches; otherwise fall back to any entry."""
    wanted = aaguid.hex()
    matching = [entry for entry in entries if _hex(getattr(entry, "aaguid", None)) == wanted]
    if matching:
        return matching[0]
    if entries:
        return entries[0]
    return None


def metadata_from_statement(statement: Any) -> AttestationMetadata:
    return AttestationMetadata(
        aaguid=_guid(getattr(statement, "aaguid", None)),
        aaid=getattr(statement, "aaid", None),
        attachment_hints=_string_set(getattr(statement, "attachment_hint", None)),
        icon=getattr(statement, "icon", None),
        description=getattr(statement, "description", None),
        transports=_transports(statement),
    )


class AttestationMetadataResolver:
    def __init__(self, source: MetadataSource) -> None:
        self.source = source

    def resolve(self, result: RegistrationResult) -> Optional[AttestationMetadata]:
        """Best-effort lookup; failures are logged and yield ``None``."""
        try:
            entries = list(self.source.find_entries(result))
        except Exception as exc:
            failure = MetadataLookupFailure(f"Metadata lookup failed: {exc}")
            LOGGER.warning("%s (aaguid=%s)", failure, result.aaguid.hex(), exc_info=exc)
            return None
        LOGGER.debug("Found %d metadata entries for aaguid %s", len(entries), result.aaguid.hex())
        entry = select_entry(entries, result.aaguid)
        statement = getattr(entry, "metadata_statement", None) if entry is not None else None
        if statement is None:
            return None
        return metadata_from_statement(statement)


def derive_nickname(
    metadata: Optional[AttestationMetadata], authenticator_attachment: Optional[str]
) -> str:
    if metadata is not None and metadata.description:
        return metadata.description
    if authenticator_attachment == "platform":
        return PLATFORM_NICKNAME
    return SECURITY_KEY_NICKNAME
