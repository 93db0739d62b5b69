"""Error taxonomy shared by the ceremony layer."""

from __future__ import annotations


class CeremonyError(Exception):
    """Base class for failures surfaced to callers of the ceremony service."""

    code = "ceremony_error"
    status = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class MalformedRequest(CeremonyError):
    """Missing or invalid request fields."""

    code = "malformed_request"


class UnknownUser(CeremonyError):
    """The named user has no registered credentials."""

    code = "unknown_user"
    status = 404


class UnknownCeremony(CeremonyError):
    """No such ceremony in progress."""

    code = "unknown_ceremony"


class CeremonyVerificationFailed(CeremonyError):
    """The WebAuthn response was rejected."""

    code = "verification_failed"


class DuplicateCredential(CeremonyError):
    """The credential id is already registered."""

    code = "duplicate_credential"
    status = 409


class CredentialNotFound(CeremonyError):
    """No matching credential registration."""

    code = "not_found"
    status = 404


class StorageFailure(CeremonyError):
    """The credential repository is unavailable."""

    code = "storage_failure"
    status = 503


class SignatureCounterRegression(StorageFailure):
    """Signature counter went backwards; the credential may be cloned."""

    code = "signature_counter_regression"
    status = 409

    def __init__(self, stored: int, reported: int) -> None:
        super().__init__(
            f"Signature counter regressed from {stored} to {reported}; possible cloned authenticator"
        )
        self.stored = stored
        self.reported = reported


class MetadataLookupFailure(CeremonyError):
    """Attestation metadata could not be resolved."""

    code = "metadata_lookup_failure"


class VerificationFailed(Exception):
    """Raised by a WebAuthn verifier when it rejects a response."""
