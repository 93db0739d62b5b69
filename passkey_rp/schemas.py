"""Pydantic schemas for request/response payloads."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .records import b64url_decode


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class StartRegistrationRequest(_Request):
    username: str = Field(min_length=1)
    display_name: str = Field(alias="displayName", min_length=1)
    require_resident_key: bool = Field(alias="requireResidentKey")
    require_authenticator_attachment: Optional[str] = Field(
        default=None, alias="requireAuthenticatorAttachment"
    )
    uid: str = Field(min_length=1, description="base64url seed for a new user handle")

    @field_validator("uid")
    @classmethod
    def uid_is_base64url(cls, value: str) -> str:
        try:
            decoded = b64url_decode(value)
        except ValueError as exc:
            raise ValueError("uid must be base64url") from exc
        if not decoded or len(decoded) > 64:
            raise ValueError("uid must decode to 1-64 bytes")
        return value

    @property
    def user_handle(self) -> bytes:
        return b64url_decode(self.uid)


class FinishCeremonyRequest(_Request):
    request_id: str = Field(alias="requestId", min_length=1)
    credential: Dict[str, Any]


class StartAuthenticationRequest(_Request):
    username: Optional[str] = None

    @field_validator("username")
    @classmethod
    def blank_means_usernameless(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class UsernameRequest(_Request):
    username: str = Field(min_length=1)


class CredentialRequest(UsernameRequest):
    credential_id: str = Field(alias="credentialId", min_length=1)

    @field_validator("credential_id")
    @classmethod
    def credential_id_is_base64url(cls, value: str) -> str:
        try:
            b64url_decode(value)
        except ValueError as exc:
            raise ValueError("credentialId must be base64url") from exc
        return value

    @property
    def credential_id_bytes(self) -> bytes:
        return b64url_decode(self.credential_id)


class UpdateNicknameRequest(CredentialRequest):
    nickname: str = Field(min_length=1, max_length=255)


class RPResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Any] = None


class RegistrationStartResponse(BaseModel):
    requestId: str
    username: str
    displayName: str
    credentialNickname: str
    requireResidentKey: bool
    publicKeyCredentialCreationOptions: Dict[str, Any]


class AuthenticationStartResponse(BaseModel):
    requestId: str
    username: Optional[str] = None
    publicKeyCredentialRequestOptions: Dict[str, Any]
