"""Pydantic based configuration for the relying party."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DB_PATH = DATA_DIR / "rp.db"


class RPSettings(BaseSettings):
    """Process-wide relying party settings, built once and never mutated."""

    model_config = SettingsConfigDict(env_prefix="PASSKEY_RP_", frozen=True)

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string used for credentials and pending ceremonies",
    )
    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="Passkey RP", description="Human readable RP name")
    origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Origins accepted in clientDataJSON",
    )
    attestation: Literal["none", "indirect", "direct", "enterprise"] = Field(
        default="direct",
        description="Attestation conveyance preference requested from authenticators",
    )
    ceremony_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Lifetime of a pending registration or assertion request",
    )
    request_id_bytes: int = Field(
        default=32,
        ge=32,
        description="Random bytes behind each ceremony request id",
    )
    ceremony_store: Literal["memory", "database"] = Field(
        default="memory",
        description="Where pending ceremonies live; use database when running several processes",
    )
    mds_blob_path: Optional[str] = Field(
        default=None,
        description="Path to a cached FIDO MDS3 BLOB (JWT) used for attestation metadata",
    )
    mds_trust_root_path: Optional[str] = Field(
        default=None,
        description="DER encoded root certificate the MDS3 BLOB must chain to",
    )
    log_level: str = Field(default="INFO", description="Root log level for the server")

    def ensure_data_dir(self) -> None:
        if self.database_url.startswith(f"sqlite:///{DATA_DIR}"):
            DATA_DIR.mkdir(parents=True, exist_ok=True)
