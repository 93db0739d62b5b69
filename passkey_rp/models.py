"""Database models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class User(Base):
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(128))
    user_handle: Mapped[str] = mapped_column(String(128), unique=True, index=True)

    credentials: Mapped[list["Credential"]] = relationship(back_populates="user")


class Credential(Base):
    __tablename__ = "credential"

    # base64url of the raw credential id
    id: Mapped[str] = mapped_column(String(1400), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    public_key: Mapped[str] = mapped_column(Text)
    sign_count: Mapped[int] = mapped_column(BigInteger, default=0)
    nickname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    registration_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_used_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_updated_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attestation_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    user: Mapped[User] = relationship(back_populates="credentials")


class PendingCeremony(Base):
    __tablename__ = "pending_ceremony"

    request_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32))
    username: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[float] = mapped_column(Float, index=True)
    payload: Mapped[dict] = mapped_column(JSON)
