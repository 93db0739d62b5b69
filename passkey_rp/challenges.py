"""Pending ceremony request stores.

A pending request is created when a ceremony starts and must be consumed at
most once when it finishes. ``consume`` is the read-and-invalidate step: when
several callers race on the same request id exactly one of them gets the
request back, the others see ``None`` just as if the id had never existed.
Entries older than the configured time-to-live behave like absent ones.
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .errors import StorageFailure
from .models import PendingCeremony
from .records import CeremonyKind, PendingCeremonyRequest, utc_now

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def generate_request_id(size: int = 32) -> str:
    return secrets.token_urlsafe(size)


class CeremonyStore(Protocol):
    def put(self, request_id: str, request: PendingCeremonyRequest) -> None:
        ...

    def get_if_present(self, request_id: str) -> Optional[PendingCeremonyRequest]:
        ...

    def invalidate(self, request_id: str) -> None:
        ...

    def consume(self, request_id: str, kind: CeremonyKind) -> Optional[PendingCeremonyRequest]:
        ...

    def purge_expired(self) -> int:
        ...


class MemoryCeremonyStore:
    """Process-local store guarded by a single lock."""

    def __init__(self, ttl_seconds: float, clock: Clock = utc_now) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._requests: Dict[str, PendingCeremonyRequest] = {}
        self._lock = threading.Lock()

    def _expired(self, request: PendingCeremonyRequest, now: datetime) -> bool:
        return (now - request.created_at).total_seconds() >= self.ttl_seconds

    def put(self, request_id: str, request: PendingCeremonyRequest) -> None:
        self.purge_expired()
        with self._lock:
            self._requests[request_id] = request

    def get_if_present(self, request_id: str) -> Optional[PendingCeremonyRequest]:
        now = self._clock()
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            if self._expired(request, now):
                del self._requests[request_id]
                return None
            return request

    def invalidate(self, request_id: str) -> None:
        with self._lock:
            self._requests.pop(request_id, None)

    def consume(self, request_id: str, kind: CeremonyKind) -> Optional[PendingCeremonyRequest]:
        now = self._clock()
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.kind is not kind:
                return None
            del self._requests[request_id]
        if self._expired(request, now):
            return None
        return request

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, value in self._requests.items() if self._expired(value, now)]
            for key in expired:
                del self._requests[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)


class DatabaseCeremonyStore:
    """Store shared by every process pointed at the same database."""

    def __init__(self, db: Database, ttl_seconds: float, clock: Clock = utc_now) -> None:
        self.db = db
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _deadline(self) -> float:
        return self._clock().timestamp() - self.ttl_seconds

    def put(self, request_id: str, request: PendingCeremonyRequest) -> None:
        self.purge_expired()
        try:
            with self.db.session() as session:
                session.merge(
                    PendingCeremony(
                        request_id=request_id,
                        kind=request.kind.value,
                        username=request.username,
                        created_at=request.created_at.timestamp(),
                        payload=request.to_dict(),
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not store pending ceremony: {exc}") from exc

    def get_if_present(self, request_id: str) -> Optional[PendingCeremonyRequest]:
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(PendingCeremony).where(
                        PendingCeremony.request_id == request_id,
                        PendingCeremony.created_at > self._deadline(),
                    )
                )
                return PendingCeremonyRequest.from_dict(row.payload) if row else None
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not read pending ceremony: {exc}") from exc

    def invalidate(self, request_id: str) -> None:
        try:
            with self.db.session() as session:
                session.execute(delete(PendingCeremony).where(PendingCeremony.request_id == request_id))
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not invalidate pending ceremony: {exc}") from exc

    def consume(self, request_id: str, kind: CeremonyKind) -> Optional[PendingCeremonyRequest]:
        try:
            with self.db.session() as session:
                row = session.scalar(
                    select(PendingCeremony).where(
                        PendingCeremony.request_id == request_id,
                        PendingCeremony.kind == kind.value,
                    )
                )
                if row is None:
                    return None
                payload, created_at = row.payload, row.created_at
                # the delete decides the winner; a concurrent consumer sees rowcount 0
                deleted = session.execute(
                    delete(PendingCeremony).where(
                        PendingCeremony.request_id == request_id,
                        PendingCeremony.kind == kind.value,
                    )
                )
                if deleted.rowcount != 1:
                    return None
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not consume pending ceremony: {exc}") from exc
        if created_at <= self._deadline():
            return None
        return PendingCeremonyRequest.from_dict(payload)

    def purge_expired(self) -> int:
        try:
            with self.db.session() as session:
                result = session.execute(
                    delete(PendingCeremony).where(PendingCeremony.created_at <= self._deadline())
                )
                purged = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not purge pending ceremonies: {exc}") from exc
        if purged:
            LOGGER.debug("Purged %d expired ceremonies", purged)
        return purged
