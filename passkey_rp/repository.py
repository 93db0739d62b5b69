"""Credential repository backed by SQLAlchemy.

Besides the management operations used by the ceremony service this exposes
the read-side lookups a WebAuthn verifier needs while validating assertions.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .database import Database
from .errors import (
    CredentialNotFound,
    DuplicateCredential,
    MalformedRequest,
    SignatureCounterRegression,
    StorageFailure,
)
from .models import Credential, User
from .records import (
    AssertionResult,
    AttestationMetadata,
    CredentialDescriptor,
    CredentialRegistration,
    UserIdentity,
    as_utc,
    b64url_decode,
    b64url_encode,
    utc_now,
)

LOGGER = logging.getLogger(__name__)


def _identity(user: User) -> UserIdentity:
    return UserIdentity(
        id=b64url_decode(user.user_handle), name=user.username, display_name=user.display_name
    )


def _to_registration(credential: Credential) -> CredentialRegistration:
    metadata = credential.attestation_metadata
    return CredentialRegistration(
        user_identity=_identity(credential.user),
        credential_id=b64url_decode(credential.id),
        public_key=b64url_decode(credential.public_key),
        signature_count=credential.sign_count,
        nickname=credential.nickname,
        registration_time=as_utc(credential.registration_time),
        last_used_time=as_utc(credential.last_used_time),
        last_updated_time=as_utc(credential.last_updated_time),
        attestation_metadata=AttestationMetadata.from_dict(metadata) if metadata else None,
    )


class CredentialRepository:
    def __init__(self, db: Database, clock: Callable = utc_now) -> None:
        self.db = db
        self._clock = clock

    # Helpers -----------------------------------------------------------
    def _read(self, work: Callable[[Session], object]):
        try:
            with self.db.session() as session:
                return work(session)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Credential repository unavailable: {exc}") from exc

    @staticmethod
    def _user(session: Session, username: str) -> Optional[User]:
        return session.scalar(select(User).where(User.username == username))

    @staticmethod
    def _credential(session: Session, username: str, credential_id: bytes) -> Optional[Credential]:
        return session.scalar(
            select(Credential)
            .join(User)
            .where(User.username == username, Credential.id == b64url_encode(credential_id))
        )

    @staticmethod
    def _credentials(session: Session, username: str) -> List[Credential]:
        return list(
            session.scalars(
                select(Credential)
                .join(User)
                .where(User.username == username)
                .order_by(Credential.registration_time, Credential.id)
            )
        )

    # Queries -----------------------------------------------------------
    def registrations_by_username(self, username: str) -> List[CredentialRegistration]:
        return self._read(
            lambda session: [_to_registration(c) for c in self._credentials(session, username)]
        )

    def user_exists(self, username: str) -> bool:
        return self._read(
            lambda session: bool(
                session.scalar(
                    select(exists().where(Credential.user_id == User.id, User.username == username))
                )
            )
        )

    def user_identity_for_username(self, username: str) -> Optional[UserIdentity]:
        def work(session: Session) -> Optional[UserIdentity]:
            user = self._user(session, username)
            return _identity(user) if user else None

        return self._read(work)

    def credential_ids_for_username(self, username: str) -> List[CredentialDescriptor]:
        return [registration.descriptor() for registration in self.registrations_by_username(username)]

    def registration_by_username_and_credential_id(
        self, username: str, credential_id: bytes
    ) -> Optional[CredentialRegistration]:
        def work(session: Session) -> Optional[CredentialRegistration]:
            credential = self._credential(session, username, credential_id)
            return _to_registration(credential) if credential else None

        return self._read(work)

    # Verifier lookups ----------------------------------------------------
    def user_handle_for_username(self, username: str) -> Optional[bytes]:
        identity = self.user_identity_for_username(username)
        return identity.id if identity else None

    def username_for_user_handle(self, user_handle: bytes) -> Optional[str]:
        return self._read(
            lambda session: session.scalar(
                select(User.username).where(User.user_handle == b64url_encode(user_handle))
            )
        )

    def lookup(self, credential_id: bytes, user_handle: bytes) -> Optional[CredentialRegistration]:
        def work(session: Session) -> Optional[CredentialRegistration]:
            credential = session.scalar(
                select(Credential)
                .join(User)
                .where(
                    Credential.id == b64url_encode(credential_id),
                    User.user_handle == b64url_encode(user_handle),
                )
            )
            return _to_registration(credential) if credential else None

        return self._read(work)

    def lookup_all(self, credential_id: bytes) -> List[CredentialRegistration]:
        return self._read(
            lambda session: [
                _to_registration(c)
                for c in session.scalars(
                    select(Credential).where(Credential.id == b64url_encode(credential_id))
                )
            ]
        )

    # Mutations ---------------------------------------------------------
    def add_registration(self, username: str, registration: CredentialRegistration) -> CredentialRegistration:
        """Persist a new registration, creating the user on first use.

        Raises ``DuplicateCredential`` when the credential id is already stored
        for any user, and ``MalformedRequest`` when the username is already
        bound to a different user handle.
        """
        credential_key = b64url_encode(registration.credential_id)
        for attempt in range(2):
            try:
                with self.db.session() as session:
                    user = self._ensure_user(session, username, registration.user_identity)
                    session.add(
                        Credential(
                            id=credential_key,
                            user_id=user.id,
                            public_key=b64url_encode(registration.public_key),
                            sign_count=registration.signature_count,
                            nickname=registration.nickname,
                            registration_time=registration.registration_time,
                            last_used_time=registration.last_used_time,
                            last_updated_time=registration.last_updated_time,
                            attestation_metadata=(
                                registration.attestation_metadata.to_dict()
                                if registration.attestation_metadata
                                else None
                            ),
                        )
                    )
                    session.flush()
                    identity = _identity(user)
                return registration.with_identity(identity)
            except IntegrityError as exc:
                if self._credential_exists(credential_key):
                    raise DuplicateCredential(
                        f"Credential {credential_key} is already registered"
                    ) from exc
                # lost a race creating the user row; the retry reuses it
                if attempt:
                    raise StorageFailure(f"Could not store registration: {exc.orig}") from exc
                LOGGER.debug("Retrying registration for %s after user insert race", username)
            except SQLAlchemyError as exc:
                raise StorageFailure(f"Could not store registration: {exc}") from exc
        raise StorageFailure("Could not store registration")

    def _credential_exists(self, credential_key: str) -> bool:
        return self._read(
            lambda session: bool(session.scalar(select(exists().where(Credential.id == credential_key))))
        )

    def _ensure_user(self, session: Session, username: str, identity: UserIdentity) -> User:
        user = self._user(session, username)
        if user:
            # the authenticator holds the handle it was given in the creation options
            if user.user_handle != b64url_encode(identity.id):
                LOGGER.warning(
                    "User %s already has handle %s; rejecting credential created for %s",
                    username,
                    user.user_handle,
                    b64url_encode(identity.id),
                )
                raise MalformedRequest(
                    f"Credential was created for a different user handle than {username} has; "
                    "start registration again"
                )
            return user
        user = User(
            username=username,
            display_name=identity.display_name,
            user_handle=b64url_encode(identity.id),
        )
        session.add(user)
        session.flush()
        return user

    def update_credential_nickname(self, username: str, credential_id: bytes, nickname: str) -> None:
        def work(session: Session) -> None:
            credential = self._credential(session, username, credential_id)
            if credential is None:
                raise CredentialNotFound(
                    f"No credential {b64url_encode(credential_id)} for user {username}"
                )
            credential.nickname = nickname
            credential.last_updated_time = self._clock()

        self._read(work)

    def remove_registration(self, username: str, registration: CredentialRegistration) -> bool:
        def work(session: Session) -> bool:
            credential = self._credential(session, username, registration.credential_id)
            if credential is None:
                return False
            session.delete(credential)
            return True

        return self._read(work)

    def remove_all_registrations(self, username: str) -> bool:
        def work(session: Session) -> bool:
            user = self._user(session, username)
            if user is None:
                return False
            result = session.execute(delete(Credential).where(Credential.user_id == user.id))
            return bool(result.rowcount)

        return self._read(work)

    def update_signature_count(self, result: AssertionResult) -> CredentialRegistration:
        """Store the counter reported by a successful assertion.

        The counter check and the write are one conditional UPDATE, so a
        regression can never overwrite a newer value.
        """
        now = self._clock()
        credential_key = b64url_encode(result.credential_id)

        def work(session: Session) -> CredentialRegistration:
            owner = select(User.id).where(User.username == result.username).scalar_subquery()
            stmt = (
                update(Credential)
                .where(Credential.id == credential_key, Credential.user_id == owner)
                .values(
                    sign_count=result.new_signature_count,
                    last_used_time=now,
                    last_updated_time=now,
                )
            )
            if not result.signature_counter_reset:
                stmt = stmt.where(Credential.sign_count <= result.new_signature_count)
            updated = session.execute(stmt.execution_options(synchronize_session=False))
            credential = self._credential(session, result.username, result.credential_id)
            if credential is None:
                raise CredentialNotFound(
                    f"No credential {credential_key} for user {result.username}"
                )
            if updated.rowcount != 1:
                raise SignatureCounterRegression(credential.sign_count, result.new_signature_count)
            return _to_registration(credential)

        return self._read(work)
