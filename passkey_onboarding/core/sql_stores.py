"""SQLAlchemy-backed user and credential stores."""
from __future__ import annotations
import datetime
import uuid
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import DateTime, Integer, LargeBinary, String, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from passkey_onboarding.core.models import Credential, RegistrationStatus, User
from passkey_onboarding.core.stores import (
    CredentialStore,
    DuplicateCredentialError,
    DuplicateUsernameError,
    StoreError,
    UserStore,
)

IN_MEMORY_URL = "sqlite://"


class Base(DeclarativeBase):
    pass


class UserRecord(Base):
    __tablename__ = "onboarding_user"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(128))
    handle: Mapped[bytes] = mapped_column(LargeBinary(64), unique=True, index=True)
    external_identity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    registration_status: Mapped[str] = mapped_column(String(16), index=True)
    registered_at: Mapped[datetime.datetime] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime, nullable=True)


class CredentialRecord(Base):
    __tablename__ = "onboarding_credential"

    credential_id: Mapped[bytes] = mapped_column(LargeBinary(1024), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(String(36), index=True)
    public_key: Mapped[bytes] = mapped_column(LargeBinary)
    signature_count: Mapped[int] = mapped_column(Integer, default=0)
    friendly_name: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime)


def _to_db_time(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # Stored as naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def _from_db_time(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.timezone.utc)


class Database:
    def __init__(self, database_url: str = IN_MEMORY_URL):
        self.url = database_url or IN_MEMORY_URL
        if self.url in (IN_MEMORY_URL, "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            self.engine = create_engine(
                self.url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(self.url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class SqlUserStore(UserStore):
    def __init__(self, database: Database):
        self.db = database

    @staticmethod
    def _to_model(record: UserRecord) -> User:
        return User(
            id=record.id,
            username=record.username,
            display_name=record.display_name,
            handle=record.handle,
            external_identity_id=record.external_identity_id,
            registration_status=RegistrationStatus(record.registration_status),
            registered_at=_from_db_time(record.registered_at),
            completed_at=_from_db_time(record.completed_at),
        )

    def create(self, user: User) -> User:
        record = UserRecord(
            id=user.id or str(uuid.uuid4()),
            username=user.username,
            display_name=user.display_name,
            handle=user.handle,
            external_identity_id=user.external_identity_id,
            registration_status=user.registration_status.value,
            registered_at=_to_db_time(user.registered_at),
            completed_at=_to_db_time(user.completed_at),
        )
        try:
            with self.db.session() as session:
                session.add(record)
        except IntegrityError as exc:
            raise DuplicateUsernameError(f"Username '{user.username}' already stored") from exc
        return self._to_model(record)

    def get(self, user_id: str) -> Optional[User]:
        with self.db.session() as session:
            record = session.get(UserRecord, user_id)
            return self._to_model(record) if record else None

    def get_by_username(self, username: str) -> Optional[User]:
        with self.db.session() as session:
            record = session.scalar(select(UserRecord).where(UserRecord.username == username))
            return self._to_model(record) if record else None

    def get_by_handle(self, handle: bytes) -> Optional[User]:
        with self.db.session() as session:
            record = session.scalar(select(UserRecord).where(UserRecord.handle == handle))
            return self._to_model(record) if record else None

    def update(self, user: User) -> User:
        with self.db.session() as session:
            record = session.get(UserRecord, user.id)
            if record is None:
                raise StoreError(f"User id '{user.id}' not stored")
            record.username = user.username
            record.display_name = user.display_name
            record.handle = user.handle
            record.external_identity_id = user.external_identity_id
            record.registration_status = user.registration_status.value
            record.registered_at = _to_db_time(user.registered_at)
            record.completed_at = _to_db_time(user.completed_at)
        return self._to_model(record)

    def delete(self, user_id: str) -> bool:
        with self.db.session() as session:
            result = session.execute(delete(UserRecord).where(UserRecord.id == user_id))
            return result.rowcount > 0

    def list_by_status(
        self,
        status: RegistrationStatus,
        registered_before: Optional[datetime.datetime] = None,
    ) -> List[User]:
        query = select(UserRecord).where(UserRecord.registration_status == status.value)
        if registered_before is not None:
            query = query.where(UserRecord.registered_at < _to_db_time(registered_before))
        with self.db.session() as session:
            return [self._to_model(r) for r in session.scalars(query.order_by(UserRecord.registered_at))]


class SqlCredentialStore(CredentialStore):
    def __init__(self, database: Database):
        self.db = database

    @staticmethod
    def _to_model(record: CredentialRecord) -> Credential:
        return Credential(
            credential_id=record.credential_id,
            public_key=record.public_key,
            signature_count=record.signature_count,
            owner_user_id=record.owner_user_id,
            friendly_name=record.friendly_name,
            created_at=_from_db_time(record.created_at),
        )

    def save(self, credential: Credential) -> Credential:
        record = CredentialRecord(
            credential_id=credential.credential_id,
            owner_user_id=credential.owner_user_id,
            public_key=credential.public_key,
            signature_count=credential.signature_count,
            friendly_name=credential.friendly_name,
            created_at=_to_db_time(credential.created_at),
        )
        try:
            with self.db.session() as session:
                session.add(record)
        except IntegrityError as exc:
            raise DuplicateCredentialError("Credential id already registered") from exc
        return self._to_model(record)

    def get(self, credential_id: bytes) -> Optional[Credential]:
        with self.db.session() as session:
            record = session.get(CredentialRecord, credential_id)
            return self._to_model(record) if record else None

    def delete(self, credential_id: bytes) -> bool:
        with self.db.session() as session:
            result = session.execute(
                delete(CredentialRecord).where(CredentialRecord.credential_id == credential_id)
            )
            return result.rowcount > 0

    def find_by_owner(self, owner_user_id: str) -> List[Credential]:
        query = select(CredentialRecord).where(CredentialRecord.owner_user_id == owner_user_id)
        with self.db.session() as session:
            return [self._to_model(r) for r in session.scalars(query)]

    def update_signature_count(self, credential_id: bytes, signature_count: int) -> None:
        with self.db.session() as session:
            result = session.execute(
                update(CredentialRecord)
                .where(CredentialRecord.credential_id == credential_id)
                .values(signature_count=signature_count)
            )
            if result.rowcount == 0:
                raise StoreError("Credential not stored")
