"""Persistence contracts for users and credentials.

The saga depends on these interfaces only. InMemory* implementations back
DEMO_MODE and the unit tests; sql_stores provides the SQLAlchemy versions.
"""
from __future__ import annotations
import copy
import datetime
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from passkey_onboarding.core.models import Credential, RegistrationStatus, User


class StoreError(Exception):
    """A store operation could not be performed."""
    pass


class DuplicateUsernameError(StoreError):
    pass


class DuplicateCredentialError(StoreError):
    pass


class UserStore(ABC):
    @abstractmethod
    def create(self, user: User) -> User:
        """Persist a new user and return it with its assigned id.

        Raises:
            DuplicateUsernameError: The username is already stored
        """

    @abstractmethod
    def get(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    def get_by_username(self, username: str) -> Optional[User]:
        ...

    @abstractmethod
    def get_by_handle(self, handle: bytes) -> Optional[User]:
        ...

    @abstractmethod
    def update(self, user: User) -> User:
        """Overwrite the stored record for user.id.

        Raises:
            StoreError: No user with that id
        """

    @abstractmethod
    def delete(self, user_id: str) -> bool:
        """Remove the user; False if it was not stored."""

    @abstractmethod
    def list_by_status(
        self,
        status: RegistrationStatus,
        registered_before: Optional[datetime.datetime] = None,
    ) -> List[User]:
        ...


class CredentialStore(ABC):
    @abstractmethod
    def save(self, credential: Credential) -> Credential:
        """Persist a new credential.

        Raises:
            DuplicateCredentialError: The credential id is already stored
        """

    @abstractmethod
    def get(self, credential_id: bytes) -> Optional[Credential]:
        ...

    @abstractmethod
    def delete(self, credential_id: bytes) -> bool:
        """Remove the credential; False if it was not stored."""

    @abstractmethod
    def find_by_owner(self, owner_user_id: str) -> List[Credential]:
        ...

    @abstractmethod
    def update_signature_count(self, credential_id: bytes, signature_count: int) -> None:
        ...


class InMemoryUserStore(UserStore):
    """Thread-safe dict-backed user store. Returned objects are copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}

    def create(self, user: User) -> User:
        with self._lock:
            if any(u.username == user.username for u in self._users.values()):
                raise DuplicateUsernameError(f"Username '{user.username}' already stored")
            stored = copy.deepcopy(user)
            stored.id = stored.id or str(uuid.uuid4())
            self._users[stored.id] = stored
            return copy.deepcopy(stored)

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.username == username:
                    return copy.deepcopy(user)
        return None

    def get_by_handle(self, handle: bytes) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.handle == handle:
                    return copy.deepcopy(user)
        return None

    def update(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise StoreError(f"User id '{user.id}' not stored")
            self._users[user.id] = copy.deepcopy(user)
            return copy.deepcopy(user)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._users.pop(user_id, None) is not None

    def list_by_status(
        self,
        status: RegistrationStatus,
        registered_before: Optional[datetime.datetime] = None,
    ) -> List[User]:
        with self._lock:
            return [
                copy.deepcopy(u)
                for u in self._users.values()
                if u.registration_status == status
                and (registered_before is None or u.registered_at < registered_before)
            ]


class InMemoryCredentialStore(CredentialStore):
    """Thread-safe dict-backed credential store keyed by credential id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._credentials: Dict[bytes, Credential] = {}

    def save(self, credential: Credential) -> Credential:
        with self._lock:
            if credential.credential_id in self._credentials:
                raise DuplicateCredentialError("Credential id already registered")
            self._credentials[credential.credential_id] = copy.deepcopy(credential)
            return copy.deepcopy(credential)

    def get(self, credential_id: bytes) -> Optional[Credential]:
        with self._lock:
            credential = self._credentials.get(credential_id)
            return copy.deepcopy(credential) if credential else None

    def delete(self, credential_id: bytes) -> bool:
        with self._lock:
            return self._credentials.pop(credential_id, None) is not None

    def find_by_owner(self, owner_user_id: str) -> List[Credential]:
        with self._lock:
            return [
                copy.deepcopy(c)
                for c in self._credentials.values()
                if c.owner_user_id == owner_user_id
            ]

    def update_signature_count(self, credential_id: bytes, signature_count: int) -> None:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None:
                raise StoreError("Credential not stored")
            credential.signature_count = signature_count
