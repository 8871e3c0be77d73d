"""Domain records for registrants and their authenticators."""
from __future__ import annotations
import datetime
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

HANDLE_SIZE = 32


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def generate_handle(size: int = HANDLE_SIZE) -> bytes:
    """Random WebAuthn user handle, unrelated to the username."""
    return secrets.token_bytes(size)


class RegistrationStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


@dataclass
class User:
    """A registrant.

    The handle is what authenticators see as the user id; it is never derived
    from the username. external_identity_id is only set once the identity
    provider account exists and roles were granted.
    """

    username: str
    display_name: str
    handle: bytes
    id: Optional[str] = None
    external_identity_id: Optional[str] = None
    registration_status: RegistrationStatus = RegistrationStatus.PENDING
    registered_at: datetime.datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime.datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.registration_status is RegistrationStatus.COMPLETED

    def mark_completed(self, external_identity_id: str, when: Optional[datetime.datetime] = None) -> None:
        self.external_identity_id = external_identity_id
        self.registration_status = RegistrationStatus.COMPLETED
        self.completed_at = when or utcnow()


@dataclass
class Credential:
    """A registered authenticator bound to one user."""

    credential_id: bytes
    public_key: bytes
    signature_count: int
    owner_user_id: str
    friendly_name: str
    created_at: datetime.datetime = field(default_factory=utcnow)
