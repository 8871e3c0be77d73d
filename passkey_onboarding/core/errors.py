"""Onboarding error taxonomy.

Every error raised across the registration, login and deletion flows derives
from OnboardingError and carries the HTTP status and machine-readable code the
API layer returns to the client.
"""
from __future__ import annotations
from typing import Optional


class OnboardingError(Exception):
    """Base error with HTTP status and error code."""

    status = 500
    code = "onboarding_error"

    def __init__(self, detail: str, *, cause: Optional[BaseException] = None):
        self.detail = detail
        self.cause = cause
        super().__init__(detail)

    def to_dict(self) -> dict:
        """Convert to the JSON error body returned by the API."""
        return {
            "error": self.code,
            "message": self.detail,
        }


class ValidationError(OnboardingError):
    """Bad or missing input; nothing was changed."""

    status = 400
    code = "validation_error"


class UsernameTakenError(ValidationError):
    """A completed registration already owns the username."""

    status = 409
    code = "conflict"


class UnknownUserError(ValidationError):
    """No local user matches the given username or id."""

    status = 404
    code = "not_found"


class ChallengeExpiredError(OnboardingError):
    """No outstanding challenge for the user; the ceremony must restart."""

    status = 400
    code = "challenge_expired"


class VerificationFailure(OnboardingError):
    """The signed WebAuthn response was rejected. Never retried."""

    status = 400
    code = "verification_failed"


class ProvisioningFailure(OnboardingError):
    """The identity provider could not create the account."""

    status = 502
    code = "provisioning_failed"


class RoleAssignmentFailure(OnboardingError):
    """Default roles could not be resolved or granted."""

    status = 502
    code = "role_assignment_failed"


class ProvisioningDeleteFailure(OnboardingError):
    """The identity provider refused or failed to delete an account."""

    status = 502
    code = "provisioning_delete_failed"
