"""Passkey login (WebAuthn assertion) for completed registrations."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from passkey_onboarding.core.audit import safe_log_event
from passkey_onboarding.core.challenge_cache import ChallengeCache, PendingChallenge
from passkey_onboarding.core.errors import (
    ChallengeExpiredError,
    UnknownUserError,
    ValidationError,
    VerificationFailure,
)
from passkey_onboarding.core.stores import CredentialStore, UserStore
from passkey_onboarding.core.validators import normalize_username
from passkey_onboarding.core.webauthn import AuthenticatorPolicy, CredentialVerifier

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    user_id: str
    username: str
    credential_id: bytes
    signature_count: int


class LoginService:
    """Begin/finish assertion using its own challenge cache."""

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialStore,
        verifier: CredentialVerifier,
        challenges: ChallengeCache,
        *,
        policy: Optional[AuthenticatorPolicy] = None,
        realm: str = "demo",
    ):
        self.users = users
        self.credentials = credentials
        self.verifier = verifier
        self.challenges = challenges
        self.policy = policy or AuthenticatorPolicy()
        self.realm = realm

    def _completed_user(self, username: str):
        try:
            username = normalize_username(username)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        user = self.users.get_by_username(username)
        if user is None or not user.is_completed:
            raise UnknownUserError(f"User '{username}' not found")
        return user

    def begin_login(self, username: str) -> Dict[str, Any]:
        """Issue an assertion challenge for a completed user.

        Raises:
            UnknownUserError: No completed user or no registered credential
        """
        user = self._completed_user(username)
        credentials = self.credentials.find_by_owner(user.id)
        if not credentials:
            raise UnknownUserError(f"User '{user.username}' has no registered credential")

        options, state = self.verifier.start_assertion(credentials, self.policy)
        self.challenges.put(user.username, PendingChallenge(user.username, options, state, user_id=user.id))
        logger.info("Issued login challenge for '%s'", user.username)
        return options

    def finish_login(self, username: str, response: Dict[str, Any]) -> LoginResult:
        """Verify the assertion and advance the credential's signature counter.

        Raises:
            ChallengeExpiredError: No outstanding login challenge
            VerificationFailure: Bad assertion or counter regression
        """
        if not isinstance(response, dict):
            raise ValidationError("Credential response must be a JSON object")
        user = self._completed_user(username)

        pending = self.challenges.take(user.username)
        if pending is None or (pending.user_id and pending.user_id != user.id):
            raise ChallengeExpiredError(f"No pending login challenge for '{user.username}'")

        credentials = self.credentials.find_by_owner(user.id)
        try:
            result = self.verifier.finish_assertion(pending.state, credentials, response)
        except VerificationFailure as exc:
            logger.warning("Login failed for '%s': %s", user.username, exc.detail)
            safe_log_event(
                "login_failed", user.username, operator="api", realm=self.realm,
                details={"user_id": user.id, "reason": exc.detail}, success=False,
            )
            raise

        self.credentials.update_signature_count(result.credential_id, result.signature_count)
        logger.info("Login succeeded for '%s'", user.username)
        safe_log_event(
            "login_succeeded", user.username, operator="api", realm=self.realm,
            details={"user_id": user.id},
        )
        return LoginResult(
            user_id=user.id,
            username=user.username,
            credential_id=result.credential_id,
            signature_count=result.signature_count,
        )
