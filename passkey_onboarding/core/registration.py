"""Two-phase passkey registration with identity provisioning.

Phase one creates a PENDING local user and issues a WebAuthn creation
challenge. Phase two verifies the signed response and, only then, creates the
Keycloak account and grants the default roles. The local store and Keycloak
share no transaction: each completed forward step records its undo action and
a failure replays them in reverse order.

Flow:
    begin_registration ──> UserStore.create ──> CredentialVerifier.start_registration ──> ChallengeCache.put
    finish_registration ──> ChallengeCache.take ──> verify ──> CredentialStore.save
                        ──> create_with_retry ──> assign_roles ──> UserStore.update (COMPLETED)
"""
from __future__ import annotations
import datetime
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from passkey_onboarding.core.audit import safe_log_event
from passkey_onboarding.core.challenge_cache import ChallengeCache, PendingChallenge
from passkey_onboarding.core.errors import (
    ChallengeExpiredError,
    OnboardingError,
    UnknownUserError,
    UsernameTakenError,
    ValidationError,
    VerificationFailure,
)
from passkey_onboarding.core.identity_provisioning import IdentityProvisioningClient
from passkey_onboarding.core.models import Credential, RegistrationStatus, User, generate_handle, utcnow
from passkey_onboarding.core.role_policy import RoleAssignmentPolicy
from passkey_onboarding.core.stores import CredentialStore, DuplicateCredentialError, DuplicateUsernameError, UserStore
from passkey_onboarding.core.validators import normalize_username, validate_label
from passkey_onboarding.core.webauthn import AuthenticatorPolicy, CredentialVerifier

logger = logging.getLogger(__name__)


class SagaState(str, Enum):
    INITIATED = "INITIATED"
    LOCAL_USER_PENDING = "LOCAL_USER_PENDING"
    CHALLENGE_ISSUED = "CHALLENGE_ISSUED"
    CREDENTIAL_VERIFIED = "CREDENTIAL_VERIFIED"
    IDENTITY_PROVISIONED = "IDENTITY_PROVISIONED"
    ROLES_ASSIGNED = "ROLES_ASSIGNED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CompensationLog:
    """Undo actions for completed forward steps, replayed newest first."""

    def __init__(self, username: str, realm: str):
        self.username = username
        self.realm = realm
        self._steps: List[Tuple[str, Callable[[], Any]]] = []

    def record(self, description: str, undo: Callable[[], Any]) -> None:
        self._steps.append((description, undo))

    def __len__(self) -> int:
        return len(self._steps)

    def unwind(self) -> List[Tuple[str, Exception]]:
        """Run every undo action in reverse order.

        A failing undo is logged and audited; the remaining ones still run.

        Returns:
            (description, error) for each undo action that failed
        """
        failures: List[Tuple[str, Exception]] = []
        while self._steps:
            description, undo = self._steps.pop()
            try:
                undo()
                logger.info("Compensated '%s' for user '%s'", description, self.username)
            except Exception as exc:
                logger.error(
                    "Compensation '%s' failed for user '%s': %s",
                    description, self.username, exc, exc_info=True,
                )
                safe_log_event(
                    "compensation_failed",
                    self.username,
                    realm=self.realm,
                    details={"step": description, "error": str(exc)},
                    success=False,
                )
                failures.append((description, exc))
        return failures


@dataclass
class RegistrationStart:
    user_id: str
    username: str
    options: Dict[str, Any]


@dataclass
class RegistrationOutcome:
    user_id: str
    username: str
    external_identity_id: str
    credential_id: bytes
    roles: List[str] = field(default_factory=list)


class RegistrationSaga:
    """Coordinates the local stores, the verifier and Keycloak for one registration."""

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialStore,
        verifier: CredentialVerifier,
        provisioning: IdentityProvisioningClient,
        role_policy: RoleAssignmentPolicy,
        challenges: ChallengeCache,
        *,
        policy: Optional[AuthenticatorPolicy] = None,
    ):
        self.users = users
        self.credentials = credentials
        self.verifier = verifier
        self.provisioning = provisioning
        self.role_policy = role_policy
        self.challenges = challenges
        self.policy = policy or AuthenticatorPolicy()

    @property
    def realm(self) -> str:
        return self.provisioning.realm

    def _audit(self, event_type, username, *, success=True, operator="api", **details) -> None:
        safe_log_event(
            event_type,
            username,
            operator=operator,
            realm=self.realm,
            details=details,
            success=success,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Phase one
    # ─────────────────────────────────────────────────────────────────────

    def begin_registration(self, username: str, display_name: str) -> RegistrationStart:
        """Create (or reuse) a PENDING user and issue a creation challenge.

        Raises:
            ValidationError: Malformed username or display name
            UsernameTakenError: A completed registration owns the username
        """
        logger.debug("Registration request is %s", SagaState.INITIATED.value)
        try:
            username = normalize_username(username)
            display_name = validate_label(display_name, "Display name")
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        user, created = self._pending_user(username, display_name)
        logger.debug("Registration for '%s' is %s", username, SagaState.LOCAL_USER_PENDING.value)

        try:
            options, state = self.verifier.start_registration(
                user,
                self.policy,
                self.credentials.find_by_owner(user.id),
            )
        except Exception:
            if created:
                self.users.delete(user.id)
                logger.warning("Challenge issuance failed, removed pending user '%s'", username)
            raise

        self.challenges.put(username, PendingChallenge(username, options, state, user_id=user.id))
        logger.info("Issued registration challenge for '%s' (user id %s)", username, user.id)
        self._audit("registration_started", username, user_id=user.id, new_user=created)
        return RegistrationStart(user_id=user.id, username=username, options=options)

    def _pending_user(self, username: str, display_name: str) -> Tuple[User, bool]:
        existing = self.users.get_by_username(username)
        if existing is None:
            try:
                return self.users.create(User(username, display_name, generate_handle())), True
            except DuplicateUsernameError:
                # Lost a race with a concurrent begin for the same username
                existing = self.users.get_by_username(username)
                if existing is None:
                    raise
        if existing.is_completed:
            raise UsernameTakenError(f"Username '{username}' is already registered")
        logger.info("Re-issuing registration challenge for pending user '%s'", username)
        return existing, False

    # ─────────────────────────────────────────────────────────────────────
    # Phase two
    # ─────────────────────────────────────────────────────────────────────

    def finish_registration(
        self,
        username: str,
        friendly_name: str,
        response: Dict[str, Any],
    ) -> RegistrationOutcome:
        """Verify the attestation, provision the identity and complete the user.

        Raises:
            ValidationError: Malformed input
            UnknownUserError: No local user for username
            ChallengeExpiredError: No outstanding challenge (consumed, replaced or expired)
            VerificationFailure: The attestation was rejected
            ProvisioningFailure: Keycloak account creation failed (credential removed)
            RoleAssignmentFailure: Roles could not be granted (account and credential removed)
        """
        try:
            username = normalize_username(username)
            friendly_name = validate_label(friendly_name, "Credential name")
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not isinstance(response, dict):
            raise ValidationError("Credential response must be a JSON object")

        user = self.users.get_by_username(username)
        if user is None:
            self.challenges.remove(username)
            raise UnknownUserError(f"User '{username}' not found")

        # take() removes the entry, so every later exit leaves no challenge behind
        pending = self.challenges.take(username)
        if pending is None or (pending.user_id and pending.user_id != user.id):
            raise ChallengeExpiredError(f"No pending registration challenge for '{username}'")

        state = SagaState.CHALLENGE_ISSUED
        compensation = CompensationLog(username, self.realm)
        roles: List[str] = []
        try:
            verification = self.verifier.finish_registration(pending.state, response)
            credential = Credential(
                credential_id=verification.credential_id,
                public_key=verification.public_key,
                signature_count=verification.signature_count,
                owner_user_id=user.id,
                friendly_name=friendly_name,
            )
            try:
                self.credentials.save(credential)
            except DuplicateCredentialError as exc:
                raise VerificationFailure("Credential is already registered", cause=exc) from exc
            compensation.record(
                "delete credential",
                lambda: self.credentials.delete(credential.credential_id),
            )
            state = SagaState.CREDENTIAL_VERIFIED
            logger.info("Credential verified for '%s' (aaguid=%s)", username, verification.aaguid or "unknown")

            external_id = self.provisioning.create_with_retry(username)
            compensation.record(
                "delete identity provider account",
                lambda: self.provisioning.delete_user(external_id),
            )
            state = SagaState.IDENTITY_PROVISIONED

            roles = self.role_policy.default_roles(username)
            self.provisioning.assign_roles(external_id, roles)
            state = SagaState.ROLES_ASSIGNED
        except Exception as exc:
            self._fail(username, user, state, compensation, exc)
            raise

        user.mark_completed(external_id)
        try:
            self.users.update(user)
        except Exception as exc:
            logger.error(
                "User '%s' is provisioned in Keycloak (id %s) but could not be marked completed "
                "locally; manual reconciliation required: %s",
                username, external_id, exc, exc_info=True,
            )
            self._audit(
                "registration_failed", username, success=False,
                user_id=user.id, failed_at=SagaState.ROLES_ASSIGNED.value,
                external_identity_id=external_id, divergence=True, error=str(exc),
            )
            raise

        logger.info(
            "Registration for '%s' is %s (Keycloak id %s, roles=%s)",
            username, SagaState.COMPLETED.value, external_id, roles,
        )
        self._audit(
            "registration_completed", username,
            user_id=user.id, external_identity_id=external_id, roles=roles,
        )
        return RegistrationOutcome(
            user_id=user.id,
            username=username,
            external_identity_id=external_id,
            credential_id=credential.credential_id,
            roles=list(roles),
        )

    def _fail(
        self,
        username: str,
        user: User,
        state: SagaState,
        compensation: CompensationLog,
        exc: Exception,
    ) -> None:
        logger.warning(
            "Registration for '%s' is %s at %s: %s; compensating %d step(s)",
            username, SagaState.FAILED.value, state.value, exc, len(compensation),
        )
        failures = compensation.unwind()
        code = exc.code if isinstance(exc, OnboardingError) else type(exc).__name__
        self._audit(
            "registration_failed", username, success=False,
            user_id=user.id, failed_at=state.value, error=code,
            unresolved_compensations=[step for step, _ in failures],
        )

    # ─────────────────────────────────────────────────────────────────────
    # Cleanup
    # ─────────────────────────────────────────────────────────────────────

    def delete_user(self, user_id: str, *, operator: str = "api") -> Dict[str, Any]:
        """Delete a user, its credentials and (if completed) its Keycloak account.

        The Keycloak account goes first; if that fails the local record stays
        so the deletion can be retried.

        Raises:
            UnknownUserError: No local user with that id
            ProvisioningDeleteFailure: Keycloak refused the deletion
        """
        user = self.users.get(user_id)
        if user is None:
            raise UnknownUserError(f"User id '{user_id}' not found")

        identity_deleted = False
        if user.registration_status is RegistrationStatus.COMPLETED:
            try:
                if user.external_identity_id:
                    identity_deleted = self.provisioning.delete_user(user.external_identity_id)
                else:
                    identity_deleted = self.provisioning.delete_user_by_username(user.username)
            except OnboardingError as exc:
                self._audit(
                    "user_deleted", user.username, success=False, operator=operator,
                    user_id=user.id, error=exc.detail,
                )
                raise

        removed_credentials = self._delete_local(user)
        logger.info(
            "Deleted user '%s' (status=%s, identity_deleted=%s, credentials=%d)",
            user.username, user.registration_status.value, identity_deleted, removed_credentials,
        )
        self._audit(
            "user_deleted", user.username, operator=operator,
            user_id=user.id, status=user.registration_status.value,
            identity_deleted=identity_deleted, credentials_deleted=removed_credentials,
        )
        return {
            "userId": user.id,
            "username": user.username,
            "identityDeleted": identity_deleted,
            "credentialsDeleted": removed_credentials,
        }

    def _delete_local(self, user: User) -> int:
        removed = 0
        for credential in self.credentials.find_by_owner(user.id):
            if self.credentials.delete(credential.credential_id):
                removed += 1
        self.users.delete(user.id)
        self.challenges.remove(user.username)
        return removed

    def purge_abandoned(self, older_than: datetime.timedelta, *, operator: str = "cli") -> List[str]:
        """Delete PENDING users registered more than older_than ago.

        Returns:
            Usernames that were purged
        """
        cutoff = utcnow() - older_than
        purged = []
        for user in self.users.list_by_status(RegistrationStatus.PENDING, registered_before=cutoff):
            self._delete_local(user)
            purged.append(user.username)
            self._audit(
                "registration_purged", user.username, operator=operator,
                user_id=user.id, registered_at=user.registered_at.isoformat(),
            )
        expired = self.challenges.purge_expired()
        logger.info("Purged %d abandoned registration(s), %d expired challenge(s)", len(purged), expired)
        return purged
