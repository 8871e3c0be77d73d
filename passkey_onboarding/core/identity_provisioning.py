"""Identity provisioning façade over the Keycloak Admin API.

The registration saga only needs four things from the identity provider:
existence checks, idempotent creation, atomic role assignment and best-effort
deletion. This module exposes exactly those and translates Keycloak errors
into onboarding errors.

Architecture:
    RegistrationSaga ──> IdentityProvisioningClient ──> core.keycloak ──> Keycloak
                                 │
                                 └──> core.retry (creation only)
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, List, Optional

from passkey_onboarding.core.errors import (
    ProvisioningDeleteFailure,
    ProvisioningFailure,
    RoleAssignmentFailure,
)
from passkey_onboarding.core.keycloak import (
    KeycloakClient,
    KeycloakError,
    RoleService,
    UserAlreadyExistsError,
    UserNotFoundError,
    UserService,
)
from passkey_onboarding.core.retry import RetryCancelledError, RetryError, execute_with_retry

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0

logger = logging.getLogger(__name__)


class IdentityProvisioningClient:
    """Idempotent-checked user and role operations against one Keycloak realm."""

    def __init__(
        self,
        client: KeycloakClient,
        realm: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.realm = realm
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.cancel_event = cancel_event
        self._sleep = sleep
        self.users = UserService(client)
        self.roles = RoleService(client)

    # ─────────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────────

    def get_user_id(self, username: str) -> Optional[str]:
        """Return the Keycloak id for username, or None if absent."""
        user = self.users.get_user_by_username(self.realm, username)
        return user["id"] if user else None

    def exists(self, username: str) -> bool:
        """True iff an account for username is already present."""
        return self.get_user_id(username) is not None

    # ─────────────────────────────────────────────────────────────────────
    # Creation
    # ─────────────────────────────────────────────────────────────────────

    def create_with_retry(self, username: str) -> str:
        """Create the account for username unless it exists; return its id.

        Raises:
            ProvisioningFailure: Lookup failed, or every creation attempt failed
        """
        try:
            existing_id = self.get_user_id(username)
        except KeycloakError as exc:
            raise ProvisioningFailure(
                f"Could not check whether '{username}' exists in the identity provider: {exc}",
                cause=exc,
            ) from exc

        if existing_id:
            logger.info("User '%s' already exists in Keycloak, skipping creation", username)
            return existing_id

        try:
            return execute_with_retry(
                lambda: self._create_once(username),
                self.max_attempts,
                self.initial_delay,
                retry_on=(KeycloakError,),
                cancel_event=self.cancel_event,
                sleep=self._sleep,
                description=f"Keycloak user creation for '{username}'",
            )
        except RetryCancelledError as exc:
            raise ProvisioningFailure(
                f"Creation of '{username}' in the identity provider was cancelled after {exc.attempts} attempt(s) "
                f"(service shutting down): {exc.last_error}",
                cause=exc.last_error,
            ) from exc
        except RetryError as exc:
            raise ProvisioningFailure(
                f"Failed to create '{username}' in the identity provider after {exc.attempts} attempt(s): "
                f"{exc.last_error}",
                cause=exc.last_error,
            ) from exc

    def _create_once(self, username: str) -> str:
        try:
            return self.users.create_user(self.realm, username)
        except UserAlreadyExistsError:
            # An earlier attempt may have succeeded after its response was lost
            existing_id = self.get_user_id(username)
            if existing_id:
                return existing_id
            raise

    # ─────────────────────────────────────────────────────────────────────
    # Roles
    # ─────────────────────────────────────────────────────────────────────

    def assign_roles(self, external_id: str, role_names: List[str]) -> None:
        """Grant all role_names to the account, or none of them.

        Every role is resolved before the single batched mapping call, so a
        missing role leaves the account without any of the requested roles.

        Raises:
            RoleAssignmentFailure: A role could not be resolved or the mapping call failed
        """
        if not role_names:
            logger.warning("No roles to assign for user id '%s'", external_id)
            return

        resolved = []
        for role_name in role_names:
            try:
                resolved.append(self.roles.get_realm_role(self.realm, role_name))
            except KeycloakError as exc:
                raise RoleAssignmentFailure(
                    f"Failed to resolve role '{role_name}': {exc}", cause=exc
                ) from exc

        try:
            self.roles.add_realm_role_mappings(self.realm, external_id, resolved)
        except KeycloakError as exc:
            raise RoleAssignmentFailure(
                f"Failed to assign roles {', '.join(role_names)}: {exc}", cause=exc
            ) from exc

    # ─────────────────────────────────────────────────────────────────────
    # Deletion
    # ─────────────────────────────────────────────────────────────────────

    def delete_user(self, external_id: str) -> bool:
        """Delete the account by id.

        Returns:
            True if deleted, False if it was already absent

        Raises:
            ProvisioningDeleteFailure: Any other identity provider error
        """
        try:
            self.users.delete_user(self.realm, external_id)
        except UserNotFoundError:
            logger.info("Keycloak user id '%s' already absent", external_id)
            return False
        except KeycloakError as exc:
            raise ProvisioningDeleteFailure(
                f"Failed to delete user id '{external_id}' from the identity provider: {exc}",
                cause=exc,
            ) from exc
        return True

    def delete_user_by_username(self, username: str) -> bool:
        """Delete the account owning username; False if none exists."""
        try:
            external_id = self.get_user_id(username)
        except KeycloakError as exc:
            raise ProvisioningDeleteFailure(
                f"Failed to look up '{username}' for deletion: {exc}", cause=exc
            ) from exc
        if not external_id:
            logger.info("Keycloak user '%s' already absent", username)
            return False
        return self.delete_user(external_id)
