"""Keycloak user management operations."""
from __future__ import annotations
import logging
from typing import Optional

from .client import KeycloakClient
from .exceptions import KeycloakAPIError, UserAlreadyExistsError, UserNotFoundError

logger = logging.getLogger(__name__)


class UserService:
    """Service for managing Keycloak users."""

    def __init__(self, client: KeycloakClient):
        """Initialize user service.

        Args:
            client: Keycloak client configured with service account credentials
        """
        self.client = client

    def get_user_by_username(self, realm: str, username: str) -> Optional[dict]:
        """Return the user representation that exactly matches the username.

        Args:
            realm: Realm name
            username: Username to search for

        Returns:
            User representation or None if not found
        """
        resp = self.client.get(
            f"/admin/realms/{realm}/users",
            params={"username": username, "exact": "true"},
        )
        for user in resp.json():
            if user.get("username") == username:
                return user
        return None

    def create_user(self, realm: str, username: str, enabled: bool = True) -> str:
        """Create a user and return its Keycloak id.

        Keycloak answers 201 with a Location header ending in the new id;
        when the header is missing the id is resolved by username.

        Raises:
            UserAlreadyExistsError: Username already taken (409)
        """
        payload = {
            "username": username,
            "enabled": enabled,
        }
        try:
            resp = self.client.post(f"/admin/realms/{realm}/users", json=payload)
        except KeycloakAPIError as exc:
            if exc.status_code == 409:
                raise UserAlreadyExistsError(f"User '{username}' already exists in realm '{realm}'") from exc
            raise

        location = resp.headers.get("Location", "")
        if location:
            user_id = location.rstrip("/").rsplit("/", 1)[-1]
        else:
            user = self.get_user_by_username(realm, username)
            if not user:
                raise UserNotFoundError(f"User '{username}' created but not found in realm '{realm}'")
            user_id = user["id"]
        logger.info("[provisioning] User '%s' created (id=%s)", username, user_id)
        return user_id

    def delete_user(self, realm: str, user_id: str) -> None:
        """Delete a user by id.

        Raises:
            UserNotFoundError: The account does not exist (404)
        """
        try:
            self.client.delete(f"/admin/realms/{realm}/users/{user_id}")
        except KeycloakAPIError as exc:
            if exc.status_code == 404:
                raise UserNotFoundError(f"User id '{user_id}' not found in realm '{realm}'") from exc
            raise
        logger.info("[provisioning] User id '%s' deleted", user_id)
