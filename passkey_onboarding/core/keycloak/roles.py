"""Keycloak role management operations."""
from __future__ import annotations
import logging
from typing import List

from .client import KeycloakClient
from .exceptions import KeycloakAPIError, RoleNotFoundError

logger = logging.getLogger(__name__)


class RoleService:
    """Service for managing Keycloak realm roles."""

    def __init__(self, client: KeycloakClient):
        """Initialize role service.

        Args:
            client: Keycloak client configured with service account credentials
        """
        self.client = client

    def get_realm_role(self, realm: str, role_name: str) -> dict:
        """Return the realm role representation for role_name.

        Raises:
            RoleNotFoundError: Role does not exist (404) or has no id
        """
        try:
            resp = self.client.get(f"/admin/realms/{realm}/roles/{role_name}")
        except KeycloakAPIError as exc:
            if exc.status_code == 404:
                raise RoleNotFoundError(f"Role '{role_name}' not found in realm '{realm}'") from exc
            raise
        role = resp.json() or {}
        if not role.get("id") or not role.get("name"):
            raise RoleNotFoundError(f"Role '{role_name}' has no usable representation in realm '{realm}'")
        return role

    def add_realm_role_mappings(self, realm: str, user_id: str, roles: List[dict]) -> None:
        """Grant several realm roles to a user in a single call.

        Args:
            realm: Realm name
            user_id: Keycloak user id
            roles: Role representations ({"id", "name"}) already resolved
        """
        payload = [{"id": role["id"], "name": role["name"]} for role in roles]
        self.client.post(
            f"/admin/realms/{realm}/users/{user_id}/role-mappings/realm",
            json=payload,
        )
        logger.info(
            "[role-grant] Granted %s to user id '%s'",
            ", ".join(role["name"] for role in payload),
            user_id,
        )
