"""Which realm roles a newly registered user receives."""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Iterable, List


class RoleAssignmentPolicy(ABC):
    @abstractmethod
    def default_roles(self, username: str) -> List[str]:
        """Role names to grant; may be empty."""


class StaticRolePolicy(RoleAssignmentPolicy):
    """Same roles for everyone, as configured in KEYCLOAK_DEFAULT_ROLES."""

    def __init__(self, roles: Iterable[str]):
        seen = []
        for role in roles:
            role = role.strip()
            if role and role not in seen:
                seen.append(role)
        self.roles = seen

    def default_roles(self, username: str) -> List[str]:
        return list(self.roles)
