"""Keycloak Admin API client library.

This package provides the subset of the Keycloak Admin API needed to provision
identities for registered passkey users.

Architecture:
- client.py: HTTP client with service account authentication and token renewal
- users.py: User lookup, creation and deletion
- roles.py: Realm role resolution and batched role mappings
- exceptions.py: Typed exceptions for error handling

Usage:
    from passkey_onboarding.core.keycloak import KeycloakClient, UserService

    client = KeycloakClient("http://keycloak:8080")
    client.configure_service_account("demo", "automation-cli", "secret")

    user_service = UserService(client)
    user = user_service.get_user_by_username("demo", "alice")
"""
from .client import (
    KeycloakClient,
    REQUEST_TIMEOUT,
    TOKEN_REFRESH_MARGIN,
)
from .exceptions import (
    KeycloakError,
    KeycloakAPIError,
    KeycloakConnectionError,
    UserNotFoundError,
    UserAlreadyExistsError,
    RoleNotFoundError,
)
from .users import UserService
from .roles import RoleService

__all__ = [
    # Client
    "KeycloakClient",
    "REQUEST_TIMEOUT",
    "TOKEN_REFRESH_MARGIN",

    # Exceptions
    "KeycloakError",
    "KeycloakAPIError",
    "KeycloakConnectionError",
    "UserNotFoundError",
    "UserAlreadyExistsError",
    "RoleNotFoundError",

    # Services
    "UserService",
    "RoleService",
]
