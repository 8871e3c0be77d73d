"""Keycloak-specific exceptions for error handling."""


class KeycloakError(Exception):
    """Base exception for all Keycloak operations."""
    pass


class KeycloakAPIError(KeycloakError):
    """HTTP error from Keycloak Admin API.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class KeycloakConnectionError(KeycloakError):
    """Keycloak could not be reached (DNS, refused connection, timeout)."""
    pass


class UserNotFoundError(KeycloakError):
    """User lookup failed - the account does not exist."""
    pass


class UserAlreadyExistsError(KeycloakError):
    """User creation failed - username already exists."""
    pass


class RoleNotFoundError(KeycloakError):
    """Role does not exist in realm."""
    pass
