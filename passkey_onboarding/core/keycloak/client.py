"""Low-level HTTP client for Keycloak Admin API.

Handles service-account authentication, token caching and HTTP operations.
"""
from __future__ import annotations
import logging
import os
import threading
from typing import Optional, Dict, Any
from datetime import datetime, timedelta

import requests

from .exceptions import KeycloakAPIError, KeycloakConnectionError

REQUEST_TIMEOUT = 5

# Renew the cached token once less than this many seconds remain
TOKEN_REFRESH_MARGIN = 30

logger = logging.getLogger(__name__)


class KeycloakClient:
    """HTTP client for Keycloak Admin API with automatic token management.

    Features:
    - Client credentials (service account) authentication
    - Token cached until its remaining lifetime drops below TOKEN_REFRESH_MARGIN
    - Centralized error handling

    Usage:
        client = KeycloakClient("http://keycloak:8080")
        client.configure_service_account("demo", "automation-cli", "secret")
        response = client.get("/admin/realms/demo/users")
    """

    def __init__(self, base_url: Optional[str] = None):
        """Initialize Keycloak client.

        Args:
            base_url: Keycloak base URL (defaults to KEYCLOAK_URL env var)
        """
        self.base_url = (base_url or os.environ.get("KEYCLOAK_URL", "http://keycloak:8080")).rstrip("/")
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._auth_params: Dict[str, Any] = {}
        self._token_lock = threading.Lock()

    def configure_service_account(self, auth_realm: str, client_id: str, client_secret: str) -> None:
        """Store service account credentials; the token is fetched on first use.

        Args:
            auth_realm: Realm where service account client exists
            client_id: Service account client ID
            client_secret: Service account client secret
        """
        self._auth_params = {
            "auth_realm": auth_realm,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        self._token = None
        self._token_expires_at = None

    @property
    def token_expires_at(self) -> Optional[datetime]:
        return self._token_expires_at

    def _refresh_token(self) -> None:
        payload = self._get_service_account_token(
            self._auth_params["auth_realm"],
            self._auth_params["client_id"],
            self._auth_params["client_secret"],
        )
        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 60))
        self._token_expires_at = datetime.now() + timedelta(seconds=expires_in)
        logger.debug("Obtained service account token (expires in %ss)", expires_in)

    def _token_is_fresh(self) -> bool:
        return bool(
            self._token
            and self._token_expires_at
            and datetime.now() < self._token_expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN)
        )

    def _ensure_authenticated(self) -> str:
        """Return a valid token, refreshing if necessary.

        Request threads share one client; only one of them refreshes.
        """
        if not self._auth_params:
            raise KeycloakAPIError(401, "Not authenticated - call configure_service_account first", "")

        with self._token_lock:
            if not self._token_is_fresh():
                self._refresh_token()
            return self._token

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        token = self._ensure_authenticated()
        url = f"{self.base_url}{path}"
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {token}"
        sender = getattr(requests, method)
        try:
            resp = sender(url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise KeycloakConnectionError(f"{method.upper()} {url} failed: {exc}") from exc
        self._handle_error(resp)
        return resp

    def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> requests.Response:
        """Execute GET request with automatic authentication.

        Raises:
            KeycloakAPIError: On HTTP error
            KeycloakConnectionError: When Keycloak is unreachable
        """
        return self._send("get", path, params=params, **kwargs)

    def post(self, path: str, json: Any = None, data: Optional[Dict] = None, **kwargs) -> requests.Response:
        """Execute POST request with automatic authentication."""
        return self._send("post", path, json=json, data=data, **kwargs)

    def delete(self, path: str, **kwargs) -> requests.Response:
        """Execute DELETE request with automatic authentication."""
        return self._send("delete", path, **kwargs)

    def _get_service_account_token(self, auth_realm: str, client_id: str, client_secret: str) -> dict:
        """Fetch a service account token using client credentials flow."""
        url = f"{self.base_url}/realms/{auth_realm}/protocol/openid-connect/token"
        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        try:
            resp = requests.post(url, data=data, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise KeycloakConnectionError(f"Token request to {url} failed: {exc}") from exc
        if resp.status_code != 200:
            raise KeycloakAPIError(resp.status_code, resp.text, url)
        return resp.json()

    def _handle_error(self, resp: requests.Response) -> None:
        """Centralized error handling for HTTP responses.

        Raises:
            KeycloakAPIError: If response status indicates error
        """
        if resp.status_code >= 400:
            raise KeycloakAPIError(resp.status_code, resp.text, resp.url)
