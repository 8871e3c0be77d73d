"""Pytest shared fixtures for onboarding tests."""
import os
import pathlib
import sys
from unittest.mock import Mock

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any app imports
os.environ.setdefault("DEMO_MODE", "true")

import pytest
import requests

from passkey_onboarding.config import AppConfig
from passkey_onboarding.core import audit
from passkey_onboarding.core.challenge_cache import ChallengeCache
from passkey_onboarding.core.container import OnboardingServices
from passkey_onboarding.core.errors import VerificationFailure
from passkey_onboarding.core.identity_provisioning import IdentityProvisioningClient
from passkey_onboarding.core.keycloak import KeycloakAPIError
from passkey_onboarding.core.login import LoginService
from passkey_onboarding.core.registration import RegistrationSaga
from passkey_onboarding.core.role_policy import StaticRolePolicy
from passkey_onboarding.core.stores import InMemoryCredentialStore, InMemoryUserStore
from passkey_onboarding.core.webauthn import (
    AssertionVerification,
    CredentialVerifier,
    RegistrationVerification,
    check_signature_counter,
)
from passkey_onboarding.flask_app import create_app


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, request):
    """
    Prevent unit tests from reaching a live Keycloak.

    Integration tests are explicitly marked with @pytest.mark.integration and
    are allowed to perform real HTTP calls by skipping this fixture.
    """
    if request.node.get_closest_marker("integration"):
        return

    def _stub_post(url, *args, **kwargs):
        if url.endswith("/protocol/openid-connect/token"):
            return Mock(status_code=200, json=lambda: {"access_token": "test-token", "expires_in": 300})
        raise RuntimeError(f"Unexpected HTTP POST in unit test: {url}")

    def _unexpected(method):
        def _stub(url, *args, **kwargs):
            raise RuntimeError(f"Unexpected HTTP {method} in unit test: {url}")
        return _stub

    monkeypatch.setattr(requests, "post", _stub_post)
    monkeypatch.setattr(requests, "get", _unexpected("GET"))
    monkeypatch.setattr(requests, "delete", _unexpected("DELETE"))


@pytest.fixture(autouse=True)
def temp_audit_dir(monkeypatch, tmp_path):
    """Isolated audit directory for each test."""
    audit_dir = tmp_path / "audit"
    audit_file = audit_dir / "onboarding-events.jsonl"
    monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit_dir)
    monkeypatch.setattr(audit, "AUDIT_LOG_FILE", audit_file)
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key-for-audit-trail")
    return audit_dir, audit_file


def _read_audit_events(audit_file):
    import json

    if not audit_file.exists():
        return []
    return [json.loads(line) for line in audit_file.read_text(encoding="utf-8").splitlines() if line.strip()]


@pytest.fixture()
def audit_events(temp_audit_dir):
    """Callable returning the events written so far."""
    _, audit_file = temp_audit_dir
    return lambda: _read_audit_events(audit_file)


# ─────────────────────────────────────────────────────────────────────────────
# Keycloak Admin API fake
# ─────────────────────────────────────────────────────────────────────────────
class FakeKeycloak:
    """Stands in for KeycloakClient; keeps users and role mappings in dicts."""

    def __init__(self, roles=("user", "analyst")):
        self.users = {}
        self.roles = {name: {"id": f"role-{name}", "name": name} for name in roles}
        self.role_mappings = {}
        self.calls = []
        self.create_failures = 0
        self.lose_create_response = False
        self.fail_mapping = False
        self.fail_delete = False
        self._counter = 0

    @staticmethod
    def _response(status, payload=None, headers=None):
        return Mock(status_code=status, json=lambda: payload, headers=headers or {}, text="")

    def creation_calls(self):
        return [c for c in self.calls if c[0] == "POST" and c[1].endswith("/users")]

    def get(self, path, params=None, **kwargs):
        self.calls.append(("GET", path))
        if path.endswith("/users"):
            username = params["username"]
            matches = [{"id": uid, "username": name} for uid, name in self.users.items() if name == username]
            return self._response(200, matches)
        if "/roles/" in path:
            name = path.rsplit("/", 1)[-1]
            if name not in self.roles:
                raise KeycloakAPIError(404, "Could not find role", path)
            return self._response(200, self.roles[name])
        raise AssertionError(f"Unexpected GET {path}")

    def post(self, path, json=None, data=None, **kwargs):
        self.calls.append(("POST", path))
        if path.endswith("/users"):
            if self.create_failures > 0:
                self.create_failures -= 1
                raise KeycloakAPIError(503, "Service Unavailable", path)
            if json["username"] in self.users.values():
                raise KeycloakAPIError(409, "User exists with same username", path)
            self._counter += 1
            user_id = f"kc-{self._counter}"
            self.users[user_id] = json["username"]
            if self.lose_create_response:
                self.lose_create_response = False
                raise KeycloakAPIError(504, "Gateway Timeout", path)
            return self._response(201, None, {"Location": f"http://keycloak:8080{path}/{user_id}"})
        if path.endswith("/role-mappings/realm"):
            if self.fail_mapping:
                raise KeycloakAPIError(500, "Internal Server Error", path)
            user_id = path.split("/users/")[1].split("/")[0]
            self.role_mappings.setdefault(user_id, []).extend(role["name"] for role in json)
            return self._response(204)
        raise AssertionError(f"Unexpected POST {path}")

    def delete(self, path, **kwargs):
        self.calls.append(("DELETE", path))
        if self.fail_delete:
            raise KeycloakAPIError(500, "Internal Server Error", path)
        user_id = path.rsplit("/", 1)[-1]
        if user_id not in self.users:
            raise KeycloakAPIError(404, "User not found", path)
        del self.users[user_id]
        self.role_mappings.pop(user_id, None)
        return self._response(204)


# ─────────────────────────────────────────────────────────────────────────────
# Credential verifier fake
# ─────────────────────────────────────────────────────────────────────────────
class FakeVerifier(CredentialVerifier):
    """Accepts a response whose "challenge" echoes the issued one."""

    def __init__(self):
        self.issued = 0
        self.fail_start = False

    def _challenge(self, prefix):
        self.issued += 1
        return f"{prefix}-challenge-{self.issued}"

    def start_registration(self, user, policy, exclude=()):
        if self.fail_start:
            raise RuntimeError("authenticator policy rejected")
        challenge = self._challenge("reg")
        options = {
            "publicKey": {
                "challenge": challenge,
                "user": {"id": user.handle.hex(), "name": user.username, "displayName": user.display_name},
                "excludeCredentials": [c.credential_id.hex() for c in exclude],
                "authenticatorSelection": {
                    "authenticatorAttachment": policy.authenticator_attachment,
                    "userVerification": policy.user_verification,
                },
            }
        }
        return options, {"challenge": challenge}

    def finish_registration(self, state, response):
        if response.get("challenge") != state["challenge"]:
            raise VerificationFailure("Challenge mismatch")
        return RegistrationVerification(
            credential_id=response.get("id", "cred-1").encode(),
            public_key=b"cose-public-key",
            signature_count=response.get("signCount", 0),
        )

    def start_assertion(self, credentials, policy):
        challenge = self._challenge("auth")
        options = {
            "publicKey": {
                "challenge": challenge,
                "allowCredentials": [c.credential_id.hex() for c in credentials],
            }
        }
        return options, {"challenge": challenge}

    def finish_assertion(self, state, credentials, response):
        if response.get("challenge") != state["challenge"]:
            raise VerificationFailure("Challenge mismatch")
        credential_id = response.get("id", "").encode()
        stored = next((c for c in credentials if c.credential_id == credential_id), None)
        if stored is None:
            raise VerificationFailure("Unknown credential")
        received = response.get("signCount", 0)
        check_signature_counter(stored.signature_count, received)
        return AssertionVerification(credential_id=credential_id, signature_count=received)


def _registration_response(start, credential_id="cred-1", sign_count=0):
    return {"challenge": start.options["publicKey"]["challenge"], "id": credential_id, "signCount": sign_count}


@pytest.fixture()
def registration_response():
    """Builds the browser response for a RegistrationStart issued by FakeVerifier."""
    return _registration_response


# ─────────────────────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────────────────────
def make_config(**overrides):
    base = dict(
        demo_mode=True,
        secret_key="test-secret",
        trusted_proxy_ips="127.0.0.1/32,::1/128",
        keycloak_url="http://keycloak:8080",
        keycloak_realm="demo",
        keycloak_service_realm="demo",
        keycloak_service_client_id="automation-cli",
        keycloak_service_client_secret="demo-service-secret",
        default_roles=["user"],
        provisioning_max_attempts=3,
        provisioning_initial_delay=1.0,
        webauthn_rp_id="localhost",
        webauthn_rp_name="Passkey Onboarding",
        webauthn_allowed_origins=["http://localhost:5000"],
        challenge_ttl_seconds=300.0,
        database_url="",
    )
    base.update(overrides)
    return AppConfig(**base)


@pytest.fixture()
def fake_keycloak():
    return FakeKeycloak()


@pytest.fixture()
def fake_verifier():
    return FakeVerifier()


@pytest.fixture()
def sleeps():
    """Delays requested by the retry loop (no real waiting)."""
    return []


@pytest.fixture()
def provisioning(fake_keycloak, sleeps):
    return IdentityProvisioningClient(
        fake_keycloak,
        "demo",
        max_attempts=3,
        initial_delay=1.0,
        sleep=sleeps.append,
    )


@pytest.fixture()
def user_store():
    return InMemoryUserStore()


@pytest.fixture()
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture()
def saga(user_store, credential_store, fake_verifier, provisioning):
    return RegistrationSaga(
        user_store,
        credential_store,
        fake_verifier,
        provisioning,
        StaticRolePolicy(["user"]),
        ChallengeCache(ttl_seconds=300),
    )


@pytest.fixture()
def login_service(user_store, credential_store, fake_verifier):
    return LoginService(user_store, credential_store, fake_verifier, ChallengeCache(ttl_seconds=300))


@pytest.fixture()
def services(saga, login_service, user_store, credential_store):
    import threading

    return OnboardingServices(
        registration=saga,
        login=login_service,
        users=user_store,
        credentials=credential_store,
        shutdown_event=threading.Event(),
    )


@pytest.fixture()
def app(services):
    flask_app = create_app(cfg=make_config(), services=services)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture()
def client(app):
    """Flask test client backed by the in-memory fakes."""
    with app.test_client() as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# Pytest Configuration
# ─────────────────────────────────────────────────────────────────────────────
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires running stack)"
    )
