"""Assembles the onboarding services from an AppConfig."""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from passkey_onboarding.config import AppConfig
from passkey_onboarding.core.challenge_cache import ChallengeCache
from passkey_onboarding.core.identity_provisioning import IdentityProvisioningClient
from passkey_onboarding.core.keycloak import KeycloakClient
from passkey_onboarding.core.login import LoginService
from passkey_onboarding.core.registration import RegistrationSaga
from passkey_onboarding.core.role_policy import StaticRolePolicy
from passkey_onboarding.core.sql_stores import Database, SqlCredentialStore, SqlUserStore
from passkey_onboarding.core.stores import (
    CredentialStore,
    InMemoryCredentialStore,
    InMemoryUserStore,
    UserStore,
)
from passkey_onboarding.core.webauthn import AuthenticatorPolicy, CredentialVerifier, Fido2CredentialVerifier

logger = logging.getLogger(__name__)


@dataclass
class OnboardingServices:
    registration: RegistrationSaga
    login: LoginService
    users: UserStore
    credentials: CredentialStore
    shutdown_event: threading.Event
    database: Optional[Database] = None


def build_stores(cfg: AppConfig):
    """Return (users, credentials, database) for cfg.database_url."""
    if not cfg.database_url:
        return InMemoryUserStore(), InMemoryCredentialStore(), None
    database = Database(cfg.database_url)
    database.create_all()
    return SqlUserStore(database), SqlCredentialStore(database), database


def build_services(
    cfg: AppConfig,
    *,
    verifier: Optional[CredentialVerifier] = None,
    keycloak_client: Optional[KeycloakClient] = None,
) -> OnboardingServices:
    users, credentials, database = build_stores(cfg)

    if keycloak_client is None:
        keycloak_client = KeycloakClient(cfg.keycloak_url)
        keycloak_client.configure_service_account(
            cfg.keycloak_service_realm,
            cfg.keycloak_service_client_id,
            cfg.keycloak_service_client_secret,
        )

    # Set on shutdown so provisioning retries stop waiting
    shutdown_event = threading.Event()
    provisioning = IdentityProvisioningClient(
        keycloak_client,
        cfg.keycloak_realm,
        max_attempts=cfg.provisioning_max_attempts,
        initial_delay=cfg.provisioning_initial_delay,
        cancel_event=shutdown_event,
    )

    if verifier is None:
        verifier = Fido2CredentialVerifier(
            cfg.webauthn_rp_id,
            cfg.webauthn_rp_name,
            cfg.webauthn_allowed_origins,
        )
    policy = AuthenticatorPolicy(
        authenticator_attachment=cfg.webauthn_authenticator_attachment,
        user_verification=cfg.webauthn_user_verification,
    )

    registration = RegistrationSaga(
        users,
        credentials,
        verifier,
        provisioning,
        StaticRolePolicy(cfg.default_roles),
        ChallengeCache(ttl_seconds=cfg.challenge_ttl_seconds),
        policy=policy,
    )
    login = LoginService(
        users,
        credentials,
        verifier,
        ChallengeCache(ttl_seconds=cfg.challenge_ttl_seconds),
        policy=policy,
        realm=cfg.keycloak_realm,
    )
    logger.info(
        "Onboarding services ready (realm=%s, storage=%s, roles=%s)",
        cfg.keycloak_realm, "sql" if database else "in-memory", cfg.default_roles,
    )
    return OnboardingServices(
        registration=registration,
        login=login,
        users=users,
        credentials=credentials,
        shutdown_event=shutdown_event,
        database=database,
    )
