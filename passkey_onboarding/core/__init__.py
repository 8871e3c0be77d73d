"""Core Business Logic Module

Passkey registration, login and identity provisioning, independent of Flask.

Module Structure:
    - keycloak/                : Low-level Keycloak Admin API client
    - identity_provisioning.py : Idempotent-checked Keycloak façade with retries
    - registration.py          : Two-phase registration saga with compensation
    - login.py                 : Passkey login (assertion)
    - webauthn.py              : Credential verifier (fido2)
    - challenge_cache.py       : Outstanding challenges per username
    - stores.py, sql_stores.py : User and credential persistence
    - role_policy.py           : Default realm roles for new users
    - retry.py                 : Exponential backoff
    - audit.py                 : Signed audit trail
    - container.py             : Wiring from AppConfig
    - errors.py, validators.py, models.py

Usage Pattern:
    Modules are not auto-imported; import explicitly when needed:
        from passkey_onboarding.core.container import build_services
        from passkey_onboarding.core.errors import OnboardingError
"""
