"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            print(f"[settings] ✓ Loaded {env_var} from environment (fallback)")
            return secret_value

    return None


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask
    secret_key: str
    trusted_proxy_ips: str = "127.0.0.1/32,::1/128"

    # Keycloak
    keycloak_url: str = ""
    keycloak_realm: str = "demo"
    keycloak_service_realm: str = "demo"
    keycloak_service_client_id: str = "automation-cli"
    keycloak_service_client_secret: str = ""
    default_roles: list[str] = field(default_factory=lambda: ["user"])

    # Provisioning retry budget
    provisioning_max_attempts: int = 3
    provisioning_initial_delay: float = 1.0

    # WebAuthn relying party
    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "Passkey Onboarding"
    webauthn_allowed_origins: list[str] = field(default_factory=list)
    webauthn_authenticator_attachment: Optional[str] = "cross-platform"
    webauthn_user_verification: str = "preferred"
    challenge_ttl_seconds: float = 300.0

    # Storage (empty → in-memory stores)
    database_url: str = ""

    # Audit
    audit_log_signing_key: str = ""


_ATTACHMENTS = {"platform", "cross-platform", "any"}
_USER_VERIFICATION = {"required", "preferred", "discouraged"}


def _get_or_generate(var_name: str, demo_default: Optional[str] = None, required: bool = True, demo_mode: bool = False) -> str:
    """Get environment variable or use demo default."""
    value = os.environ.get(var_name)
    if value:
        return value

    if demo_mode and demo_default is not None:
        print(f"[demo-mode] Using default for {var_name}")
        os.environ[var_name] = demo_default
        return demo_default

    if not required:
        return ""

    raise RuntimeError(f"Environment variable {var_name} is required in production mode.")


def _int_env(var_name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise RuntimeError(f"{var_name} must be >= {minimum}")
    return value


def _float_env(var_name: str, default: float) -> float:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{var_name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"{var_name} must not be negative")
    return value


def _csv_env(var_name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.environ.get(var_name, default).split(",") if item.strip()]


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    # ─────────────────────────────────────────────────────────────────────────
    # Secrets: /run/secrets first, then environment variables
    # ─────────────────────────────────────────────────────────────────────────

    secret_key = _load_secret_from_file("flask_secret_key", "FLASK_SECRET_KEY")
    if not secret_key:
        if demo_mode:
            secret_key = secrets.token_urlsafe(48)
            os.environ["FLASK_SECRET_KEY"] = secret_key
            print("[demo-mode] Generated temporary FLASK_SECRET_KEY")
        else:
            raise RuntimeError("FLASK_SECRET_KEY not found in /run/secrets or environment")

    keycloak_service_client_secret = _load_secret_from_file(
        "keycloak_service_client_secret",
        "KEYCLOAK_SERVICE_CLIENT_SECRET",
    )
    if not keycloak_service_client_secret:
        keycloak_service_client_secret = _get_or_generate(
            "KEYCLOAK_SERVICE_CLIENT_SECRET",
            demo_default=(os.environ.get("KEYCLOAK_SERVICE_CLIENT_SECRET_DEMO") or "demo-service-secret"),
            demo_mode=demo_mode,
        )

    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        audit_log_signing_key = os.environ.get(
            "AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production"
        )
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
        print(f"[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY: {audit_log_signing_key[:20]}...")

    # Trusted proxies
    trusted_proxy_ips = os.environ.get("TRUSTED_PROXY_IPS")
    if not trusted_proxy_ips:
        is_testing = os.environ.get("PYTEST_CURRENT_TEST") is not None
        if demo_mode or is_testing:
            trusted_proxy_ips = "127.0.0.1/32,::1/128"
            if demo_mode:
                print("[demo-mode] Defaulted TRUSTED_PROXY_IPS to localhost ranges")
        else:
            raise RuntimeError("TRUSTED_PROXY_IPS is required when DEMO_MODE is false.")

    # Keycloak
    keycloak_url = _get_or_generate(
        "KEYCLOAK_URL",
        demo_default="http://127.0.0.1:8080",
        demo_mode=demo_mode,
    )
    keycloak_realm = os.environ.get("KEYCLOAK_REALM", "demo")
    keycloak_service_realm = os.environ.get("KEYCLOAK_SERVICE_REALM", keycloak_realm)
    keycloak_service_client_id = _get_or_generate(
        "KEYCLOAK_SERVICE_CLIENT_ID",
        demo_default="automation-cli",
        demo_mode=demo_mode,
    )
    default_roles = [role.lower() for role in _csv_env("KEYCLOAK_DEFAULT_ROLES", "user")]

    # Retry budget
    provisioning_max_attempts = _int_env("PROVISIONING_MAX_ATTEMPTS", 3, minimum=1)
    provisioning_initial_delay = _float_env("PROVISIONING_INITIAL_DELAY", 1.0)

    # WebAuthn
    webauthn_rp_id = os.environ.get("WEBAUTHN_RP_ID", "localhost").strip()
    webauthn_rp_name = os.environ.get("WEBAUTHN_RP_NAME", "Passkey Onboarding").strip()
    webauthn_allowed_origins = _csv_env("WEBAUTHN_ALLOWED_ORIGINS")
    if not webauthn_allowed_origins and demo_mode:
        webauthn_allowed_origins = ["http://localhost:5000", "https://localhost"]
        print("[demo-mode] Defaulted WEBAUTHN_ALLOWED_ORIGINS to localhost")

    attachment = os.environ.get("WEBAUTHN_AUTHENTICATOR_ATTACHMENT", "cross-platform").strip().lower()
    if attachment not in _ATTACHMENTS:
        raise RuntimeError(f"WEBAUTHN_AUTHENTICATOR_ATTACHMENT must be one of {sorted(_ATTACHMENTS)}")
    user_verification = os.environ.get("WEBAUTHN_USER_VERIFICATION", "preferred").strip().lower()
    if user_verification not in _USER_VERIFICATION:
        raise RuntimeError(f"WEBAUTHN_USER_VERIFICATION must be one of {sorted(_USER_VERIFICATION)}")

    challenge_ttl_seconds = _float_env("CHALLENGE_TTL_SECONDS", 300.0)

    database_url = os.environ.get("DATABASE_URL", "").strip()

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    storage_label = "sql" if database_url else "in-memory"
    print(f"[settings] Mode={mode_label}; realm={keycloak_realm}; rp_id={webauthn_rp_id}; storage={storage_label}")

    if demo_mode:
        print("[settings] WARNING: Demo credentials in use. Do not deploy with these defaults.")

    return AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        trusted_proxy_ips=trusted_proxy_ips,
        keycloak_url=keycloak_url,
        keycloak_realm=keycloak_realm,
        keycloak_service_realm=keycloak_service_realm,
        keycloak_service_client_id=keycloak_service_client_id,
        keycloak_service_client_secret=keycloak_service_client_secret,
        default_roles=default_roles,
        provisioning_max_attempts=provisioning_max_attempts,
        provisioning_initial_delay=provisioning_initial_delay,
        webauthn_rp_id=webauthn_rp_id,
        webauthn_rp_name=webauthn_rp_name,
        webauthn_allowed_origins=webauthn_allowed_origins,
        webauthn_authenticator_attachment=None if attachment == "any" else attachment,
        webauthn_user_verification=user_verification,
        challenge_ttl_seconds=challenge_ttl_seconds,
        database_url=database_url,
        audit_log_signing_key=audit_log_signing_key or "",
    )
