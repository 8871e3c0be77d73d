"""Passkey registration, login and user deletion endpoints.

Architecture:
    /api/* -> core/registration.py (RegistrationSaga) -> core/identity_provisioning.py -> Keycloak
           -> core/login.py (LoginService)

Every handler returns JSON. OnboardingError subclasses carry their own HTTP
status and are rendered by the blueprint error handler.
"""

from __future__ import annotations
import logging
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from passkey_onboarding.core.container import OnboardingServices
from passkey_onboarding.core.errors import OnboardingError, ValidationError

bp = Blueprint("registration", __name__, url_prefix="/api")

JSON_MAX_SIZE_BYTES = 65536  # 64 KB

logger = logging.getLogger(__name__)


def _services() -> OnboardingServices:
    return current_app.extensions["onboarding"]


def _payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _required(payload: dict[str, Any], field: str) -> Any:
    value = payload.get(field)
    if value is None or value == "":
        raise ValidationError(f"'{field}' is required")
    return value


def error_response(status: int, code: str, message: str) -> tuple[Response, int]:
    return jsonify({"error": code, "message": message}), status


# ─────────────────────────────────────────────────────────────────────────────
# Error Handler
# ─────────────────────────────────────────────────────────────────────────────

@bp.errorhandler(OnboardingError)
def handle_onboarding_error(error: OnboardingError):
    correlation_id = request.headers.get("X-Correlation-Id", "none")
    if error.status >= 500:
        logger.error("%s %s -> %s: %s (correlation_id=%s)", request.method, request.path, error.code, error.detail, correlation_id)
    else:
        logger.info("%s %s -> %s: %s (correlation_id=%s)", request.method, request.path, error.code, error.detail, correlation_id)
    return jsonify(error.to_dict()), error.status


# ─────────────────────────────────────────────────────────────────────────────
# Request Validation Middleware
# ─────────────────────────────────────────────────────────────────────────────

@bp.before_request
def validate_request():
    """Reject oversized or non-JSON payloads before they reach the saga."""
    if request.content_length and request.content_length > JSON_MAX_SIZE_BYTES:
        return error_response(413, "payload_too_large", "Request payload exceeds maximum allowed size (64 KB)")

    if request.method == "POST":
        content_type = request.content_type or ""
        if not content_type.startswith("application/json"):
            return error_response(415, "unsupported_media_type", "Content-Type must be application/json")
    return None


@bp.after_request
def add_correlation_id(response):
    correlation_id = request.headers.get("X-Correlation-Id")
    if correlation_id:
        response.headers["X-Correlation-Id"] = correlation_id
    response.headers["Cache-Control"] = "no-store"
    return response


# ─────────────────────────────────────────────────────────────────────────────
# Registration
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/register", methods=["POST"])
def begin_registration():
    """Start a registration and return the WebAuthn creation options.

    Body: {"username": str, "displayName": str}
    """
    payload = _payload()
    start = _services().registration.begin_registration(
        _required(payload, "username"),
        _required(payload, "displayName"),
    )
    return jsonify({
        "userId": start.user_id,
        "username": start.username,
        **start.options,
    }), 200


@bp.route("/finishauth", methods=["POST"])
def finish_registration():
    """Verify the attestation and provision the identity.

    Body: {"username": str, "credname": str, "credential": {...}}
    """
    payload = _payload()
    outcome = _services().registration.finish_registration(
        _required(payload, "username"),
        _required(payload, "credname"),
        _required(payload, "credential"),
    )
    return jsonify({
        "registerSuccess": True,
        "username": outcome.username,
        "userId": outcome.user_id,
        "roles": outcome.roles,
    }), 200


# ─────────────────────────────────────────────────────────────────────────────
# Login
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/login", methods=["POST"])
def begin_login():
    """Body: {"username": str}"""
    payload = _payload()
    options = _services().login.begin_login(_required(payload, "username"))
    return jsonify(options), 200


@bp.route("/finishlogin", methods=["POST"])
def finish_login():
    """Body: {"username": str, "credential": {...}}"""
    payload = _payload()
    result = _services().login.finish_login(
        _required(payload, "username"),
        _required(payload, "credential"),
    )
    return jsonify({"loginSuccess": True, "username": result.username}), 200


# ─────────────────────────────────────────────────────────────────────────────
# Cleanup
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/users/<user_id>", methods=["DELETE"])
def delete_user(user_id: str):
    """Delete a local user and, for completed registrations, its Keycloak account."""
    summary = _services().registration.delete_user(user_id, operator="api")
    return jsonify({"deleted": True, **summary}), 200
