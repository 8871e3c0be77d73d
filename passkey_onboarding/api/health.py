"""Health check endpoints."""
from flask import Blueprint, current_app, jsonify

bp = Blueprint("health", __name__)


@bp.route("/health")
def health_check():
    """Liveness: the process answers."""
    return ("ok", 200, {"Content-Type": "text/plain"})


@bp.route("/ready")
def readiness_check():
    """Readiness: onboarding services are wired and not shutting down."""
    services = current_app.extensions.get("onboarding")
    if services is None or services.shutdown_event.is_set():
        return jsonify({"status": "unavailable"}), 503
    return jsonify({
        "status": "ready",
        "storage": "sql" if services.database else "in-memory",
    }), 200
