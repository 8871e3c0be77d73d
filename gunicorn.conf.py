"""Gunicorn configuration file.

The challenge cache lives in process memory, so the app runs as a single
worker process with several threads. Scale out only after moving the cache
to shared storage.
"""
import os

wsgi_app = "passkey_onboarding.flask_app:create_app()"
bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:5000")
workers = 1
threads = int(os.environ.get("GUNICORN_THREADS", "8"))
# Provisioning retries can block a request for several seconds
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "60"))


def post_fork(server, worker):
    """Report which secrets are mounted; values are read by settings.py."""
    from pathlib import Path

    secrets_dir = Path("/run/secrets")
    if secrets_dir.exists() and secrets_dir.is_dir():
        secret_files = list(secrets_dir.glob("*"))
        if secret_files:
            worker.log.info(f"Found {len(secret_files)} secrets in /run/secrets")
            return
    worker.log.info("No /run/secrets mount; settings fall back to environment variables")


def worker_int(worker):
    """Stop pending provisioning retries when the worker is interrupted."""
    services = getattr(worker.wsgi, "extensions", {}).get("onboarding")
    if services is not None:
        services.shutdown_event.set()
        worker.log.info("Signalled onboarding services to stop retrying")
