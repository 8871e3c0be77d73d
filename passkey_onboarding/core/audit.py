"""Signed audit trail for onboarding operations.

Each registration, login and cleanup step appends one JSON line to
AUDIT_LOG_DIR/onboarding-events.jsonl. Lines carry an HMAC-SHA256 signature
over their canonical JSON form, so edits after the fact are detectable with
verify_audit_log().

Every event type declares the detail keys it must carry (EVENT_DETAILS); an
event missing one is rejected instead of being written half-described.
"""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator, Literal

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "onboarding-events.jsonl"
_DEFAULT_SECRET_PATHS = [
    Path("/run/secrets/audit_log_signing_key"),
    Path(".runtime/secrets/audit_log_signing_key"),
]
_DEMO_SIGNING_KEY = "demo-audit-signing-key-change-in-production"

EventType = Literal[
    "registration_started",
    "registration_completed",
    "registration_failed",
    "compensation_failed",
    "user_deleted",
    "registration_purged",
    "login_succeeded",
    "login_failed",
]

# Detail keys each event type must carry
EVENT_DETAILS: dict[str, frozenset[str]] = {
    "registration_started": frozenset({"user_id", "new_user"}),
    "registration_completed": frozenset({"user_id", "external_identity_id", "roles"}),
    "registration_failed": frozenset({"user_id", "failed_at", "error"}),
    "compensation_failed": frozenset({"step", "error"}),
    "user_deleted": frozenset({"user_id"}),
    "registration_purged": frozenset({"user_id", "registered_at"}),
    "login_succeeded": frozenset({"user_id"}),
    "login_failed": frozenset({"user_id", "reason"}),
}


@dataclass
class AuditEvent:
    """One line of the audit trail, before signing."""

    event_type: str
    username: str
    operator: str = "system"
    realm: str = "demo"
    success: bool = True
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat()
    )

    def validate(self) -> None:
        """Raise ValueError for an unknown type or missing detail keys."""
        required = EVENT_DETAILS.get(self.event_type)
        if required is None:
            raise ValueError(f"Unknown audit event type '{self.event_type}'")
        missing = required - self.details.keys()
        if missing:
            raise ValueError(
                f"Audit event '{self.event_type}' is missing detail(s): {', '.join(sorted(missing))}"
            )

    def to_record(self) -> dict[str, Any]:
        # default=str flattens datetimes and bytes the same way they are written
        return json.loads(json.dumps(asdict(self), ensure_ascii=False, default=str))


def _get_signing_key() -> bytes:
    """Signing key from a key file, the env var, a mounted secret, or the demo default."""
    key_file = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
    if key_file and Path(key_file).exists():
        try:
            return Path(key_file).read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            pass
    if "AUDIT_LOG_SIGNING_KEY" in os.environ:
        return os.environ["AUDIT_LOG_SIGNING_KEY"].strip().encode("utf-8")
    for path in _DEFAULT_SECRET_PATHS:
        if path.exists():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                continue
    return os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", _DEMO_SIGNING_KEY).encode("utf-8")


def _signature(record: dict[str, Any], key: bytes) -> str:
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"))
    return hmac.new(key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def _append(record: dict[str, Any]) -> None:
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)
    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")
    AUDIT_LOG_FILE.chmod(0o600)


def log_event(
    event_type: EventType,
    username: str,
    *,
    operator: str = "system",
    realm: str = "demo",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> dict[str, Any]:
    """Validate, sign and append one event.

    Args:
        event_type: Onboarding operation that happened
        username: Registrant the event concerns
        operator: Who triggered it ("api", "cli", "system")
        realm: Keycloak realm the account lives in
        details: Context required by EVENT_DETAILS for this event type
        success: Whether the operation succeeded

    Returns:
        The record as written

    Raises:
        ValueError: Unknown event type or missing detail keys
    """
    event = AuditEvent(
        event_type=event_type,
        username=username,
        operator=operator,
        realm=realm,
        success=success,
        details=dict(details or {}),
    )
    event.validate()

    record = event.to_record()
    key = _get_signing_key()
    if key:
        record["signature"] = _signature(record, key)
    _append(record)
    return record


def safe_log_event(
    event_type: EventType,
    username: str,
    *,
    operator: str = "system",
    realm: str = "demo",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """log_event() that reports failures on stderr instead of raising.

    Returns:
        True if the event was written
    """
    try:
        log_event(
            event_type,
            username,
            operator=operator,
            realm=realm,
            details=details,
            success=success,
        )
        return True
    except Exception as e:
        print(
            f"[audit] Warning: Failed to log {event_type} event for {username}: {e}",
            file=sys.stderr,
        )
        return False


def iter_events() -> Iterator[tuple[int, dict[str, Any] | None]]:
    """Yield (line number, parsed record or None if unreadable) for every non-blank line."""
    if not AUDIT_LOG_FILE.exists():
        return
    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield lineno, json.loads(line)
            except json.JSONDecodeError:
                yield lineno, None


def verify_audit_log() -> tuple[int, int]:
    """Recompute every signature in the audit log.

    Unsigned, unparsable and tampered lines count towards the total only.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    key = _get_signing_key()
    total = 0
    valid = 0
    for _, record in iter_events():
        total += 1
        if not isinstance(record, dict):
            continue
        stored = record.pop("signature", "")
        if stored and key and hmac.compare_digest(stored, _signature(record, key)):
            valid += 1
    return total, valid
