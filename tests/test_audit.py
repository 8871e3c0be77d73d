"""Tests for the signed onboarding audit trail."""

import datetime
import json

import pytest

from passkey_onboarding.core import audit


def _lines(audit_file):
    return [json.loads(line) for line in audit_file.read_text(encoding="utf-8").splitlines()]


def test_registration_failure_record_layout(temp_audit_dir):
    _, audit_file = temp_audit_dir

    record = audit.log_event(
        "registration_failed",
        "alice",
        operator="api",
        realm="passkeys",
        details={"user_id": "u-1", "failed_at": "CREDENTIAL_STORED", "error": "provisioning_failed"},
        success=False,
    )

    (written,) = _lines(audit_file)
    assert written == record
    assert set(written) == {
        "event_type", "username", "operator", "realm", "success", "details", "timestamp", "signature",
    }
    assert written["realm"] == "passkeys"
    assert written["success"] is False
    assert written["details"]["failed_at"] == "CREDENTIAL_STORED"
    assert datetime.datetime.fromisoformat(written["timestamp"]).tzinfo is not None


def test_file_and_directory_are_private(temp_audit_dir):
    audit_dir, audit_file = temp_audit_dir

    audit.log_event("login_succeeded", "alice", details={"user_id": "u-1"})

    assert audit_dir.stat().st_mode & 0o777 == 0o700
    assert audit_file.stat().st_mode & 0o777 == 0o600


def test_details_are_flattened_to_json(temp_audit_dir):
    _, audit_file = temp_audit_dir
    registered_at = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)

    audit.log_event(
        "registration_purged", "bob", operator="cli",
        details={"user_id": "u-2", "registered_at": registered_at},
    )

    (written,) = _lines(audit_file)
    assert written["details"]["registered_at"] == str(registered_at)
    assert audit.verify_audit_log() == (1, 1)


def test_extra_details_are_kept(temp_audit_dir):
    _, audit_file = temp_audit_dir

    audit.log_event(
        "user_deleted", "carol", operator="cli",
        details={"user_id": "u-3", "identity_deleted": True, "credentials_deleted": 2},
    )

    (written,) = _lines(audit_file)
    assert written["details"]["credentials_deleted"] == 2


@pytest.mark.parametrize("event_type,details,missing", [
    ("registration_started", {"user_id": "u-1"}, "new_user"),
    ("registration_completed", {"user_id": "u-1", "roles": ["user"]}, "external_identity_id"),
    ("registration_failed", {"user_id": "u-1", "error": "boom"}, "failed_at"),
    ("compensation_failed", {"error": "boom"}, "step"),
    ("login_failed", {"user_id": "u-1"}, "reason"),
])
def test_missing_required_detail_is_rejected(temp_audit_dir, event_type, details, missing):
    _, audit_file = temp_audit_dir

    with pytest.raises(ValueError, match=missing):
        audit.log_event(event_type, "alice", details=details)

    assert not audit_file.exists()


def test_unknown_event_type_is_rejected(temp_audit_dir):
    with pytest.raises(ValueError, match="Unknown audit event type"):
        audit.log_event("password_reset", "alice", details={"user_id": "u-1"})


def test_every_event_type_has_a_schema():
    assert set(audit.EVENT_DETAILS) == set(audit.EventType.__args__)


def test_safe_log_event_swallows_schema_errors(temp_audit_dir, capsys):
    _, audit_file = temp_audit_dir

    assert audit.safe_log_event("login_failed", "alice", details={}) is False

    assert "login_failed" in capsys.readouterr().err
    assert not audit_file.exists()


def test_safe_log_event_survives_write_errors(monkeypatch, capsys):
    def _disk_full(record):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "_append", _disk_full)

    assert audit.safe_log_event("login_succeeded", "alice", details={"user_id": "u-1"}) is False
    assert "disk full" in capsys.readouterr().err


def test_unsigned_when_key_is_empty(temp_audit_dir, monkeypatch):
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "")
    _, audit_file = temp_audit_dir

    audit.log_event("login_succeeded", "alice", details={"user_id": "u-1"})

    (written,) = _lines(audit_file)
    assert "signature" not in written
    assert audit.verify_audit_log() == (1, 0)


def test_signing_key_file_takes_precedence(temp_audit_dir, monkeypatch, tmp_path):
    key_file = tmp_path / "audit_key"
    key_file.write_text("file-key\n", encoding="utf-8")
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY_FILE", str(key_file))

    audit.log_event("login_succeeded", "alice", details={"user_id": "u-1"})
    assert audit.verify_audit_log() == (1, 1)

    # Same log checked against the env key instead
    monkeypatch.delenv("AUDIT_LOG_SIGNING_KEY_FILE")
    assert audit.verify_audit_log() == (1, 0)


def test_verify_counts_tampered_and_corrupt_lines(temp_audit_dir):
    _, audit_file = temp_audit_dir
    audit.log_event("registration_started", "alice", details={"user_id": "u-1", "new_user": True})
    audit.log_event(
        "registration_completed", "alice",
        details={"user_id": "u-1", "external_identity_id": "kc-1", "roles": ["user"]},
    )

    first, second = _lines(audit_file)
    second["details"]["roles"] = ["admin"]
    audit_file.write_text(
        json.dumps(first) + "\n" + json.dumps(second) + "\n" + "{not json\n\n",
        encoding="utf-8",
    )

    assert audit.verify_audit_log() == (3, 1)


def test_iter_events_reports_line_numbers(temp_audit_dir):
    _, audit_file = temp_audit_dir
    audit.log_event("login_succeeded", "alice", details={"user_id": "u-1"})
    with audit_file.open("a", encoding="utf-8") as f:
        f.write("\ngarbage\n")

    events = list(audit.iter_events())

    assert [lineno for lineno, _ in events] == [1, 3]
    assert events[0][1]["username"] == "alice"
    assert events[1][1] is None


def test_verify_without_log_file(temp_audit_dir):
    assert audit.verify_audit_log() == (0, 0)
    assert list(audit.iter_events()) == []
