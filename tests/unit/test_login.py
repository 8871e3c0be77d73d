"""Tests for passkey login against completed registrations."""
import pytest

from passkey_onboarding.core.errors import ChallengeExpiredError, UnknownUserError, VerificationFailure


@pytest.fixture()
def registered(saga, registration_response):
    start = saga.begin_registration("alice", "Alice")
    return saga.finish_registration("alice", "YubiKey", registration_response(start, sign_count=5))


def _assertion(options, credential_id="cred-1", sign_count=6):
    return {"challenge": options["publicKey"]["challenge"], "id": credential_id, "signCount": sign_count}


def test_login_advances_signature_counter(login_service, registered, credential_store, audit_events):
    options = login_service.begin_login("alice")
    assert options["publicKey"]["allowCredentials"] == [b"cred-1".hex()]

    result = login_service.finish_login("alice", _assertion(options))

    assert result.username == "alice"
    assert result.user_id == registered.user_id
    assert credential_store.get(b"cred-1").signature_count == 6
    assert audit_events()[-1]["event_type"] == "login_succeeded"


def test_login_rejects_counter_regression(login_service, registered, credential_store, audit_events):
    options = login_service.begin_login("alice")

    with pytest.raises(VerificationFailure):
        login_service.finish_login("alice", _assertion(options, sign_count=5))

    assert credential_store.get(b"cred-1").signature_count == 5
    failed = audit_events()[-1]
    assert failed["event_type"] == "login_failed"
    assert failed["success"] is False


def test_login_unknown_credential(login_service, registered):
    options = login_service.begin_login("alice")
    with pytest.raises(VerificationFailure):
        login_service.finish_login("alice", _assertion(options, credential_id="other"))


def test_login_pending_user_is_unknown(login_service, saga):
    saga.begin_registration("bob", "Bob")
    with pytest.raises(UnknownUserError):
        login_service.begin_login("bob")


def test_login_missing_user(login_service):
    with pytest.raises(UnknownUserError):
        login_service.begin_login("nobody")


def test_login_challenge_single_use(login_service, registered):
    options = login_service.begin_login("alice")
    login_service.finish_login("alice", _assertion(options))

    with pytest.raises(ChallengeExpiredError):
        login_service.finish_login("alice", _assertion(options, sign_count=7))


def test_login_without_begin(login_service, registered):
    with pytest.raises(ChallengeExpiredError):
        login_service.finish_login("alice", {"challenge": "auth-challenge-1", "id": "cred-1", "signCount": 6})


def test_login_and_registration_challenges_are_separate(login_service, saga, registered):
    login_service.begin_login("alice")
    assert "alice" in login_service.challenges
    assert "alice" not in saga.challenges
