"""Tests for the per-username challenge cache."""
import threading

from passkey_onboarding.core.challenge_cache import ChallengeCache, PendingChallenge


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _challenge(username, value="c1"):
    return PendingChallenge(username, {"challenge": value}, state={"challenge": value})


def test_take_returns_and_removes():
    cache = ChallengeCache()
    cache.put("alice", _challenge("alice"))

    taken = cache.take("alice")
    assert taken.options == {"challenge": "c1"}
    assert cache.take("alice") is None
    assert len(cache) == 0


def test_put_overwrites_previous_challenge():
    cache = ChallengeCache()
    cache.put("alice", _challenge("alice", "first"))
    cache.put("alice", _challenge("alice", "second"))

    assert len(cache) == 1
    assert cache.take("alice").state == {"challenge": "second"}


def test_remove_is_idempotent():
    cache = ChallengeCache()
    cache.put("alice", _challenge("alice"))
    cache.remove("alice")
    cache.remove("alice")
    assert "alice" not in cache


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ChallengeCache(ttl_seconds=300, clock=clock)
    cache.put("alice", _challenge("alice"))

    clock.now += 299
    assert "alice" in cache

    clock.now += 1
    assert "alice" not in cache
    assert cache.take("alice") is None


def test_zero_ttl_disables_expiry():
    clock = FakeClock()
    cache = ChallengeCache(ttl_seconds=0, clock=clock)
    cache.put("alice", _challenge("alice"))
    clock.now += 10 ** 6
    assert cache.take("alice") is not None
    assert cache.purge_expired() == 0


def test_purge_expired_keeps_fresh_entries():
    clock = FakeClock()
    cache = ChallengeCache(ttl_seconds=60, clock=clock)
    cache.put("old", _challenge("old"))
    clock.now += 61
    cache.put("fresh", _challenge("fresh"))

    assert cache.purge_expired() == 1
    assert "fresh" in cache
    assert len(cache) == 1


def test_concurrent_take_hands_out_challenge_once():
    cache = ChallengeCache()
    cache.put("alice", _challenge("alice"))
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(cache.take("alice"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1
