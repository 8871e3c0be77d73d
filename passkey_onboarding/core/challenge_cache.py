"""In-memory cache of outstanding WebAuthn ceremonies, keyed by username."""
from __future__ import annotations
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple


@dataclass
class PendingChallenge:
    """What finish needs from begin: the options sent and the verifier state."""

    username: str
    options: Dict[str, Any]
    state: Any = None
    user_id: Optional[str] = None


class ChallengeCache:
    """At most one outstanding challenge per username.

    put() overwrites an earlier entry; take() atomically removes and returns
    it, so two concurrent finishes for the same username cannot both obtain
    the challenge. Entries older than ttl_seconds are treated as absent.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds or None
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[PendingChallenge, float]] = {}

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_seconds is not None and self._clock() - stored_at >= self.ttl_seconds

    def put(self, username: str, challenge: PendingChallenge) -> None:
        with self._lock:
            self._entries[username] = (challenge, self._clock())

    def take(self, username: str) -> Optional[PendingChallenge]:
        with self._lock:
            entry = self._entries.pop(username, None)
        if entry is None:
            return None
        challenge, stored_at = entry
        if self._expired(stored_at):
            return None
        return challenge

    def peek(self, username: str) -> Optional[PendingChallenge]:
        with self._lock:
            entry = self._entries.get(username)
        if entry is None or self._expired(entry[1]):
            return None
        return entry[0]

    def remove(self, username: str) -> None:
        with self._lock:
            self._entries.pop(username, None)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were dropped."""
        if self.ttl_seconds is None:
            return 0
        with self._lock:
            stale = [name for name, (_, stored_at) in self._entries.items() if self._expired(stored_at)]
            for name in stale:
                del self._entries[name]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, username: str) -> bool:
        return self.peek(username) is not None
