import time
from typing import Callable


class FirstResponseGuard:
    """Short-lived "already sent" markers keyed by contact (and message kind).

    Covers the window between dispatching a first response and the durable
    state recording it. After the TTL the durable state is authoritative.
    """

    def __init__(self, ttl_seconds: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._markers: dict[tuple[str, str], float] = {}

    def __len__(self) -> int:
        return len(self._markers)

    def mark_sent(self, contact: str, kind: str = "greeting") -> None:
        now = self._clock()
        self._markers[(contact, kind)] = now + self.ttl_seconds
        if len(self._markers) > 1024:
            self.purge(now)

    def was_sent(self, contact: str, kind: str = "greeting") -> bool:
        key = (contact, kind)
        expires_at = self._markers.get(key)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            del self._markers[key]
            return False
        return True

    def purge(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [key for key, expires_at in self._markers.items() if expires_at <= now]
        for key in expired:
            del self._markers[key]
        return len(expired)
