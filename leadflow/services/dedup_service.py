from __future__ import annotations

import hashlib
from collections import OrderedDict
from datetime import datetime, timedelta


def build_dedup_key(
    provider_message_id: str | None,
    contact: str,
    text: str | None,
    arrival: datetime,
) -> str:
    if provider_message_id and provider_message_id.strip():
        return provider_message_id.strip()
    minute = arrival.strftime("%Y%m%d%H%M")
    digest = hashlib.sha256(f"{contact}|{text or ''}|{minute}".encode("utf-8")).hexdigest()[:24]
    return f"{contact}:{digest}"


class ReplayWindow:
    """Bounded in-process set of recently accepted dedup keys.

    Entries expire after ``window_seconds``; the oldest entries are evicted once
    ``max_entries`` is reached.
    """

    def __init__(self, window_seconds: float = 300, max_entries: int = 10000):
        self.window = timedelta(seconds=window_seconds)
        self.max_entries = max_entries
        self._seen: OrderedDict[str, datetime] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _purge(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._seen:
            key, accepted_at = next(iter(self._seen.items()))
            if accepted_at > cutoff:
                break
            self._seen.popitem(last=False)
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

    def contains(self, key: str, now: datetime) -> bool:
        self._purge(now)
        return key in self._seen

    def check_and_record(self, key: str, now: datetime) -> bool:
        """Return True if ``key`` was already accepted inside the window, else record it."""
        self._purge(now)
        if key in self._seen:
            return True
        self._seen[key] = now
        if len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def forget(self, key: str) -> None:
        self._seen.pop(key, None)
