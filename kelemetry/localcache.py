"""In-memory span cache for single-process installations and tests."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from kelemetry.spancache import (
    AlreadyReservedError,
    Cache,
    Clock,
    Entry,
    InvalidKeyError,
    UidMismatchError,
)


def _rand_uid() -> bytes:
    return secrets.token_bytes(16)


@dataclass
class _LocalEntry:
    creation: datetime
    expiry: datetime
    uid: bytes
    value: bytes | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def expired(self, now: datetime) -> bool:
        with self.lock:
            return self.expiry < now


class LocalCache(Cache):
    """A process-local cache satisfying the span cache contract."""

    def __init__(self, clock: Clock, trim_frequency: timedelta = timedelta(minutes=30)) -> None:
        self.clock = clock
        self.trim_frequency = trim_frequency
        self._entries: dict[str, _LocalEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _get(self, key: str) -> _LocalEntry | None:
        with self._lock:
            return self._entries.get(key)

    def _get_or_insert(self, key: str, expiry: datetime) -> tuple[_LocalEntry, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                return entry, False
            entry = _LocalEntry(creation=self.clock.now(), expiry=expiry, uid=_rand_uid())
            self._entries[key] = entry
            return entry, True

    def fetch_or_reserve(self, key: str, ttl: timedelta) -> Entry:
        entry, inserted = self._get_or_insert(key, self.clock.now() + ttl)
        with entry.lock:
            if entry.value is not None:
                return Entry(value=entry.value, last_uid=entry.uid)
            if not inserted:
                raise AlreadyReservedError(f"for {self.clock.now() - entry.creation}")
            return Entry(value=None, last_uid=entry.uid)

    def fetch(self, key: str) -> Entry | None:
        entry = self._get(key)
        if entry is None:
            return None
        with entry.lock:
            return Entry(value=entry.value, last_uid=entry.uid)

    def set_reserved(self, key: str, value: bytes, last_uid: bytes, ttl: timedelta) -> None:
        entry = self._get(key)
        if entry is None:
            raise InvalidKeyError()
        with entry.lock:
            now = self.clock.now()
            if entry.value is not None or entry.expiry < now:
                raise InvalidKeyError()
            if entry.uid != bytes(last_uid):
                raise UidMismatchError()
            entry.expiry = now + ttl
            entry.value = bytes(value)
            entry.uid = _rand_uid()

    def trim(self) -> None:
        """Drop every expired entry."""
        now = self.clock.now()
        with self._lock:
            for key in [k for k, e in self._entries.items() if e.expired(now)]:
                del self._entries[key]

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Trim periodically in a daemon thread until ``stop_event`` is set."""
        interval = self.trim_frequency.total_seconds()

        def loop() -> None:
            while not stop_event.wait(interval):
                self.trim()

        thread = threading.Thread(target=loop, name="spancache-trim", daemon=True)
        thread.start()
        return thread