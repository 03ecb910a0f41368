"""Shared span cache abstraction: entries, clocks and error types."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time."""


class RealClock(Clock):
    """Clock backed by the system time, in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock(Clock):
    """Manually advanced clock for tests and simulations."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start if start is not None else datetime.min
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def step(self, delta: timedelta) -> None:
        """Advance the clock by ``delta``."""
        with self._lock:
            self._now += delta


@dataclass(frozen=True)
class Entry:
    """A cache entry as seen by a caller.

    ``value`` is ``None`` while the entry is only reserved.
    ``last_uid`` identifies the reservation or version that was observed.
    """

    value: bytes | None
    last_uid: bytes

    @property
    def uid_hex(self) -> str:
        return self.last_uid.hex()


class SpanCacheError(Exception):
    """Base class for span cache conflicts."""

    default_message = "span cache error"

    def __init__(self, detail: str | None = None) -> None:
        message = self.default_message if not detail else f"{self.default_message} {detail}"
        super().__init__(message)


class AlreadyReservedError(SpanCacheError):
    default_message = "entry is already reserved"


class InvalidKeyError(SpanCacheError):
    default_message = "key refers to invalid or expired entry"


class UidMismatchError(SpanCacheError):
    default_message = "UID mismatch"


_RETRYABLE = (AlreadyReservedError, InvalidKeyError, UidMismatchError)


def should_retry(err: BaseException | None) -> bool:
    """Whether ``err`` or any error it was raised from is a retryable conflict."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, _RETRYABLE):
            return True
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return False


class Cache(ABC):
    """A linearized, possibly shared key-value store of reserved or initialized entries."""

    @abstractmethod
    def fetch_or_reserve(self, key: str, ttl: timedelta) -> Entry:
        """Reserve ``key`` if absent, or return its initialized entry.

        Raises AlreadyReservedError if the key is currently reserved.
        A fresh reservation is returned with ``value`` set to ``None``.
        """

    @abstractmethod
    def fetch(self, key: str) -> Entry | None:
        """Return the entry for ``key``, or ``None`` if absent or expired."""

    @abstractmethod
    def set_reserved(self, key: str, value: bytes, last_uid: bytes, ttl: timedelta) -> None:
        """Initialize a reserved entry; raises on UID mismatch or invalid key."""