"""Events to be sent to the aggregator as spans."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from kelemetry.tracer import Log, LogType

DUMMY_DURATION = timedelta(seconds=1)
"""Nominal length given to events that have no end time."""


@dataclass
class Event:
    """An occurrence on an object, rendered later as a span."""

    field: str
    title: str
    time: datetime
    trace_source: str
    end_time: datetime | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    logs: list[Log] = field(default_factory=list)

    def finish_time(self) -> datetime:
        """The end time, or the start time plus a nominal duration."""
        if self.end_time is not None:
            return self.end_time
        return self.time + DUMMY_DURATION

    def with_end_time(self, when: datetime) -> Event:
        self.end_time = when
        return self

    def with_duration(self, duration: timedelta) -> Event:
        return self.with_end_time(self.time + duration)

    def with_tag(self, key: str, value: Any) -> Event:
        self.tags[key] = value
        return self

    def log(self, log_type: LogType, message: str, *args: str) -> Event:
        """Attach a log; ``args`` are alternating attribute keys and values."""
        if len(args) % 2:
            raise ValueError("attrs must be key-value pairs")
        pairs = list(zip(args[::2], args[1::2]))
        self.logs.append(Log(type=log_type, message=message, attrs=pairs))
        return self