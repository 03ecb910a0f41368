"""Tracer abstraction and the span model handed to it."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class LogType(str, enum.Enum):
    """Kinds of log records attached to spans."""

    REAL_ERROR = "realError"


@dataclass
class Log:
    """A log record attached to a span."""

    type: LogType
    message: str
    attrs: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class Span:
    """A span to be emitted by a tracer backend."""

    type: str
    name: str
    start_time: datetime
    finish_time: datetime
    parent: Any = None
    follows: Any = None
    tags: dict[str, str] = field(default_factory=dict)
    logs: list[Log] = field(default_factory=list)


class Tracer(ABC):
    """A tracing backend that creates spans and (de)serializes their contexts."""

    @abstractmethod
    def create_span(self, span: Span) -> Any:
        """Emit ``span`` and return its opaque span context."""

    @abstractmethod
    def inject_carrier(self, span_context: Any) -> bytes:
        """Serialize a span context."""

    @abstractmethod
    def extract_carrier(self, text_map: bytes) -> Any:
        """Deserialize a span context produced by ``inject_carrier``."""