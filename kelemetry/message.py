"""Audit messages as carried between the webhook, the queue and the consumer."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any


class Verb(str, enum.Enum):
    """Request verbs that the pipeline understands."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PATCH = "patch"


def _load_object(data: bytes | str) -> dict[str, Any]:
    decoded = json.loads(data)
    if not isinstance(decoded, dict):
        raise ValueError("audit message must be a JSON object")
    return decoded


def _string_field(body: dict[str, Any], key: str) -> str:
    value = body.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode()


@dataclass
class Message:
    """A single audit event tagged with its cluster and the address that sent it.

    On the wire the event's own fields sit beside ``cluster`` and ``sourceAddr``.
    """

    cluster: str
    source_addr: str
    event: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: bytes | str) -> Message:
        body = _load_object(data)
        cluster = _string_field(body, "cluster")
        source_addr = _string_field(body, "sourceAddr")
        event = {k: v for k, v in body.items() if k not in ("cluster", "sourceAddr")}
        return cls(cluster=cluster, source_addr=source_addr, event=event)

    def to_json(self) -> bytes:
        return _dumps({"cluster": self.cluster, "sourceAddr": self.source_addr, **self.event})

    @property
    def audit_id(self) -> str:
        return str(self.event.get("auditID") or "")

    @property
    def verb(self) -> str:
        return str(self.event.get("verb") or "")

    @property
    def stage(self) -> str:
        return str(self.event.get("stage") or "")

    @property
    def object_ref(self) -> dict[str, Any] | None:
        ref = self.event.get("objectRef")
        return ref if isinstance(ref, dict) else None


@dataclass
class RawMessage:
    """A whole audit event list as received, tagged with cluster and source address."""

    cluster: str
    source_addr: str
    event_list: dict[str, Any] | None = None

    def event_list_json(self) -> bytes:
        """Serialize the event list alone, as it would be forwarded upstream."""
        return _dumps(self.event_list)


def cluster_of(data: bytes | str) -> str:
    """Decode only the ``cluster`` field of a serialized message."""
    return _string_field(_load_object(data), "cluster")