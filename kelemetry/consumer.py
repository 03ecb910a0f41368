"""Consumes audit messages from the queue and sends them to the aggregator."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any

from kelemetry.aggregator import Aggregator, SubObjectId
from kelemetry.decorator import DecoratorList
from kelemetry.event import Event
from kelemetry.linker import ObjectRef
from kelemetry.message import Message, Verb
from kelemetry.spancache import Clock, RealClock

_logger = logging.getLogger(__name__)

STAGE_RESPONSE_COMPLETE = "ResponseComplete"
SUPPORTED_VERBS = frozenset(verb.value for verb in Verb)

EventFilter = Callable[[dict[str, Any]], bool]
"""Decides whether an audit event should be processed."""

ResourceLookup = Callable[[str, str, str, str], "tuple[str, str, str] | None"]
"""Maps (cluster, group, version, kind) to (group, version, resource), or None."""

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIMESTAMP = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|z|[+-]\d{2}:\d{2})?$"
)


@dataclass
class ConsumerOptions:
    """Settings of the audit consumer."""

    consumer_group: str = "kelemetry"
    partitions: tuple[int, ...] = (0, 1, 2, 3, 4)
    cluster_filter: str = ""
    ignore_impersonate: bool = False
    enable_sub_object: bool = False


def _parse_time(value: Any) -> datetime:
    if value is None or value == "":
        return _ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp {value!r}")
    match = _TIMESTAMP.match(value)
    if match is None:
        raise ValueError(f"invalid timestamp {value!r}")
    frac = (match.group("frac") or "")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    if tz in ("Z", "z"):
        tz = "+00:00"
    return datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")


def _as_aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _since(now: datetime, then: datetime) -> timedelta:
    return _as_aware(now) - _as_aware(then)


def _text(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    return "" if value is None else str(value)


def _username(user: Any) -> str:
    return _text(user, "username") if isinstance(user, dict) else ""


def _response_code(event: dict[str, Any]) -> int:
    status = event.get("responseStatus")
    if not isinstance(status, dict):
        return 0
    code = status.get("code")
    return int(code) if code is not None else 0


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


def _parse_group_version(text: str) -> tuple[str, str]:
    if not text:
        return "", ""
    parts = text.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected GroupVersion string: {text}")


class AuditConsumer:
    """Turns completed, mutating audit events into aggregator events."""

    def __init__(
        self,
        aggregator: Aggregator,
        decorators: DecoratorList | None = None,
        options: ConsumerOptions | None = None,
        event_filter: EventFilter | None = None,
        resource_lookup: ResourceLookup | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.decorators = decorators if decorators is not None else DecoratorList()
        self.options = options if options is not None else ConsumerOptions()
        self.event_filter = event_filter if event_filter is not None else (lambda _event: True)
        self.resource_lookup = resource_lookup
        self.clock = clock if clock is not None else RealClock()

    def handle_message(self, key: bytes | None, value: bytes) -> bool:
        """Handle one queued message; return whether it was sent to the aggregator."""
        # The first part of the key is the cluster whatever the partitioning method.
        cluster = (key or b"").split(b"/", 1)[0].decode(errors="replace")
        if self.options.cluster_filter and self.options.cluster_filter != cluster:
            return False

        try:
            message = Message.from_json(value)
        except ValueError as err:
            _logger.error("error decoding audit data: %s", err)
            return False

        return self.handle_item(message)

    def handle_item(self, message: Message) -> bool:
        """Handle one decoded message; return whether it was sent to the aggregator."""
        try:
            return self._handle_item(message)
        except Exception:
            _logger.exception("error handling audit event %s", message.audit_id)
            return False

    def _handle_item(self, message: Message) -> bool:
        verb = message.verb
        if verb not in SUPPORTED_VERBS:
            return False
        if message.stage != STAGE_RESPONSE_COMPLETE:
            return False
        if not self.event_filter(message.event):
            return False

        ref = message.object_ref
        if ref is None or not ref.get("name"):
            try:
                ref = self.infer_object_ref(message)
            except ValueError as err:
                _logger.debug("Invalid objectRef, cannot infer: %s", err)
                return False

        raw = None
        response_object = message.event.get("responseObject")
        if response_object is not None:
            if not isinstance(response_object, dict):
                _logger.error("cannot decode responseObject: not a JSON object")
                return False
            raw = response_object

        obj = ObjectRef(
            cluster=message.cluster,
            group=_text(ref, "apiGroup"),
            version=_text(ref, "apiVersion"),
            resource=_text(ref, "resource"),
            namespace=_text(ref, "namespace"),
            name=_text(ref, "name"),
            uid=_text(ref, "uid"),
            raw=raw,
        )

        subresource = _text(ref, "subresource")
        resource_version = _text(ref, "resourceVersion")

        field = "spec"
        if verb == Verb.UPDATE.value and subresource == "status":
            field = "status"
        elif verb == Verb.DELETE.value:
            field = "deletion"

        received = _parse_time(message.event.get("requestReceivedTimestamp"))
        staged = _parse_time(message.event.get("stageTimestamp"))
        latency = _since(self.clock.now(), staged)

        username = _username(message.event.get("user"))
        impersonated = message.event.get("impersonatedUser")
        if impersonated is not None and not self.options.ignore_impersonate:
            username = _username(impersonated)

        code = _response_code(message.event)
        title = f"{username} {verb}"
        if subresource:
            title += f" {subresource}"
        if code >= 300:
            title += f" ({_status_text(code)})"

        event = (
            Event(field=field, title=title, time=received, trace_source="audit")
            .with_end_time(staged)
            .with_tag("username", username)
            .with_tag("userAgent", _text(message.event, "userAgent"))
            .with_tag("responseCode", code)
            .with_tag("resourceVersion", resource_version)
            .with_tag("apiserver", message.source_addr)
            .with_tag("tag", verb)
        )

        self.decorators.decorate(message, event)

        sub_object_id = None
        if self.options.enable_sub_object and verb in (Verb.UPDATE.value, Verb.PATCH.value):
            sub_object_id = SubObjectId(id=f"rv={resource_version}", primary=code < 300)

        try:
            self.aggregator.send(obj, event, sub_object_id)
        except Exception as err:
            _logger.error(
                "send failed verb=%s field=%s object=%s latency=%s: %s",
                verb, field, obj, latency, err,
            )
        else:
            _logger.debug("Send verb=%s field=%s object=%s latency=%s", verb, field, obj, latency)

        return True

    def infer_object_ref(self, message: Message) -> dict[str, Any]:
        """Rebuild the message's object reference from its response object."""
        response_object = message.event.get("responseObject")
        if response_object is None:
            raise ValueError("no ResponseObject to infer objectRef from")
        if not isinstance(response_object, dict):
            raise ValueError("unmarshal raw object: not a JSON object")

        try:
            group, version = _parse_group_version(_text(response_object, "apiVersion"))
        except ValueError as err:
            raise ValueError(f"object has invalid GroupVersion: {err}") from err

        if self.resource_lookup is None:
            raise ValueError(f"no ClusterDiscoveryCache: no discovery for cluster {message.cluster}")

        gvr = self.resource_lookup(message.cluster, group, version, _text(response_object, "kind"))
        if gvr is None:
            raise ValueError("conversion of response to GVR failed")
        gvr_group, gvr_version, gvr_resource = gvr

        metadata = response_object.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}

        ref = {
            "apiGroup": gvr_group,
            "apiVersion": gvr_version,
            "resource": gvr_resource,
            "namespace": _text(metadata, "namespace"),
            "name": _text(metadata, "name"),
            "uid": _text(metadata, "uid"),
            # left empty so that the object's own resource version does not look like a no-op
            "resourceVersion": "",
            "subresource": "",
        }
        message.event["objectRef"] = ref
        return ref