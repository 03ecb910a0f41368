"""Turns events into spans, lazily creating the object span tree above them."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from kelemetry.event import Event
from kelemetry.linker import LinkerList, ObjectRef
from kelemetry.spancache import AlreadyReservedError, Cache, Clock, should_retry
from kelemetry.tracer import LogType, Span, Tracer

_logger = logging.getLogger(__name__)

TRACE_SOURCE_TAG = "traceSource"
"""Tag naming the kind of source a span came from."""

NEST_LEVEL_TAG = "nestLevel"
"""Tag naming the nesting level of an object pseudo-span."""

_T = TypeVar("_T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Exponential backoff used around cache reservations: steps, initial delay, factor, jitter.
_BACKOFF_STEPS = 4
_BACKOFF_INITIAL = 0.01
_BACKOFF_FACTOR = 5.0
_BACKOFF_JITTER = 0.1


@dataclass
class AggregatorOptions:
    """Tunables of the aggregator."""

    reserve_ttl: timedelta = timedelta(seconds=10)
    span_ttl: timedelta = timedelta(minutes=30)
    span_follow_ttl: timedelta = timedelta(0)
    span_extra_ttl: timedelta = timedelta(0)
    global_pseudo_tags: dict[str, str] = field(default_factory=dict)
    global_event_tags: dict[str, str] = field(default_factory=dict)
    sub_object_primary_poll_interval: timedelta = timedelta(seconds=5)
    sub_object_primary_poll_timeout: timedelta = timedelta(seconds=5)


@dataclass(frozen=True)
class SubObjectId:
    """Associates an event with an object-scoped context such as a resource version.

    Non-primary events wait for the primary event of the same id and nest under it.
    """

    id: str
    primary: bool


def _unix(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts - _EPOCH) // timedelta(seconds=1)


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b > 0) else -quotient


def _format_tag(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def _retry_on_error(fn: Callable[[], _T]) -> _T:
    """Call ``fn`` until it succeeds, retrying cache conflicts with exponential backoff."""
    delay = _BACKOFF_INITIAL
    for step in range(_BACKOFF_STEPS):
        try:
            return fn()
        except Exception as err:
            if not should_retry(err) or step == _BACKOFF_STEPS - 1:
                raise
        time.sleep(delay + random.random() * _BACKOFF_JITTER * delay)
        delay *= _BACKOFF_FACTOR
    raise AssertionError("unreachable")


class Aggregator:
    """Sends events as spans nested under per-object, per-field pseudo-spans."""

    def __init__(
        self,
        clock: Clock,
        span_cache: Cache,
        linkers: LinkerList,
        tracer: Tracer,
        options: AggregatorOptions | None = None,
    ) -> None:
        self.options = options if options is not None else AggregatorOptions()
        if self.options.span_follow_ttl > self.options.span_ttl:
            raise ValueError(
                "invalid option: --span-ttl must not be shorter than --span-follow-ttl"
            )
        self.clock = clock
        self.span_cache = span_cache
        self.linkers = linkers
        self.tracer = tracer

    def send(self, obj: ObjectRef, event: Event, sub_object_id: SubObjectId | None = None) -> None:
        """Emit ``event`` as a span on ``obj``.

        If several primary events share a sub-object id, the later one is demoted
        under the earlier one. A non-primary event that finds no primary within the
        poll timeout is promoted to primary.
        """
        parent_span: Any = None
        reserved: tuple[str, bytes] | None = None

        if sub_object_id is not None:
            cache_key = self._span_cache_key(obj, sub_object_id.id)

            if not sub_object_id.primary:
                parent_span = self._poll_primary(cache_key)

            if parent_span is None:

                def reserve() -> tuple[Any, tuple[str, bytes] | None]:
                    try:
                        entry = self.span_cache.fetch_or_reserve(cache_key, self.options.reserve_ttl)
                    except Exception as err:
                        raise RuntimeError(f"{err} during primary event fetch-or-reserve") from err

                    if entry.value is not None:
                        event.log(
                            LogType.REAL_ERROR,
                            f"Kelemetry: multiple primary events for {sub_object_id.id} sent, "
                            "demoted later event",
                        )
                        try:
                            return self.tracer.extract_carrier(entry.value), None
                        except Exception as err:
                            raise RuntimeError(f"{err} during decoding primary span") from err

                    return None, (cache_key, entry.last_uid)

                parent_span, reserved = _retry_on_error(reserve)

        if parent_span is None:
            try:
                parent_span = self._ensure_field_span(obj, event.field, event.time)
            except Exception as err:
                raise RuntimeError(f"{err} during fetching field span for primary span") from err

        tags = {
            "cluster": obj.cluster,
            "namespace": obj.namespace,
            "name": obj.name,
            "group": obj.group,
            "version": obj.version,
            "resource": obj.resource,
            TRACE_SOURCE_TAG: event.trace_source,
        }
        tags.update((key, _format_tag(value)) for key, value in event.tags.items())
        tags.update(self.options.global_pseudo_tags)

        span = Span(
            type=event.trace_source,
            name=event.title,
            start_time=event.time,
            finish_time=event.finish_time(),
            parent=parent_span,
            tags=tags,
            logs=event.logs,
        )

        try:
            sent_span = self.tracer.create_span(span)
        except Exception as err:
            raise RuntimeError(f"cannot create span: {err}") from err

        if reserved is not None:
            reserved_key, reserved_uid = reserved
            try:
                raw = self.tracer.inject_carrier(sent_span)
            except Exception as err:
                raise RuntimeError(f"{err} during serializing sent span ID") from err
            try:
                self.span_cache.set_reserved(reserved_key, raw, reserved_uid, self.options.span_ttl)
            except Exception as err:
                raise RuntimeError(f"{err} during persisting primary span ID") from err

        _logger.debug("CreateSpan object=%s event=%s logs=%d", obj, event.title, len(event.logs))

    def _poll_primary(self, cache_key: str) -> Any:
        """Wait for the primary span of ``cache_key``; ``None`` if it never appears."""
        interval = self.options.sub_object_primary_poll_interval.total_seconds()
        deadline = time.monotonic() + self.options.sub_object_primary_poll_timeout.total_seconds()

        while True:
            try:
                entry = self.span_cache.fetch(cache_key)
            except Exception as err:
                raise RuntimeError(f"{err} during primary event poll") from err

            if entry is not None and entry.value is not None:
                try:
                    return self.tracer.extract_carrier(entry.value)
                except Exception as err:
                    raise RuntimeError(f"{err} during decoding primary span") from err

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(interval, remaining))
            if time.monotonic() >= deadline:
                return None

    def _ensure_field_span(self, obj: ObjectRef, field_name: str, event_time: datetime) -> Any:
        return self._get_or_create_span(
            obj, field_name, event_time, lambda: self._ensure_object_span(obj, event_time)
        )

    def _ensure_object_span(self, obj: ObjectRef, event_time: datetime) -> Any:
        def parent_getter() -> Any:
            parent = self.linkers.lookup(obj)
            if parent is None:
                return None
            return self._ensure_children_span(parent, event_time)

        return self._get_or_create_span(obj, "object", event_time, parent_getter)

    def _ensure_children_span(self, obj: ObjectRef, event_time: datetime) -> Any:
        return self._get_or_create_span(
            obj, "children", event_time, lambda: self._ensure_object_span(obj, event_time)
        )

    def _get_or_create_span(
        self,
        obj: ObjectRef,
        field_name: str,
        event_time: datetime,
        parent_getter: Callable[[], Any],
    ) -> Any:
        cache_key = self._expiring_span_cache_key(obj, field_name, event_time)

        def attempt() -> tuple[bytes, Any, Any]:
            try:
                entry = self.span_cache.fetch_or_reserve(cache_key, self.options.reserve_ttl)
            except Exception as err:
                raise RuntimeError(f"{err} during initial fetch-or-reserve") from err

            if entry.value is not None:
                try:
                    return b"", self.tracer.extract_carrier(entry.value), None
                except Exception as err:
                    raise RuntimeError(f"persisted span contains invalid data: {err}") from err

            reserve_uid = entry.last_uid

            follows_time = event_time - self.options.span_follow_ttl
            follows_key = self._expiring_span_cache_key(obj, field_name, follows_time)
            if follows_key == cache_key:
                return reserve_uid, None, None

            try:
                follows_entry = self.span_cache.fetch(follows_key)
            except Exception as err:
                raise RuntimeError(f"error fetching followed entry: {err}") from err

            if follows_entry is None:
                return reserve_uid, None, None
            if follows_entry.value is None:
                raise AlreadyReservedError("(followed span pending)")

            try:
                follows_from = self.tracer.extract_carrier(follows_entry.value)
            except Exception as err:
                raise RuntimeError(f"followed persisted span contains invalid data: {err}") from err
            return reserve_uid, None, follows_from

        try:
            reserve_uid, return_span, follows_from = _retry_on_error(attempt)
        except Exception as err:
            raise RuntimeError(f"cannot reserve or fetch span {cache_key!r}: {err}") from err

        if return_span is not None:
            _logger.debug("getOrCreateSpan key=%s result=fetch", cache_key)
            return return_span

        started = self.clock.now()

        try:
            parent = parent_getter()
        except Exception as err:
            raise RuntimeError(f"cannot fetch parent object: {err}") from err

        span = self._create_span(obj, field_name, event_time, parent, follows_from)

        try:
            entry_value = self.tracer.inject_carrier(span)
        except Exception as err:
            raise RuntimeError(f"cannot serialize span context: {err}") from err

        total_ttl = self.options.span_ttl + self.options.span_follow_ttl + self.options.span_extra_ttl
        try:
            self.span_cache.set_reserved(cache_key, entry_value, reserve_uid, total_ttl)
        except Exception as err:
            raise RuntimeError(f"cannot persist reserved value: {err}") from err

        _logger.debug(
            "getOrCreateSpan key=%s result=%s duration=%s",
            cache_key,
            "renew" if follows_from is not None else "create",
            self.clock.now() - started,
        )
        return span

    def _create_span(
        self,
        obj: ObjectRef,
        field_name: str,
        event_time: datetime,
        parent: Any,
        follows_from: Any,
    ) -> Any:
        ttl_seconds = int(self.options.span_ttl.total_seconds())
        unix = _unix(event_time)
        remainder = unix - ttl_seconds * _trunc_div(unix, ttl_seconds)
        start_time = event_time - timedelta(seconds=remainder)

        tags = {
            "cluster": obj.cluster,
            "namespace": obj.namespace,
            "name": obj.name,
            "group": obj.group,
            "version": obj.version,
            "resource": obj.resource,
            NEST_LEVEL_TAG: field_name,
            TRACE_SOURCE_TAG: "object",
        }
        tags.update(self.options.global_pseudo_tags)

        span = Span(
            type=field_name,
            name=f"{obj.resource}/{obj.name} {field_name}",
            start_time=start_time,
            finish_time=start_time + self.options.span_ttl,
            parent=parent,
            follows=follows_from,
            tags=tags,
        )
        try:
            context = self.tracer.create_span(span)
        except Exception as err:
            raise RuntimeError(f"cannot create span: {err}") from err

        _logger.debug("CreateSpan object=%s field=%s parent=%s", obj, field_name, parent)
        return context

    def _expiring_span_cache_key(self, obj: ObjectRef, field_name: str, timestamp: datetime) -> str:
        window = _trunc_div(_unix(timestamp), int(self.options.span_ttl.total_seconds()))
        return self._span_cache_key(obj, f"field={field_name},window={window}")

    @staticmethod
    def _span_cache_key(obj: ObjectRef, sub_object_id: str) -> str:
        return f"{obj}/{sub_object_id}"