import json
from datetime import datetime, timedelta, timezone

import pytest

from kelemetry.aggregator import (
    NEST_LEVEL_TAG,
    TRACE_SOURCE_TAG,
    Aggregator,
    AggregatorOptions,
    SubObjectId,
)
from kelemetry.event import Event
from kelemetry.linker import Linker, LinkerList, ObjectRef
from kelemetry.localcache import LocalCache
from kelemetry.spancache import AlreadyReservedError, FakeClock, should_retry
from kelemetry.tracer import LogType, Tracer

T0 = datetime(2023, 1, 1, tzinfo=timezone.utc)


class RecordingTracer(Tracer):
    def __init__(self):
        self.spans = []

    def create_span(self, span):
        self.spans.append(span)
        return len(self.spans)

    def inject_carrier(self, span_context):
        return json.dumps({"id": span_context}).encode()

    def extract_carrier(self, text_map):
        return json.loads(text_map)["id"]


class FailingTracer(RecordingTracer):
    def create_span(self, span):
        raise OSError("backend down")


class StaticLinker(Linker):
    def __init__(self, mapping):
        self.mapping = mapping

    def lookup(self, obj):
        return self.mapping.get(obj)


POD = ObjectRef("c1", "", "v1", "pods", "default", "web-0")
RS = ObjectRef("c1", "apps", "v1", "replicasets", "default", "web")


def make(options=None, linkers=None, tracer=None, cache=None):
    clock = FakeClock(T0)
    cache = cache if cache is not None else LocalCache(clock)
    tracer = tracer if tracer is not None else RecordingTracer()
    linkers = linkers if linkers is not None else LinkerList()
    agg = Aggregator(clock, cache, linkers, tracer, options or AggregatorOptions())
    return agg, tracer, cache


def audit_event(when=T0, title="alice update"):
    return Event(field="spec", title=title, time=when, trace_source="audit")


def test_rejects_follow_ttl_longer_than_span_ttl():
    options = AggregatorOptions(span_ttl=timedelta(minutes=1), span_follow_ttl=timedelta(minutes=2))
    with pytest.raises(ValueError):
        make(options)


def test_send_builds_object_field_event_chain():
    options = AggregatorOptions(global_pseudo_tags={"runId": "abc"})
    agg, tracer, _ = make(options)
    agg.send(POD, audit_event())

    assert [s.type for s in tracer.spans] == ["object", "spec", "audit"]
    object_span, field_span, event_span = tracer.spans
    assert object_span.parent is None
    assert field_span.parent == 1
    assert event_span.parent == 2
    assert object_span.tags[NEST_LEVEL_TAG] == "object"
    assert object_span.tags[TRACE_SOURCE_TAG] == "object"
    assert event_span.tags[TRACE_SOURCE_TAG] == "audit"
    assert event_span.tags["resource"] == "pods"
    assert event_span.tags["runId"] == "abc"
    assert field_span.tags["runId"] == "abc"
    assert object_span.name == "pods/web-0 object"


def test_pseudo_span_aligned_to_window():
    options = AggregatorOptions()
    agg, tracer, _ = make(options)
    agg.send(POD, audit_event(T0 + timedelta(minutes=7, seconds=3)))

    object_span = tracer.spans[0]
    assert object_span.start_time == T0
    assert object_span.finish_time - object_span.start_time == options.span_ttl


def test_second_event_in_window_reuses_spans():
    agg, tracer, _ = make()
    agg.send(POD, audit_event())
    agg.send(POD, audit_event(T0 + timedelta(minutes=5)))

    assert len(tracer.spans) == 4
    assert tracer.spans[3].parent == 2


def test_event_tags_formatted():
    agg, tracer, _ = make()
    event = audit_event().with_tag("dryRun", True).with_tag("responseCode", 200)
    agg.send(POD, event)

    tags = tracer.spans[-1].tags
    assert tags["dryRun"] == "true"
    assert tags["responseCode"] == "200"


def test_event_finish_time_used():
    agg, tracer, _ = make()
    event = audit_event().with_duration(timedelta(seconds=2))
    agg.send(POD, event)
    assert tracer.spans[-1].finish_time == event.finish_time()
    assert tracer.spans[-1].start_time == T0


def test_linked_parent_gets_children_span():
    linkers = LinkerList()
    linkers.add_linker(StaticLinker({POD: RS}))
    agg, tracer, _ = make(linkers=linkers)
    agg.send(POD, audit_event())

    by_name = {s.name: (i + 1, s) for i, s in enumerate(tracer.spans)}
    rs_object_id, rs_object = by_name["replicasets/web object"]
    rs_children_id, rs_children = by_name["replicasets/web children"]
    pod_object_id, pod_object = by_name["pods/web-0 object"]

    assert rs_object.parent is None
    assert rs_children.parent == rs_object_id
    assert pod_object.parent == rs_children_id
    assert tracer.spans[-1].type == "audit"


def test_new_window_follows_previous_within_follow_ttl():
    options = AggregatorOptions(span_follow_ttl=timedelta(minutes=10))
    agg, tracer, _ = make(options)
    agg.send(POD, audit_event(T0))
    agg.send(POD, audit_event(T0 + timedelta(minutes=31)))

    first_object, first_field = 1, 2
    new_object = tracer.spans[3]
    new_field = tracer.spans[4]
    assert new_object.type == "object"
    assert new_object.follows == first_object
    assert new_field.follows == first_field
    assert new_object.start_time == T0 + options.span_ttl


def test_new_window_without_follow_ttl_has_no_follows():
    agg, tracer, _ = make()
    agg.send(POD, audit_event(T0))
    agg.send(POD, audit_event(T0 + timedelta(minutes=45)))

    assert [s.type for s in tracer.spans] == ["object", "spec", "audit"] * 2
    assert all(s.follows is None for s in tracer.spans)


def test_primary_then_non_primary_nests_under_primary():
    agg, tracer, cache = make()
    agg.send(POD, audit_event(), SubObjectId("rv=1", True))
    primary_id = len(tracer.spans)

    entry = cache.fetch(f"{POD}/rv=1")
    assert entry is not None
    assert tracer.extract_carrier(entry.value) == primary_id

    agg.send(POD, audit_event(title="bob update"), SubObjectId("rv=1", False))
    assert tracer.spans[-1].parent == primary_id
    assert tracer.spans[-1].name == "bob update"


def test_second_primary_is_demoted():
    agg, tracer, _ = make()
    agg.send(POD, audit_event(), SubObjectId("rv=2", True))
    primary_id = len(tracer.spans)

    late = audit_event(title="late")
    agg.send(POD, late, SubObjectId("rv=2", True))

    assert tracer.spans[-1].parent == primary_id
    assert len(late.logs) == 1
    assert late.logs[0].type is LogType.REAL_ERROR
    assert "rv=2" in late.logs[0].message


def test_non_primary_promoted_after_timeout():
    options = AggregatorOptions(
        sub_object_primary_poll_interval=timedelta(milliseconds=10),
        sub_object_primary_poll_timeout=timedelta(milliseconds=50),
    )
    agg, tracer, cache = make(options)
    agg.send(POD, audit_event(), SubObjectId("rv=3", False))

    promoted_id = len(tracer.spans)
    assert tracer.spans[-1].parent == 2
    entry = cache.fetch(f"{POD}/rv=3")
    assert tracer.extract_carrier(entry.value) == promoted_id


def test_tracer_failure_raises():
    agg, _, _ = make(tracer=FailingTracer())
    with pytest.raises(RuntimeError) as info:
        agg.send(POD, audit_event())
    assert "backend down" in str(info.value)


def test_poll_fetch_error_propagates():
    class BrokenFetch(LocalCache):
        def fetch(self, key):
            raise OSError("unreachable")

    clock = FakeClock(T0)
    agg, _, _ = make(cache=BrokenFetch(clock))
    with pytest.raises(RuntimeError) as info:
        agg.send(POD, audit_event(), SubObjectId("rv=4", False))
    assert isinstance(info.value.__cause__, OSError)


def test_persistent_reservation_conflict_exhausts_retries():
    class AlwaysReserved(LocalCache):
        attempts = 0

        def fetch_or_reserve(self, key, ttl):
            AlwaysReserved.attempts += 1
            raise AlreadyReservedError()

    cache = AlwaysReserved(FakeClock(T0))
    agg, tracer, _ = make(cache=cache)
    with pytest.raises(RuntimeError) as info:
        agg.send(POD, audit_event())
    assert should_retry(info.value)
    assert AlwaysReserved.attempts > 1
    assert tracer.spans == []