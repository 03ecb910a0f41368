from datetime import datetime, timedelta

import pytest

from kelemetry.event import DUMMY_DURATION, Event
from kelemetry.tracer import LogType

WHEN = datetime(2023, 3, 1, 12, 0, 0)


def _event():
    return Event("spec", "alice update", WHEN, "audit")


def test_finish_time_defaults_to_dummy_duration():
    assert _event().finish_time() == WHEN + DUMMY_DURATION


def test_with_end_time():
    end = WHEN + timedelta(seconds=3)
    event = _event()
    assert event.with_end_time(end) is event
    assert event.finish_time() == end


def test_with_duration():
    event = _event().with_duration(timedelta(minutes=2))
    assert event.end_time == WHEN + timedelta(minutes=2)
    assert event.finish_time() == event.end_time


def test_with_tag_chains():
    event = _event().with_tag("username", "alice").with_tag("responseCode", 200)
    assert event.tags == {"username": "alice", "responseCode": 200}


def test_tags_are_per_event():
    a = _event().with_tag("k", "v")
    assert _event().tags == {}
    assert a.tags == {"k": "v"}


def test_log_pairs_attrs():
    event = _event().log(LogType.REAL_ERROR, "failed", "a", "1", "b", "2")
    assert len(event.logs) == 1
    log = event.logs[0]
    assert log.type == LogType.REAL_ERROR
    assert log.message == "failed"
    assert log.attrs == [("a", "1"), ("b", "2")]


def test_log_without_attrs():
    event = _event().log(LogType.REAL_ERROR, "x").log(LogType.REAL_ERROR, "y")
    assert [log.message for log in event.logs] == ["x", "y"]
    assert all(log.attrs == [] for log in event.logs)


def test_log_odd_attrs_rejected():
    event = _event()
    with pytest.raises(ValueError):
        event.log(LogType.REAL_ERROR, "x", "lonely")
    assert event.logs == []