import pytest

from kelemetry.linker import Linker, LinkerList, ObjectRef


def _ref(name, group="apps"):
    return ObjectRef(
        cluster="c", group=group, version="v1", resource="deployments", namespace="ns", name=name
    )


class _Fixed(Linker):
    def __init__(self, parent, calls):
        self.parent = parent
        self.calls = calls

    def lookup(self, obj):
        self.calls.append(obj)
        return self.parent


def test_empty_list_returns_none():
    assert LinkerList().lookup(_ref("x")) is None


def test_first_non_none_wins():
    calls = []
    linkers = LinkerList()
    first = _ref("first")
    linkers.add_linker(_Fixed(None, calls))
    linkers.add_linker(_Fixed(first, calls))
    linkers.add_linker(_Fixed(_ref("second"), calls))
    assert linkers.lookup(_ref("child")) == first
    assert len(calls) == 2


def test_all_none():
    calls = []
    linkers = LinkerList()
    linkers.add_linker(_Fixed(None, calls))
    linkers.add_linker(_Fixed(None, calls))
    assert linkers.lookup(_ref("child")) is None
    assert len(calls) == 2


def test_object_ref_str():
    assert str(_ref("web")) == "c/apps/v1/deployments/ns/web"


def test_group_version():
    assert _ref("a").group_version == "apps/v1"
    assert _ref("a", group="").group_version == "v1"


def test_raw_ignored_in_equality():
    plain = _ref("a")
    with_raw = ObjectRef(**{**plain.__dict__, "raw": {"metadata": {}}})
    assert plain == with_raw
    assert hash(plain) == hash(with_raw)


def test_linker_is_abstract():
    with pytest.raises(TypeError):
        Linker()