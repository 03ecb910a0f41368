import json

import pytest

from kelemetry.annotationlinker import LINK_ANNOTATION, AnnotationLinker, ParentLink
from kelemetry.linker import LinkerList, ObjectRef

LINK = {
    "group": "apps",
    "version": "v1",
    "resource": "deployments",
    "namespace": "default",
    "name": "parent",
    "uid": "uid-parent",
}


def body_with(annotations):
    return {"metadata": {"name": "child", "annotations": annotations}}


def child(raw=None):
    return ObjectRef(
        cluster="main", group="", version="v1", resource="pods",
        namespace="default", name="child", uid="uid-child", raw=raw,
    )


def expected_parent(cluster="main"):
    return ObjectRef(
        cluster=cluster, group=LINK["group"], version=LINK["version"],
        resource=LINK["resource"], namespace=LINK["namespace"],
        name=LINK["name"], uid=LINK["uid"],
    )


def test_lookup_from_raw_body_defaults_cluster():
    linker = AnnotationLinker()
    obj = child(body_with({LINK_ANNOTATION: json.dumps(LINK)}))
    assert linker.lookup(obj) == expected_parent()


def test_annotation_cluster_overrides():
    linker = AnnotationLinker()
    obj = child(body_with({LINK_ANNOTATION: json.dumps(dict(LINK, cluster="remote"))}))
    assert linker.lookup(obj) == expected_parent(cluster="remote")


def test_no_annotation_means_no_parent():
    linker = AnnotationLinker()
    assert linker.lookup(child(body_with({"other": "x"}))) is None
    assert linker.lookup(child({"metadata": {}})) is None


def test_invalid_annotation_means_no_parent():
    linker = AnnotationLinker()
    assert linker.lookup(child(body_with({LINK_ANNOTATION: "{broken"}))) is None


def test_getter_used_when_raw_missing():
    seen = []

    def getter(obj):
        seen.append(obj)
        return body_with({LINK_ANNOTATION: json.dumps(LINK)})

    linker = AnnotationLinker(getter)
    assert linker.lookup(child()) == expected_parent()
    assert seen == [child()]


def test_getter_returning_none():
    linker = AnnotationLinker(lambda obj: None)
    assert linker.lookup(child()) is None


def test_getter_raising_is_swallowed():
    def getter(obj):
        raise OSError("unreachable apiserver")

    linker = AnnotationLinker(getter)
    assert linker.lookup(child()) is None


def test_no_getter_and_no_raw():
    assert AnnotationLinker().lookup(child()) is None


def test_parent_link_from_json_round_trip():
    link = ParentLink.from_json(json.dumps(dict(LINK, cluster="remote")))
    assert link == ParentLink(cluster="remote", **LINK)


def test_parent_link_missing_fields_default_empty():
    link = ParentLink.from_json(json.dumps({"name": "parent"}))
    assert link == ParentLink(name="parent")
    assert link.cluster == ""
    assert link.uid == ""


@pytest.mark.parametrize("text", ["[1, 2]", '"text"', "{broken", '{"name": 3}'])
def test_parent_link_rejects_invalid(text):
    with pytest.raises(ValueError):
        ParentLink.from_json(text)


def test_works_inside_linker_list():
    linkers = LinkerList()
    linkers.add_linker(AnnotationLinker())
    obj = child(body_with({LINK_ANNOTATION: json.dumps(LINK)}))
    assert linkers.lookup(obj) == expected_parent()
    assert linkers.lookup(child(body_with({}))) is None