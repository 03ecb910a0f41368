"""Links objects to parents named in an annotation on the object."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kelemetry.linker import Linker, ObjectRef

_logger = logging.getLogger(__name__)

LINK_ANNOTATION = "kelemetry.kubewharf.io/parent-link"
"""Annotation holding a JSON-encoded ParentLink."""

ObjectGetter = Callable[[ObjectRef], "dict[str, Any] | None"]
"""Fetches the current body of an object, or None if it no longer exists."""

_FIELDS = ("cluster", "group", "version", "resource", "namespace", "name", "uid")


@dataclass(frozen=True)
class ParentLink:
    """The parent object named by the link annotation.

    An empty cluster means the cluster of the annotated object.
    """

    name: str = ""
    uid: str = ""
    cluster: str = ""
    group: str = ""
    version: str = ""
    resource: str = ""
    namespace: str = ""

    @classmethod
    def from_json(cls, text: str | bytes) -> ParentLink:
        try:
            body = json.loads(text)
        except json.JSONDecodeError as err:
            raise ValueError(f"invalid parent link: {err}") from err
        if not isinstance(body, dict):
            raise ValueError("parent link must be a JSON object")

        values: dict[str, str] = {}
        for key in _FIELDS:
            value = body.get(key)
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(f"parent link field {key!r} must be a string")
            values[key] = value
        return cls(**values)


def _annotations(raw: dict[str, Any]) -> dict[str, str]:
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        return {}
    annotations = metadata.get("annotations")
    if not isinstance(annotations, dict):
        return {}
    if not all(isinstance(value, str) for value in annotations.values()):
        return {}
    return annotations


class AnnotationLinker(Linker):
    """Resolves a parent from the link annotation of an object's body."""

    def __init__(self, object_getter: ObjectGetter | None = None) -> None:
        self.object_getter = object_getter

    def lookup(self, obj: ObjectRef) -> ObjectRef | None:
        raw = obj.raw
        if raw is None:
            if self.object_getter is None:
                return None
            _logger.debug("Fetching dynamic object %s", obj)
            try:
                raw = self.object_getter(obj)
            except Exception as err:
                _logger.error("cannot fetch object value for %s: %s", obj, err)
                return None
            if raw is None:
                _logger.debug("object %s no longer exists", obj)
                return None

        text = _annotations(raw).get(LINK_ANNOTATION)
        if text is None:
            return None

        try:
            link = ParentLink.from_json(text)
        except ValueError as err:
            _logger.error("cannot parse ParentLink annotation on %s: %s", obj, err)
            return None

        parent = ObjectRef(
            cluster=link.cluster or obj.cluster,
            group=link.group,
            version=link.version,
            resource=link.resource,
            namespace=link.namespace,
            name=link.name,
            uid=link.uid,
        )
        _logger.debug("Resolved parent %s of %s", parent, obj)
        return parent