"""Object references and parent-object linkers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ObjectRef:
    """Identifies a Kubernetes object in a cluster, optionally with its raw body."""

    cluster: str
    group: str
    version: str
    resource: str
    namespace: str
    name: str
    uid: str = ""
    raw: dict[str, Any] | None = field(default=None, compare=False, hash=False, repr=False)

    @property
    def group_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return "/".join(
            (self.cluster, self.group, self.version, self.resource, self.namespace, self.name)
        )


class Linker(ABC):
    """Resolves the parent object of an object, if any."""

    @abstractmethod
    def lookup(self, obj: ObjectRef) -> ObjectRef | None:
        """Return the parent of ``obj`` or ``None``."""


class LinkerList(Linker):
    """Tries each registered linker in order; the first parent found wins."""

    def __init__(self) -> None:
        self._linkers: list[Linker] = []

    def add_linker(self, linker: Linker) -> None:
        self._linkers.append(linker)

    def lookup(self, obj: ObjectRef) -> ObjectRef | None:
        return next(
            (parent for parent in (l.lookup(obj) for l in self._linkers) if parent is not None),
            None,
        )