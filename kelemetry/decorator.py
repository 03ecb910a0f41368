"""Hooks that enrich events derived from audit messages."""

from __future__ import annotations

from abc import ABC, abstractmethod

from kelemetry.event import Event
from kelemetry.message import Message


class Decorator(ABC):
    """Adds information from an audit message to an event."""

    @abstractmethod
    def decorate(self, message: Message, event: Event) -> None:
        """Modify ``event`` in place."""


class DecoratorList(Decorator):
    """Applies every registered decorator in registration order."""

    def __init__(self) -> None:
        self._decorators: list[Decorator] = []

    def add_decorator(self, decorator: Decorator) -> None:
        self._decorators.append(decorator)

    def decorate(self, message: Message, event: Event) -> None:
        for decorator in self._decorators:
            decorator.decorate(message, event)