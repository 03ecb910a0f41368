"""Receives audit event lists and fans them out to subscribers."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Iterator
from typing import Any, Generic, TypeVar

from kelemetry.clustername import AddressResolver, Resolver
from kelemetry.message import Message, RawMessage

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_CLOSED = object()
_POLL_SECONDS = 0.05


class SubscriptionClosed(Exception):
    """The subscription was closed and holds no more messages."""


class Subscription(Generic[_T]):
    """An unbounded queue of messages delivered to one subscriber."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: queue.Queue[Any] = queue.Queue()

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, item: _T) -> None:
        self._queue.put(item)

    def close(self) -> None:
        """Mark the end of the stream; messages already queued are still delivered."""
        self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> _T:
        """Return the next message.

        Raises queue.Empty on timeout and SubscriptionClosed once the stream has ended.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            raise SubscriptionClosed(self.name)
        return item

    def __iter__(self) -> Iterator[_T]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return


def receive_until(subscription: Subscription[_T], stop_event: threading.Event) -> Iterator[_T]:
    """Yield messages until the subscription closes or ``stop_event`` is set."""
    while not stop_event.is_set():
        try:
            item = subscription.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            continue
        except SubscriptionClosed:
            return
        yield item


def _decode_event_list(body: bytes | str) -> dict[str, Any]:
    try:
        decoded = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise ValueError(f"cannot decode POST data: {err}") from err
    if not isinstance(decoded, dict):
        raise ValueError("cannot decode POST data: event list must be a JSON object")
    items = decoded.get("items")
    if items is None:
        decoded["items"] = []
    elif not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError("cannot decode POST data: items must be a list of objects")
    return decoded


class Webhook:
    """Decodes posted audit event lists and distributes them to subscribers.

    Raw subscribers receive each list whole; other subscribers receive every event
    of the list as its own message. Subscribers must drain their queues.
    """

    def __init__(self, resolver: Resolver | None = None) -> None:
        self.resolver = resolver if resolver is not None else AddressResolver()
        self._subscribers: list[Subscription[Message]] = []
        self._raw_subscribers: list[Subscription[RawMessage]] = []

    def add_subscriber(self, name: str) -> Subscription[Message]:
        subscription: Subscription[Message] = Subscription(name)
        self._subscribers.append(subscription)
        return subscription

    def add_raw_subscriber(self, name: str) -> Subscription[RawMessage]:
        subscription: Subscription[RawMessage] = Subscription(name)
        self._raw_subscribers.append(subscription)
        return subscription

    def handle(self, body: bytes | str, client_ip: str, cluster: str | None = None) -> int:
        """Handle one posted event list and return the number of events in it.

        Without an explicit cluster the client address is resolved to one.
        """
        if not cluster:
            cluster = self.resolver.resolve(client_ip)

        event_list = _decode_event_list(body)
        items = event_list["items"]
        _logger.debug("Received EventList cluster=%s itemCount=%d", cluster, len(items))

        raw_message = RawMessage(cluster=cluster, source_addr=client_ip, event_list=event_list)
        for raw_subscription in self._raw_subscribers:
            raw_subscription.put(raw_message)

        for item in items:
            message = Message(cluster=cluster, source_addr=client_ip, event=dict(item))
            for subscription in self._subscribers:
                subscription.put(message)

        return len(items)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in self._subscribers:
            subscription.close()
        for raw_subscription in self._raw_subscribers:
            raw_subscription.close()