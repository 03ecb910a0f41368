"""Abstraction of a partitioned message queue."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

ConsumerGroup = str
PartitionId = int
MessageHandler = Callable[[bytes | None, bytes], None]
"""Called with the partition key and the value of each consumed message."""


class DuplicateConsumerError(ValueError):
    """A consumer was requested twice for the same group and partition."""

    def __init__(self, group: ConsumerGroup, partition: PartitionId) -> None:
        super().__init__(f'consumer for "{group}"/{partition} requested multiple times')
        self.group = group
        self.partition = partition


class Producer(ABC):
    """Publishes messages to the queue."""

    @abstractmethod
    def send(self, partition_key: bytes | None, value: bytes) -> None:
        """Publish ``value``; ``partition_key`` may decide the partition."""


class Queue(ABC):
    """A partitioned message queue."""

    @abstractmethod
    def create_producer(self) -> Producer:
        """Return a producer for this queue."""

    @abstractmethod
    def create_consumer(
        self, group: ConsumerGroup, partition: PartitionId, handler: MessageHandler
    ) -> Any:
        """Register ``handler`` for one partition of a consumer group."""