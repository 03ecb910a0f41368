"""In-process message queue with one worker thread per consumer partition."""

from __future__ import annotations

import itertools
import logging
import queue
import random
import threading
from dataclasses import dataclass

from kelemetry.mq import (
    ConsumerGroup,
    DuplicateConsumerError,
    MessageHandler,
    PartitionId,
    Producer,
    Queue,
)

_logger = logging.getLogger(__name__)

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_POLL_SECONDS = 0.05
_CLOSED = object()


def fnv32(data: bytes) -> int:
    """32-bit FNV-1 hash of ``data``."""
    value = _FNV32_OFFSET
    for byte in data:
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
        value ^= byte
    return value


@dataclass(frozen=True)
class _LocalMessage:
    offset: int
    key: bytes | None
    value: bytes


class _LocalConsumer:
    def __init__(self, group: ConsumerGroup, partition: PartitionId, handler: MessageHandler) -> None:
        self.group = group
        self.partition = partition
        self.handler = handler
        self.messages: queue.Queue[object] = queue.Queue()
        self.thread: threading.Thread | None = None

    def start(self, stop_event: threading.Event) -> None:
        self.thread = threading.Thread(
            target=self._loop,
            args=(stop_event,),
            name=f"mq-local-{self.group}-{self.partition}",
            daemon=True,
        )
        self.thread.start()

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                item = self.messages.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if item is _CLOSED:
                return
            assert isinstance(item, _LocalMessage)
            try:
                self.handler(item.key, item.value)
            except Exception:
                _logger.exception(
                    "consumer %s/%s failed at offset %d", self.group, self.partition, item.offset
                )
                return


class LocalProducer(Producer):
    """Producer that dispatches to every consumer group of a local queue."""

    def __init__(self, local_queue: LocalQueue) -> None:
        self._queue = local_queue
        self._offsets = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, partition_key: bytes | None, value: bytes) -> None:
        num_partitions = self._queue._num_partitions
        if num_partitions <= 0:
            raise RuntimeError("local queue has no partitions to send to")

        if self._queue.partition_by_object and partition_key is not None:
            partition = fnv32(partition_key) % num_partitions
        else:
            partition = random.randrange(num_partitions)

        with self._lock:
            offset = next(self._offsets)

        message = _LocalMessage(offset=offset, key=partition_key, value=value)
        for group, consumers in self._queue._consumers.items():
            consumer = consumers.get(partition)
            if consumer is None:
                raise LookupError(f"no consumer for {group!r} partition {partition}")
            consumer.messages.put(message)


class LocalQueue(Queue):
    """A queue held in memory; messages go to a random or key-hashed partition."""

    def __init__(self, partition_by_object: bool = False) -> None:
        self.partition_by_object = partition_by_object
        self._producer: LocalProducer | None = None
        self._consumers: dict[ConsumerGroup, dict[PartitionId, _LocalConsumer]] = {}
        self._num_partitions = 0

    def create_producer(self) -> LocalProducer:
        if self._producer is None:
            self._producer = LocalProducer(self)
        return self._producer

    def create_consumer(
        self, group: ConsumerGroup, partition: PartitionId, handler: MessageHandler
    ) -> _LocalConsumer:
        consumers = self._consumers.setdefault(group, {})
        if partition in consumers:
            raise DuplicateConsumerError(group, partition)
        consumer = _LocalConsumer(group, partition, handler)
        consumers[partition] = consumer
        return consumer

    def lag(self, group: ConsumerGroup, partition: PartitionId) -> int:
        """Number of messages waiting for the given consumer."""
        return self._consumers[group][partition].messages.qsize()

    def start(self, stop_event: threading.Event) -> None:
        """Fix the partition count and start every consumer."""
        num_partitions = -1
        for group, consumers in self._consumers.items():
            if num_partitions != -1 and num_partitions != len(consumers):
                raise ValueError(
                    "different consumer groups have different partition counts "
                    f'({num_partitions} != {len(consumers)} for "{group}")'
                )
            num_partitions = len(consumers)
        self._num_partitions = num_partitions

        for consumers in self._consumers.values():
            for consumer in consumers.values():
                consumer.start(stop_event)

    def close(self) -> None:
        """Stop consumer threads after the messages already queued."""
        consumers = [c for group in self._consumers.values() for c in group.values()]
        for consumer in consumers:
            consumer.messages.put(_CLOSED)
        for consumer in consumers:
            if consumer.thread is not None:
                consumer.thread.join(timeout=5)