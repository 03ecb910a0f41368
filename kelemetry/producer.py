"""Publishes audit messages onto the message queue."""

from __future__ import annotations

import enum

from kelemetry.message import Message
from kelemetry.mq import Producer


class PartitionKeyType(enum.Enum):
    """How audit messages are keyed for partitioning."""

    CLUSTER = "cluster"
    OBJECT = "object"
    AUDIT_ID = "audit-id"

    @classmethod
    def parse(cls, text: str) -> PartitionKeyType:
        try:
            return cls(text)
        except ValueError:
            raise ValueError("unsupported partition key type") from None

    def __str__(self) -> str:
        return self.value


def partition_key(message: Message, key_type: PartitionKeyType) -> bytes:
    """Build the partition key; it always starts with the cluster name and a slash."""
    cluster = message.cluster
    if key_type is PartitionKeyType.CLUSTER:
        return f"{cluster}/".encode()
    if key_type is PartitionKeyType.OBJECT:
        key = f"{cluster}/"
        ref = message.object_ref
        if ref is not None:
            parts = (ref.get(name) or "" for name in
                     ("apiGroup", "apiVersion", "resource", "namespace", "name"))
            key += "/".join((cluster, *parts))
        return key.encode()
    return f"{cluster}/{message.audit_id}".encode()


class AuditProducer:
    """Serializes audit messages and sends them with a partition key."""

    def __init__(
        self, producer: Producer, key_type: PartitionKeyType = PartitionKeyType.AUDIT_ID
    ) -> None:
        self.producer = producer
        self.key_type = key_type

    def handle_message(self, message: Message) -> None:
        key = partition_key(message, self.key_type)
        value = message.to_json()
        try:
            self.producer.send(key, value)
        except Exception as err:
            raise RuntimeError(f"cannot send event to message queue: {err}") from err