"""Appends received audit messages to a file, one JSON document per line."""

from __future__ import annotations

import logging
import os
import threading
from typing import BinaryIO

from kelemetry.message import Message
from kelemetry.webhook import Subscription, receive_until

_logger = logging.getLogger(__name__)


class AuditDumper:
    """Writes audit messages to an append-only file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = path
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        except OSError as err:
            raise OSError(f"cannot open file to dump audit events: {err}") from err
        self._stream: BinaryIO = os.fdopen(fd, "ab")

    def __enter__(self) -> AuditDumper:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def handle_message(self, message: Message) -> None:
        """Append ``message`` as one line of JSON."""
        self._stream.write(message.to_json() + b"\n")
        self._stream.flush()

    def run(self, messages: Subscription[Message], stop_event: threading.Event) -> None:
        """Write messages until the subscription closes or ``stop_event`` is set."""
        for message in receive_until(messages, stop_event):
            try:
                self.handle_message(message)
            except (OSError, ValueError) as err:
                _logger.error("Cannot append message: %s", err)

    def close(self) -> None:
        self._stream.close()