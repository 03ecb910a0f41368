"""Forwards received audit event lists to upstream webhooks."""

from __future__ import annotations

import logging
import threading
import urllib.error
import urllib.request
from datetime import timedelta

from kelemetry.message import RawMessage
from kelemetry.webhook import Subscription, receive_until

_logger = logging.getLogger(__name__)

FORWARD_HEADER = "x-kubetrace-webhook-forward"
FORWARD_HEADER_VALUE = "from-kubetrace"


def forward_url(url: str, cluster: str) -> str:
    """Substitute the ``:cluster`` placeholder of ``url``."""
    return url.replace(":cluster", cluster)


class ForwardProxy:
    """Posts each raw audit event list to one upstream URL."""

    def __init__(
        self, upstream_name: str, url: str, timeout: timedelta = timedelta(seconds=30)
    ) -> None:
        self.upstream_name = upstream_name
        self.url = url
        self.timeout = timeout

    def build_request(self, message: RawMessage) -> urllib.request.Request:
        request = urllib.request.Request(
            forward_url(self.url, message.cluster),
            data=message.event_list_json(),
            method="POST",
        )
        request.add_header("x-forwarded-for", message.source_addr)
        request.add_header(FORWARD_HEADER, FORWARD_HEADER_VALUE)
        request.add_header("content-type", "application/json")
        return request

    def handle_message(self, message: RawMessage) -> int:
        """Post ``message`` upstream and return the HTTP status code.

        Any response counts as delivered; only transport failures raise.
        """
        request = self.build_request(message)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout.total_seconds()) as resp:
                return resp.status
        except urllib.error.HTTPError as err:
            err.close()
            return err.code
        except (urllib.error.URLError, OSError, ValueError) as err:
            raise RuntimeError(f"http post error: {err}") from err

    def _handle_logged(self, message: RawMessage) -> None:
        try:
            self.handle_message(message)
        except Exception as err:
            _logger.error("forward to %s failed: %s", self.upstream_name, err)

    def run(self, messages: Subscription[RawMessage], stop_event: threading.Event) -> None:
        """Forward each message in its own thread until the stream ends or stops."""
        _logger.info("Starting audit proxy %s", self.upstream_name)
        for message in receive_until(messages, stop_event):
            threading.Thread(
                target=self._handle_logged,
                args=(message,),
                name=f"audit-forward-{self.upstream_name}",
                daemon=True,
            ).start()