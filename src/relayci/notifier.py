# notifier.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Iterable, List, Optional, Protocol

from .errors import NotificationError
from .model import JobStatus, RunResult
from .ui.console import Console, get_console


class NotificationChannel(Protocol):
    name: str

    def send(self, correlation_id: str, outcome: JobStatus, message: str) -> None:
        """Deliver one notification. Raises on delivery failure."""
        ...


class ConsoleChannel:
    name = "console"

    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def send(self, correlation_id: str, outcome: JobStatus, message: str) -> None:
        (self.console or get_console()).print_notification(self.name, f"[{correlation_id}] {message}")


class WebhookChannel:
    """POSTs a JSON body {"correlation_id", "outcome", "message"} to a URL."""

    def __init__(self, url: str, *, timeout: float = 10.0, headers: Optional[dict] = None):
        self.url = url
        self.name = f"webhook:{url}"
        self.timeout = timeout
        self.headers = dict(headers or {})

    def send(self, correlation_id: str, outcome: JobStatus, message: str) -> None:
        req_headers = {"Content-Type": "application/json"}
        req_headers.update(self.headers)
        body = {"correlation_id": correlation_id, "outcome": outcome.value, "message": message}
        req = urllib.request.Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers=req_headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            raise NotificationError(f"webhook failed: {e.code} {e.reason}. {error_body}".strip()) from e
        except urllib.error.URLError as e:
            raise NotificationError(f"webhook network error: {e.reason}") from e
        except OSError as e:  # socket timeouts surface here
            raise NotificationError(f"webhook error: {e}") from e


class Notifier:
    """
    Sends the terminal outcome of a run to every configured channel.

    Delivery is best-effort: a failing channel is logged and the remaining
    channels still get the message. The run result is never changed.
    """

    def __init__(self, channels: Iterable[NotificationChannel] = (), console: Optional[Console] = None):
        self.channels: List[NotificationChannel] = list(channels)
        self.console = console

    def notify(self, result: RunResult) -> List[str]:
        """Returns the names of the channels that failed."""
        console = self.console or get_console()
        outcome = result.outcome
        message = result.summary()
        failed: List[str] = []
        for channel in self.channels:
            name = getattr(channel, "name", type(channel).__name__)
            try:
                channel.send(result.correlation_id, outcome, message)
            except Exception as e:
                failed.append(name)
                console.print_warning(f"notification via {name} failed: {e}")
        return failed
