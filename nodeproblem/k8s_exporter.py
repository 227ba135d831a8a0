"""Exporter that reports problems to the Kubernetes API server."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from .condition_manager import Clock, Condition, ConditionManager

__all__ = [
    "Severity",
    "Event",
    "Status",
    "K8sExporter",
    "convert_to_api_event_type",
    "wait_for_api_server",
]

logger = logging.getLogger(__name__)

_EVENT_TYPE_NORMAL = "Normal"
_EVENT_TYPE_WARNING = "Warning"


class Severity(str, Enum):
    """How serious a reported event is."""

    INFO = "info"
    WARN = "warn"


@dataclass
class Event:
    """A one-off problem reported by a problem daemon."""

    severity: Severity
    timestamp: datetime
    reason: str
    message: str


@dataclass
class Status:
    """What a problem daemon reports at one time."""

    source: str
    events: list[Event] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)


def convert_to_api_event_type(severity: Severity) -> str:
    """Map an event severity onto a Kubernetes event type."""
    if severity == Severity.WARN:
        return _EVENT_TYPE_WARNING
    return _EVENT_TYPE_NORMAL


def wait_for_api_server(client: Any, interval: float, timeout: float) -> Any:
    """Poll ``client.get_node()`` until it succeeds and return the node.

    The first attempt is made at once, later ones every ``interval`` seconds.
    Raises TimeoutError, chained to the last failure, once ``timeout`` is spent.
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            return client.get_node()
        except Exception as exc:
            logger.error("Can't get node object: %s", exc)
            if time.monotonic() + interval > deadline:
                raise TimeoutError(
                    f"node object not available after {timeout}s: {exc}"
                ) from exc
        time.sleep(interval)


def _condition_to_json(condition: Condition) -> dict[str, Any]:
    return {
        "type": condition.type,
        "status": getattr(condition.status, "value", condition.status),
        "transition": condition.transition.isoformat(),
        "reason": condition.reason,
        "message": condition.message,
    }


class K8sExporter:
    """Writes events and node conditions through a problem client.

    A condition manager is built around ``client``; unless ``start_manager``
    is False its sync loop starts at once and runs until :meth:`stop`.
    """

    def __init__(
        self,
        client: Any,
        heartbeat_period: Union[float, int, Any],
        *,
        write_events: bool = True,
        update_conditions: bool = True,
        clock: Optional[Clock] = None,
        start_manager: bool = True,
    ) -> None:
        self.client = client
        self.condition_manager = ConditionManager(client, heartbeat_period, clock)
        self.write_events = write_events
        self.update_conditions = update_conditions
        self._stop_event = threading.Event()
        self._server: Optional[ThreadingHTTPServer] = None
        if start_manager:
            self.condition_manager.start(self._stop_event)

    def export_problems(self, status: Status) -> None:
        """Report the events and conditions in ``status``."""
        if self.write_events:
            for event in status.events:
                self.client.eventf(
                    convert_to_api_event_type(event.severity),
                    status.source,
                    event.reason,
                    event.message,
                )
        if self.update_conditions:
            for condition in status.conditions:
                self.condition_manager.update_condition(condition)

    def start_http_reporting(self, address: str, port: int) -> Optional[tuple]:
        """Serve ``/healthz`` and ``/conditions`` on ``address:port``.

        Does nothing and returns None when ``port`` is not positive; otherwise
        returns the bound address. Raises OSError if the port cannot be bound.
        """
        if port <= 0:
            return None
        manager = self.condition_manager

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                path = urlsplit(self.path).path
                if path == "/healthz":
                    body, content_type = b"ok", "text/plain; charset=utf-8"
                elif path == "/conditions":
                    payload = [_condition_to_json(c) for c in manager.get_conditions()]
                    body, content_type = json.dumps(payload).encode("utf-8"), "application/json"
                else:
                    self.send_error(404)
                    return
                self.send_response(200)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("%s - %s", self.address_string(), format % args)

        server = ThreadingHTTPServer((address, port), Handler)
        server.daemon_threads = True
        self._server = server
        threading.Thread(target=server.serve_forever, name="k8s-exporter-http", daemon=True).start()
        return server.server_address

    def stop(self) -> None:
        """Stop the condition sync loop and the HTTP server."""
        self._stop_event.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None