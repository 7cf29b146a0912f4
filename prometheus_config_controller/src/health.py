from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, version and Prometheus metrics endpoints."""

    ready_events: Sequence[threading.Event]
    version_info: Mapping[str, str]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready = [event.is_set() for event in self.ready_events]
            if all(ready):
                self._respond(200, b"ready=true")
            else:
                self._respond(503, f"ready=false synced={sum(ready)}/{len(ready)}".encode())
        elif self.path == "/version":
            body = json.dumps(dict(self.version_info), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("prometheus_config_controller.health").debug(fmt, *args)


def make_health_handler(
    ready: Sequence[threading.Event], version_info: Mapping[str, str] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness events.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    bound_version = dict(version_info or {})

    class _BoundHealthHandler(_HealthHandler):
        ready_events = tuple(ready)
        version_info = bound_version

    return _BoundHealthHandler


def start_health_server(
    ready: Sequence[threading.Event],
    port: int,
    version_info: Mapping[str, str] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it.

    ``/readyz`` only reports ready once every event in *ready* is set.
    """
    handler_class = make_health_handler(ready, version_info=version_info)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
