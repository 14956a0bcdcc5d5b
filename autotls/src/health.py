from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics``.

    Readiness follows the controller's ``ready`` event, which is set once the
    initial Ingress list has been synced and cleared when the watch loop
    exits.
    """

    ready_event: threading.Event

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready")
            else:
                self._respond(503, b"not synced")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("autotls.health").debug(fmt, *args)


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    server = ThreadingHTTPServer(("0.0.0.0", port), _BoundHealthHandler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="autotls-health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
