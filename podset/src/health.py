from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves the operator's liveness, readiness, leadership and metrics endpoints.

    ``/readyz`` succeeds only when the event sources have synced and, with
    leader election enabled, this replica holds the lease.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _send(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._send(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._send(200, b"ok")
            else:
                self._send(503, b"not leader")
        elif self.path == "/readyz":
            synced = self.synced_event.is_set()
            leader = self._is_leader()
            body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
            self._send(200 if synced and leader else 503, body)
        elif self.path == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._send(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    synced: threading.Event, leader: threading.Event | None = None
) -> type[_ProbeHandler]:
    """Return a handler class bound to the given events.

    The stdlib server instantiates handlers without arguments, so the events
    are bound as class attributes.
    """

    class _BoundProbeHandler(_ProbeHandler):
        synced_event = synced
        leader_event = leader

    return _BoundProbeHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
