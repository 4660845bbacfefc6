from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

_Response = tuple[int, bytes, str | None]


def _flag(value: bool) -> str:
    return "true" if value else "false"


class ProbeHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics endpoints.

    ``synced`` is the controller's readiness: every watch finished its initial
    list.  ``leader`` is None when leader election is disabled, in which case
    the replica always counts as leader.
    """

    synced: threading.Event
    leader: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()

    def _healthz(self) -> _Response:
        return 200, b"ok", None

    def _leadz(self) -> _Response:
        if self._is_leader():
            return 200, b"ok", None
        return 503, b"not leader", None

    def _readyz(self) -> _Response:
        synced = self.synced.is_set()
        leader = self._is_leader()
        body = f"synced={_flag(synced)} leader={_flag(leader)}".encode()
        return (200 if synced and leader else 503), body, None

    def _metrics(self) -> _Response:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def _route(self) -> Callable[[], _Response] | None:
        return {
            "/healthz": self._healthz,
            "/leadz": self._leadz,
            "/readyz": self._readyz,
            "/metrics": self._metrics,
        }.get(self.path.split("?", 1)[0])

    def do_GET(self) -> None:
        endpoint = self._route()
        status, body, content_type = endpoint() if endpoint else (404, b"", None)
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("configwatch.health").debug(fmt, *args)


def make_probe_handler(
    synced: threading.Event, leader: threading.Event | None = None
) -> type[ProbeHandler]:
    """Return a handler class bound to the given events.

    The stdlib HTTPServer instantiates handlers without constructor
    arguments, so state is bound as class attributes.
    """

    class _BoundProbeHandler(ProbeHandler):
        pass

    _BoundProbeHandler.synced = synced
    _BoundProbeHandler.leader = leader
    return _BoundProbeHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
