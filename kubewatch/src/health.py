from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeState:
    """Signals the probe endpoints report on.

    ``watching`` is set while a watch stream is open.  ``leader`` is ``None``
    when leader election is disabled, in which case this replica always
    counts as leader.  ``current_leader`` returns the last observed lease
    holder, if known.
    """

    watching: threading.Event
    leader: threading.Event | None = None
    current_leader: Callable[[], str | None] | None = None

    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()

    def leader_identity(self) -> str:
        if self.current_leader is None:
            return "unknown"
        return self.current_leader() or "unknown"


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``."""

    state: ProbeState

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._respond(200, b"ok")
        elif path == "/leadz":
            if self.state.is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, f"not leader (leader={self.state.leader_identity()})".encode())
        elif path == "/readyz":
            watching = self.state.watching.is_set()
            leader = self.state.is_leader()
            body = f"watching={str(watching).lower()} leader={str(leader).lower()}".encode()
            self._respond(200 if watching and leader else 503, body)
        elif path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(state: ProbeState) -> type[_ProbeHandler]:
    """Return a handler class bound to *state*.

    The stdlib server instantiates handlers without arguments, so the state
    is attached as a class attribute.
    """

    class _BoundProbeHandler(_ProbeHandler):
        pass

    _BoundProbeHandler.state = state
    return _BoundProbeHandler


def start_health_server(state: ProbeState, port: int, host: str = "0.0.0.0") -> ThreadingHTTPServer:  # noqa: S104
    """Start the probe and metrics server on a daemon thread and return it."""
    server = ThreadingHTTPServer((host, port), make_probe_handler(state))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
