from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any


def watch_line(event_type: str, resource_version: str | None = None, name: str = "cm", **obj: Any) -> bytes:
    """Encode one watch stream line the way the API server sends it."""
    if event_type == "ERROR":
        payload: dict[str, Any] = {"kind": "Status", "apiVersion": "v1", **obj}
    else:
        metadata: dict[str, Any] = {"name": name, "namespace": "default"}
        if resource_version is not None:
            metadata["resourceVersion"] = resource_version
        payload = {"kind": "ConfigMap", "apiVersion": "v1", "metadata": metadata, **obj}
    return json.dumps({"type": event_type, "object": payload}).encode() + b"\n"


def error_line(code: int, reason: str, message: str = "") -> bytes:
    return watch_line("ERROR", code=code, reason=reason, message=message, status="Failure")


class FakeResponse:
    """Stand-in for the urllib3 response returned with ``_preload_content=False``.

    Yields ``lines`` and then raises ``error`` if given.  With ``hold_open``
    the stream blocks after the last line until :meth:`close` is called.
    """

    def __init__(
        self,
        lines: list[bytes] | None = None,
        error: BaseException | None = None,
        hold_open: bool = False,
    ) -> None:
        self.lines = list(lines or [])
        self.error = error
        self.hold_open = hold_open
        self.closed = threading.Event()
        self.released = False

    def stream(self, amt: int | None = None, decode_content: bool = False) -> Iterator[bytes]:
        for line in self.lines:
            if self.closed.is_set():
                return
            yield line
        if self.hold_open:
            self.closed.wait(timeout=5)
            return
        if self.error is not None:
            raise self.error

    def read_chunked(self, amt: int | None = None, decode_content: bool = False) -> Iterator[bytes]:
        return self.stream(amt=amt, decode_content=decode_content)

    def close(self) -> None:
        self.closed.set()

    def release_conn(self) -> None:
        self.released = True


class ScriptedLister:
    """Fake list function replaying a script of watch responses.

    Each ``watch=True`` call consumes the next entry of ``script``: a
    :class:`FakeResponse` is returned, an exception is raised.  Once the
    script is exhausted ``stop_event`` is set and an empty stream returned.
    ``watch=False`` calls are validation lists answered by ``list_error``
    or an empty list.
    """

    def __init__(
        self,
        script: list[FakeResponse | BaseException],
        stop_event: threading.Event,
        list_error: BaseException | None = None,
    ) -> None:
        self.script = list(script)
        self.stop_event = stop_event
        self.list_error = list_error
        self.watch_calls: list[dict[str, Any]] = []
        self.list_calls: list[dict[str, Any]] = []
        self.responses: list[FakeResponse] = []

    def __call__(self, **kwargs: Any) -> Any:
        if not kwargs.get("watch"):
            self.list_calls.append(kwargs)
            if self.list_error is not None:
                raise self.list_error
            return SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="1"))

        self.watch_calls.append(kwargs)
        if not self.script:
            self.stop_event.set()
            response = FakeResponse()
        else:
            entry = self.script.pop(0)
            if isinstance(entry, BaseException):
                raise entry
            response = entry
        self.responses.append(response)
        return response

    def resource_versions(self) -> list[str | None]:
        return [call.get("resource_version") for call in self.watch_calls]


class RecordingEvent(threading.Event):
    """Stop event that records backoff waits instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: list[float | None] = []

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout)
        return self.is_set()
