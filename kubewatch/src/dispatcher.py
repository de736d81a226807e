from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable

from kubewatch.src.events import WatchEvent, WatchEventType, WatchProtocolError
from kubewatch.src.metrics import METRICS

EventHandler = Callable[[WatchEvent], None]


class ResourceVersionTracker:
    """Lock-guarded resume token shared by the dispatcher and the watch loop.

    The dispatcher is the only writer while a session is open; the loop reads
    (and, after an expiry, resets) the token only once the queue is drained.
    """

    def __init__(self, resource_version: str | None = None) -> None:
        self._lock = threading.Lock()
        self._resource_version = resource_version or ""

    def get(self) -> str:
        with self._lock:
            return self._resource_version

    def advance(self, resource_version: str | None) -> None:
        if not resource_version:
            return
        with self._lock:
            self._resource_version = resource_version

    def reset(self) -> None:
        with self._lock:
            self._resource_version = ""


class EventQueue:
    """Unbounded FIFO channel between a watch session and its dispatcher.

    ``put`` never blocks the stream reader.  Every ``get`` must be paired with
    ``task_done`` once the event is fully handled so ``wait_drained`` can tell
    when the consumer is idle.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[WatchEvent] = queue.Queue()

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, event: WatchEvent) -> None:
        self._queue.put_nowait(event)

    def get(self, timeout: float) -> WatchEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def wait_drained(self, abort: Callable[[], bool], poll_interval_seconds: float = 0.1) -> bool:
        """Block until every queued event was handled.  Returns False if aborted."""
        done = self._queue.all_tasks_done
        with done:
            while self._queue.unfinished_tasks:
                if abort():
                    return False
                done.wait(timeout=poll_interval_seconds)
        return True


class EventDispatcher:
    """Single consumer that feeds queued watch events to a handler, in order.

    Runs on its own daemon thread.  Each ADDED, MODIFIED or DELETED event
    first advances the tracked resume token and then calls ``handler``; the
    next event is not taken off the queue until the handler returns, so
    invocations never overlap.  BOOKMARK events only advance the token and
    ERROR events are logged and otherwise ignored.

    The loop exits quietly once ``should_stop`` returns True.  A handler
    exception or an unknown event kind stops the dispatcher and is kept in
    ``failure``.  ``on_exit`` runs whenever the dispatcher stops, so the owner
    can tear down the stream feeding the queue.
    """

    def __init__(
        self,
        events: EventQueue,
        handler: EventHandler,
        tracker: ResourceVersionTracker,
        should_stop: Callable[[], bool],
        *,
        name: str = "resources",
        logger: logging.Logger | None = None,
        on_exit: Callable[[], None] | None = None,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.events = events
        self.handler = handler
        self.tracker = tracker
        self.should_stop = should_stop
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.on_exit = on_exit
        self.poll_interval_seconds = poll_interval_seconds
        self.failure: BaseException | None = None
        self.finished = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"watch-dispatcher-{self.name}", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise self.failure

    def run(self) -> None:
        try:
            while not self.should_stop():
                event = self.events.get(timeout=self.poll_interval_seconds)
                if event is None:
                    continue
                try:
                    if self.should_stop():
                        return
                    self.dispatch(event)
                except BaseException as exc:
                    # Recorded before task_done so a drained queue never hides it.
                    # BaseException too: a handler's SystemExit is re-raised by the watch.
                    self.failure = exc
                    self.logger.error("Watch dispatcher for %s stopped: %s", self.name, exc)
                    return
                finally:
                    self.events.task_done()
                    METRICS.watch_queue_depth.labels(resource=self.name).set(len(self.events))
        finally:
            self.finished.set()
            if self.on_exit is not None:
                self.on_exit()

    def dispatch(self, event: WatchEvent) -> None:
        """Handle one event.  Raises :class:`WatchProtocolError` for unknown kinds."""
        if event.type is WatchEventType.BOOKMARK:
            self.tracker.advance(event.resource_version)
            return

        if event.type is WatchEventType.ERROR:
            self.logger.warning("Watch for %s reported an error: %s", self.name, event.value)
            return

        if event.type in (WatchEventType.ADDED, WatchEventType.MODIFIED, WatchEventType.DELETED):
            self.tracker.advance(event.resource_version)
            started = time.monotonic()
            try:
                self.handler(event)
            finally:
                METRICS.watch_handler_duration_seconds.labels(resource=self.name).observe(
                    time.monotonic() - started
                )
            return

        raise WatchProtocolError(f"unexpected watch event type {event.type!r}")
