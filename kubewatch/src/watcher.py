from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException
from kubernetes.watch.watch import iter_resp_lines

from kubewatch.src.dispatcher import (
    EventDispatcher,
    EventHandler,
    EventQueue,
    ResourceVersionTracker,
)
from kubewatch.src.events import (
    EXPIRED_REASON,
    HTTP_STATUS_GONE,
    ResourceVersionExpiredError,
    WatchEvent,
    WatchEventType,
    WatchScope,
    WatchStreamError,
    is_expired_error,
)
from kubewatch.src.metrics import METRICS
from kubewatch.src.retry import RetryPolicy

ListFunction = Callable[..., Any]


class WatchSession:
    """One streaming watch connection at a fixed resume token.

    ``run`` issues the list call with ``watch=True``, decodes each line into
    a :class:`WatchEvent` and puts it on the queue.  It returns when the
    server closes the stream (normally after ``timeoutSeconds``) or when
    ``should_stop`` becomes true, and raises when the transport fails or the
    server sends an ``ERROR`` event.  ``close`` may be called from any thread
    to interrupt a blocked read.
    """

    def __init__(
        self,
        list_func: ListFunction,
        scope: WatchScope,
        resource_version: str,
        events: EventQueue,
        *,
        name: str = "resources",
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_func = list_func
        self.scope = scope
        self.resource_version = resource_version
        self.events = events
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._decoder = watch.Watch()
        self._return_type = self._decoder.get_return_type(list_func)
        self._response: Any = None
        self._closed = False
        self._lock = threading.Lock()

    def request_kwargs(self) -> dict[str, Any]:
        kwargs = self.scope.request_kwargs()
        # The API server rejects resourceVersionMatch on watch requests; it only
        # applies to the validation list call.
        kwargs.pop("resource_version_match", None)
        kwargs.update(watch=True, allow_watch_bookmarks=True, _preload_content=False)
        if self.resource_version:
            kwargs["resource_version"] = self.resource_version
        return kwargs

    def run(self, should_stop: Callable[[], bool]) -> int:
        """Stream events onto the queue.  Returns the number of events enqueued."""
        response = self.list_func(**self.request_kwargs())
        with self._lock:
            if self._closed:
                _release(response)
                return 0
            self._response = response

        received = 0
        try:
            for line in iter_resp_lines(response):
                if should_stop():
                    break
                try:
                    raw = self._decoder.unmarshal_event(line, self._return_type)
                except ValueError:
                    self.logger.warning("Skipping undecodable watch line for %s", self.name)
                    continue
                if not isinstance(raw, dict) or "type" not in raw:
                    continue
                event = WatchEvent.from_raw(raw)
                self.events.put(event)
                received += 1
                METRICS.watch_events_total.labels(resource=self.name, type=event.type_name).inc()
                METRICS.watch_queue_depth.labels(resource=self.name).set(len(self.events))
                if event.type is WatchEventType.ERROR:
                    raise self._stream_error(event.value)
        finally:
            self.close()
        return received

    def _stream_error(self, status: Any) -> Exception:
        status = status if isinstance(status, dict) else {}
        code = status.get("code")
        reason = status.get("reason")
        message = status.get("message")
        if reason == EXPIRED_REASON or code == HTTP_STATUS_GONE:
            return ResourceVersionExpiredError(self.resource_version, message)
        return WatchStreamError(code, reason, message)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            response, self._response = self._response, None
        if response is not None:
            _release(response)


def _release(response: Any) -> None:
    for method in ("close", "release_conn"):
        release = getattr(response, method, None)
        if release is None:
            continue
        try:
            release()
        except Exception:
            logging.getLogger(__name__).debug(
                "Ignoring error from response.%s()", method, exc_info=True
            )


class Watcher:
    """Keeps a logical watch over a resource collection alive indefinitely.

    ``watch`` validates the caller's starting resource version, then opens
    :class:`WatchSession` after :class:`WatchSession` while an
    :class:`EventDispatcher` thread delivers every event to the handler in
    arrival order.  Recovery depends on why a stream ended:

    * the server closed it (``timeoutSeconds`` elapsed): reconnect at once
      from the last handled resource version;
    * the resource version expired (``410``/``Expired``): reconnect at once
      with no resource version, so the server replays current state as
      ADDED events (a full resync);
    * any other failure: reconnect from the last handled resource version
      after a jittered exponential backoff (``reconnect_backoff_seconds``
      doubling up to ``reconnect_backoff_max_seconds``; ``0`` disables it).

    Before every reconnect the loop waits until the dispatcher has handled
    everything already queued, so the resume token it reads is exactly the
    last handled one.  Delivery is therefore at-least-once: events between
    the last handled token and a disconnect may be delivered again.

    Only a stop request ends the loop normally.  An exception raised by the
    handler, or a :class:`~kubewatch.src.events.WatchProtocolError`, stops
    the watch and is re-raised from ``watch``.
    """

    def __init__(
        self,
        list_func: ListFunction,
        *,
        name: str = "resources",
        logger: logging.Logger | None = None,
        retry_policy: RetryPolicy | None = None,
        reconnect_backoff_seconds: float = 1.0,
        reconnect_backoff_max_seconds: float = 30.0,
        poll_interval_seconds: float = 0.1,
        dispatcher_stop_timeout_seconds: float = 30.0,
    ) -> None:
        if reconnect_backoff_seconds < 0:
            raise ValueError("reconnect_backoff_seconds must be >= 0")
        if reconnect_backoff_max_seconds < reconnect_backoff_seconds:
            raise ValueError(
                "reconnect_backoff_max_seconds must be >= reconnect_backoff_seconds"
            )
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

        self.list_func = list_func
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.retry_policy = retry_policy or RetryPolicy(logger=self.logger)
        self.reconnect_backoff_seconds = reconnect_backoff_seconds
        self.reconnect_backoff_max_seconds = reconnect_backoff_max_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.dispatcher_stop_timeout_seconds = dispatcher_stop_timeout_seconds

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_session: WatchSession | None = None
        self._active_stop: threading.Event | None = None
        self._session_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream.

        Also sets the stop event of the running :meth:`watch`, which wakes a
        pending reconnect backoff.
        """
        self._external_stop.set()
        with self._session_lock:
            stop = self._active_stop
        if stop is not None:
            stop.set()
        self._close_active_session()

    def _close_active_session(self) -> None:
        with self._session_lock:
            session = self._active_session
        if session is not None:
            session.close()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def validate_resource_version(self, scope: WatchScope, resource_version: str) -> None:
        """Check *resource_version* with a single-item list call.

        Raises :class:`ResourceVersionExpiredError` when the server no longer
        retains that version.  Any other failure is logged and ignored; the
        watch itself will surface persistent problems.
        """
        kwargs = scope.request_kwargs()
        kwargs.update(limit=1, resource_version=resource_version, watch=False)
        try:
            self.retry_policy.call(self.list_func, **kwargs)
        except Exception as exc:
            if is_expired_error(exc):
                self.logger.error(
                    "Starting resourceVersion %s for %s has expired", resource_version, self.name
                )
                raise ResourceVersionExpiredError(resource_version) from exc
            self.logger.warning(
                "Could not validate resourceVersion %s for %s; watching anyway",
                resource_version,
                self.name,
                exc_info=True,
            )

    def watch(
        self,
        handler: EventHandler,
        scope: WatchScope | None = None,
        resource_version: str | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Watch until ``stop_event`` is set or :meth:`request_stop` is called."""
        scope = scope or WatchScope()
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        with self._session_lock:
            self._active_stop = stop

        if resource_version:
            self.validate_resource_version(scope, resource_version)

        tracker = ResourceVersionTracker(resource_version)
        events = EventQueue()
        halted = threading.Event()

        def should_stop() -> bool:
            return halted.is_set() or self._should_stop(stop)

        dispatcher = EventDispatcher(
            events,
            handler,
            tracker,
            should_stop,
            name=self.name,
            logger=self.logger,
            on_exit=self._close_active_session,
            poll_interval_seconds=self.poll_interval_seconds,
        )

        def session_should_stop() -> bool:
            return should_stop() or dispatcher.failed or dispatcher.finished.is_set()

        def drain_aborted() -> bool:
            return self._should_stop(stop) or dispatcher.finished.is_set()

        dispatcher.start()
        backoff_seconds = self.reconnect_backoff_seconds
        stream_count = 0
        try:
            while not session_should_stop():
                session = WatchSession(
                    self.list_func,
                    scope,
                    tracker.get(),
                    events,
                    name=self.name,
                    logger=self.logger,
                )
                with self._session_lock:
                    self._active_session = session
                if session_should_stop():
                    break

                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.name).inc()
                stream_count += 1
                self.logger.info(
                    "Watching %s from resourceVersion %s",
                    self.name,
                    session.resource_version or "<current>",
                )

                expired = False
                failed = False
                try:
                    self.ready.set()
                    session.run(session_should_stop)
                except Exception as exc:
                    if session_should_stop():
                        self.logger.debug("Watch stream for %s interrupted", self.name)
                    elif is_expired_error(exc):
                        expired = True
                        METRICS.watch_expired_total.labels(resource=self.name).inc()
                        self.logger.warning(
                            "Watch resourceVersion %s for %s expired; resyncing from current state",
                            session.resource_version,
                            self.name,
                        )
                    else:
                        failed = True
                        METRICS.watch_errors_total.labels(resource=self.name).inc()
                        if isinstance(exc, ApiException) and exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API watch on %s denied (status=%s). "
                                "Check RBAC and service account permissions.",
                                self.name,
                                exc.status,
                            )
                        else:
                            self.logger.exception("Watch stream for %s failed", self.name)
                finally:
                    self.ready.clear()
                    session.close()
                    with self._session_lock:
                        if self._active_session is session:
                            self._active_session = None

                events.wait_drained(drain_aborted, self.poll_interval_seconds)
                dispatcher.raise_for_failure()
                if self._should_stop(stop):
                    break

                if expired:
                    tracker.reset()
                elif failed:
                    if backoff_seconds > 0:
                        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                        stop.wait(timeout=jittered)
                        backoff_seconds = min(
                            backoff_seconds * 2, self.reconnect_backoff_max_seconds
                        )
                else:
                    backoff_seconds = self.reconnect_backoff_seconds
        finally:
            halted.set()
            self.ready.clear()
            self._close_active_session()
            with self._session_lock:
                if self._active_stop is stop:
                    self._active_stop = None
            dispatcher.join(timeout=self.dispatcher_stop_timeout_seconds)
            if not dispatcher.finished.is_set():
                self.logger.warning(
                    "Dispatcher for %s still busy in handler after %ss",
                    self.name,
                    self.dispatcher_stop_timeout_seconds,
                )

        dispatcher.raise_for_failure()


def watch_resource(
    list_func: ListFunction,
    handler: EventHandler,
    *,
    namespace: str | None = None,
    label_selector: str | None = None,
    field_selector: str | None = None,
    resource_version: str | None = None,
    resource_version_match: str | None = None,
    timeout_seconds: int | None = None,
    stop_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Watch a collection with *handler* until *stop_event* is set.

    Shorthand for building a :class:`WatchScope` and a :class:`Watcher`.
    """
    scope = WatchScope(
        namespace=namespace,
        label_selector=label_selector,
        field_selector=field_selector,
        resource_version_match=resource_version_match,
        timeout_seconds=timeout_seconds,
    )
    Watcher(list_func, logger=logger).watch(
        handler,
        scope=scope,
        resource_version=resource_version,
        stop_event=stop_event,
    )
