from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubewatch.src.events import ResourceVersionExpiredError, WatchEvent
from kubewatch.src.health import ProbeState, start_health_server
from kubewatch.src.kube import build_clients, build_list_function, load_kube_configuration
from kubewatch.src.leader import LeaseLeaderElector
from kubewatch.src.metrics import METRICS
from kubewatch.src.retry import RetryingApi, RetryPolicy
from kubewatch.src.settings import ControllerSettings, load_settings
from kubewatch.src.watcher import Watcher

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger("kubewatch")

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects.

    Extra fields passed through ``logging``'s ``extra=`` mapping under the
    ``event`` key are merged into the entry.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        event = getattr(record, "event", None)
        if isinstance(event, dict):
            log_entry.update(event)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str | None = None) -> None:
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def log_event(event: WatchEvent) -> None:
    """Default handler: one structured log line per change notification."""
    ref = f"{event.namespace}/{event.name}" if event.namespace else str(event.name)
    LOGGER.info(
        "%s %s",
        event.type_name,
        ref,
        extra={
            "event": {
                "type": event.type_name,
                "object": ref,
                "resourceVersion": event.resource_version,
            }
        },
    )


def build_watcher(settings: ControllerSettings, core_api: object, custom_api: object) -> Watcher:
    list_func = build_list_function(
        settings.resource,
        namespaced=settings.namespace is not None,
        core_api=core_api,  # type: ignore[arg-type]
        custom_api=custom_api,  # type: ignore[arg-type]
    )
    return Watcher(
        list_func,
        name=settings.resource,
        logger=logging.getLogger("kubewatch.watcher"),
        retry_policy=RetryPolicy(max_attempts=settings.api_retry_max_attempts),
        reconnect_backoff_seconds=settings.reconnect_backoff_seconds,
        reconnect_backoff_max_seconds=settings.reconnect_backoff_max_seconds,
    )


def run_watch(watcher: Watcher, settings: ControllerSettings, stop_event: threading.Event) -> None:
    """Run the watch until *stop_event* is set.

    A configured starting resource version that has already expired is
    reported and replaced by a watch from current state.
    """
    scope = settings.watch_scope()
    try:
        watcher.watch(
            log_event,
            scope=scope,
            resource_version=settings.resource_version,
            stop_event=stop_event,
        )
    except ResourceVersionExpiredError as exc:
        LOGGER.error("%s; starting from current state instead", exc)
        watcher.watch(log_event, scope=scope, stop_event=stop_event)


def main() -> None:
    """Entrypoint: configure logging, then run the watch, gated by leader election when enabled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    load_kube_configuration()
    core_api, custom_api, coordination_api = build_clients()
    watcher = build_watcher(settings, core_api, custom_api)

    election = settings.leader_election
    leader_ready = threading.Event() if election is not None else None
    elector = None
    if election is not None:
        elector = LeaseLeaderElector(
            coordination_api=RetryingApi(
                coordination_api,
                RetryPolicy(max_attempts=2, initial_delay_seconds=0.2, max_delay_seconds=1.0),
            ),
            config=election,
        )

    health_server = start_health_server(
        ProbeState(
            watching=watcher.ready,
            leader=leader_ready,
            current_leader=(lambda: elector.leader) if elector is not None else None,
        ),
        port=settings.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        watcher.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if elector is None or election is None:
        run_watch(watcher, settings, shutdown_event)
        health_server.shutdown()
        LOGGER.info("Watch stopped")
        return

    watch_thread: threading.Thread | None = None
    watch_stop = threading.Event()
    state_lock = threading.Lock()
    # Long enough for an in-flight handler to finish; a second watch must not
    # start while the previous one still runs.
    watch_stop_join_timeout_seconds = election.lease_duration_seconds

    def on_started_leading() -> None:
        nonlocal watch_thread, watch_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if watch_thread is not None and watch_thread.is_alive():
                LOGGER.error("Refusing to start a second watch while the previous one still runs")
                shutdown_event.set()
                return

            watch_stop = threading.Event()
            if leader_ready is not None:
                leader_ready.set()
            stop = watch_stop

            def _run() -> None:
                unexpected_exit = True
                try:
                    run_watch(watcher, settings, stop)
                    unexpected_exit = not stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Watch exited without a stop signal; terminating process")
                except Exception:
                    LOGGER.exception("Watch thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            watch_thread = threading.Thread(target=_run, name="watch", daemon=True)
            watch_thread.start()

    def on_stopped_leading() -> None:
        nonlocal watch_thread
        with state_lock:
            if leader_ready is not None:
                leader_ready.clear()
            watch_stop.set()
            watcher.request_stop()
            if watch_thread is None:
                return
            watch_thread.join(timeout=watch_stop_join_timeout_seconds)
            if watch_thread.is_alive():
                LOGGER.error(
                    "Watch did not stop within %ss after losing leadership; shutting down",
                    watch_stop_join_timeout_seconds,
                )
                shutdown_event.set()
                return
            watch_thread = None

    def on_new_leader(identity: str) -> None:
        if identity != election.identity:
            LOGGER.info("Replica %s now leads %s", identity, election.lease_ref)

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
        on_new_leader=on_new_leader,
    )
    on_stopped_leading()
    health_server.shutdown()
    LOGGER.info("Watch stopped")


if __name__ == "__main__":
    main()
