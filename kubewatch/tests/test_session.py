from __future__ import annotations

import threading

import pytest
from urllib3.exceptions import ProtocolError

from kubewatch.src.dispatcher import EventQueue
from kubewatch.src.events import (
    ResourceVersionExpiredError,
    WatchEventType,
    WatchScope,
    WatchStreamError,
)
from kubewatch.src.watcher import WatchSession
from kubewatch.tests.fakes import FakeResponse, ScriptedLister, error_line, watch_line


def _session(lister: ScriptedLister, resource_version: str = "100") -> tuple[WatchSession, EventQueue]:
    events = EventQueue()
    session = WatchSession(
        lister,
        WatchScope(namespace="default", label_selector="app=web", timeout_seconds=60),
        resource_version,
        events,
        name="configmaps",
    )
    return session, events


def _drain(events: EventQueue) -> list[tuple[str, str | None]]:
    drained = []
    while (event := events.get(timeout=0.01)) is not None:
        drained.append((event.type_name, event.resource_version))
        events.task_done()
    return drained


def test_request_carries_scope_token_and_watch_flags() -> None:
    lister = ScriptedLister([FakeResponse()], threading.Event())
    session, _ = _session(lister)

    session.run(lambda: False)

    assert lister.watch_calls == [
        {
            "namespace": "default",
            "label_selector": "app=web",
            "timeout_seconds": 60,
            "watch": True,
            "allow_watch_bookmarks": True,
            "_preload_content": False,
            "resource_version": "100",
        }
    ]


def test_resource_version_match_is_not_sent_on_watch() -> None:
    lister = ScriptedLister([FakeResponse(), FakeResponse()], threading.Event())
    scope = WatchScope(namespace="default", resource_version_match="NotOlderThan")

    for resource_version in ("100", ""):
        WatchSession(lister, scope, resource_version, EventQueue()).run(lambda: False)

    assert [call.get("resource_version") for call in lister.watch_calls] == ["100", None]
    assert all("resource_version_match" not in call for call in lister.watch_calls)


def test_empty_token_is_omitted_from_request() -> None:
    lister = ScriptedLister([FakeResponse()], threading.Event())
    session, _ = _session(lister, resource_version="")

    session.run(lambda: False)

    assert "resource_version" not in lister.watch_calls[0]


def test_enqueues_events_in_stream_order_and_closes_response() -> None:
    response = FakeResponse(
        [
            watch_line("ADDED", "101"),
            watch_line("BOOKMARK", "102"),
            watch_line("DELETED", "103"),
        ]
    )
    lister = ScriptedLister([response], threading.Event())
    session, events = _session(lister)

    received = session.run(lambda: False)

    assert received == 3
    assert _drain(events) == [("ADDED", "101"), ("BOOKMARK", "102"), ("DELETED", "103")]
    assert response.closed.is_set()
    assert response.released


def test_expired_error_event_is_enqueued_then_raised() -> None:
    response = FakeResponse([error_line(410, "Expired", "too old resource version")])
    lister = ScriptedLister([response], threading.Event())
    session, events = _session(lister)

    with pytest.raises(ResourceVersionExpiredError) as exc_info:
        session.run(lambda: False)

    assert exc_info.value.resource_version == "100"
    assert _drain(events) == [("ERROR", None)]
    assert response.closed.is_set()


def test_other_error_event_raises_stream_error() -> None:
    lister = ScriptedLister(
        [FakeResponse([error_line(500, "InternalError", "etcd unavailable")])], threading.Event()
    )
    session, _ = _session(lister)

    with pytest.raises(WatchStreamError) as exc_info:
        session.run(lambda: False)

    assert exc_info.value.code == 500
    assert exc_info.value.reason == "InternalError"


def test_transport_error_propagates_after_delivered_events() -> None:
    lister = ScriptedLister(
        [FakeResponse([watch_line("MODIFIED", "101")], error=ProtocolError("connection broken"))],
        threading.Event(),
    )
    session, events = _session(lister)

    with pytest.raises(ProtocolError):
        session.run(lambda: False)

    assert _drain(events) == [("MODIFIED", "101")]


def test_stop_check_ends_stream_early() -> None:
    lister = ScriptedLister(
        [FakeResponse([watch_line("ADDED", "1"), watch_line("ADDED", "2")])], threading.Event()
    )
    session, events = _session(lister)

    received = session.run(lambda: True)

    assert received == 0
    assert len(events) == 0


def test_close_before_run_releases_response_immediately() -> None:
    response = FakeResponse([watch_line("ADDED", "1")])
    lister = ScriptedLister([response], threading.Event())
    session, events = _session(lister)

    session.close()
    received = session.run(lambda: False)

    assert received == 0
    assert response.closed.is_set()
    assert len(events) == 0


def test_unknown_event_kind_is_passed_through_for_the_dispatcher() -> None:
    lister = ScriptedLister([FakeResponse([watch_line("RENAMED", "5")])], threading.Event())
    session, events = _session(lister)

    session.run(lambda: False)

    event = events.get(timeout=0.01)
    assert event is not None
    assert event.type == "RENAMED"
    assert not isinstance(event.type, WatchEventType)
