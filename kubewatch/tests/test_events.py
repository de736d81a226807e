from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from kubernetes.client import ApiException

from kubewatch.src.events import (
    ResourceVersionExpiredError,
    WatchEvent,
    WatchEventType,
    WatchScope,
    WatchStreamError,
    is_expired_error,
    resource_version_of,
)


def test_from_raw_maps_known_types() -> None:
    event = WatchEvent.from_raw(
        {"type": "MODIFIED", "object": {"metadata": {"name": "a", "resourceVersion": "7"}}}
    )

    assert event.type is WatchEventType.MODIFIED
    assert event.type_name == "MODIFIED"
    assert event.resource_version == "7"
    assert event.name == "a"


def test_from_raw_keeps_unknown_type_as_string() -> None:
    event = WatchEvent.from_raw({"type": "RENAMED", "object": {}})

    assert event.type == "RENAMED"
    assert event.type_name == "RENAMED"


def test_resource_version_reads_typed_models() -> None:
    obj = SimpleNamespace(
        metadata=SimpleNamespace(name="cm", namespace="ns", resource_version="42")
    )
    event = WatchEvent(WatchEventType.ADDED, obj)

    assert event.resource_version == "42"
    assert event.namespace == "ns"
    assert resource_version_of(obj) == "42"


def test_error_events_have_no_resource_version() -> None:
    event = WatchEvent(
        WatchEventType.ERROR, {"code": 500, "metadata": {"resourceVersion": "9"}}
    )

    assert event.resource_version is None


def test_resource_version_missing_returns_none() -> None:
    assert resource_version_of({"metadata": {}}) is None
    assert resource_version_of({}) is None
    assert resource_version_of(SimpleNamespace(metadata=None)) is None


def test_scope_request_kwargs_only_includes_set_fields() -> None:
    scope = WatchScope(namespace="default", label_selector="app=web", timeout_seconds=60)

    assert scope.request_kwargs() == {
        "namespace": "default",
        "label_selector": "app=web",
        "timeout_seconds": 60,
    }
    assert WatchScope().request_kwargs() == {}


def test_scope_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be >= 1"):
        WatchScope(timeout_seconds=0)


@pytest.mark.parametrize(
    "exc",
    [
        ApiException(status=410, reason="Gone"),
        ApiException(status=400, reason="Expired: too old resource version: 1 (5)"),
        ResourceVersionExpiredError("5"),
        WatchStreamError(410, "Gone"),
        WatchStreamError(None, "Expired"),
    ],
)
def test_is_expired_error_detects_expiry(exc: BaseException) -> None:
    assert is_expired_error(exc) is True


def test_is_expired_error_reads_status_body() -> None:
    exc = ApiException(status=400, reason="Bad Request")
    exc.body = json.dumps({"kind": "Status", "reason": "Expired", "code": 400})

    assert is_expired_error(exc) is True


@pytest.mark.parametrize(
    "exc",
    [
        ApiException(status=500, reason="Internal Server Error"),
        ApiException(status=403, reason="Forbidden"),
        WatchStreamError(500, "InternalError"),
        ConnectionError("reset"),
    ],
)
def test_is_expired_error_rejects_other_failures(exc: BaseException) -> None:
    assert is_expired_error(exc) is False
