from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

EXPIRED_REASON = "Expired"
HTTP_STATUS_GONE = 410


class WatchEventType(str, Enum):
    """Kinds of change notification emitted by a Kubernetes watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


class WatchError(Exception):
    """Base class for errors raised by the watch engine."""


class ResourceVersionExpiredError(WatchError):
    """The store no longer retains history for the requested resource version."""

    def __init__(self, resource_version: str | None, message: str | None = None) -> None:
        self.resource_version = resource_version
        super().__init__(
            message or f"resourceVersion {resource_version!r} is too old and has expired"
        )


class WatchStreamError(WatchError):
    """The server terminated the stream with a non-expiry ``ERROR`` event."""

    def __init__(self, code: int | None, reason: str | None, message: str | None = None) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"watch stream error (code={code}, reason={reason}): {message or ''}")


class WatchProtocolError(WatchError):
    """A notification kind outside the watch protocol was received."""


def resource_version_of(value: Any) -> str | None:
    """Return the ``resourceVersion`` of a watched object.

    Typed client models expose ``metadata.resource_version``; custom objects
    and bookmarks arrive as plain dicts with ``metadata.resourceVersion``.
    """
    if isinstance(value, dict):
        metadata = value.get("metadata")
        if isinstance(metadata, dict):
            return metadata.get("resourceVersion") or None
        return None
    metadata = getattr(value, "metadata", None)
    return getattr(metadata, "resource_version", None) or None


@dataclass(frozen=True)
class WatchEvent:
    """One observed change to a resource, or an error reported by the stream.

    ``type`` is a :class:`WatchEventType` for every kind the protocol
    defines; anything else is kept as the raw wire string so the dispatcher
    can reject it.
    """

    type: WatchEventType | str
    value: Any

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> WatchEvent:
        """Build an event from a decoded watch line (``{"type": ..., "object": ...}``)."""
        raw_type = str(raw.get("type", ""))
        try:
            event_type: WatchEventType | str = WatchEventType(raw_type)
        except ValueError:
            event_type = raw_type
        return cls(type=event_type, value=raw.get("object"))

    @property
    def type_name(self) -> str:
        if isinstance(self.type, WatchEventType):
            return self.type.value
        return str(self.type)

    @property
    def resource_version(self) -> str | None:
        if self.type is WatchEventType.ERROR:
            return None
        return resource_version_of(self.value)

    @property
    def name(self) -> str | None:
        if isinstance(self.value, dict):
            return (self.value.get("metadata") or {}).get("name")
        return getattr(getattr(self.value, "metadata", None), "name", None)

    @property
    def namespace(self) -> str | None:
        if isinstance(self.value, dict):
            return (self.value.get("metadata") or {}).get("namespace")
        return getattr(getattr(self.value, "metadata", None), "namespace", None)


@dataclass(frozen=True)
class WatchScope:
    """Immutable selection parameters for a watch.

    ``namespace=None`` watches the whole cluster.  ``timeout_seconds`` is a
    hint passed to the API server, which closes the stream after roughly that
    long so the watch reconnects.
    """

    namespace: str | None = None
    label_selector: str | None = None
    field_selector: str | None = None
    resource_version_match: str | None = None
    timeout_seconds: int | None = None

    def __post_init__(self) -> None:
        if self.timeout_seconds is not None and self.timeout_seconds < 1:
            raise ValueError("timeout_seconds must be >= 1")

    def request_kwargs(self) -> dict[str, Any]:
        """Return the keyword arguments shared by list and watch calls."""
        kwargs: dict[str, Any] = {}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        if self.field_selector:
            kwargs["field_selector"] = self.field_selector
        if self.resource_version_match:
            kwargs["resource_version_match"] = self.resource_version_match
        if self.timeout_seconds is not None:
            kwargs["timeout_seconds"] = self.timeout_seconds
        return kwargs


def _status_reason(exc: ApiException) -> str | None:
    body = getattr(exc, "body", None)
    if body:
        try:
            status = json.loads(body)
        except (TypeError, ValueError):
            status = None
        if isinstance(status, dict) and status.get("reason"):
            return str(status["reason"])
    reason = getattr(exc, "reason", None)
    if not reason:
        return None
    # Errors raised for watch ERROR events carry "<reason>: <message>".
    return str(reason).partition(":")[0].strip()


def is_expired_error(exc: BaseException) -> bool:
    """Return True when *exc* reports that a resume token has expired."""
    if isinstance(exc, ResourceVersionExpiredError):
        return True
    if isinstance(exc, WatchStreamError):
        return exc.reason == EXPIRED_REASON or exc.code == HTTP_STATUS_GONE
    if isinstance(exc, ApiException):
        return exc.status == HTTP_STATUS_GONE or _status_reason(exc) == EXPIRED_REASON
    return False
