from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from kubewatch.src.events import WatchScope
from kubewatch.src.kube import is_cluster_scoped, parse_resource
from kubewatch.src.leader import LeaderElectionConfig, default_identity


class ConfigError(RuntimeError):
    """Raised when the runtime configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable runtime configuration loaded at startup.

    Attributes:
        resource: Core plural (``configmaps``) or ``group/version/plural``.
        namespace: Namespace to watch; ``None`` watches every namespace.
        label_selector: Optional label selector for the watch.
        field_selector: Optional field selector for the watch.
        resource_version: Starting resume token; empty starts from current state.
        resource_version_match: Optional ``resourceVersionMatch`` for list calls.
        timeout_seconds: Server-side stream timeout per watch session.
        reconnect_backoff_seconds: First delay after a failed stream.
        reconnect_backoff_max_seconds: Cap for the doubling reconnect delay.
        api_retry_max_attempts: Attempts per API call before giving up.
        health_port: Port of the health and metrics HTTP server.
        leader_election: Lease settings, or ``None`` when election is disabled.
    """

    resource: str
    namespace: str | None
    label_selector: str | None
    field_selector: str | None
    resource_version: str | None
    resource_version_match: str | None
    timeout_seconds: int
    reconnect_backoff_seconds: int
    reconnect_backoff_max_seconds: int
    api_retry_max_attempts: int
    health_port: int
    leader_election: LeaderElectionConfig | None

    def watch_scope(self) -> WatchScope:
        return WatchScope(
            namespace=self.namespace,
            label_selector=self.label_selector,
            field_selector=self.field_selector,
            resource_version_match=self.resource_version_match,
            timeout_seconds=self.timeout_seconds,
        )


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _optional(values: Mapping[str, str], name: str) -> str | None:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load runtime settings from the environment.

    Raises :class:`ConfigError` for malformed values so the process refuses to
    start rather than watching the wrong thing.
    """
    values = env if env is not None else os.environ

    resource = (values.get("WATCH_RESOURCE") or "configmaps").strip()
    try:
        parse_resource(resource)
    except ValueError as exc:
        raise ConfigError(f"WATCH_RESOURCE is invalid: {exc}") from exc

    namespace = _optional(values, "WATCH_NAMESPACE")
    if namespace and is_cluster_scoped(resource):
        raise ConfigError(f"WATCH_NAMESPACE cannot be set for cluster-scoped {resource!r}")

    backoff = env_int(values, "WATCH_RECONNECT_BACKOFF_SECONDS", 1, minimum=0)
    backoff_max = env_int(values, "WATCH_RECONNECT_BACKOFF_MAX_SECONDS", 30, minimum=1)
    if backoff_max < backoff:
        raise ConfigError(
            "WATCH_RECONNECT_BACKOFF_MAX_SECONDS must be >= WATCH_RECONNECT_BACKOFF_SECONDS"
        )

    leader_election = None
    if parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True):
        try:
            leader_election = LeaderElectionConfig(
                namespace=_optional(values, "LEADER_ELECTION_NAMESPACE") or namespace or "default",
                lease_name=_optional(values, "LEADER_ELECTION_LEASE_NAME") or "kubewatch-leader",
                identity=_optional(values, "LEADER_ELECTION_IDENTITY")
                or values.get("HOSTNAME")
                or values.get("POD_NAME")
                or default_identity(),
                lease_duration_seconds=env_int(
                    values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 30, minimum=1
                ),
                renew_deadline_seconds=env_int(
                    values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 15, minimum=1
                ),
                retry_period_seconds=env_int(
                    values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1
                ),
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid leader election settings: {exc}") from exc

    return ControllerSettings(
        resource=resource,
        namespace=namespace,
        label_selector=_optional(values, "WATCH_LABEL_SELECTOR"),
        field_selector=_optional(values, "WATCH_FIELD_SELECTOR"),
        resource_version=_optional(values, "WATCH_RESOURCE_VERSION"),
        resource_version_match=_optional(values, "WATCH_RESOURCE_VERSION_MATCH"),
        timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        reconnect_backoff_seconds=backoff,
        reconnect_backoff_max_seconds=backoff_max,
        api_retry_max_attempts=env_int(values, "API_RETRY_MAX_ATTEMPTS", 5, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader_election=leader_election,
    )
