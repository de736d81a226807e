from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from kubewatch.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderElectionConfig:
    """Settings for :class:`LeaseLeaderElector`.

    Attributes:
        namespace: Namespace hosting the Lease object.
        lease_name: Lease object name; must be a valid Kubernetes name.
        identity: Unique identity of this candidate, usually the pod name.
            Two candidates sharing an identity would both believe they lead.
        lease_duration_seconds: How long a follower waits after the last
            renewal before it may take the lease over.
        renew_deadline_seconds: How long the leader keeps trying to renew
            before giving up leadership.  Must be below the lease duration.
        retry_period_seconds: Interval between election attempts.  Must be
            below the renew deadline.
    """

    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int = 30
    renew_deadline_seconds: int = 15
    retry_period_seconds: int = 2

    def __post_init__(self) -> None:
        for attr in ("namespace", "lease_name", "identity"):
            if not str(getattr(self, attr) or "").strip():
                raise ValueError(f"{attr} must be a non-empty string")
        if self.lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if self.renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if self.retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

    @property
    def lease_ref(self) -> str:
        return f"{self.namespace}/{self.lease_name}"


class LeaseLeaderElector:
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    Ensures only one replica runs its watch at a time.  The algorithm:

    1. Try to read the Lease object.  If it does not exist, create it and
       become leader.
    2. If the Lease exists and *we* are the holder, renew it (update
       ``renewTime``).
    3. If another identity holds the Lease, wait until
       ``renewTime + leaseDurationSeconds`` has passed (i.e. the holder
       failed to renew), then take over.
    4. On ``409 Conflict`` (concurrent update), retry on the next cycle.

    Failed renewals are tolerated until ``renew_deadline_seconds`` has passed
    since the last success; after that ``on_stopped_leading`` is invoked.
    Every time the observed holder changes, ``on_new_leader`` receives the
    new holder identity, whether or not it is us.

    All timestamps use UTC to avoid timezone ambiguity across nodes.
    """

    def __init__(
        self,
        coordination_api: Any,
        config: LeaderElectionConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.coordination_api = coordination_api
        self.config = config
        self.logger = logger or LOGGER
        self._is_leader = False
        self._observed_leader: str | None = None
        self._pending_new_leader: str | None = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def leader(self) -> str | None:
        """Identity of the last observed lease holder, if any."""
        return self._observed_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _observe_holder(self, holder: str | None) -> None:
        if holder and holder != self._observed_leader:
            self._observed_leader = holder
            self._pending_new_leader = holder

    def _try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name,
                namespace=self.config.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            self.logger.warning("Failed to read lease %s: %s", self.config.lease_ref, exc.reason)
            return False

        spec = lease.spec
        if spec is None:
            return self._update_lease(lease, now)

        holder = spec.holder_identity
        renew_time = spec.renew_time
        duration = spec.lease_duration_seconds or self.config.lease_duration_seconds

        if holder == self.config.identity:
            return self._update_lease(lease, now)

        if holder and renew_time is not None:
            renew_aware = renew_time if renew_time.tzinfo else renew_time.replace(tzinfo=UTC)
            elapsed = (now - renew_aware).total_seconds()
            if elapsed < duration:
                self._observe_holder(holder)
                return False

        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        """Create a new Lease object, claiming leadership.

        Returns False on ``409 Conflict`` (another replica beat us to it).
        """
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.config.lease_name, namespace=self.config.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.config.identity,
                lease_duration_seconds=self.config.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.config.namespace,
                body=lease,
            )
            self.logger.info("Acquired leader lease %s", self.config.lease_ref)
            self._observe_holder(self.config.identity)
            return True
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug("Lease %s already exists, will retry", self.config.lease_ref)
                return False
            self.logger.warning(
                "Failed to create lease %s: %s", self.config.lease_ref, exc.reason
            )
            return False

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Update an existing Lease to renew or acquire leadership.

        Sets ``acquireTime`` when leadership is first obtained or when
        taking over from a different holder.
        """
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.config.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.config.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.config.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name,
                namespace=self.config.namespace,
                body=lease,
            )
            self._observe_holder(self.config.identity)
            return True
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug("Lease %s update conflict, will retry", self.config.lease_ref)
                return False
            self.logger.warning(
                "Failed to update lease %s: %s", self.config.lease_ref, exc.reason
            )
            return False

    def _release_lease(self) -> None:
        """Clear holderIdentity on the Lease to allow immediate takeover."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.config.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.config.lease_name, namespace=self.config.namespace, body=lease
                )
                self.logger.info("Released leader lease %s", self.config.lease_ref)
        except Exception:
            self.logger.warning(
                "Failed to release leader lease %s", self.config.lease_ref, exc_info=True
            )

    def _notify_new_leader(self, on_new_leader: Callable[[str], None] | None) -> None:
        holder = self._pending_new_leader
        if holder is None:
            return
        self._pending_new_leader = None
        METRICS.leader_changes_total.inc()
        self.logger.info("Observed new leader %s for lease %s", holder, self.config.lease_ref)
        if on_new_leader is not None:
            on_new_leader(holder)

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
        on_new_leader: Callable[[str], None] | None = None,
    ) -> None:
        """Block until ``stop_event`` is set, invoking callbacks on leadership changes."""
        self.logger.info(
            "Starting leader election for lease %s (identity=%s)",
            self.config.lease_ref,
            self.config.identity,
        )
        acquire_wait_started = time.monotonic()
        last_renew_success = acquire_wait_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                self.logger.exception("Unexpected error in leader election cycle")
                acquired = False
            self._notify_new_leader(on_new_leader)
            if acquired and not self._is_leader:
                self._is_leader = True
                self.logger.info("Became leader (identity=%s)", self.config.identity)
                METRICS.leader_state.set(1)
                METRICS.leader_transitions_total.labels(transition="acquired").inc()
                acquired_at = time.monotonic()
                last_renew_success = acquired_at
                METRICS.leader_acquire_latency_seconds.observe(acquired_at - acquire_wait_started)
                on_started_leading()
            elif acquired and self._is_leader:
                last_renew_success = time.monotonic()
            elif not acquired and self._is_leader:
                elapsed_since_last_renew = time.monotonic() - last_renew_success
                if elapsed_since_last_renew < self.config.renew_deadline_seconds:
                    self.logger.warning(
                        "Lease renewal failed; holding leadership for up to %ss "
                        "(elapsed %.2fs)",
                        self.config.renew_deadline_seconds,
                        elapsed_since_last_renew,
                    )
                else:
                    self._is_leader = False
                    self.logger.warning(
                        "Lost leader lease after %.2fs without successful renewal",
                        elapsed_since_last_renew,
                    )
                    METRICS.leader_state.set(0)
                    METRICS.leader_transitions_total.labels(transition="lost").inc()
                    acquire_wait_started = time.monotonic()
                    on_stopped_leading()
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._is_leader = False
            METRICS.leader_state.set(0)
            METRICS.leader_transitions_total.labels(transition="lost").inc()
            on_stopped_leading()


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name by the
    downward API, giving each replica a stable identity for lease ownership.
    """
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
