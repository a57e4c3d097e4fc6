from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from ipam.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderElectionConfig:
    """Timing and identity of the ``coordination.k8s.io/v1`` Lease lock.

    ``renew_deadline_seconds`` must be shorter than the lease duration and
    ``retry_period_seconds`` shorter than the renew deadline, otherwise two
    replicas could both believe they hold the lease.
    """

    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2

    def __post_init__(self) -> None:
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


class LeaseLeaderElector:
    """Lease based leader election so only one replica reconciles the stores.

    Every ``retry_period_seconds`` the elector reads the Lease and creates it
    if missing, renews it when this identity holds it, or takes it over once
    the holder has not renewed for ``leaseDurationSeconds``. A ``409``
    conflict means another replica won the race; the next cycle retries.
    Leadership is given up after ``renew_deadline_seconds`` without a
    successful renewal.
    """

    def __init__(self, coordination_api: CoordinationV1Api, config: LeaderElectionConfig) -> None:
        self.coordination_api = coordination_api
        self.config = config
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _read_lease(self) -> V1Lease:
        return self.coordination_api.read_namespaced_lease(
            name=self.config.lease_name, namespace=self.config.namespace
        )

    def _try_acquire_or_renew(self) -> bool:
        now = self._now_utc()
        try:
            lease = self._read_lease()
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.config.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity not in (None, self.config.identity):
            if spec.renew_time is not None:
                renew_time = spec.renew_time
                if renew_time.tzinfo is None:
                    renew_time = renew_time.replace(tzinfo=UTC)
                duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
                if (now - renew_time).total_seconds() < duration:
                    return False
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
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
                namespace=self.config.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning(
                    "Failed to create lease %s: %s", self.config.lease_name, exc.reason
                )
            return False
        LOGGER.info("Created leader lease %s", self.config.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        taking_over = lease.spec.holder_identity != self.config.identity
        lease.spec.holder_identity = self.config.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.config.lease_duration_seconds
        if taking_over or lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning(
                    "Failed to update lease %s: %s", self.config.lease_name, exc.reason
                )
            return False
        return True

    def _release_lease(self) -> None:
        """Clear the holder so another replica can take over without waiting."""
        try:
            lease = self._read_lease()
            if lease.spec and lease.spec.holder_identity == self.config.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.config.lease_name, namespace=self.config.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.config.lease_name)
        except ApiException:
            LOGGER.warning(
                "Failed to release leader lease %s", self.config.lease_name, exc_info=True
            )

    def _become_leader(self, waited_seconds: float) -> None:
        self._is_leader = True
        LOGGER.info("Became leader (identity=%s)", self.config.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(waited_seconds)

    def _lose_leadership(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until ``stop_event`` is set."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.config.lease_name,
            self.config.identity,
        )
        campaign_started = time.monotonic()
        last_renewed = campaign_started
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                renewed = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                renewed = False

            now = time.monotonic()
            if renewed:
                if not self._is_leader:
                    self._become_leader(now - campaign_started)
                    on_started_leading()
                last_renewed = now
            elif self._is_leader:
                since_renewal = now - last_renewed
                if since_renewal < self.config.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.config.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renewal
                    )
                    self._lose_leadership()
                    campaign_started = now
                    on_stopped_leading()
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._lose_leadership()
            on_stopped_leading()


def default_identity() -> str:
    """Return this replica's identity: the pod name from ``HOSTNAME`` or ``POD_NAME``."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
