from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from configwatch.src.metrics import METRICS
from configwatch.src.settings import LeaderElectionSettings


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Lease-based leader election on ``coordination.k8s.io/v1``.

    Only the leader runs watches and workers, so two replicas never patch
    the same Deployment from stale caches.  Each cycle (every
    ``retry_period_seconds``):

    - no Lease: create one naming us as holder;
    - Lease held by us, or by nobody: renew/claim it;
    - Lease held by someone else: claim it only once
      ``renewTime + leaseDurationSeconds`` has passed.

    Writes rely on the Lease's ``resourceVersion``, so a concurrent claim
    fails with ``409`` and is retried on the next cycle.  A leader whose
    renewals keep failing steps down after ``renew_deadline_seconds``; on
    shutdown the Lease is released for immediate takeover.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if lease_duration_seconds < 1 or renew_deadline_seconds < 1:
            raise ValueError("lease durations must be >= 1 second")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if not retry_period_seconds < renew_deadline_seconds < lease_duration_seconds:
            raise ValueError(
                "expected retry_period_seconds < renew_deadline_seconds < lease_duration_seconds"
            )

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._is_leader = False

    @classmethod
    def from_settings(
        cls, coordination_api: CoordinationV1Api, settings: LeaderElectionSettings
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=settings.namespace,
            lease_name=settings.lease_name,
            identity=settings.identity,
            lease_duration_seconds=settings.lease_duration_seconds,
            renew_deadline_seconds=settings.renew_deadline_seconds,
            retry_period_seconds=settings.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        """True while another identity holds an unexpired lease."""
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - _aware(spec.renew_time)).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election cycle. Returns True if we hold the lease afterwards."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._write(None, now)
            self.logger.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        if self._held_by_other(lease.spec, now):
            return False
        return self._write(lease, now)

    def _write(self, lease: V1Lease | None, now: datetime) -> bool:
        """Create the lease (``lease is None``) or claim/renew an existing one."""
        if lease is None:
            body = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=V1LeaseSpec(acquire_time=now),
            )
        else:
            body = lease
            if body.spec is None:
                body.spec = V1LeaseSpec()
            if body.spec.acquire_time is None or body.spec.holder_identity != self.identity:
                body.spec.acquire_time = now
        body.spec.holder_identity = self.identity
        body.spec.renew_time = now
        body.spec.lease_duration_seconds = self.lease_duration_seconds

        try:
            if lease is None:
                self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=body)
                self.logger.info("Acquired leader lease %s", self.lease_name)
            else:
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=body
                )
            return True
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug("Lease %s write conflict, will retry", self.lease_name)
            else:
                self.logger.warning("Failed to write lease %s: %s", self.lease_name, exc.reason)
            return False

    def release(self) -> None:
        """Clear ``holderIdentity`` so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            self.logger.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            self.logger.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _become_leader(self, waited_seconds: float) -> None:
        self._is_leader = True
        self.logger.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(waited_seconds)

    def _step_down(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on transitions."""
        self.logger.info(
            "Starting leader election for lease %s (identity=%s)",
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        campaign_started = time.monotonic()
        last_renewal = campaign_started

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                self.logger.exception("Unexpected error in leader election cycle")
                held = False

            now = time.monotonic()
            if held:
                last_renewal = now
                if not self._is_leader:
                    self._become_leader(now - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = now - last_renewal
                if since_renewal < self.renew_deadline_seconds:
                    self.logger.warning(
                        "Lease renewal failed; holding leadership for up to %ss "
                        "(elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    self.logger.warning(
                        "Lost leader lease after %.2fs without successful renewal",
                        since_renewal,
                    )
                    self._step_down()
                    campaign_started = now
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down()
            on_stopped_leading()
