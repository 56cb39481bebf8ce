from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from podset.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Keeps a single operator replica reconciling via a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector tries to claim or renew the
    Lease.  A Lease held by someone else is only taken over once its
    ``renewTime`` is older than its duration.  A leader that fails to renew
    for ``renew_deadline_seconds`` steps down and ``on_stopped_leading`` runs,
    so two replicas never reconcile the same PodSets at once.
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
    ) -> None:
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() < duration

    def _try_acquire_or_renew(self) -> bool:
        """Run one claim-or-renew cycle; return True while we hold the Lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            lease = None

        if lease is not None and self._held_by_other(lease.spec, now):
            return False
        return self._write_lease(lease, now)

    def _write_lease(self, lease: V1Lease | None, now: datetime) -> bool:
        """Create the Lease, or update it with us as holder.

        ``acquireTime`` only moves when the holder changes.  A ``409`` means
        another replica wrote first and is reported as not acquired.
        """
        try:
            if lease is None:
                self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace,
                    body=V1Lease(
                        metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                        spec=V1LeaseSpec(
                            holder_identity=self.identity,
                            lease_duration_seconds=self.lease_duration_seconds,
                            acquire_time=now,
                            renew_time=now,
                        ),
                    ),
                )
                LOGGER.info("Created leader lease %s", self.lease_name)
                return True

            spec = lease.spec or V1LeaseSpec()
            if spec.holder_identity != self.identity or spec.acquire_time is None:
                spec.acquire_time = now
            spec.holder_identity = self.identity
            spec.renew_time = now
            spec.lease_duration_seconds = self.lease_duration_seconds
            lease.spec = spec
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s write conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to write lease %s: %s", self.lease_name, exc.reason)
            return False

    def _release_lease(self) -> None:
        """Clear holderIdentity so another replica can take over without waiting."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        LOGGER.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the Lease until *stop_event* is set, invoking the callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewed = time.monotonic()

        while not stop_event.is_set():
            try:
                held = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._became_leader(on_started_leading)
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewed
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renewal
                    )
                    self._lost_leadership(on_stopped_leading)
                else:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss", self.renew_deadline_seconds
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._lost_leadership(on_stopped_leading)
