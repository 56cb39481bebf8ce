from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Protocol

from podset.src.errors import NotFoundError
from podset.src.metrics import METRICS
from podset.src.model import ContainerTemplate, Pod, PodSet, Request, Result
from podset.src.pods import (
    DEFAULT_CONTAINER,
    labels_for,
    matches_labels,
    new_pod,
    set_controller_reference,
)

LOGGER = logging.getLogger(__name__)


class Reconciler(Protocol):
    def reconcile(self, request: Request) -> Result: ...


class PodSetStore(Protocol):
    """Store operations a reconcile pass depends on.

    Implementations raise :class:`~podset.src.errors.StoreError` subclasses;
    ``get_podset`` raises :class:`~podset.src.errors.NotFoundError` for a
    missing object.
    """

    def get_podset(self, namespace: str, name: str) -> PodSet: ...

    def list_pods(self, namespace: str, labels: Mapping[str, str]) -> list[Pod]: ...

    def create_pod(self, pod: Pod) -> Pod: ...

    def delete_pod(self, pod: Pod) -> None: ...

    def update_podset_status(self, podset: PodSet) -> PodSet: ...


def pod_names(pods: Sequence[Pod]) -> list[str]:
    return [pod.name for pod in pods]


def same_pod_names(current: Sequence[str], observed: Sequence[str]) -> bool:
    if len(current) != len(observed):
        return False
    return all(a == b for a, b in zip(current, observed))


class PodSetReconciler:
    """Drives the pods selected by a PodSet towards ``spec.size``, one pod per pass.

    Each pass re-reads the PodSet and its pods from the store, creates or
    deletes at most one pod, then refreshes ``status.podNames`` from the list
    observed *before* that action.  Closing a gap of N pods therefore takes N
    passes; each create or delete produces a pod event that triggers the next
    one.

    The reconciler keeps no state between passes.  Callers must not run two
    passes for the same request concurrently.

    Store failures propagate unchanged; the caller retries the request.
    """

    def __init__(
        self,
        store: PodSetStore,
        container: ContainerTemplate = DEFAULT_CONTAINER,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.container = container
        self.logger = logger or LOGGER

    def reconcile(self, request: Request) -> Result:
        log = logging.LoggerAdapter(
            self.logger,
            {"podset_namespace": request.namespace, "podset_name": request.name},
        )
        log.info("Reconciling PodSet %s", request)

        try:
            podset = self.store.get_podset(request.namespace, request.name)
        except NotFoundError:
            # Owned pods are garbage collected through their owner references.
            log.info("PodSet %s not found; assuming it was deleted", request)
            return Result()

        pods = self.list_pods(podset)
        actual_size = len(pods)
        expected_size = podset.size
        log.info("%d Pods exist for PodSet %s (want %d)", actual_size, podset.name, expected_size)

        if expected_size > 0 and actual_size < expected_size:
            log.info("Adding Pod")
            self.add_pod(podset)
        elif actual_size > 0 and actual_size > expected_size:
            log.info("Removing Pod %s", pods[0].name)
            self.remove_pod(pods)

        self.update_status(podset, pods)
        log.info("Reconciling complete")
        return Result()

    def list_pods(self, podset: PodSet) -> list[Pod]:
        """Return the pods selected by the PodSet's labels that are not terminating."""
        selector = labels_for(podset)
        pods = self.store.list_pods(podset.namespace, selector)
        # Stores may hand back pods whose labels changed after the query.
        return [
            pod
            for pod in pods
            if not pod.is_terminating and matches_labels(selector, pod.labels)
        ]

    def add_pod(self, podset: PodSet) -> Pod:
        pod = new_pod(podset, self.container)
        set_controller_reference(podset, pod)
        created = self.store.create_pod(pod)
        METRICS.pods_created_total.labels(namespace=podset.namespace).inc()
        return created

    def remove_pod(self, pods: Sequence[Pod]) -> None:
        # No age or readiness ordering: the first listed pod goes.
        victim = pods[0]
        self.store.delete_pod(victim)
        METRICS.pods_deleted_total.labels(namespace=victim.namespace).inc()

    def update_status(self, podset: PodSet, pods: Sequence[Pod]) -> bool:
        """Write ``status.podNames`` back if it differs from *pods*; return True on write."""
        observed = pod_names(pods)
        if same_pod_names(podset.status.pod_names, observed):
            return False

        podset.status.pod_names = observed
        self.store.update_podset_status(podset)
        METRICS.status_updates_total.labels(namespace=podset.namespace).inc()
        return True
