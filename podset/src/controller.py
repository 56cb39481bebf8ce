from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi

from podset.src.config import OperatorConfig
from podset.src.errors import StoreError
from podset.src.kube import KubeStore
from podset.src.metrics import METRICS
from podset.src.model import ContainerTemplate, Request
from podset.src.reconciler import PodSetReconciler, Reconciler
from podset.src.watch import ResourceWatcher, owner_requests, podset_requests
from podset.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)


class PodSetController:
    """Runs reconcile passes for requests produced by the event sources.

    Event sources (PodSet and Pod watchers) feed :class:`Request` keys into a
    :class:`WorkQueue`; ``workers`` threads take keys off the queue and call
    the reconciler.  The queue guarantees that one key is never processed by
    two workers at once, which the reconciler relies on.

    Outcome handling per pass:
        ``Result()``
            The key's failure count is reset.
        ``Result(requeue_after=t)``
            The key is re-added after ``t`` seconds.
        exception
            Logged, counted, and re-added with per-key exponential backoff.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        queue: WorkQueue,
        sources: Sequence[ResourceWatcher] = (),
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.reconciler = reconciler
        self.queue = queue
        self.sources = list(sources)
        self.workers = workers
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def enqueue(self, requests: Sequence[Request]) -> None:
        for request in requests:
            self.queue.add(request)

    def request_stop(self) -> None:
        """Request a cooperative stop; open watch streams are interrupted."""
        self._external_stop.set()
        for source in self.sources:
            source.request_stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _sources_synced(self) -> bool:
        return all(source.synced.is_set() for source in self.sources)

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Run one reconcile pass for the next queued key.

        Returns False when no key was available (queue shut down or
        *timeout* elapsed).
        """
        queue = self.queue
        request = queue.get(timeout=timeout)
        if request is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(request)
        except StoreError as exc:
            delay = queue.add_rate_limited(request)
            METRICS.reconcile_total.labels(result="error").inc()
            self.logger.warning(
                "Reconcile of %s failed (attempt %d): %s; retrying in %.1fs",
                request,
                queue.num_requeues(request),
                exc,
                delay,
                exc_info=True,
            )
        except Exception:
            delay = queue.add_rate_limited(request)
            METRICS.reconcile_total.labels(result="error").inc()
            self.logger.exception(
                "Unexpected error reconciling %s (attempt %d); retrying in %.1fs",
                request,
                queue.num_requeues(request),
                delay,
            )
        else:
            queue.forget(request)
            if result.requeue_after is not None:
                queue.add_after(request, result.requeue_after)
                METRICS.reconcile_total.labels(result="requeue_after").inc()
            else:
                METRICS.reconcile_total.labels(result="success").inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            queue.done(request)
        return True

    def _worker_loop(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            self.process_next_item(timeout=1.0)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the event sources and workers and block until stopped.

        Readiness tracks whether every source has completed its initial list.
        On stop the sources are interrupted, the queue is shut down, and the
        call blocks until every worker has finished its current pass, so a
        later call never hands out a key that a previous worker still holds.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.queue.shutting_down:
            # Leadership was lost and regained; sources re-list everything.
            self.queue = WorkQueue(base_delay=self.queue.base_delay, max_delay=self.queue.max_delay)

        threads: list[threading.Thread] = []
        for source in self.sources:
            thread = threading.Thread(
                target=source.run, args=(stop,), name=f"watch-{source.name}", daemon=True
            )
            thread.start()
            threads.append(thread)

        workers: list[threading.Thread] = []
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop, args=(stop,), name=f"reconcile-{index}", daemon=True
            )
            thread.start()
            workers.append(thread)
        self.logger.info(
            "Started %d event source(s) and %d reconcile worker(s)",
            len(self.sources),
            len(workers),
        )

        while not self._should_stop(stop):
            if self._sources_synced():
                if not self.ready.is_set():
                    self.logger.info("All event sources synced; controller ready")
                self.ready.set()
            else:
                self.ready.clear()
            stop.wait(timeout=0.5)

        self.ready.clear()
        for source in self.sources:
            source.request_stop()
        self.queue.shut_down()
        for thread in workers:
            thread.join()
        for thread in threads:
            thread.join(timeout=5)
        self.logger.info("Controller stopped")


def build_controller(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    config: OperatorConfig,
) -> PodSetController:
    """Wire the store, reconciler, queue and watchers described by *config*.

    With an empty ``watch_namespace`` PodSets and Pods are watched cluster-wide.
    """
    store = KubeStore(
        core_api=core_api,
        custom_api=custom_api,
        group=config.group,
        version=config.version,
        plural=config.plural,
        use_status_subresource=config.status_subresource,
    )
    container = ContainerTemplate(
        name=config.container_name,
        image=config.pod_image,
        command=config.pod_command,
    )
    reconciler = PodSetReconciler(store=store, container=container)
    queue = WorkQueue(
        base_delay=config.retry_base_seconds,
        max_delay=config.retry_max_seconds,
    )
    controller = PodSetController(
        reconciler=reconciler,
        queue=queue,
        workers=config.max_concurrent_reconciles,
    )

    def on_podset_event(event_type: str, obj: Any) -> None:
        controller.enqueue(podset_requests(obj))

    def on_pod_event(event_type: str, obj: Any) -> None:
        controller.enqueue(owner_requests(obj, group=config.group, kind=config.kind))

    crd = {"group": config.group, "version": config.version, "plural": config.plural}
    if config.watch_namespace:
        podset_list = custom_api.list_namespaced_custom_object
        podset_kwargs: dict[str, Any] = {**crd, "namespace": config.watch_namespace}
        pod_list = core_api.list_namespaced_pod
        pod_kwargs: dict[str, Any] = {"namespace": config.watch_namespace}
    else:
        podset_list = custom_api.list_cluster_custom_object
        podset_kwargs = dict(crd)
        pod_list = core_api.list_pod_for_all_namespaces
        pod_kwargs = {}

    controller.sources = [
        ResourceWatcher(
            name=config.plural,
            list_fn=podset_list,
            list_kwargs=podset_kwargs,
            handler=on_podset_event,
            timeout_seconds=config.watch_timeout_seconds,
        ),
        ResourceWatcher(
            name="pods",
            list_fn=pod_list,
            list_kwargs=pod_kwargs,
            handler=on_pod_event,
            timeout_seconds=config.watch_timeout_seconds,
        ),
    ]
    return controller
