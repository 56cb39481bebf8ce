from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from podset.src.metrics import METRICS
from podset.src.model import Request

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[str, Any], None]


def _field(obj: Any, *path: str) -> Any:
    """Read a nested field from either a plain dict or a client model object.

    Custom objects come back from the API as dicts with camelCase keys while
    core resources are typed models with snake_case attributes.
    """
    current = obj
    for name in path:
        if current is None:
            return None
        if isinstance(current, dict):
            camel = name.split("_")[0] + "".join(p.title() for p in name.split("_")[1:])
            current = current.get(camel, current.get(name))
        else:
            current = getattr(current, name, None)
    return current


def resource_version_of(obj: Any) -> str | None:
    return _field(obj, "metadata", "resource_version")


def list_items(response: Any) -> list[Any]:
    return list(_field(response, "items") or [])


def podset_requests(obj: Any) -> list[Request]:
    """Map a PodSet event to a request for that PodSet."""
    name = _field(obj, "metadata", "name")
    namespace = _field(obj, "metadata", "namespace")
    if not name or not namespace:
        return []
    return [Request(namespace=namespace, name=name)]


def owner_requests(obj: Any, group: str, kind: str) -> list[Request]:
    """Map a Pod event to a request for the PodSet that controls it.

    Only a controller owner reference of the given *kind* whose API group is
    *group* counts; pods without one are ignored.
    """
    namespace = _field(obj, "metadata", "namespace")
    if not namespace:
        return []
    for ref in _field(obj, "metadata", "owner_references") or []:
        if not _field(ref, "controller"):
            continue
        api_version = _field(ref, "api_version") or ""
        ref_group = api_version.split("/", 1)[0] if "/" in api_version else ""
        if _field(ref, "kind") != kind or ref_group != group:
            continue
        name = _field(ref, "name")
        if name:
            return [Request(namespace=namespace, name=name)]
    return []


class ResourceWatcher:
    """List-then-watch loop for one resource type, feeding every event to a handler.

    1. Lists the resource (retrying with backoff) and replays every item as
       an ``ADDED`` event, then sets :attr:`synced`.
    2. Streams watch events from the list's ``resourceVersion``.  The stream
       ends after ``timeout_seconds`` and is reopened from the last seen
       version.
    3. On ``410 Gone`` the version is dropped and the resource re-listed;
       replayed items keep the handler level-triggered across the gap.
    4. ``401``/``403`` are configuration errors: the loop clears
       :attr:`synced` and returns.
    5. Other errors back off exponentially with jitter, capped at 30 s.

    *list_fn* is a client list method (``list_namespaced_pod``,
    ``list_cluster_custom_object`` ...) and *list_kwargs* its arguments.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any],
        handler: EventHandler,
        timeout_seconds: int = 30,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs)
        self.handler = handler
        self.timeout_seconds = timeout_seconds
        self.watch_factory = watch_factory
        self.logger = logger or LOGGER
        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _dispatch(self, event_type: str, obj: Any) -> None:
        try:
            self.handler(event_type, obj)
        except Exception:
            self.logger.exception("Event handler for %s failed", self.name)

    def list_and_replay(self) -> str | None:
        """List every object, replay each as ``ADDED``, and return the list's resourceVersion."""
        response = self.list_fn(**self.list_kwargs)
        for item in list_items(response):
            self._dispatch("ADDED", item)
        return resource_version_of(response)

    def _backoff(self, stop: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop: threading.Event) -> None:
        self._external_stop.clear()
        resource_version: str | None = None
        needs_list = True
        backoff_seconds: float = 1
        stream_count = 0

        while not self._should_stop(stop):
            try:
                if needs_list:
                    resource_version = self.list_and_replay()
                    needs_list = False
                    if not self.synced.is_set():
                        self.logger.info("Initial %s list complete", self.name)
                    self.synced.set()

                watcher = self.watch_factory()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    if stream_count > 0:
                        METRICS.watch_reconnects_total.labels(resource=self.name).inc()
                    stream_count += 1
                    for event in watcher.stream(
                        self.list_fn,
                        resource_version=resource_version,
                        timeout_seconds=self.timeout_seconds,
                        **self.list_kwargs,
                    ):
                        if self._should_stop(stop):
                            break
                        event_type = str(event.get("type", ""))
                        obj = event.get("object")
                        if obj is None:
                            continue
                        version = resource_version_of(obj)
                        if version:
                            resource_version = version
                        if event_type in {"ADDED", "MODIFIED", "DELETED"}:
                            self._dispatch(event_type, obj)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    resource_version = None
                    needs_list = True
                    continue
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied for %s (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    self.synced.clear()
                    return
                self.logger.exception("Kubernetes API error while watching %s", self.name)
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected error while watching %s", self.name)
                METRICS.watch_errors_total.labels(resource=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)

        self.synced.clear()
