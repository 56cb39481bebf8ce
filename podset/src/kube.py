from __future__ import annotations

import copy
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1Container,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
    V1PodSpec,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from podset.src.errors import ConflictError, NotFoundError, StoreError
from podset.src.model import (
    ContainerTemplate,
    OwnerReference,
    Pod,
    PodSet,
    PodSetStatus,
)
from podset.src.pods import format_label_selector

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi, CoordinationV1Api]:
    """Return the API clients the operator needs, using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi(), client.CoordinationV1Api()


@contextmanager
def translate_api_errors(action: str, target: str) -> Iterator[None]:
    """Re-raise client failures as :class:`StoreError` subclasses."""
    try:
        yield
    except ApiException as exc:
        message = f"{action} {target} failed: {exc.status} {exc.reason}"
        if exc.status == 404:
            raise NotFoundError(message) from exc
        if exc.status == 409:
            raise ConflictError(message) from exc
        raise StoreError(message) from exc
    except HTTPError as exc:
        raise StoreError(f"{action} {target} failed: {exc}") from exc


def podset_from_object(obj: Mapping[str, Any]) -> PodSet:
    """Convert a PodSet custom object (plain dict from the API) to a :class:`PodSet`."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return PodSet(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        size=int(spec.get("size") or 0),
        labels=dict(metadata.get("labels") or {}),
        uid=metadata.get("uid", ""),
        resource_version=metadata.get("resourceVersion"),
        api_version=obj.get("apiVersion", PodSet.api_version),
        kind=obj.get("kind", PodSet.kind),
        status=PodSetStatus(pod_names=list(status.get("podNames") or [])),
        raw=copy.deepcopy(dict(obj)),
    )


def podset_status_body(podset: PodSet) -> dict[str, Any]:
    """Return the object to write back for a status update.

    Carries the ``resourceVersion`` that was read so a concurrent writer makes
    the update fail with a conflict instead of being overwritten.
    """
    body = copy.deepcopy(podset.raw) if podset.raw else {
        "apiVersion": podset.api_version,
        "kind": podset.kind,
        "metadata": {"name": podset.name, "namespace": podset.namespace},
    }
    metadata = body.setdefault("metadata", {})
    if podset.resource_version is not None:
        metadata["resourceVersion"] = podset.resource_version
    body["status"] = {"podNames": list(podset.status.pod_names)}
    return body


def _owner_reference_from_api(ref: Any) -> OwnerReference:
    return OwnerReference(
        api_version=getattr(ref, "api_version", "") or "",
        kind=getattr(ref, "kind", "") or "",
        name=getattr(ref, "name", "") or "",
        uid=getattr(ref, "uid", "") or "",
        controller=bool(getattr(ref, "controller", False)),
        block_owner_deletion=bool(getattr(ref, "block_owner_deletion", False)),
    )


def pod_from_api(obj: Any) -> Pod:
    """Convert a ``V1Pod`` (or any object shaped like one) to a :class:`Pod`."""
    metadata = getattr(obj, "metadata", None)
    spec = getattr(obj, "spec", None)
    containers = [
        ContainerTemplate(
            name=getattr(c, "name", "") or "",
            image=getattr(c, "image", "") or "",
            command=tuple(getattr(c, "command", None) or ()),
        )
        for c in (getattr(spec, "containers", None) or [])
    ]
    return Pod(
        name=getattr(metadata, "name", "") or "",
        generate_name=getattr(metadata, "generate_name", "") or "",
        namespace=getattr(metadata, "namespace", "") or "",
        labels=dict(getattr(metadata, "labels", None) or {}),
        owner_references=[
            _owner_reference_from_api(ref)
            for ref in (getattr(metadata, "owner_references", None) or [])
        ],
        containers=containers,
        deletion_timestamp=getattr(metadata, "deletion_timestamp", None),
    )


def pod_to_api(pod: Pod) -> V1Pod:
    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=V1ObjectMeta(
            name=pod.name or None,
            generate_name=pod.generate_name or None,
            namespace=pod.namespace,
            labels=dict(pod.labels),
            owner_references=[
                V1OwnerReference(
                    api_version=ref.api_version,
                    kind=ref.kind,
                    name=ref.name,
                    uid=ref.uid,
                    controller=ref.controller,
                    block_owner_deletion=ref.block_owner_deletion,
                )
                for ref in pod.owner_references
            ]
            or None,
        ),
        spec=V1PodSpec(
            containers=[
                V1Container(name=c.name, image=c.image, command=list(c.command) or None)
                for c in pod.containers
            ]
        ),
    )


class KubeStore:
    """PodSet store backed by the Kubernetes API.

    PodSets are namespaced custom objects under ``group/version/plural``;
    worker pods are core/v1 Pods.  Every call goes straight to the API server.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        use_status_subresource: bool = True,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.use_status_subresource = use_status_subresource

    def get_podset(self, namespace: str, name: str) -> PodSet:
        with translate_api_errors("get", f"{self.plural} {namespace}/{name}"):
            obj = self.custom_api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
            )
        return podset_from_object(obj)

    def list_pods(self, namespace: str, labels: Mapping[str, str]) -> list[Pod]:
        selector = format_label_selector(labels)
        with translate_api_errors("list", f"pods in {namespace} ({selector})"):
            pod_list = self.core_api.list_namespaced_pod(
                namespace=namespace,
                label_selector=selector,
            )
        return [pod_from_api(item) for item in (getattr(pod_list, "items", None) or [])]

    def create_pod(self, pod: Pod) -> Pod:
        with translate_api_errors("create", f"pod {pod.namespace}/{pod.generate_name}"):
            created = self.core_api.create_namespaced_pod(
                namespace=pod.namespace,
                body=pod_to_api(pod),
            )
        result = pod_from_api(created)
        LOGGER.info("Created pod %s/%s", result.namespace or pod.namespace, result.name)
        return result

    def delete_pod(self, pod: Pod) -> None:
        with translate_api_errors("delete", f"pod {pod.namespace}/{pod.name}"):
            self.core_api.delete_namespaced_pod(name=pod.name, namespace=pod.namespace)
        LOGGER.info("Deleted pod %s/%s", pod.namespace, pod.name)

    def update_podset_status(self, podset: PodSet) -> PodSet:
        body = podset_status_body(podset)
        target = f"{self.plural} {podset.namespace}/{podset.name}"
        kwargs = dict(
            group=self.group,
            version=self.version,
            namespace=podset.namespace,
            plural=self.plural,
            name=podset.name,
            body=body,
        )
        if self.use_status_subresource:
            with translate_api_errors("update status of", target):
                updated = self.custom_api.replace_namespaced_custom_object_status(**kwargs)
        else:
            with translate_api_errors("update", target):
                updated = self.custom_api.replace_namespaced_custom_object(**kwargs)
        return podset_from_object(updated)
