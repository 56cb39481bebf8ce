from __future__ import annotations

from collections.abc import Mapping

from podset.src.errors import AlreadyOwnedError
from podset.src.model import ContainerTemplate, OwnerReference, Pod, PodSet

DEFAULT_CONTAINER = ContainerTemplate(name="nginx", image="nginx:stable-alpine")


def default_labels(podset: PodSet) -> dict[str, str]:
    return {"app": "podset", "podset": podset.name}


def labels_for(podset: PodSet) -> dict[str, str]:
    """Return the label set that binds pods to *podset*.

    The same mapping stamps new pods and selects existing ones, so any change
    here changes which pods are counted.  The PodSet's own labels win on key
    collision with the defaults.
    """
    labels = default_labels(podset)
    labels.update(podset.labels)
    return labels


def format_label_selector(labels: Mapping[str, str]) -> str:
    """Render an equality-based selector string (``k=v,k2=v2``), sorted by key."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def matches_labels(selector: Mapping[str, str], labels: Mapping[str, str] | None) -> bool:
    """Return True if *labels* contain every key-value pair from *selector*."""
    labels = labels or {}
    return all(labels.get(k) == v for k, v in selector.items())


def new_pod(podset: PodSet, container: ContainerTemplate = DEFAULT_CONTAINER) -> Pod:
    """Build the template for one more worker pod of *podset*.

    The store assigns the final name from ``generate_name``.  No owner
    reference is attached here; see :func:`set_controller_reference`.
    """
    return Pod(
        generate_name=f"{podset.name}-",
        namespace=podset.namespace,
        labels=labels_for(podset),
        containers=[container],
    )


def owner_reference_for(owner: PodSet) -> OwnerReference:
    return OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )


def set_controller_reference(owner: PodSet, pod: Pod) -> None:
    """Mark *owner* as the controller of *pod* so the garbage collector cascades deletes.

    Re-stamping the same owner is a no-op.  A pod already controlled by a
    different object raises :class:`AlreadyOwnedError`.
    """
    ref = owner_reference_for(owner)
    existing = pod.controller_reference()
    if existing is not None:
        if existing.uid == ref.uid:
            return
        raise AlreadyOwnedError(
            f"Pod {pod.namespace}/{pod.name or pod.generate_name} is already controlled by "
            f"{existing.kind} {existing.name}"
        )
    pod.owner_references = [r for r in pod.owner_references if r.uid != ref.uid]
    pod.owner_references.append(ref)
