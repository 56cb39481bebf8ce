from __future__ import annotations

import pytest

from podset.src.errors import AlreadyOwnedError
from podset.src.model import ContainerTemplate, OwnerReference, Pod, PodSet
from podset.src.pods import (
    DEFAULT_CONTAINER,
    format_label_selector,
    labels_for,
    matches_labels,
    new_pod,
    set_controller_reference,
)


def _podset(name: str = "demo", labels: dict[str, str] | None = None) -> PodSet:
    return PodSet(name=name, namespace="ns1", size=2, labels=labels or {}, uid=f"uid-{name}")


def test_labels_for_defaults() -> None:
    assert labels_for(_podset()) == {"app": "podset", "podset": "demo"}


def test_labels_for_merges_podset_labels_and_podset_labels_win() -> None:
    podset = _podset(labels={"tier": "web", "app": "custom"})

    assert labels_for(podset) == {"app": "custom", "podset": "demo", "tier": "web"}


def test_labels_for_does_not_mutate_podset_labels() -> None:
    podset = _podset(labels={"tier": "web"})

    labels_for(podset)["extra"] = "x"

    assert podset.labels == {"tier": "web"}


def test_creation_labels_match_query_labels() -> None:
    podset = _podset(labels={"tier": "web"})
    pod = new_pod(podset)

    assert matches_labels(labels_for(podset), pod.labels)
    assert not matches_labels(labels_for(_podset(name="demo-b")), pod.labels)


def test_format_label_selector_is_sorted() -> None:
    assert format_label_selector({"podset": "demo", "app": "podset"}) == "app=podset,podset=demo"
    assert format_label_selector({}) == ""


def test_matches_labels_handles_missing_labels() -> None:
    assert matches_labels({}, None)
    assert not matches_labels({"app": "podset"}, None)
    assert not matches_labels({"app": "podset"}, {"app": "other"})


def test_new_pod_template() -> None:
    container = ContainerTemplate(name="busybox", image="busybox", command=("sleep", "3600"))

    pod = new_pod(_podset(), container)

    assert pod.name == ""
    assert pod.generate_name == "demo-"
    assert pod.namespace == "ns1"
    assert pod.labels == {"app": "podset", "podset": "demo"}
    assert pod.containers == [container]
    assert pod.owner_references == []
    assert pod.deletion_timestamp is None


def test_new_pod_uses_default_container() -> None:
    pod = new_pod(_podset())

    assert pod.containers == [DEFAULT_CONTAINER]
    assert DEFAULT_CONTAINER.image == "nginx:stable-alpine"


def test_set_controller_reference() -> None:
    podset = _podset()
    pod = new_pod(podset)

    set_controller_reference(podset, pod)
    set_controller_reference(podset, pod)

    assert pod.owner_references == [
        OwnerReference(
            api_version="operator.podset.io/v1alpha1",
            kind="PodSet",
            name="demo",
            uid="uid-demo",
            controller=True,
            block_owner_deletion=True,
        )
    ]


def test_set_controller_reference_replaces_non_controller_ref_for_same_owner() -> None:
    podset = _podset()
    pod = Pod(
        name="demo-1",
        owner_references=[
            OwnerReference("operator.podset.io/v1alpha1", "PodSet", "demo", "uid-demo", controller=False)
        ],
    )

    set_controller_reference(podset, pod)

    assert len(pod.owner_references) == 1
    assert pod.owner_references[0].controller is True


def test_set_controller_reference_rejects_other_controller() -> None:
    pod = Pod(
        name="demo-1",
        namespace="ns1",
        owner_references=[OwnerReference("apps/v1", "ReplicaSet", "rs", "uid-rs")],
    )

    with pytest.raises(AlreadyOwnedError, match="ReplicaSet rs"):
        set_controller_reference(_podset(), pod)


def test_terminating_pod() -> None:
    from datetime import UTC, datetime

    assert not Pod(name="a").is_terminating
    assert Pod(name="a", deletion_timestamp=datetime(2026, 1, 1, tzinfo=UTC)).is_terminating
