from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Request:
    """Identifies the PodSet a reconcile pass works on."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Result:
    """Outcome of a successful reconcile pass.

    ``requeue_after`` asks the work queue to run the same request again after
    that many seconds.  Failures are not represented here: the pass raises.
    """

    requeue_after: float | None = None


@dataclass
class PodSetStatus:
    pod_names: list[str] = field(default_factory=list)


@dataclass
class PodSet:
    """The desired-state object: a named request for ``size`` worker pods."""

    name: str
    namespace: str
    size: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    uid: str = ""
    resource_version: str | None = None
    api_version: str = "operator.podset.io/v1alpha1"
    kind: str = "PodSet"
    status: PodSetStatus = field(default_factory=PodSetStatus)
    # Object as read from the store, for whole-object writes.
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def request(self) -> Request:
        return Request(namespace=self.namespace, name=self.name)


@dataclass(frozen=True)
class ContainerTemplate:
    name: str
    image: str
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True


@dataclass
class Pod:
    """A worker pod, either a template about to be created or one read back."""

    name: str = ""
    generate_name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    containers: list[ContainerTemplate] = field(default_factory=list)
    deletion_timestamp: datetime | None = None

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    def controller_reference(self) -> OwnerReference | None:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None
