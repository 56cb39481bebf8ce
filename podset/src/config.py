from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the operator configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def default_identity(values: Mapping[str, str] | None = None) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.
    """
    values = values if values is not None else os.environ
    return values.get("HOSTNAME") or values.get("POD_NAME") or "unknown"


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace to watch; empty string watches all namespaces.
        group, version, plural, kind: Coordinates of the PodSet custom resource.
        container_name, pod_image, pod_command: Container template for new pods.
        status_subresource: Write status through ``/status`` instead of
            replacing the whole object.
        max_concurrent_reconciles: Number of reconcile worker threads.
        retry_base_seconds, retry_max_seconds: Per-request backoff bounds.
    """

    watch_namespace: str = ""
    group: str = "operator.podset.io"
    version: str = "v1alpha1"
    plural: str = "podsets"
    kind: str = "PodSet"
    container_name: str = "nginx"
    pod_image: str = "nginx:stable-alpine"
    pod_command: tuple[str, ...] = ()
    status_subresource: bool = True
    max_concurrent_reconciles: int = 1
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"
    leader_election_enabled: bool = True
    leader_election_namespace: str = "default"
    leader_election_lease_name: str = "podset-operator-lock"
    leader_election_identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    controller_stop_timeout_seconds: int = 45

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


def _required(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    Leader election timings must satisfy
    ``lease duration > renew deadline > retry period``.
    """
    values = env if env is not None else os.environ

    watch_namespace = values.get("WATCH_NAMESPACE", "").strip()
    try:
        pod_command = tuple(shlex.split(values.get("POD_COMMAND", "")))
    except ValueError as exc:
        raise ConfigError(f"POD_COMMAND could not be parsed: {exc}") from exc

    retry_base_seconds = env_float(values, "RETRY_BASE_SECONDS", 1.0, minimum=0)
    retry_max_seconds = env_float(values, "RETRY_MAX_SECONDS", 30.0, minimum=0)
    if retry_max_seconds < retry_base_seconds:
        raise ConfigError("RETRY_MAX_SECONDS must be >= RETRY_BASE_SECONDS")

    lease_duration_seconds = env_int(
        values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
    )
    renew_deadline_seconds = env_int(
        values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
    )
    retry_period_seconds = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    leader_namespace = (
        values.get("LEADER_ELECTION_NAMESPACE")
        or values.get("POD_NAMESPACE")
        or watch_namespace
        or "default"
    ).strip()

    return OperatorConfig(
        watch_namespace=watch_namespace,
        group=_required(values, "PODSET_GROUP", "operator.podset.io"),
        version=_required(values, "PODSET_VERSION", "v1alpha1"),
        plural=_required(values, "PODSET_PLURAL", "podsets"),
        kind=_required(values, "PODSET_KIND", "PodSet"),
        container_name=_required(values, "POD_CONTAINER_NAME", "nginx"),
        pod_image=_required(values, "POD_IMAGE", "nginx:stable-alpine"),
        pod_command=pod_command,
        status_subresource=parse_bool(values.get("STATUS_SUBRESOURCE"), default=True),
        max_concurrent_reconciles=env_int(values, "MAX_CONCURRENT_RECONCILES", 1, minimum=1),
        retry_base_seconds=retry_base_seconds,
        retry_max_seconds=retry_max_seconds,
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        leader_election_enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        leader_election_namespace=leader_namespace,
        leader_election_lease_name=_required(
            values, "LEADER_ELECTION_LEASE_NAME", "podset-operator-lock"
        ),
        leader_election_identity=(
            values.get("LEADER_ELECTION_IDENTITY") or default_identity(values)
        ),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        controller_stop_timeout_seconds=env_int(
            values, "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
        ),
    )
