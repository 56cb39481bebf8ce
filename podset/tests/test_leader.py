from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from podset.src.leader import LeaseLeaderElector
from podset.src.metrics import METRICS


def _make_elector(
    coordination_api: Any = None,
    identity: str = "operator-0",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace="operators",
        lease_name="podset-operator-lock",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name="podset-operator-lock", namespace="operators"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


def test_creates_lease_when_missing() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert _make_elector(api)._try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "operator-0"
    assert body.spec.acquire_time == body.spec.renew_time


def test_read_failure_is_not_acquisition() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(api)._try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()


def test_create_conflict_is_not_acquisition() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(api)._try_acquire_or_renew() is False


def test_renewal_keeps_acquire_time() -> None:
    api = MagicMock()
    lease = _lease("operator-0", renewed_ago=5, acquired_ago=30)
    acquired = lease.spec.acquire_time
    api.read_namespaced_lease.return_value = lease

    assert _make_elector(api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == acquired
    assert body.spec.renew_time > acquired


def test_active_lease_of_another_holder_is_respected() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("operator-1", renewed_ago=2)

    assert _make_elector(api)._try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_expired_lease_is_taken_over_with_new_acquire_time() -> None:
    api = MagicMock()
    lease = _lease("operator-1", renewed_ago=60, acquired_ago=120)
    old_acquire = lease.spec.acquire_time
    api.read_namespaced_lease.return_value = lease

    assert _make_elector(api)._try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "operator-0"
    assert body.spec.acquire_time != old_acquire


def test_released_lease_is_taken_over_immediately() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    assert _make_elector(api)._try_acquire_or_renew() is True


def test_replace_conflict_is_not_acquisition() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("operator-0", renewed_ago=1)
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(api)._try_acquire_or_renew() is False


def test_constructor_rejects_invalid_timings() -> None:
    with pytest.raises(ValueError, match="renew_deadline_seconds must be smaller"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)
    with pytest.raises(ValueError, match="retry_period_seconds must be smaller"):
        _make_elector(renew_deadline_seconds=5, retry_period_seconds=5)


def test_run_starts_leading_and_releases_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("operator-0", renewed_ago=0),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    calls: list[str] = []
    acquired_before = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()

    def on_started() -> None:
        calls.append("started")
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=lambda: calls.append("stopped"),
        stop_event=stop,
    )

    assert calls == ["started", "stopped"]
    assert not elector.is_leader
    released = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released.spec.holder_identity is None
    assert METRICS.leader_transitions_total.labels(transition="acquired")._value.get() - acquired_before == 1
    assert METRICS.leader_state._value.get() == 0


def test_unexpected_errors_do_not_end_the_campaign() -> None:
    elector = _make_elector()
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    with (
        patch.object(
            elector, "_try_acquire_or_renew", side_effect=[ConnectionError("blip"), True]
        ),
        patch.object(elector, "_release_lease"),
    ):
        elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()


def test_steps_down_after_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped: list[bool] = []

    def on_stopped() -> None:
        stopped.append(True)
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "_release_lease") as release,
    ):
        mp.setattr("podset.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 1.5]))
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped == [True]
    release.assert_not_called()
    assert not elector.is_leader


def test_keeps_leading_through_short_renewal_failure() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped: list[bool] = []
    cycles = iter([True, False])

    def try_cycle() -> bool:
        held = next(cycles)
        if not held:
            stop.set()
        return held

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "_try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "_release_lease") as release,
    ):
        mp.setattr("podset.src.leader.time.monotonic", MagicMock(side_effect=[0.0, 0.1, 0.5]))
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=lambda: stopped.append(True),
            stop_event=stop,
        )

    # Only the shutdown release steps down, not the failed renewal.
    assert stopped == [True]
    release.assert_called_once()
