from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from podset.src.config import OperatorConfig, load_config
from podset.src.controller import PodSetController, build_controller
from podset.src.health import start_health_server
from podset.src.kube import build_clients, load_kube_configuration
from podset.src.leader import LeaseLeaderElector
from podset.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger("podset.src.main")

# Attributes attached through ``extra=`` or a LoggerAdapter that are copied
# into the JSON line.
_CONTEXT_FIELDS = ("podset_namespace", "podset_name")

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects, including reconcile context when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def run_with_leader_election(
    controller: PodSetController,
    elector: LeaseLeaderElector,
    config: OperatorConfig,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run the controller only while this replica holds the lease.

    Losing the lease stops the controller thread; if it does not stop within
    ``controller_stop_timeout_seconds`` the whole process shuts down rather
    than risk two replicas reconciling the same PodSets.
    """
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller thread is still running; shutting down")
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()
            stop = controller_stop

            def _run_controller() -> None:
                try:
                    controller.run_forever(shutdown_event=stop)
                except Exception:
                    LOGGER.exception("Controller thread crashed")
                    shutdown_event.set()
                    return
                if not stop.is_set() and not shutdown_event.is_set():
                    LOGGER.error("Controller exited without a stop signal; shutting down")
                    shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return
            controller_thread.join(timeout=config.controller_stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss after losing leadership",
                    config.controller_stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Operator entrypoint: configure logging, build the controller and run it until signalled."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info(
        "Starting podset operator for %s/%s (namespace=%s)",
        config.api_version,
        config.plural,
        config.watch_namespace or "<all>",
    )

    load_kube_configuration()
    core_api, custom_api, coordination_api = build_clients()
    controller = build_controller(core_api=core_api, custom_api=custom_api, config=config)

    leader_ready = threading.Event() if config.leader_election_enabled else None
    health_server = start_health_server(
        ready=controller.ready, port=config.health_port, leader=leader_ready
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            elector = LeaseLeaderElector(
                coordination_api=coordination_api,
                namespace=config.leader_election_namespace,
                lease_name=config.leader_election_lease_name,
                identity=config.leader_election_identity,
                lease_duration_seconds=config.lease_duration_seconds,
                renew_deadline_seconds=config.renew_deadline_seconds,
                retry_period_seconds=config.retry_period_seconds,
            )
            run_with_leader_election(controller, elector, config, leader_ready, shutdown_event)
        else:
            controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()
