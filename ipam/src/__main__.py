from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from ipam.src.config import load_config
from ipam.src.controller import build_controller, env_int
from ipam.src.health import start_health_server
from ipam.src.kube import build_clients, load_kube_configuration
from ipam.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Single-line JSON log records for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Reconciler entrypoint: logging, config, leader election and the resync loop."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()
    controller = build_controller(config, core_api, apps_api, custom_api)

    leader_election_enabled = _parse_bool_env("LEADER_ELECTION_ENABLED", default=True)
    leader_ready = threading.Event() if leader_election_enabled else None
    health_port = env_int("HEALTH_PORT", 9041, minimum=1, maximum=65535)
    health_server = start_health_server(
        synced=controller.ready,
        port=health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_election_enabled:
        from kubernetes.client import CoordinationV1Api

        from ipam.src.leader import LeaderElectionConfig, LeaseLeaderElector, default_identity

        election = LeaderElectionConfig(
            namespace=os.getenv("WATCH_NAMESPACE", "kube-system"),
            lease_name=os.getenv("LEADER_ELECTION_LEASE_NAME", "floatingip-ipam-leader"),
            identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
            lease_duration_seconds=env_int(
                "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
            ),
            renew_deadline_seconds=env_int(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
            ),
            retry_period_seconds=env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
        )
        elector = LeaseLeaderElector(coordination_api=CoordinationV1Api(), config=election)

        loop_thread: threading.Thread | None = None
        loop_stop = threading.Event()
        loop_lock = threading.Lock()
        # A resync cycle blocks on store and cloud provider calls, so the
        # handoff wait must cover a full cycle.
        loop_stop_timeout_seconds = env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 60, minimum=1
        )

        def on_started_leading() -> None:
            nonlocal loop_thread, loop_stop
            with loop_lock:
                if shutdown_event.is_set():
                    return
                if loop_thread is not None and loop_thread.is_alive():
                    LOGGER.error(
                        "Previous resync loop is still running; refusing to start a second one"
                    )
                    shutdown_event.set()
                    return

                loop_stop = threading.Event()
                if leader_ready is not None:
                    leader_ready.set()

                def _run_loop() -> None:
                    unexpected_exit = False
                    try:
                        controller.run_forever(shutdown_event=loop_stop)
                        unexpected_exit = not loop_stop.is_set() and not shutdown_event.is_set()
                        if unexpected_exit:
                            LOGGER.error("Resync loop exited without a stop signal; terminating")
                    except Exception:
                        unexpected_exit = True
                        LOGGER.exception("Resync loop crashed")
                    finally:
                        if unexpected_exit:
                            shutdown_event.set()

                loop_thread = threading.Thread(target=_run_loop, daemon=True)
                loop_thread.start()

        def on_stopped_leading() -> None:
            nonlocal loop_thread
            with loop_lock:
                if leader_ready is not None:
                    leader_ready.clear()

                controller.request_stop()
                loop_stop.set()
                if loop_thread is None:
                    return

                loop_thread.join(timeout=loop_stop_timeout_seconds)
                if loop_thread.is_alive():
                    LOGGER.error(
                        "Resync loop did not stop within %ss after losing leadership; "
                        "forcing process shutdown",
                        loop_stop_timeout_seconds,
                    )
                    shutdown_event.set()
                    return
                loop_thread = None

        elector.run(
            on_started_leading=on_started_leading,
            on_stopped_leading=on_stopped_leading,
            stop_event=shutdown_event,
        )
        on_stopped_leading()
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("IPAM reconciler stopped")


if __name__ == "__main__":
    main()
