from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from reconciler.src.health import start_health_server
from reconciler.src.kube import build_clients, load_kube_configuration
from reconciler.src.metrics import METRICS
from reconciler.src.operator import build_operator_from_env, env_int

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


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> int:
    """Operator entrypoint: configure logging, start the health server and run until signalled.

    Returns the process exit status: ``1`` when the bootstrap loop failed,
    ``0`` on a signalled shutdown.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()
    operator = build_operator_from_env(clients)
    workers = env_int("WORKERS", 2, minimum=1)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(
        ready=operator.ready,
        port=health_port,
        bootstrapped=operator.bootstrapped,
    )

    stop_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        operator.run(workers, stop_event)
    finally:
        health_server.shutdown()

    if operator.fatal_error is not None:
        logging.getLogger(__name__).critical("Operator halted: %s", operator.fatal_error)
        return 1
    logging.getLogger(__name__).info("Operator stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
