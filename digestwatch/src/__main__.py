from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from digestwatch.src.config import ConfigError, env_int, load_config
from digestwatch.src.controller import build_controller
from digestwatch.src.health import start_health_server
from digestwatch.src.kube import build_clients, load_kube_configuration
from digestwatch.src.metrics import METRICS

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
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(\"(?:token|access_token)\"\s*:\s*\")([^\"]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("digestwatch")


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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    # urllib3 logs full request URLs at DEBUG, including token query strings.
    logging.getLogger("urllib3").setLevel(max(logging.root.level, logging.INFO))


def main() -> int:
    """Controller entrypoint: load config, connect to the cluster and run the check loop.

    Returns the process exit status: ``1`` for startup failures, ``0`` for
    a signal-triggered shutdown.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        health_port = env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535)
        load_kube_configuration(config.kubeconfig)
        core_api, apps_api = build_clients()
    except (ConfigError, ValueError, ConfigException, ApiException, OSError):
        LOGGER.exception("Fatal startup error")
        return 1

    controller = build_controller(config, core_api=core_api, apps_api=apps_api)
    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    LOGGER.info("Controller stopped gracefully")
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
