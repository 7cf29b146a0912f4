from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.config.config_exception import ConfigException

from prometheus_config_controller.src.controller import Controller, build_controllers
from prometheus_config_controller.src.errors import ControllerError
from prometheus_config_controller.src.health import start_health_server
from prometheus_config_controller.src.kube import build_core_api, load_kube_configuration
from prometheus_config_controller.src.metrics import METRICS
from prometheus_config_controller.src.settings import ConfigError, load_settings

NAME = "prometheus-config-controller"
RUNTIME_VERSION = "0.1.0"
SOURCE = "https://github.com/giantswarm/prometheus-config-controller"

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
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "[REDACTED PRIVATE KEY]",
    ),
)

# Context fields callers may attach with ``extra=``.
_CONTEXT_FIELDS = ("resource", "cluster_id", "event", "loop")


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
        for field_name in _CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_entry[field_name] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def version_info() -> dict[str, str]:
    return {
        "name": NAME,
        "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
        "revision": os.getenv("GIT_SHA", "unknown"),
        "source": SOURCE,
    }


def _configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> int:
    """Controller entrypoint: load settings, wire both reconcile loops and run until signalled.

    Returns the process exit code: ``0`` on a clean shutdown, ``1`` when the
    configuration is invalid, the API server stays unreachable past the boot
    deadline, or an informer fails fatally.
    """
    _configure_logging("INFO")
    logger = logging.getLogger(__name__)
    info = version_info()
    METRICS.build_info.info({"version": info["version"], "revision": info["revision"]})

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc.message)
        return 1
    logging.root.setLevel(getattr(logging, settings.log_level, logging.INFO))

    try:
        load_kube_configuration(
            address=settings.kubernetes_address,
            in_cluster=settings.kubernetes_in_cluster,
            kubeconfig=settings.kubeconfig,
            ca_file=settings.kubernetes_ca_file,
            crt_file=settings.kubernetes_crt_file,
            key_file=settings.kubernetes_key_file,
        )
    except (ConfigException, OSError) as exc:
        logger.error("Could not load Kubernetes configuration: %s", exc)
        return 1
    core_api = build_core_api()

    try:
        main_loop, reload_loop = build_controllers(settings, core_api)
    except ControllerError as exc:
        logger.error("Could not build controllers: %s", exc)
        return 1

    health_server = start_health_server(
        ready=[main_loop.ready, reload_loop.ready],
        port=settings.health_port,
        version_info=info,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    results: dict[str, bool] = {}

    def _run(controller: Controller) -> None:
        healthy = False
        try:
            healthy = controller.run_forever(
                shutdown_event=shutdown_event,
                boot_timeout_seconds=settings.boot_timeout_seconds,
            )
        except ControllerError as exc:
            logger.error("Controller %s could not start: %s", controller.name, exc)
        except Exception:
            logger.exception("Controller %s crashed", controller.name)
        finally:
            results[controller.name] = healthy
            # One loop ending takes the other one down with it.
            shutdown_event.set()

    reload_thread = threading.Thread(target=_run, args=(reload_loop,), daemon=True)
    reload_thread.start()
    _run(main_loop)
    reload_thread.join(timeout=60)

    health_server.shutdown()
    exit_code = 0 if results and all(results.values()) else 1
    logger.info("Controller stopped (exit code %d)", exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
