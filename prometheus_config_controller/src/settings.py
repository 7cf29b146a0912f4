from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from prometheus_config_controller.src.errors import ControllerError, ErrorKind


class ConfigError(ControllerError):
    """Raised when the controller configuration is invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.INVALID_CONFIG, message)


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        kubernetes_address: API server URL; empty means kubeconfig or in-cluster.
        kubernetes_in_cluster: Force the in-cluster service account config.
        kubeconfig: Path of a kubeconfig file.
        kubernetes_ca_file / kubernetes_crt_file / kubernetes_key_file:
            Client TLS files used together with ``kubernetes_address``.
        prometheus_address: Base URL of the Prometheus server to reload.
        resource_retries: Extra attempts for every failed resource step.
        certificate_*: Where guest cluster certificates come from and land.
        configmap_*: The Prometheus ConfigMap and the key holding its YAML.
        resync_period_seconds: Artificial tick and service re-list period.
        reload_resync_period_seconds: Re-list period of the reload-only loop.
        minimum_reload_seconds: Minimum time between two Prometheus reloads.
    """

    prometheus_address: str
    kubernetes_address: str = ""
    kubernetes_in_cluster: bool = False
    kubeconfig: str = ""
    kubernetes_ca_file: str = ""
    kubernetes_crt_file: str = ""
    kubernetes_key_file: str = ""
    resource_retries: int = 3
    certificate_component_name: str = "prometheus"
    certificate_directory: str = "/certs"
    certificate_namespace: str = "default"
    certificate_permission: int = 0o600
    configmap_key: str = "prometheus.yml"
    configmap_name: str = "prometheus"
    configmap_namespace: str = "monitoring"
    resync_period_seconds: int = 60
    reload_resync_period_seconds: int = 180
    minimum_reload_seconds: int = 30
    prometheus_timeout_seconds: int = 30
    workers: int = 2
    boot_timeout_seconds: int = 300
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def parse_permission(name: str, raw: str | None, default: int) -> int:
    """Parse an octal file mode such as ``0600`` or ``0o640``."""
    if raw is None or not raw.strip():
        return default
    text = raw.strip().lower()
    if text.startswith("0o"):
        text = text[2:]
    try:
        value = int(text, 8)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an octal file mode, got: {raw!r}") from exc
    if not 0 <= value <= 0o777:
        raise ConfigError(f"{name} must be between 0000 and 0777, got: {raw!r}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    ``PROMETHEUS_ADDRESS`` is the only required variable; everything else has
    a default. Raises :class:`ConfigError` on missing or malformed values.
    """
    values = env if env is not None else os.environ

    prometheus_address = values.get("PROMETHEUS_ADDRESS", "").strip()
    if not prometheus_address:
        raise ConfigError("PROMETHEUS_ADDRESS is not set")
    if not prometheus_address.startswith(("http://", "https://")):
        raise ConfigError(
            f"PROMETHEUS_ADDRESS must be an http(s) URL, got: {prometheus_address!r}"
        )

    tls_files = {
        name: values.get(name, "").strip()
        for name in ("KUBERNETES_TLS_CA_FILE", "KUBERNETES_TLS_CRT_FILE", "KUBERNETES_TLS_KEY_FILE")
    }
    kubernetes_address = values.get("KUBERNETES_ADDRESS", "").strip()
    if any(tls_files.values()) and not kubernetes_address:
        raise ConfigError("KUBERNETES_TLS_* files require KUBERNETES_ADDRESS")

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return ControllerSettings(
        prometheus_address=prometheus_address,
        kubernetes_address=kubernetes_address,
        kubernetes_in_cluster=parse_bool(values.get("KUBERNETES_IN_CLUSTER")),
        kubeconfig=values.get("KUBECONFIG", "").strip(),
        kubernetes_ca_file=tls_files["KUBERNETES_TLS_CA_FILE"],
        kubernetes_crt_file=tls_files["KUBERNETES_TLS_CRT_FILE"],
        kubernetes_key_file=tls_files["KUBERNETES_TLS_KEY_FILE"],
        resource_retries=env_int("RESOURCE_RETRIES", 3, minimum=0, env=values),
        certificate_component_name=_non_empty(values, "CERTIFICATE_COMPONENT_NAME", "prometheus"),
        certificate_directory=_non_empty(values, "CERTIFICATE_DIRECTORY", "/certs"),
        certificate_namespace=_non_empty(values, "CERTIFICATE_NAMESPACE", "default"),
        certificate_permission=parse_permission(
            "CERTIFICATE_PERMISSION", values.get("CERTIFICATE_PERMISSION"), 0o600
        ),
        configmap_key=_non_empty(values, "CONFIGMAP_KEY", "prometheus.yml"),
        configmap_name=_non_empty(values, "CONFIGMAP_NAME", "prometheus"),
        configmap_namespace=_non_empty(values, "CONFIGMAP_NAMESPACE", "monitoring"),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 60, minimum=1, env=values),
        reload_resync_period_seconds=env_int(
            "RELOAD_RESYNC_PERIOD_SECONDS", 180, minimum=1, env=values
        ),
        minimum_reload_seconds=env_int("MINIMUM_RELOAD_SECONDS", 30, minimum=0, env=values),
        prometheus_timeout_seconds=env_int(
            "PROMETHEUS_TIMEOUT_SECONDS", 30, minimum=1, maximum=300, env=values
        ),
        workers=env_int("RECONCILE_WORKERS", 2, minimum=1, maximum=64, env=values),
        boot_timeout_seconds=env_int("BOOT_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values),
        log_level=log_level,
    )
