from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import requests
from kubernetes.client import ApiException, CoreV1Api

from prometheus_config_controller.src import key
from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.kube import is_not_found, timed_call
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics
from prometheus_config_controller.src.resource import ReconcileContext


class PrometheusReloader:
    """Rate-limited trigger for Prometheus' ``/-/reload`` endpoint.

    Two pieces of state are shared between reconcile workers: the time of the
    last successful reload and a "reload requested" flag set by resources that
    changed something Prometheus reads from disk (the certificate files).

    :meth:`reload` decides whether a reload is needed:

    1. If the last successful reload is younger than ``minimum_reload_seconds``
       it raises ``reloadThrottle`` with the time left.
    2. If a reload was requested, the flag is cleared and the reload goes ahead.
    3. Otherwise the config Prometheus reports on ``/api/v1/status/config`` is
       compared with the ConfigMap payload and the reload only happens when
       they differ.

    ``_state_lock`` guards the two fields and is never held across an HTTP
    call. ``_decision_lock`` serializes whole decisions so that at most one
    POST to ``/-/reload`` is in flight.
    """

    def __init__(
        self,
        address: str,
        core_api: CoreV1Api,
        configmap_name: str,
        configmap_namespace: str,
        configmap_key: str,
        minimum_reload_seconds: float,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        if not address:
            raise ControllerError(ErrorKind.INVALID_CONFIG, "prometheus address must not be empty")
        if minimum_reload_seconds < 0:
            raise ControllerError(
                ErrorKind.INVALID_CONFIG, "minimum reload interval must not be negative"
            )
        self.url_config = key.prometheus_url_config(address)
        self.url_reload = key.prometheus_url_reload(address)
        self.core_api = core_api
        self.configmap_name = configmap_name
        self.configmap_namespace = configmap_namespace
        self.configmap_key = configmap_key
        self.minimum_reload_seconds = minimum_reload_seconds
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics

        self._state_lock = threading.Lock()
        self._decision_lock = threading.Lock()
        self._last_reload_time: float | None = None
        self._reload_requested = False

    @property
    def reload_requested(self) -> bool:
        with self._state_lock:
            return self._reload_requested

    @property
    def last_reload_time(self) -> float | None:
        with self._state_lock:
            return self._last_reload_time

    def request_reload(self, ctx: ReconcileContext | None = None) -> None:
        with self._state_lock:
            self._reload_requested = True
        self.logger.debug("Prometheus reload requested")

    def reload(self, ctx: ReconcileContext) -> bool:
        """Reload Prometheus if needed; return True when a reload was sent."""
        ctx.check_cancelled("prometheus reload")
        self.metrics.reload_checks_total.inc()

        with self._decision_lock:
            with self._state_lock:
                now = self.clock()
                if self._last_reload_time is not None:
                    elapsed = now - self._last_reload_time
                    if elapsed < self.minimum_reload_seconds:
                        remaining = self.minimum_reload_seconds - elapsed
                        self.metrics.reload_throttled_total.inc()
                        raise ControllerError(
                            ErrorKind.RELOAD_THROTTLE,
                            f"last reload was {elapsed:.1f}s ago, "
                            f"next reload allowed in {remaining:.1f}s",
                            retry_after=remaining,
                        )
                requested = self._reload_requested
                self._reload_requested = False

            try:
                if not requested and not self._config_differs(ctx):
                    self.metrics.reload_ignored_total.inc()
                    self.logger.debug("Prometheus already runs the ConfigMap config; no reload")
                    return False

                self.metrics.reload_required_total.inc()
                ctx.check_cancelled("prometheus reload")
                self._post_reload()
            except Exception:
                if requested:
                    with self._state_lock:
                        self._reload_requested = True
                raise

            with self._state_lock:
                self._last_reload_time = self.clock()
            self.metrics.reloads_total.inc()
            self.logger.info("Reloaded Prometheus configuration")
            return True

    def _config_differs(self, ctx: ReconcileContext) -> bool:
        running = self._fetch_prometheus_config()
        ctx.check_cancelled("prometheus reload")
        stored = self._fetch_configmap_config()
        return running != stored

    def _fetch_prometheus_config(self) -> str:
        try:
            response = self.session.get(self.url_config, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED, f"could not fetch {self.url_config}: {exc}"
            ) from exc

        if response.status_code != 200:
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED,
                f"expected status 200 from {self.url_config}, got {response.status_code}",
            )

        try:
            body: Any = response.json()
        except ValueError as exc:
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED, f"invalid JSON from {self.url_config}"
            ) from exc

        status = body.get("status") if isinstance(body, dict) else None
        if status != "success":
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED,
                f"expected status 'success' from {self.url_config}, got {status!r}",
            )
        data = body.get("data")
        yaml_text = data.get("yaml") if isinstance(data, dict) else None
        if not isinstance(yaml_text, str):
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED, f"missing data.yaml in response from {self.url_config}"
            )
        return yaml_text

    def _fetch_configmap_config(self) -> str:
        try:
            configmap = timed_call(
                "reloader",
                "get",
                self.core_api.read_namespaced_config_map,
                metrics=self.metrics,
                name=self.configmap_name,
                namespace=self.configmap_namespace,
            )
        except ApiException as exc:
            if is_not_found(exc):
                raise ControllerError(
                    ErrorKind.CONFIGMAP_NOT_FOUND,
                    f"configmap {self.configmap_namespace}/{self.configmap_name} not found",
                ) from exc
            raise

        data = getattr(configmap, "data", None) or {}
        if self.configmap_key not in data:
            raise ControllerError(
                ErrorKind.CONFIGMAP_KEY_NOT_FOUND,
                f"key {self.configmap_key!r} not found in configmap "
                f"{self.configmap_namespace}/{self.configmap_name}",
            )
        return data[self.configmap_key]

    def _post_reload(self) -> None:
        try:
            response = self.session.post(self.url_reload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED, f"could not post {self.url_reload}: {exc}"
            ) from exc

        if response.status_code != 200:
            self.metrics.reload_errors_total.inc()
            raise ControllerError(
                ErrorKind.EXECUTION_FAILED,
                f"expected status 200 from {self.url_reload}, got {response.status_code}",
            )
