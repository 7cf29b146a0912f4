from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from prometheus_config_controller.src import key
from prometheus_config_controller.src.errors import ControllerError, ErrorKind, is_error_kind
from prometheus_config_controller.src.kube import is_conflict, is_not_found, timed_call
from prometheus_config_controller.src.merge import (
    dump_prometheus_config,
    load_prometheus_config,
    update_config,
)
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics
from prometheus_config_controller.src.reloader import PrometheusReloader
from prometheus_config_controller.src.resource import Patch, ReconcileContext
from prometheus_config_controller.src.scrapeconfig import build_scrape_configs

RESOURCE_NAME = "configmap"


@dataclass(frozen=True)
class PrometheusConfigMap:
    """The Prometheus ConfigMap as seen by the resource.

    ``body`` is the API object it was read from. It is carried along so the
    update sends back the same ``resourceVersion`` and a concurrent external
    write turns into a conflict instead of being overwritten.
    """

    name: str
    namespace: str
    data: dict[str, str]
    body: Any = field(default=None, compare=False, repr=False)


def _ensure_configmap(value: Any, what: str) -> PrometheusConfigMap:
    if not isinstance(value, PrometheusConfigMap):
        raise ControllerError(
            ErrorKind.WRONG_TYPE,
            f"{what} must be a PrometheusConfigMap, got {type(value).__name__}",
        )
    return value


class ConfigMapResource:
    """Keep the managed scrape jobs in the Prometheus ConfigMap up to date."""

    name = RESOURCE_NAME

    def __init__(
        self,
        core_api: CoreV1Api,
        reloader: PrometheusReloader,
        certificate_directory: str,
        configmap_key: str,
        configmap_name: str,
        configmap_namespace: str,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        for setting, value in (
            ("configmap key", configmap_key),
            ("configmap name", configmap_name),
            ("configmap namespace", configmap_namespace),
        ):
            if not value:
                raise ControllerError(ErrorKind.INVALID_CONFIG, f"{setting} must not be empty")
        self.core_api = core_api
        self.reloader = reloader
        self.certificate_directory = certificate_directory
        self.configmap_key = configmap_key
        self.configmap_name = configmap_name
        self.configmap_namespace = configmap_namespace
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics

    def _read(self) -> PrometheusConfigMap:
        try:
            body = timed_call(
                RESOURCE_NAME,
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

        metadata = body.metadata
        return PrometheusConfigMap(
            name=metadata.name,
            namespace=metadata.namespace,
            data=dict(body.data or {}),
            body=body,
        )

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> PrometheusConfigMap:
        return self._read()

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> PrometheusConfigMap:
        configmap = self._read()
        if self.configmap_key not in configmap.data:
            raise ControllerError(
                ErrorKind.CONFIGMAP_KEY_NOT_FOUND,
                f"key {self.configmap_key!r} not found in configmap "
                f"{configmap.namespace}/{configmap.name}",
            )

        try:
            prometheus_config = load_prometheus_config(configmap.data[self.configmap_key])
        except ControllerError as exc:
            if not is_error_kind(exc, ErrorKind.INVALID_CONFIG):
                raise
            raise ControllerError(
                ErrorKind.INVALID_CONFIGMAP,
                f"configmap {configmap.namespace}/{configmap.name} key "
                f"{self.configmap_key!r}: {exc.message}",
            ) from exc

        ctx.check_cancelled("configmap desired state")
        services = timed_call(
            RESOURCE_NAME,
            "list_services",
            self.core_api.list_service_for_all_namespaces,
            metrics=self.metrics,
            label_selector=key.MASTER_SERVICE_SELECTOR,
        )
        scrape_configs = build_scrape_configs(services.items or [], self.certificate_directory)
        updated = update_config(prometheus_config, scrape_configs)

        data = dict(configmap.data)
        data[self.configmap_key] = dump_prometheus_config(updated)
        body = copy.copy(configmap.body)
        body.data = data
        return PrometheusConfigMap(
            name=configmap.name,
            namespace=configmap.namespace,
            data=data,
            body=body,
        )

    def new_patch(
        self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext
    ) -> Patch[PrometheusConfigMap]:
        current_cm = _ensure_configmap(current, "current state")
        desired_cm = _ensure_configmap(desired, "desired state")
        if current_cm.name != desired_cm.name:
            raise ControllerError(
                ErrorKind.WRONG_NAME,
                f"current configmap {current_cm.name!r} and desired configmap "
                f"{desired_cm.name!r} differ in name",
            )
        if current_cm.namespace != desired_cm.namespace:
            raise ControllerError(
                ErrorKind.WRONG_NAMESPACE,
                f"current configmap namespace {current_cm.namespace!r} and desired "
                f"namespace {desired_cm.namespace!r} differ",
            )

        if current_cm.data.get(self.configmap_key) == desired_cm.data.get(self.configmap_key):
            return Patch()
        return Patch(update=desired_cm)

    def apply_patch(
        self, obj: Any, patch: Patch[PrometheusConfigMap], ctx: ReconcileContext
    ) -> None:
        if patch.update is not None:
            self._update(_ensure_configmap(patch.update, "patch"))

        ctx.check_cancelled("configmap reload")
        try:
            self.reloader.reload(ctx)
        except ControllerError as exc:
            if not is_error_kind(exc, ErrorKind.RELOAD_THROTTLE):
                raise
            self.logger.info("Prometheus reload throttled; keeping finalizer: %s", exc.message)
            ctx.keep_finalizer(retry_after=exc.retry_after)

    def _update(self, configmap: PrometheusConfigMap) -> None:
        try:
            timed_call(
                RESOURCE_NAME,
                "update",
                self.core_api.replace_namespaced_config_map,
                metrics=self.metrics,
                name=configmap.name,
                namespace=configmap.namespace,
                body=configmap.body,
            )
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.info(
                    "Configmap %s/%s changed since it was read; next reconcile converges",
                    configmap.namespace,
                    configmap.name,
                )
                return
            if is_not_found(exc):
                raise ControllerError(
                    ErrorKind.CONFIGMAP_NOT_FOUND,
                    f"configmap {configmap.namespace}/{configmap.name} not found",
                ) from exc
            raise
        self.logger.info("Updated configmap %s/%s", configmap.namespace, configmap.name)
