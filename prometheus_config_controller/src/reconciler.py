from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from kubernetes.client import CoreV1Api

from prometheus_config_controller.src import key
from prometheus_config_controller.src.certificate import CertificateResource
from prometheus_config_controller.src.configmap import ConfigMapResource
from prometheus_config_controller.src.errors import ControllerError
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics
from prometheus_config_controller.src.reload import ReloadResource
from prometheus_config_controller.src.reloader import PrometheusReloader
from prometheus_config_controller.src.resource import (
    ReconcileContext,
    Resource,
    RetryResource,
    reconcile_resource,
)

MAIN_LOOP = "main"
RELOAD_LOOP = "reload"


def _handles_everything(obj: Any) -> bool:
    return True


def handles_guest_cluster_object(obj: Any) -> bool:
    """Return False for objects in ``kube-system``.

    The host cluster's own master service lives there and must never be
    treated as a guest cluster.
    """
    namespace = getattr(getattr(obj, "metadata", None), "namespace", None)
    return namespace != key.KUBE_SYSTEM_NAMESPACE


class ResourceSet:
    """An ordered list of resources reconciled one after the other for an object."""

    def __init__(
        self,
        loop: str,
        resources: Sequence[Resource],
        handles: Callable[[Any], bool] = _handles_everything,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        self.loop = loop
        self.resources = tuple(resources)
        self._handles = handles
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics

    def handles(self, obj: Any) -> bool:
        return self._handles(obj)

    def reconcile(self, obj: Any, ctx: ReconcileContext) -> None:
        """Reconcile every resource in order; the first failure aborts the pass."""
        for resource in self.resources:
            labels = {"loop": self.loop, "resource": resource.name}
            self.metrics.reconcile_total.labels(**labels).inc()
            started = time.monotonic()
            try:
                reconcile_resource(resource, obj, ctx)
            except ControllerError as exc:
                self.metrics.reconcile_errors_total.labels(kind=exc.kind.value, **labels).inc()
                raise
            except Exception:
                self.metrics.reconcile_errors_total.labels(kind="unknown", **labels).inc()
                raise
            finally:
                self.metrics.reconcile_duration_seconds.labels(**labels).observe(
                    time.monotonic() - started
                )


class Reconciler:
    """Dispatch an object to the first resource set that handles it."""

    def __init__(
        self, resource_sets: Sequence[ResourceSet], logger: logging.Logger | None = None
    ) -> None:
        self.resource_sets = tuple(resource_sets)
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, obj: Any, cancel: threading.Event | None = None) -> ReconcileContext:
        ctx = ReconcileContext(cancel=cancel or threading.Event())
        for resource_set in self.resource_sets:
            if resource_set.handles(obj):
                resource_set.reconcile(obj, ctx)
                return ctx

        metadata = getattr(obj, "metadata", None)
        self.logger.debug(
            "No resource set handles %s/%s; skipping",
            getattr(metadata, "namespace", None),
            getattr(metadata, "name", None),
        )
        return ctx


def new_main_resource_set(
    core_api: CoreV1Api,
    reloader: PrometheusReloader,
    *,
    resource_retries: int,
    certificate_directory: str,
    certificate_component_name: str,
    certificate_namespace: str,
    certificate_permission: int,
    configmap_key: str,
    configmap_name: str,
    configmap_namespace: str,
    metrics: ControllerMetrics = METRICS,
) -> ResourceSet:
    """Certificates first, then the ConfigMap, so scrape jobs never point at missing files."""
    certificate = CertificateResource(
        core_api=core_api,
        reloader=reloader,
        certificate_directory=certificate_directory,
        component_name=certificate_component_name,
        namespace=certificate_namespace,
        permission=certificate_permission,
        metrics=metrics,
    )
    configmap = ConfigMapResource(
        core_api=core_api,
        reloader=reloader,
        certificate_directory=certificate_directory,
        configmap_key=configmap_key,
        configmap_name=configmap_name,
        configmap_namespace=configmap_namespace,
        metrics=metrics,
    )
    return ResourceSet(
        loop=MAIN_LOOP,
        resources=[
            RetryResource(certificate, resource_retries, metrics=metrics),
            RetryResource(configmap, resource_retries, metrics=metrics),
        ],
        handles=handles_guest_cluster_object,
        metrics=metrics,
    )


def new_reload_resource_set(
    reloader: PrometheusReloader,
    *,
    resource_retries: int,
    metrics: ControllerMetrics = METRICS,
) -> ResourceSet:
    return ResourceSet(
        loop=RELOAD_LOOP,
        resources=[RetryResource(ReloadResource(reloader), resource_retries, metrics=metrics)],
        metrics=metrics,
    )
