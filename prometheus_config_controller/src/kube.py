from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics

LOGGER = logging.getLogger(__name__)

# Upper bound for a single Kubernetes API request so a stalled call cannot
# hold a reconcile worker forever.
REQUEST_TIMEOUT_SECONDS = 30

T = TypeVar("T")


def load_kube_configuration(
    address: str = "",
    in_cluster: bool = False,
    kubeconfig: str = "",
    ca_file: str = "",
    crt_file: str = "",
    key_file: str = "",
) -> None:
    """Load Kubernetes client configuration.

    Resolution order:
    1. An explicit API server ``address``, optionally with client TLS files.
    2. In-cluster service account configuration when ``in_cluster`` is set.
    3. The kubeconfig file at ``kubeconfig`` when given.
    4. In-cluster config, falling back to the default kubeconfig for
       development.
    """
    if address:
        configuration = client.Configuration()
        configuration.host = address
        if ca_file:
            configuration.ssl_ca_cert = ca_file
        if crt_file:
            configuration.cert_file = crt_file
        if key_file:
            configuration.key_file = key_file
        client.Configuration.set_default(configuration)
        LOGGER.info("Using Kubernetes API server at %s", address)
        return

    if in_cluster:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return

    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return

    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def timed_call(
    resource: str,
    action: str,
    fn: Callable[..., T],
    *,
    metrics: ControllerMetrics = METRICS,
    **kwargs: Any,
) -> T:
    """Call a Kubernetes API method and record its latency.

    A request timeout is added unless the caller passes one.
    """
    kwargs.setdefault("_request_timeout", REQUEST_TIMEOUT_SECONDS)
    with metrics.kubernetes_request_seconds.labels(resource=resource, action=action).time():
        return fn(**kwargs)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_access_denied(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status in {401, 403}
