"""Constants, file paths, label selectors and URLs shared by the controller."""

from __future__ import annotations

import os

CLUSTER_ANNOTATION = "giantswarm.io/prometheus-cluster"
ETCD_DOMAIN_ANNOTATION = "giantswarm.io/etcd-domain"

MASTER_SERVICE_SELECTOR = "app=master"

JOB_NAME_PREFIX = "guest-cluster-"
PREFIX_MASTER = "master"

KUBE_SYSTEM_NAMESPACE = "kube-system"

CERTIFICATE_KEYS = ("ca", "crt", "key")


def cert_path(certificate_directory: str, cluster_id: str, suffix: str) -> str:
    return os.path.join(certificate_directory, f"{cluster_id}-{suffix}.pem")


def ca_path(certificate_directory: str, cluster_id: str) -> str:
    return cert_path(certificate_directory, cluster_id, "ca")


def crt_path(certificate_directory: str, cluster_id: str) -> str:
    return cert_path(certificate_directory, cluster_id, "crt")


def key_path(certificate_directory: str, cluster_id: str) -> str:
    return cert_path(certificate_directory, cluster_id, "key")


def secret_selector(component_name: str, cluster_id: str) -> str:
    """Label selector for the certificate Secret of one guest cluster."""
    return f"clusterComponent={component_name},clusterID={cluster_id}"


def job_name(namespace: str, kind: str) -> str:
    return f"{JOB_NAME_PREFIX}{namespace}-{kind}"


def api_proxy_pod_metrics_path(namespace: str, port: int) -> str:
    """Metrics path served through the API server's pod proxy.

    ``${1}`` is left for Prometheus to substitute with the pod name captured by
    the relabel regex.
    """
    return f"/api/v1/namespaces/{namespace}/pods/${{1}}:{port}/proxy/metrics"


def api_service_host(prefix: str, cluster_id: str) -> str:
    return f"{prefix}.{cluster_id}:443"


def prometheus_url_config(address: str) -> str:
    return address.rstrip("/") + "/api/v1/status/config"


def prometheus_url_reload(address: str) -> str:
    return address.rstrip("/") + "/-/reload"
