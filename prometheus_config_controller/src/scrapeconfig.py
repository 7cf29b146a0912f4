from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from prometheus_config_controller.src import key

LOGGER = logging.getLogger(__name__)

HTTP_SCHEME = "http"
HTTPS_SCHEME = "https"

ROLE_ENDPOINTS = "endpoints"
ROLE_NODE = "node"

ACTION_KEEP = "keep"
ACTION_DROP = "drop"
ACTION_REPLACE = "replace"

APISERVER_JOB = "apiserver"
CADVISOR_JOB = "cadvisor"
KUBELET_JOB = "kubelet"
NODE_EXPORTER_JOB = "node-exporter"
WORKLOAD_JOB = "workload"
ETCD_JOB = "etcd"

# Source labels set by Prometheus' Kubernetes service discovery.
SD_NAMESPACE_LABEL = "__meta_kubernetes_namespace"
SD_SERVICE_NAME_LABEL = "__meta_kubernetes_service_name"
SD_NODE_NAME_LABEL = "__meta_kubernetes_node_name"
SD_NODE_INTERNAL_IP_LABEL = "__meta_kubernetes_node_address_InternalIP"
SD_NODE_ROLE_LABEL = "__meta_kubernetes_node_label_role"
SD_POD_NAME_LABEL = "__meta_kubernetes_pod_name"
SD_POD_NODE_NAME_LABEL = "__meta_kubernetes_pod_node_name"

ADDRESS_LABEL = "__address__"
METRICS_PATH_LABEL = "__metrics_path__"
METRIC_NAME_LABEL = "__name__"

APP_LABEL = "app"
CLUSTER_ID_LABEL = "cluster_id"
CLUSTER_TYPE_LABEL = "cluster_type"
EXPORTED_NAMESPACE_LABEL = "exported_namespace"
FSTYPE_LABEL = "fstype"
IP_LABEL = "ip"
NAME_LABEL = "name"
NAMESPACE_LABEL = "namespace"
NODE_LABEL = "node"
POD_NAME_LABEL = "pod_name"
ROLE_LABEL = "role"
STATE_LABEL = "state"

GUEST_CLUSTER_TYPE = "guest"
WORKER_ROLE = "worker"
KUBERNETES_APP = "kubernetes"

CADVISOR_METRICS_PATH = "/api/v1/nodes/${1}:10250/proxy/metrics/cadvisor"
NODE_EXPORTER_ADDRESS = "${1}:10300"
GROUP_CAPTURE = "${1}"

APISERVER_REGEX = "default;kubernetes"
EMPTY_REGEX = ""
KUBELET_PORT_REGEX = "(.*):10250"
NODE_EXPORTER_REGEX = "kube-system;node-exporter"
NODE_EXPORTER_PORT_REGEX = "(.*):10300"
NAMESPACE_REGEX = "(kube-system|giantswarm.*|vault-exporter)"
RELABEL_NAMESPACE_REGEX = ";(kube-system|giantswarm.*|vault-exporter)"
DROP_BUCKET_LATENCIES_REGEX = (
    "(apiserver_admission_controller_admission_latencies_seconds_bucket"
    "|apiserver_admission_step_admission_latencies_seconds_bucket"
    "|apiserver_response_sizes_bucket"
    "|rest_client_request_latency_seconds_bucket"
    "|rest_client_request_latency_seconds_bucket)"
)
DROP_REFLECTOR_REGEX = "(reflector.*)"
DROP_CONTAINER_NETWORK_REGEX = "container_network_.*"
DROP_FSTYPE_REGEX = "(cgroup|devpts|mqueue|nsfs|overlay|tmpfs)"
DROP_SYSTEMD_STATE_REGEX = "node_systemd_unit_state;(active|activating|deactivating|inactive)"
DROP_SYSTEMD_NAME_REGEX = (
    "node_systemd_unit_state;(dev-disk-by|run-docker-netns|sys-devices|sys-subsystem-net"
    "|var-lib-docker-overlay2|var-lib-docker-containers|var-lib-kubelet-pods).*"
)
DROP_INGRESS_CONTROLLER_REGEX = "(ingress_controller_ssl_expire_time_seconds|nginx.*)"
WORKLOAD_WHITELIST_REGEX = (
    "(kube-system;(calico-node|cert-exporter|cluster-autoscaler|coredns|kube-state-metrics"
    "|net-exporter|nginx-ingress-controller|nic-exporter))"
    "|(giantswarm;chart-operator)"
    "|(giantswarm-elastic-logging;elastic-logging-elasticsearch-exporter)"
    "|(vault-exporter;vault-exporter)"
)


@dataclass(frozen=True)
class ProxiedApp:
    """A workload reached through the guest API server's pod proxy."""

    name: str
    namespace: str
    port: int


# Order matters: it is the order of the __metrics_path__ rewrites in the
# workload job.
PROXIED_APPS: tuple[ProxiedApp, ...] = (
    ProxiedApp("kube-state-metrics", "kube-system", 10301),
    ProxiedApp("nginx-ingress-controller", "kube-system", 10254),
    ProxiedApp("calico-node", "kube-system", 9091),
    ProxiedApp("chart-operator", "giantswarm", 8000),
    ProxiedApp("cert-exporter", "kube-system", 9005),
    ProxiedApp("cluster-autoscaler", "kube-system", 8085),
    ProxiedApp("coredns", "kube-system", 9153),
    ProxiedApp("elastic-logging-elasticsearch-exporter", "giantswarm-elastic-logging", 9108),
    ProxiedApp("net-exporter", "kube-system", 8000),
    ProxiedApp("nic-exporter", "kube-system", 10800),
    ProxiedApp("vault-exporter", "vault-exporter", 9410),
)


@dataclass(frozen=True)
class TLSConfig:
    ca_file: str
    cert_file: str
    key_file: str
    insecure_skip_verify: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ca_file": self.ca_file,
            "cert_file": self.cert_file,
            "key_file": self.key_file,
            "insecure_skip_verify": self.insecure_skip_verify,
        }


@dataclass(frozen=True)
class KubernetesSDConfig:
    api_server: str
    role: str
    tls_config: TLSConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_server": self.api_server,
            "role": self.role,
            "tls_config": self.tls_config.to_dict(),
        }


@dataclass(frozen=True)
class StaticConfig:
    targets: tuple[str, ...]
    labels: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"targets": list(self.targets)}
        if self.labels:
            data["labels"] = dict(self.labels)
        return data


@dataclass(frozen=True)
class RelabelConfig:
    """One step of a ``relabel_configs`` or ``metric_relabel_configs`` chain.

    ``regex`` and ``replacement`` are left out of the rendered YAML when they
    are ``None`` so Prometheus applies its own defaults (``(.*)`` and ``$1``).
    """

    action: str
    source_labels: tuple[str, ...] = ()
    target_label: str | None = None
    regex: str | None = None
    replacement: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.source_labels:
            data["source_labels"] = list(self.source_labels)
        if self.target_label is not None:
            data["target_label"] = self.target_label
        if self.regex is not None:
            data["regex"] = self.regex
        if self.replacement is not None:
            data["replacement"] = self.replacement
        data["action"] = self.action
        return data


@dataclass(frozen=True)
class ScrapeConfig:
    """In-memory form of one Prometheus ``scrape_config`` entry."""

    job_name: str
    scheme: str
    tls_config: TLSConfig | None = None
    kubernetes_sd_configs: tuple[KubernetesSDConfig, ...] = ()
    static_configs: tuple[StaticConfig, ...] = ()
    relabel_configs: tuple[RelabelConfig, ...] = ()
    metric_relabel_configs: tuple[RelabelConfig, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"job_name": self.job_name, "scheme": self.scheme}
        if self.tls_config is not None:
            data["tls_config"] = self.tls_config.to_dict()
        if self.kubernetes_sd_configs:
            data["kubernetes_sd_configs"] = [sd.to_dict() for sd in self.kubernetes_sd_configs]
        if self.static_configs:
            data["static_configs"] = [sc.to_dict() for sc in self.static_configs]
        if self.relabel_configs:
            data["relabel_configs"] = [rc.to_dict() for rc in self.relabel_configs]
        if self.metric_relabel_configs:
            data["metric_relabel_configs"] = [rc.to_dict() for rc in self.metric_relabel_configs]
        return data


def _annotations(service: Any) -> dict[str, str]:
    metadata = getattr(service, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return annotations


def get_cluster_id(service: Any) -> str | None:
    """Return the guest cluster ID carried by a master service, if any."""
    return _annotations(service).get(key.CLUSTER_ANNOTATION)


def get_etcd_domain(service: Any) -> str | None:
    return _annotations(service).get(key.ETCD_DOMAIN_ANNOTATION) or None


def is_valid_service(service: Any) -> bool:
    metadata = getattr(service, "metadata", None)
    if metadata is None:
        return False
    if getattr(metadata, "deletion_timestamp", None) is not None:
        return False
    return get_cluster_id(service) is not None


def filter_invalid_services(services: Iterable[Any]) -> list[Any]:
    """Drop services being deleted or lacking the cluster annotation."""
    valid = []
    for service in services:
        if is_valid_service(service):
            valid.append(service)
            continue
        metadata = getattr(service, "metadata", None)
        LOGGER.debug(
            "Skipping service %s/%s: no cluster annotation or marked for deletion",
            getattr(metadata, "namespace", None),
            getattr(metadata, "name", None),
        )
    return valid


def _target_host(service: Any) -> str:
    return f"{service.metadata.name}.{service.metadata.namespace}"


def _replace(target_label: str, replacement: str) -> RelabelConfig:
    return RelabelConfig(action=ACTION_REPLACE, target_label=target_label, replacement=replacement)


def _copy(source_label: str, target_label: str) -> RelabelConfig:
    return RelabelConfig(
        action=ACTION_REPLACE, source_labels=(source_label,), target_label=target_label
    )


def _scrape_configs_for_service(service: Any, certificate_directory: str) -> list[ScrapeConfig]:
    cluster_id = get_cluster_id(service) or ""
    namespace = service.metadata.namespace
    target_host = _target_host(service)

    secure_tls = TLSConfig(
        ca_file=key.ca_path(certificate_directory, cluster_id),
        cert_file=key.crt_path(certificate_directory, cluster_id),
        key_file=key.key_path(certificate_directory, cluster_id),
        insecure_skip_verify=False,
    )
    insecure_tls = TLSConfig(
        ca_file=secure_tls.ca_file,
        cert_file=secure_tls.cert_file,
        key_file=secure_tls.key_file,
        insecure_skip_verify=True,
    )
    api_server = f"{HTTPS_SCHEME}://{target_host}"
    endpoints_sd = (KubernetesSDConfig(api_server, ROLE_ENDPOINTS, secure_tls),)
    node_sd = (KubernetesSDConfig(api_server, ROLE_NODE, secure_tls),)

    cluster_id_step = _replace(CLUSTER_ID_LABEL, cluster_id)
    cluster_type_step = _replace(CLUSTER_TYPE_LABEL, GUEST_CLUSTER_TYPE)
    ip_step = _copy(SD_NODE_INTERNAL_IP_LABEL, IP_LABEL)
    role_step = _copy(SD_NODE_ROLE_LABEL, ROLE_LABEL)
    missing_role_step = RelabelConfig(
        action=ACTION_REPLACE,
        source_labels=(SD_NODE_ROLE_LABEL,),
        target_label=ROLE_LABEL,
        regex=EMPTY_REGEX,
        replacement=WORKER_ROLE,
    )
    drop_reflector_step = RelabelConfig(
        action=ACTION_DROP, source_labels=(METRIC_NAME_LABEL,), regex=DROP_REFLECTOR_REGEX
    )

    apiserver = ScrapeConfig(
        job_name=key.job_name(namespace, APISERVER_JOB),
        scheme=HTTPS_SCHEME,
        tls_config=insecure_tls,
        kubernetes_sd_configs=endpoints_sd,
        relabel_configs=(
            RelabelConfig(
                action=ACTION_KEEP,
                source_labels=(SD_NAMESPACE_LABEL, SD_SERVICE_NAME_LABEL),
                regex=APISERVER_REGEX,
            ),
            _replace(APP_LABEL, KUBERNETES_APP),
            cluster_id_step,
            cluster_type_step,
        ),
        metric_relabel_configs=(
            RelabelConfig(
                action=ACTION_DROP,
                source_labels=(METRIC_NAME_LABEL,),
                regex=DROP_BUCKET_LATENCIES_REGEX,
            ),
            drop_reflector_step,
        ),
    )

    cadvisor = ScrapeConfig(
        job_name=key.job_name(namespace, CADVISOR_JOB),
        scheme=HTTPS_SCHEME,
        tls_config=secure_tls,
        kubernetes_sd_configs=node_sd,
        relabel_configs=(
            _replace(ADDRESS_LABEL, target_host),
            RelabelConfig(
                action=ACTION_REPLACE,
                source_labels=(SD_NODE_NAME_LABEL,),
                target_label=METRICS_PATH_LABEL,
                replacement=CADVISOR_METRICS_PATH,
            ),
            _replace(APP_LABEL, CADVISOR_JOB),
            cluster_id_step,
            cluster_type_step,
            ip_step,
            role_step,
            missing_role_step,
        ),
        metric_relabel_configs=(
            RelabelConfig(
                action=ACTION_KEEP, source_labels=(NAMESPACE_LABEL,), regex=NAMESPACE_REGEX
            ),
            RelabelConfig(
                action=ACTION_DROP,
                source_labels=(METRIC_NAME_LABEL,),
                regex=DROP_CONTAINER_NETWORK_REGEX,
            ),
        ),
    )

    kubelet = ScrapeConfig(
        job_name=key.job_name(namespace, KUBELET_JOB),
        scheme=HTTPS_SCHEME,
        tls_config=insecure_tls,
        kubernetes_sd_configs=node_sd,
        relabel_configs=(
            _replace(APP_LABEL, KUBELET_JOB),
            cluster_id_step,
            cluster_type_step,
            ip_step,
            role_step,
            missing_role_step,
        ),
        metric_relabel_configs=(drop_reflector_step,),
    )

    node_exporter = ScrapeConfig(
        job_name=key.job_name(namespace, NODE_EXPORTER_JOB),
        scheme=HTTP_SCHEME,
        kubernetes_sd_configs=endpoints_sd,
        relabel_configs=(
            RelabelConfig(
                action=ACTION_KEEP,
                source_labels=(SD_NAMESPACE_LABEL, SD_SERVICE_NAME_LABEL),
                regex=NODE_EXPORTER_REGEX,
            ),
            RelabelConfig(
                action=ACTION_REPLACE,
                source_labels=(ADDRESS_LABEL,),
                target_label=ADDRESS_LABEL,
                regex=KUBELET_PORT_REGEX,
                replacement=NODE_EXPORTER_ADDRESS,
            ),
            _replace(APP_LABEL, NODE_EXPORTER_JOB),
            cluster_id_step,
            cluster_type_step,
            RelabelConfig(
                action=ACTION_REPLACE,
                source_labels=(ADDRESS_LABEL,),
                target_label=IP_LABEL,
                regex=NODE_EXPORTER_PORT_REGEX,
                replacement=GROUP_CAPTURE,
            ),
        ),
        metric_relabel_configs=(
            RelabelConfig(
                action=ACTION_DROP, source_labels=(FSTYPE_LABEL,), regex=DROP_FSTYPE_REGEX
            ),
            RelabelConfig(
                action=ACTION_DROP,
                source_labels=(METRIC_NAME_LABEL, STATE_LABEL),
                regex=DROP_SYSTEMD_STATE_REGEX,
            ),
            RelabelConfig(
                action=ACTION_DROP,
                source_labels=(METRIC_NAME_LABEL, NAME_LABEL),
                regex=DROP_SYSTEMD_NAME_REGEX,
            ),
        ),
    )

    metrics_path_rewrites = tuple(
        RelabelConfig(
            action=ACTION_REPLACE,
            source_labels=(SD_POD_NAME_LABEL,),
            target_label=METRICS_PATH_LABEL,
            regex=f"({app.name}.*)",
            replacement=key.api_proxy_pod_metrics_path(app.namespace, app.port),
        )
        for app in PROXIED_APPS
    )
    workload = ScrapeConfig(
        job_name=key.job_name(namespace, WORKLOAD_JOB),
        scheme=HTTPS_SCHEME,
        tls_config=secure_tls,
        kubernetes_sd_configs=endpoints_sd,
        relabel_configs=(
            RelabelConfig(
                action=ACTION_KEEP,
                source_labels=(SD_NAMESPACE_LABEL, SD_SERVICE_NAME_LABEL),
                regex=WORKLOAD_WHITELIST_REGEX,
            ),
            _copy(SD_SERVICE_NAME_LABEL, APP_LABEL),
            _copy(SD_NAMESPACE_LABEL, NAMESPACE_LABEL),
            _copy(SD_POD_NAME_LABEL, POD_NAME_LABEL),
            _copy(SD_POD_NODE_NAME_LABEL, NODE_LABEL),
            cluster_id_step,
            cluster_type_step,
            _replace(ADDRESS_LABEL, key.api_service_host(key.PREFIX_MASTER, cluster_id)),
            *metrics_path_rewrites,
        ),
        metric_relabel_configs=(
            RelabelConfig(
                action=ACTION_REPLACE,
                source_labels=(EXPORTED_NAMESPACE_LABEL, NAMESPACE_LABEL),
                target_label=EXPORTED_NAMESPACE_LABEL,
                regex=RELABEL_NAMESPACE_REGEX,
                replacement=GROUP_CAPTURE,
            ),
            RelabelConfig(
                action=ACTION_KEEP,
                source_labels=(EXPORTED_NAMESPACE_LABEL,),
                regex=NAMESPACE_REGEX,
            ),
            RelabelConfig(
                action=ACTION_DROP,
                source_labels=(METRIC_NAME_LABEL,),
                regex=DROP_INGRESS_CONTROLLER_REGEX,
            ),
        ),
    )

    scrape_configs = [apiserver, cadvisor, kubelet, node_exporter, workload]

    etcd_domain = get_etcd_domain(service)
    if etcd_domain:
        scrape_configs.append(
            ScrapeConfig(
                job_name=key.job_name(namespace, ETCD_JOB),
                scheme=HTTPS_SCHEME,
                tls_config=secure_tls,
                static_configs=(
                    StaticConfig(
                        targets=(etcd_domain,),
                        labels=(
                            (CLUSTER_ID_LABEL, cluster_id),
                            (CLUSTER_TYPE_LABEL, GUEST_CLUSTER_TYPE),
                        ),
                    ),
                ),
            )
        )

    return scrape_configs


def build_scrape_configs(services: Iterable[Any], certificate_directory: str) -> list[ScrapeConfig]:
    """Build the managed scrape configs for every guest cluster service.

    Invalid services are filtered out first. The result is sorted by
    ``job_name`` so repeated calls over the same input render identical YAML.
    """
    scrape_configs: list[ScrapeConfig] = []
    for service in filter_invalid_services(services):
        scrape_configs.extend(_scrape_configs_for_service(service, certificate_directory))
    scrape_configs.sort(key=lambda scrape_config: scrape_config.job_name)
    return scrape_configs
