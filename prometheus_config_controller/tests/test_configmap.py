from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
import yaml
from kubernetes.client import ApiException

from prometheus_config_controller.src.configmap import ConfigMapResource, PrometheusConfigMap
from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.resource import Patch, ReconcileContext, reconcile_resource

BASE_CONFIG = """\
global:
  scrape_interval: 30s
scrape_configs:
- job_name: kubernetes-nodes
"""


def make_service(cluster_id: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name="master",
            namespace=cluster_id,
            annotations={"giantswarm.io/prometheus-cluster": cluster_id},
            deletion_timestamp=None,
        )
    )


def make_configmap(
    data: dict[str, str] | None = None,
    name: str = "prometheus",
    namespace: str = "monitoring",
    resource_version: str = "7",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version=resource_version),
        data=data if data is not None else {"prometheus.yml": BASE_CONFIG},
    )


class FakeCoreApi:
    def __init__(
        self,
        configmap: SimpleNamespace | None = None,
        services: list[SimpleNamespace] | None = None,
        read_error: ApiException | None = None,
        replace_error: ApiException | None = None,
    ) -> None:
        self.configmap = configmap or make_configmap()
        self.services = services or []
        self.read_error = read_error
        self.replace_error = replace_error
        self.replaced: list[dict[str, Any]] = []

    def read_namespaced_config_map(self, name: str, namespace: str, **kwargs: Any) -> Any:
        if self.read_error is not None:
            raise self.read_error
        return self.configmap

    def list_service_for_all_namespaces(self, label_selector: str, **kwargs: Any) -> Any:
        return SimpleNamespace(items=list(self.services))

    def replace_namespaced_config_map(self, name: str, namespace: str, body: Any, **kwargs: Any) -> Any:
        if self.replace_error is not None:
            raise self.replace_error
        self.replaced.append({"name": name, "namespace": namespace, "body": body})
        self.configmap = body
        return body


def _make_resource(core_api: Any, reloader: Any = None) -> ConfigMapResource:
    return ConfigMapResource(
        core_api=core_api,
        reloader=reloader or MagicMock(),
        certificate_directory="/certs",
        configmap_key="prometheus.yml",
        configmap_name="prometheus",
        configmap_namespace="monitoring",
        metrics=MagicMock(),
    )


def test_empty_settings_are_invalid_config() -> None:
    with pytest.raises(ControllerError) as exc_info:
        ConfigMapResource(
            core_api=MagicMock(),
            reloader=MagicMock(),
            certificate_directory="/certs",
            configmap_key="",
            configmap_name="prometheus",
            configmap_namespace="monitoring",
        )

    assert exc_info.value.kind is ErrorKind.INVALID_CONFIG


def test_current_state_not_found_is_typed() -> None:
    core_api = FakeCoreApi(read_error=ApiException(status=404, reason="Not Found"))

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(core_api).get_current_state(None, ReconcileContext())

    assert exc_info.value.kind is ErrorKind.CONFIGMAP_NOT_FOUND


def test_current_state_other_api_errors_propagate() -> None:
    core_api = FakeCoreApi(read_error=ApiException(status=500, reason="boom"))

    with pytest.raises(ApiException):
        _make_resource(core_api).get_current_state(None, ReconcileContext())


def test_desired_state_adds_generated_jobs_after_unmanaged_ones() -> None:
    core_api = FakeCoreApi(services=[make_service("xa5ly")])

    desired = _make_resource(core_api).get_desired_state(None, ReconcileContext())

    config = yaml.safe_load(desired.data["prometheus.yml"])
    assert config["global"] == {"scrape_interval": "30s"}
    assert [job["job_name"] for job in config["scrape_configs"]] == [
        "kubernetes-nodes",
        "guest-cluster-xa5ly-apiserver",
        "guest-cluster-xa5ly-cadvisor",
        "guest-cluster-xa5ly-kubelet",
        "guest-cluster-xa5ly-node-exporter",
        "guest-cluster-xa5ly-workload",
    ]
    assert desired.body.data is desired.data
    # The object read from the API is left untouched.
    assert core_api.configmap.data["prometheus.yml"] == BASE_CONFIG


def test_desired_state_missing_key() -> None:
    core_api = FakeCoreApi(configmap=make_configmap(data={"other.yml": ""}))

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(core_api).get_desired_state(None, ReconcileContext())

    assert exc_info.value.kind is ErrorKind.CONFIGMAP_KEY_NOT_FOUND


def test_desired_state_invalid_yaml() -> None:
    core_api = FakeCoreApi(configmap=make_configmap(data={"prometheus.yml": "a: [b"}))

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(core_api).get_desired_state(None, ReconcileContext())

    assert exc_info.value.kind is ErrorKind.INVALID_CONFIGMAP
    assert isinstance(exc_info.value.cause, ControllerError)


def test_patch_is_empty_when_payload_matches() -> None:
    resource = _make_resource(FakeCoreApi())
    current = PrometheusConfigMap("prometheus", "monitoring", {"prometheus.yml": "x", "a": "1"})
    desired = PrometheusConfigMap("prometheus", "monitoring", {"prometheus.yml": "x", "a": "2"})

    assert resource.new_patch(None, current, desired, ReconcileContext()).is_empty()


def test_patch_carries_desired_on_difference() -> None:
    resource = _make_resource(FakeCoreApi())
    current = PrometheusConfigMap("prometheus", "monitoring", {"prometheus.yml": "x"})
    desired = PrometheusConfigMap("prometheus", "monitoring", {"prometheus.yml": "y"})

    assert resource.new_patch(None, current, desired, ReconcileContext()).update is desired


@pytest.mark.parametrize(
    ("desired", "kind"),
    [
        (PrometheusConfigMap("other", "monitoring", {}), ErrorKind.WRONG_NAME),
        (PrometheusConfigMap("prometheus", "other", {}), ErrorKind.WRONG_NAMESPACE),
        ("not a configmap", ErrorKind.WRONG_TYPE),
    ],
)
def test_patch_rejects_mismatched_states(desired: Any, kind: ErrorKind) -> None:
    current = PrometheusConfigMap("prometheus", "monitoring", {})

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(FakeCoreApi()).new_patch(None, current, desired, ReconcileContext())

    assert exc_info.value.kind is kind


def test_apply_updates_then_reloads() -> None:
    core_api = FakeCoreApi()
    reloader = MagicMock()
    body = make_configmap(data={"prometheus.yml": "new"})
    desired = PrometheusConfigMap("prometheus", "monitoring", dict(body.data), body=body)

    _make_resource(core_api, reloader).apply_patch(None, Patch(update=desired), ReconcileContext())

    assert core_api.replaced == [{"name": "prometheus", "namespace": "monitoring", "body": body}]
    reloader.reload.assert_called_once()


def test_apply_conflict_falls_through_to_reload() -> None:
    core_api = FakeCoreApi(replace_error=ApiException(status=409, reason="Conflict"))
    reloader = MagicMock()
    desired = PrometheusConfigMap("prometheus", "monitoring", {}, body=make_configmap())

    _make_resource(core_api, reloader).apply_patch(None, Patch(update=desired), ReconcileContext())

    reloader.reload.assert_called_once()


def test_apply_not_found_is_typed() -> None:
    core_api = FakeCoreApi(replace_error=ApiException(status=404, reason="Not Found"))
    desired = PrometheusConfigMap("prometheus", "monitoring", {}, body=make_configmap())

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(core_api).apply_patch(None, Patch(update=desired), ReconcileContext())

    assert exc_info.value.kind is ErrorKind.CONFIGMAP_NOT_FOUND


def test_throttled_reload_keeps_finalizer() -> None:
    reloader = MagicMock()
    reloader.reload.side_effect = ControllerError(
        ErrorKind.RELOAD_THROTTLE, "too soon", retry_after=4.0
    )
    ctx = ReconcileContext()

    _make_resource(FakeCoreApi(), reloader).apply_patch(None, Patch(), ctx)

    assert ctx.finalizer_kept
    assert ctx.retry_after == 4.0


def test_reload_failures_propagate() -> None:
    reloader = MagicMock()
    reloader.reload.side_effect = ControllerError(ErrorKind.EXECUTION_FAILED, "500")

    with pytest.raises(ControllerError) as exc_info:
        _make_resource(FakeCoreApi(), reloader).apply_patch(None, Patch(), ReconcileContext())

    assert exc_info.value.kind is ErrorKind.EXECUTION_FAILED


def test_full_reconcile_is_idempotent() -> None:
    core_api = FakeCoreApi(services=[make_service("xa5ly"), make_service("0ba9v")])
    resource = _make_resource(core_api)

    first = reconcile_resource(resource, None, ReconcileContext())
    second = reconcile_resource(resource, None, ReconcileContext())

    assert first.update is not None
    assert second.is_empty()
    assert len(core_api.replaced) == 1
