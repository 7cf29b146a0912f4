from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api

from prometheus_config_controller.src import key
from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.kube import timed_call
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics
from prometheus_config_controller.src.reloader import PrometheusReloader
from prometheus_config_controller.src.resource import Patch, ReconcileContext
from prometheus_config_controller.src.scrapeconfig import filter_invalid_services, get_cluster_id

RESOURCE_NAME = "certificate"


@dataclass(frozen=True, order=True)
class CertificateFile:
    """A certificate file on disk: absolute path plus raw PEM bytes."""

    path: str
    data: bytes


CertificateFiles = tuple[CertificateFile, ...]


def _ensure_file_list(value: Any, what: str) -> CertificateFiles:
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(item, CertificateFile) for item in value
    ):
        raise ControllerError(
            ErrorKind.WRONG_TYPE,
            f"{what} must be a sequence of CertificateFile, got {type(value).__name__}",
        )
    return tuple(value)


class CertificateResource:
    """Mirror guest cluster certificates from Secrets into the certificate directory.

    The directory is owned by this process: after an apply it holds exactly the
    ``<clusterID>-{ca,crt,key}.pem`` files of the clusters currently discovered,
    and anything else in it is removed. Every apply asks the reloader for a
    Prometheus reload since Prometheus only picks up new TLS files on reload.
    """

    name = RESOURCE_NAME

    def __init__(
        self,
        core_api: CoreV1Api,
        reloader: PrometheusReloader,
        certificate_directory: str,
        component_name: str,
        namespace: str,
        permission: int = 0o600,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        self.core_api = core_api
        self.reloader = reloader
        self.certificate_directory = certificate_directory
        self.component_name = component_name
        self.namespace = namespace
        self.permission = permission
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        # Serializes directory access between reconcile workers.
        self._lock = threading.Lock()

    def _list_directory(self) -> list[str]:
        if not os.path.isdir(self.certificate_directory):
            return []
        paths = []
        with os.scandir(self.certificate_directory) as entries:
            for entry in entries:
                if entry.is_file(follow_symlinks=False):
                    paths.append(os.path.join(self.certificate_directory, entry.name))
        return sorted(paths)

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> CertificateFiles:
        files = []
        with self._lock:
            for path in self._list_directory():
                ctx.check_cancelled("certificate current state")
                with open(path, "rb") as handle:
                    files.append(CertificateFile(path=path, data=handle.read()))
        self.metrics.certificate_count.set(len(files))
        return tuple(files)

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> CertificateFiles:
        services = timed_call(
            RESOURCE_NAME,
            "list_services",
            self.core_api.list_service_for_all_namespaces,
            metrics=self.metrics,
            label_selector=key.MASTER_SERVICE_SELECTOR,
        )

        files: dict[str, CertificateFile] = {}
        for service in filter_invalid_services(services.items or []):
            ctx.check_cancelled("certificate desired state")
            cluster_id = get_cluster_id(service) or ""
            selector = key.secret_selector(self.component_name, cluster_id)
            secrets = timed_call(
                RESOURCE_NAME,
                "list_secrets",
                self.core_api.list_namespaced_secret,
                metrics=self.metrics,
                namespace=self.namespace,
                label_selector=selector,
            )
            items = secrets.items or []
            if not items:
                self.logger.warning(
                    "No certificate secret found for cluster %s (selector %s in %s); skipping",
                    cluster_id,
                    selector,
                    self.namespace,
                    extra={"resource": RESOURCE_NAME, "cluster_id": cluster_id},
                )
                continue

            data = items[0].data or {}
            for cert_key in key.CERTIFICATE_KEYS:
                encoded = data.get(cert_key)
                if encoded is None:
                    continue
                path = key.cert_path(self.certificate_directory, cluster_id, cert_key)
                if path in files:
                    continue
                try:
                    decoded = base64.b64decode(encoded, validate=True)
                except (binascii.Error, ValueError):
                    self.logger.warning(
                        "Secret %s has undecodable %r data for cluster %s; skipping",
                        getattr(items[0].metadata, "name", "<unknown>"),
                        cert_key,
                        cluster_id,
                        extra={"resource": RESOURCE_NAME, "cluster_id": cluster_id},
                    )
                    continue
                files[path] = CertificateFile(path=path, data=decoded)

        return tuple(sorted(files.values()))

    def new_patch(
        self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext
    ) -> Patch[CertificateFiles]:
        current_files = _ensure_file_list(current, "current state")
        desired_files = _ensure_file_list(desired, "desired state")
        if sorted(current_files) == sorted(desired_files):
            return Patch()
        return Patch(update=desired_files)

    def _write_file(self, certificate: CertificateFile) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=self.certificate_directory,
            prefix=f".{os.path.basename(certificate.path)}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(certificate.data)
            os.chmod(tmp_path, self.permission)
            os.replace(tmp_path, certificate.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def apply_patch(
        self, obj: Any, patch: Patch[Sequence[CertificateFile]], ctx: ReconcileContext
    ) -> None:
        if patch.update is None:
            return
        files = _ensure_file_list(patch.update, "patch")

        with self._lock:
            os.makedirs(self.certificate_directory, exist_ok=True)
            wanted = set()
            for certificate in files:
                ctx.check_cancelled("certificate apply")
                self._write_file(certificate)
                wanted.add(certificate.path)

            removed = 0
            for path in self._list_directory():
                if path in wanted:
                    continue
                os.remove(path)
                removed += 1

        self.metrics.certificate_count.set(len(wanted))
        self.logger.info(
            "Wrote %d certificate file(s) and removed %d stale file(s) in %s",
            len(wanted),
            removed,
            self.certificate_directory,
        )
        self.reloader.request_reload(ctx)
