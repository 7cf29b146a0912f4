from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any, Protocol

from kubernetes.client import CoreV1Api

from prometheus_config_controller.src import key
from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.informer import (
    ArtificialInformer,
    WatchInformer,
    WorkQueue,
    object_key,
)
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics
from prometheus_config_controller.src.reconciler import (
    MAIN_LOOP,
    RELOAD_LOOP,
    Reconciler,
    new_main_resource_set,
    new_reload_resource_set,
)
from prometheus_config_controller.src.reloader import PrometheusReloader
from prometheus_config_controller.src.settings import ControllerSettings

# Delay before revisiting an object whose finalizer was kept without a hint.
DEFAULT_KEEP_FINALIZER_DELAY = 1.0


class Informer(Protocol):
    name: str
    synced: threading.Event
    failed: bool

    def initial_sync(self, stop: threading.Event, deadline: float | None = None) -> bool: ...

    def run(self, stop: threading.Event) -> None: ...

    def request_stop(self) -> None: ...


class Controller:
    """Bind informers, a work queue and reconcile workers into one loop.

    Informer events are keyed by ``namespace/name`` and queued; ``workers``
    threads take keys off the queue and hand the latest object to the
    reconciler. The queue guarantees that one key is never reconciled by two
    workers at once.

    Outcome of a reconcile:
    - success: the key's failure counter is reset;
    - finalizer kept: the key is revisited after the hinted delay;
    - cancelled: dropped, the process is shutting down;
    - any other error: re-queued with per-key exponential backoff.
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        workers: int = 2,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        if workers < 1:
            raise ControllerError(ErrorKind.INVALID_CONFIG, "at least one worker is required")
        self.name = name
        self.reconciler = reconciler
        self.workers = workers
        self.queue = queue if queue is not None else WorkQueue(name, metrics=metrics)
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        self.informers: list[Informer] = []

        self.ready = threading.Event()
        self._cancel = threading.Event()
        self._external_stop = threading.Event()

    def add_informer(self, informer: Informer) -> None:
        self.informers.append(informer)

    def enqueue(self, event_type: str, obj: Any) -> None:
        obj_key = object_key(obj)
        self.logger.debug(
            "Queueing %s for %s (%s)",
            obj_key,
            self.name,
            event_type,
            extra={"loop": self.name, "event": event_type},
        )
        self.queue.add(obj_key, obj)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued key; return False when the queue is shut down or empty."""
        item = self.queue.get(timeout=timeout)
        if item is None:
            return False

        obj_key, obj = item
        try:
            ctx = self.reconciler.reconcile(obj, cancel=self._cancel)
        except ControllerError as exc:
            if exc.kind is ErrorKind.CANCELLED:
                self.logger.info("Reconcile of %s in %s cancelled", obj_key, self.name)
            elif not exc.retryable:
                self.logger.error(
                    "Reconcile of %s in %s failed: %s",
                    obj_key,
                    self.name,
                    exc,
                    extra={"loop": self.name},
                )
                self.queue.forget(obj_key)
            else:
                delay = self.queue.add_rate_limited(obj_key, obj)
                self.logger.error(
                    "Reconcile of %s in %s failed: %s; retrying in %.0fs",
                    obj_key,
                    self.name,
                    exc,
                    delay,
                    extra={"loop": self.name},
                )
        except Exception:
            delay = self.queue.add_rate_limited(obj_key, obj)
            self.logger.exception(
                "Unexpected error reconciling %s in %s; retrying in %.0fs",
                obj_key,
                self.name,
                delay,
            )
        else:
            self.queue.forget(obj_key)
            if ctx.finalizer_kept:
                delay = ctx.retry_after or DEFAULT_KEEP_FINALIZER_DELAY
                self.logger.debug("Revisiting %s in %s after %.1fs", obj_key, self.name, delay)
                self.queue.add_after(obj_key, obj, delay)
        finally:
            self.queue.done(obj_key)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    def request_stop(self) -> None:
        self._external_stop.set()
        for informer in self.informers:
            informer.request_stop()

    def run_forever(
        self,
        shutdown_event: threading.Event | None = None,
        boot_timeout_seconds: float | None = None,
        join_timeout_seconds: float = 30.0,
    ) -> bool:
        """Run until shutdown; return False if an informer failed fatally.

        Raises ``executionFailed`` when an informer cannot finish its initial
        list before ``boot_timeout_seconds`` or is denied access.
        """
        stop = shutdown_event or threading.Event()
        deadline = (
            None if boot_timeout_seconds is None else time.monotonic() + boot_timeout_seconds
        )

        worker_threads = [
            threading.Thread(target=self._worker, name=f"{self.name}-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in worker_threads:
            thread.start()

        informer_threads: list[threading.Thread] = []
        healthy = True
        try:
            for informer in self.informers:
                if not informer.initial_sync(stop, deadline):
                    return True
            for informer in self.informers:
                thread = threading.Thread(
                    target=informer.run,
                    args=(stop,),
                    name=f"{self.name}-{informer.name}",
                    daemon=True,
                )
                thread.start()
                informer_threads.append(thread)

            self.ready.set()
            self.logger.info("Controller %s started with %d worker(s)", self.name, self.workers)
            while not stop.wait(timeout=1.0) and not self._external_stop.is_set():
                if any(informer.failed for informer in self.informers):
                    healthy = False
                    self.logger.error("An informer of %s failed; stopping", self.name)
                    break
            return healthy
        finally:
            self.ready.clear()
            self.request_stop()
            self.queue.shutdown()
            self._cancel.set()
            for thread in informer_threads + worker_threads:
                thread.join(timeout=join_timeout_seconds)
            self.logger.info("Controller %s stopped", self.name)


def build_controllers(
    settings: ControllerSettings,
    core_api: CoreV1Api,
    reloader: PrometheusReloader | None = None,
    metrics: ControllerMetrics = METRICS,
) -> tuple[Controller, Controller]:
    """Build the main controller and the reload-only controller.

    The main controller reconciles certificates and the ConfigMap whenever a
    master service changes and on every artificial tick. The reload-only
    controller watches the Prometheus ConfigMap and converges Prometheus on it.
    Both share one :class:`PrometheusReloader` so the reload throttle applies
    process-wide.
    """
    reloader = reloader or PrometheusReloader(
        address=settings.prometheus_address,
        core_api=core_api,
        configmap_name=settings.configmap_name,
        configmap_namespace=settings.configmap_namespace,
        configmap_key=settings.configmap_key,
        minimum_reload_seconds=settings.minimum_reload_seconds,
        timeout_seconds=settings.prometheus_timeout_seconds,
        metrics=metrics,
    )

    main_set = new_main_resource_set(
        core_api,
        reloader,
        resource_retries=settings.resource_retries,
        certificate_directory=settings.certificate_directory,
        certificate_component_name=settings.certificate_component_name,
        certificate_namespace=settings.certificate_namespace,
        certificate_permission=settings.certificate_permission,
        configmap_key=settings.configmap_key,
        configmap_name=settings.configmap_name,
        configmap_namespace=settings.configmap_namespace,
        metrics=metrics,
    )
    main = Controller(
        MAIN_LOOP, Reconciler([main_set]), workers=settings.workers, metrics=metrics
    )
    main.add_informer(
        WatchInformer(
            "services",
            core_api.list_service_for_all_namespaces,
            main.enqueue,
            resync_period=settings.resync_period_seconds,
            list_kwargs={"label_selector": key.MASTER_SERVICE_SELECTOR},
            metrics=metrics,
        )
    )
    main.add_informer(
        ArtificialInformer("artificial", main.enqueue, settings.resync_period_seconds)
    )

    reload_set = new_reload_resource_set(
        reloader, resource_retries=settings.resource_retries, metrics=metrics
    )
    reload_loop = Controller(RELOAD_LOOP, Reconciler([reload_set]), workers=1, metrics=metrics)
    reload_loop.add_informer(
        WatchInformer(
            "configmap",
            core_api.list_namespaced_config_map,
            reload_loop.enqueue,
            resync_period=settings.reload_resync_period_seconds,
            list_kwargs={
                "namespace": settings.configmap_namespace,
                "field_selector": f"metadata.name={settings.configmap_name}",
            },
            metrics=metrics,
        )
    )
    return main, reload_loop
