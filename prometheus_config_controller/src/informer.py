from __future__ import annotations

import heapq
import logging
import math
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.kube import is_access_denied
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics

EventHandler = Callable[[str, Any], None]


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------


class WorkQueue:
    """De-duplicating keyed queue feeding the reconcile workers.

    Guarantees:
    - a key is queued at most once; re-adding it only refreshes its object;
    - a key handed out by :meth:`get` is not handed out again until
      :meth:`done` is called for it; adds that arrive in the meantime are
      replayed once it is done;
    - :meth:`add_after` and :meth:`add_rate_limited` schedule a key for later,
      the latter with per-key exponential backoff reset by :meth:`forget`.
    """

    def __init__(
        self,
        name: str,
        *,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock
        self.metrics = metrics

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._objects: dict[str, Any] = {}
        self._delayed: list[tuple[float, int, str]] = []
        self._delayed_seq = 0
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        self.metrics.queue_depth.labels(loop=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: str, obj: Any) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._objects[key] = obj
            self._add_locked(key)

    def add_after(self, key: str, obj: Any, delay: float) -> None:
        if delay <= 0:
            self.add(key, obj)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._objects[key] = obj
            self._delayed_seq += 1
            heapq.heappush(self._delayed, (self.clock() + delay, self._delayed_seq, key))
            self._cond.notify()

    def add_rate_limited(self, key: str, obj: Any) -> float:
        """Schedule *key* after its backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay = min(self.max_delay, self.base_delay * float(2 ** (failures - 1)))
        self.add_after(key, obj, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> tuple[str, Any] | None:
        """Block until a key is available; return ``None`` on shutdown or timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key, self._objects.get(key)
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)
            elif key not in self._queued and all(
                delayed_key != key for _, _, delayed_key in self._delayed
            ):
                self._objects.pop(key, None)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


# ---------------------------------------------------------------------------
# Informers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectMeta:
    name: str
    namespace: str


@dataclass(frozen=True)
class ArtificialObject:
    """Placeholder object delivered by :class:`ArtificialInformer` on every tick."""

    metadata: ObjectMeta


ARTIFICIAL_OBJECT = ArtificialObject(
    metadata=ObjectMeta(name="artificial-reconcile", namespace="prometheus-config-controller")
)


def object_key(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None) or ""
    name = getattr(metadata, "name", None) or ""
    return f"{namespace}/{name}"


class ArtificialInformer:
    """Deliver a placeholder event immediately and then once per ``resync_period``.

    The main loop depends on aggregate state (all services, Secrets, the
    certificate directory and the ConfigMap), so it needs a periodic trigger
    that is independent of any single object changing.
    """

    def __init__(
        self,
        name: str,
        handler: EventHandler,
        resync_period: float,
        obj: Any = ARTIFICIAL_OBJECT,
        logger: logging.Logger | None = None,
    ) -> None:
        if resync_period <= 0:
            raise ControllerError(ErrorKind.INVALID_CONFIG, "resync period must be positive")
        self.name = name
        self.handler = handler
        self.resync_period = resync_period
        self.obj = obj
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.failed = False
        self._external_stop = threading.Event()

    def request_stop(self) -> None:
        self._external_stop.set()

    def initial_sync(self, stop: threading.Event, deadline: float | None = None) -> bool:
        if stop.is_set() or self._external_stop.is_set():
            return False
        self.handler("ADDED", self.obj)
        self.synced.set()
        return True

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set() and not self._external_stop.is_set():
            if self._external_stop.wait(timeout=self.resync_period) or stop.is_set():
                break
            self.logger.debug("Informer %s tick", self.name)
            self.handler("MODIFIED", self.obj)
        self.synced.clear()


class WatchInformer:
    """List-then-watch informer for one kind of Kubernetes object.

    1. The initial list is retried with jittered exponential backoff (1 s to
       30 s) until it succeeds, the stop event is set, or the boot deadline
       passes, in which case ``executionFailed`` is raised.
    2. Every listed object is delivered as ``ADDED``; the watch then resumes
       from the list's ``resourceVersion``.
    3. Each ``resync_period`` the objects are listed and delivered again so
       the reconcile loop revisits them even without changes.
    4. ``410 Gone`` forces an immediate re-list.
    5. ``401`` / ``403`` are RBAC or auth problems: the informer marks itself
       failed and stops instead of retrying forever.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        *,
        resync_period: float,
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        if resync_period <= 0:
            raise ControllerError(ErrorKind.INVALID_CONFIG, "resync period must be positive")
        self.name = name
        self.list_fn = list_fn
        self.handler = handler
        self.resync_period = resync_period
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics

        self.synced = threading.Event()
        self.failed = False
        self._resource_version: str | None = None
        self._next_resync = 0.0
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def _fail(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            self.name,
            exc.status,
        )
        self.metrics.watch_errors_total.labels(informer=self.name).inc()
        self.failed = True
        self.synced.clear()

    def _list_and_deliver(self) -> None:
        listing = self.list_fn(**self.list_kwargs)
        self._resource_version = getattr(
            getattr(listing, "metadata", None), "resource_version", None
        )
        for item in getattr(listing, "items", None) or []:
            self.handler("ADDED", item)
        self._next_resync = time.monotonic() + self.resync_period

    def initial_sync(self, stop: threading.Event, deadline: float | None = None) -> bool:
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                self._list_and_deliver()
                self.synced.set()
                self.logger.info(
                    "Informer %s synced at resourceVersion %s", self.name, self._resource_version
                )
                return True
            except ApiException as exc:
                if is_access_denied(exc):
                    self._fail(exc, "initial list")
                    raise ControllerError(
                        ErrorKind.EXECUTION_FAILED,
                        f"informer {self.name}: access denied (status={exc.status})",
                    ) from exc
                self.logger.exception("Initial list of %s failed", self.name)
                self.metrics.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.name)
                self.metrics.watch_errors_total.labels(informer=self.name).inc()

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                self.failed = True
                raise ControllerError(
                    ErrorKind.EXECUTION_FAILED,
                    f"informer {self.name}: initial list did not succeed before the boot deadline",
                )
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            if deadline is not None:
                jittered = min(jittered, deadline - now)
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop: threading.Event) -> None:
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if time.monotonic() >= self._next_resync:
                try:
                    self._list_and_deliver()
                except ApiException as exc:
                    if is_access_denied(exc):
                        self._fail(exc, "re-list")
                        return
                    self.logger.exception("Re-list of %s failed", self.name)
                    self.metrics.watch_errors_total.labels(informer=self.name).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error during re-list of %s", self.name)
                    self.metrics.watch_errors_total.labels(informer=self.name).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                until_resync = self._next_resync - time.monotonic()
                timeout_seconds = max(1, min(self.watch_timeout_seconds, math.ceil(until_resync)))
                if watch_stream_count > 0:
                    self.metrics.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=self._resource_version,
                    timeout_seconds=timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if obj is None or event_type == "ERROR":
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        self._resource_version = metadata.resource_version

                    self.handler(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; re-list.
                if exc.status == 410:
                    self.logger.warning("Watch resource version of %s expired, re-listing", self.name)
                    self._resource_version = None
                    self._next_resync = 0.0
                    continue

                if is_access_denied(exc):
                    self._fail(exc, "watch")
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.name)
                self.metrics.watch_errors_total.labels(informer=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.name)
                self.metrics.watch_errors_total.labels(informer=self.name).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
