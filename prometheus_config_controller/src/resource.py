from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from prometheus_config_controller.src.errors import (
    ControllerError,
    ErrorKind,
    cancelled_error,
)
from prometheus_config_controller.src.metrics import METRICS, ControllerMetrics

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Patch(Generic[T]):
    """Changes a resource has to apply to move from current to desired state.

    ``None`` means "nothing to do" for that half of the patch. Deletion has no
    half of its own: both resources treat it as a no-op.
    """

    create: T | None = None
    update: T | None = None

    def is_empty(self) -> bool:
        return self.create is None and self.update is None


@dataclass
class ReconcileContext:
    """Per-reconciliation state shared by every resource step.

    ``cancel`` is the cooperative cancellation token; a resource that has to be
    revisited (for example after a throttled reload) calls
    :meth:`keep_finalizer`.
    """

    cancel: threading.Event = field(default_factory=threading.Event)
    finalizer_kept: bool = False
    retry_after: float | None = None

    def keep_finalizer(self, retry_after: float | None = None) -> None:
        self.finalizer_kept = True
        if retry_after is not None:
            if self.retry_after is None or retry_after > self.retry_after:
                self.retry_after = retry_after

    def check_cancelled(self, step: str) -> None:
        if self.cancel.is_set():
            raise cancelled_error(step)


class Resource(Protocol):
    name: str

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> Any: ...

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> Any: ...

    def new_patch(
        self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext
    ) -> Patch[Any]: ...

    def apply_patch(self, obj: Any, patch: Patch[Any], ctx: ReconcileContext) -> None: ...


def _never_retry(exc: Exception) -> bool:
    if isinstance(exc, ControllerError):
        return not exc.retryable or exc.kind is ErrorKind.RELOAD_THROTTLE
    return False


class RetryResource:
    """Wrap every step of a resource with bounded, jittered exponential backoff.

    A step is attempted ``retries + 1`` times. Cancellation and programming
    errors (``wrong*``) are raised immediately, as is a reload throttle since
    waiting for it is the work queue's job. The backoff sleep is a wait on the
    cancellation token, so cancelling aborts the wait too.
    """

    def __init__(
        self,
        resource: Resource,
        retries: int,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        logger: logging.Logger | None = None,
        metrics: ControllerMetrics = METRICS,
    ) -> None:
        self.resource = resource
        self.name = resource.name
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = logger or LOGGER
        self.metrics = metrics

    def _retry(self, step: str, ctx: ReconcileContext, fn: Callable[[], R]) -> R:
        attempt = 0
        while True:
            ctx.check_cancelled(f"{self.name} {step}")
            try:
                return fn()
            except Exception as exc:
                attempt += 1
                if _never_retry(exc) or attempt > self.retries:
                    raise
                delay = min(self.max_delay, self.base_delay * float(2 ** (attempt - 1)))
                jittered = delay * (0.5 + random.random())  # noqa: S311
                self.metrics.resource_retries_total.labels(resource=self.name).inc()
                self.logger.warning(
                    "Resource %s step %s failed (%s); retry %d/%d in %.1fs",
                    self.name,
                    step,
                    exc,
                    attempt,
                    self.retries,
                    jittered,
                )
                if ctx.cancel.wait(timeout=jittered):
                    raise cancelled_error(f"{self.name} {step}") from exc

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> Any:
        return self._retry(
            "get_current_state", ctx, lambda: self.resource.get_current_state(obj, ctx)
        )

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> Any:
        return self._retry(
            "get_desired_state", ctx, lambda: self.resource.get_desired_state(obj, ctx)
        )

    def new_patch(self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext) -> Patch[Any]:
        return self._retry(
            "new_patch", ctx, lambda: self.resource.new_patch(obj, current, desired, ctx)
        )

    def apply_patch(self, obj: Any, patch: Patch[Any], ctx: ReconcileContext) -> None:
        self._retry("apply_patch", ctx, lambda: self.resource.apply_patch(obj, patch, ctx))


def reconcile_resource(resource: Resource, obj: Any, ctx: ReconcileContext) -> Patch[Any]:
    """Run one current -> desired -> patch -> apply cycle and return the patch.

    ``apply_patch`` is called even for an empty patch: a resource may have
    follow-up work, such as asking Prometheus to reload, that does not depend
    on a change having been made in this pass.
    """
    ctx.check_cancelled(f"{resource.name} reconcile")
    current = resource.get_current_state(obj, ctx)
    ctx.check_cancelled(f"{resource.name} reconcile")
    desired = resource.get_desired_state(obj, ctx)
    ctx.check_cancelled(f"{resource.name} reconcile")
    patch = resource.new_patch(obj, current, desired, ctx)
    ctx.check_cancelled(f"{resource.name} reconcile")
    resource.apply_patch(obj, patch, ctx)
    return patch
