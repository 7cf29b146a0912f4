from __future__ import annotations

import logging
from typing import Any

from prometheus_config_controller.src.errors import ControllerError, ErrorKind, is_error_kind
from prometheus_config_controller.src.reloader import PrometheusReloader
from prometheus_config_controller.src.resource import Patch, ReconcileContext

RESOURCE_NAME = "reload"


class ReloadResource:
    """Resource of the reload-only loop: ask the reloader to converge Prometheus.

    It has no state of its own. Every pass produces an empty patch and
    ``apply_patch`` calls :meth:`PrometheusReloader.reload`, which compares the
    running config with the ConfigMap. This catches a ConfigMap that was
    already current when the process started while Prometheus still ran an
    older config.
    """

    name = RESOURCE_NAME

    def __init__(self, reloader: PrometheusReloader, logger: logging.Logger | None = None) -> None:
        self.reloader = reloader
        self.logger = logger or logging.getLogger(__name__)

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> None:
        return None

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> None:
        return None

    def new_patch(self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext) -> Patch[Any]:
        return Patch()

    def apply_patch(self, obj: Any, patch: Patch[Any], ctx: ReconcileContext) -> None:
        try:
            self.reloader.reload(ctx)
        except ControllerError as exc:
            if not is_error_kind(exc, ErrorKind.RELOAD_THROTTLE):
                raise
            self.logger.debug("Prometheus reload throttled: %s", exc.message)
            ctx.keep_finalizer(retry_after=exc.retry_after)
