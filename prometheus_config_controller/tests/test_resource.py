from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.resource import (
    Patch,
    ReconcileContext,
    RetryResource,
    reconcile_resource,
)


class RecordingResource:
    name = "recording"

    def __init__(self, patch_value: Patch[Any] | None = None) -> None:
        self.calls: list[str] = []
        self.patch_value = patch_value or Patch()

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> Any:
        self.calls.append("current")
        return "current"

    def get_desired_state(self, obj: Any, ctx: ReconcileContext) -> Any:
        self.calls.append("desired")
        return "desired"

    def new_patch(self, obj: Any, current: Any, desired: Any, ctx: ReconcileContext) -> Patch[Any]:
        self.calls.append(f"patch:{current}:{desired}")
        return self.patch_value

    def apply_patch(self, obj: Any, patch_value: Patch[Any], ctx: ReconcileContext) -> None:
        self.calls.append("apply")


class FlakyResource(RecordingResource):
    def __init__(self, failures: list[Exception]) -> None:
        super().__init__()
        self.failures = failures

    def get_current_state(self, obj: Any, ctx: ReconcileContext) -> Any:
        self.calls.append("current")
        if self.failures:
            raise self.failures.pop(0)
        return "current"


def _retrying(resource: Any, retries: int = 3) -> RetryResource:
    return RetryResource(resource, retries, base_delay=0.0, max_delay=0.0, metrics=MagicMock())


# ---------------------------------------------------------------------------
# ReconcileContext
# ---------------------------------------------------------------------------


def test_keep_finalizer_tracks_longest_retry_after() -> None:
    ctx = ReconcileContext()

    ctx.keep_finalizer(retry_after=2.0)
    ctx.keep_finalizer(retry_after=1.0)
    ctx.keep_finalizer()

    assert ctx.finalizer_kept
    assert ctx.retry_after == 2.0


def test_check_cancelled_raises_cancelled_kind() -> None:
    ctx = ReconcileContext()
    ctx.check_cancelled("noop")
    ctx.cancel.set()

    with pytest.raises(ControllerError) as exc_info:
        ctx.check_cancelled("step")

    assert exc_info.value.kind is ErrorKind.CANCELLED


# ---------------------------------------------------------------------------
# reconcile_resource
# ---------------------------------------------------------------------------


def test_reconcile_runs_steps_in_order_and_applies_empty_patch() -> None:
    resource = RecordingResource()

    result = reconcile_resource(resource, None, ReconcileContext())

    assert result.is_empty()
    assert resource.calls == ["current", "desired", "patch:current:desired", "apply"]


def test_reconcile_stops_when_cancelled() -> None:
    resource = RecordingResource()
    ctx = ReconcileContext()
    ctx.cancel.set()

    with pytest.raises(ControllerError) as exc_info:
        reconcile_resource(resource, None, ctx)

    assert exc_info.value.kind is ErrorKind.CANCELLED
    assert resource.calls == []


# ---------------------------------------------------------------------------
# RetryResource
# ---------------------------------------------------------------------------


def test_retry_recovers_from_transient_failures() -> None:
    resource = FlakyResource([RuntimeError("boom"), RuntimeError("boom again")])
    wrapped = _retrying(resource)

    assert wrapped.name == "recording"
    assert wrapped.get_current_state(None, ReconcileContext()) == "current"
    assert resource.calls == ["current", "current", "current"]
    assert wrapped.metrics.resource_retries_total.labels.return_value.inc.call_count == 2


def test_retry_gives_up_after_budget() -> None:
    resource = FlakyResource([RuntimeError(str(i)) for i in range(5)])

    with pytest.raises(RuntimeError, match="2"):
        _retrying(resource, retries=2).get_current_state(None, ReconcileContext())

    assert len(resource.calls) == 3


@pytest.mark.parametrize(
    "kind",
    [
        ErrorKind.WRONG_NAME,
        ErrorKind.WRONG_NAMESPACE,
        ErrorKind.WRONG_TYPE,
        ErrorKind.CANCELLED,
        ErrorKind.RELOAD_THROTTLE,
    ],
)
def test_retry_never_repeats_terminal_kinds(kind: ErrorKind) -> None:
    resource = FlakyResource([ControllerError(kind, "stop")])

    with pytest.raises(ControllerError) as exc_info:
        _retrying(resource).get_current_state(None, ReconcileContext())

    assert exc_info.value.kind is kind
    assert resource.calls == ["current"]


def test_retry_retries_typed_transient_errors() -> None:
    resource = FlakyResource([ControllerError(ErrorKind.CONFIGMAP_NOT_FOUND, "later")])

    assert _retrying(resource).get_current_state(None, ReconcileContext()) == "current"
    assert resource.calls == ["current", "current"]


def test_retry_wait_is_interrupted_by_cancellation() -> None:
    resource = FlakyResource([RuntimeError("boom")])
    ctx = ReconcileContext()
    ctx.cancel = MagicMock()
    ctx.cancel.is_set.return_value = False
    ctx.cancel.wait.return_value = True

    with pytest.raises(ControllerError) as exc_info:
        _retrying(resource).get_current_state(None, ctx)

    assert exc_info.value.kind is ErrorKind.CANCELLED
    assert isinstance(exc_info.value.cause, RuntimeError)


def test_retry_backoff_is_capped_and_jittered() -> None:
    resource = FlakyResource([RuntimeError("a"), RuntimeError("b"), RuntimeError("c")])
    wrapped = RetryResource(resource, 3, base_delay=4.0, max_delay=6.0, metrics=MagicMock())
    ctx = ReconcileContext()
    ctx.cancel = MagicMock()
    ctx.cancel.is_set.return_value = False
    ctx.cancel.wait.return_value = False

    with patch("prometheus_config_controller.src.resource.random.random", return_value=0.5):
        wrapped.get_current_state(None, ctx)

    waits = [call.kwargs["timeout"] for call in ctx.cancel.wait.call_args_list]
    assert waits == [4.0, 6.0, 6.0]


def test_retry_wraps_every_step() -> None:
    resource = RecordingResource(Patch(update="x"))
    wrapped = _retrying(resource)

    result = reconcile_resource(wrapped, None, ReconcileContext())

    assert result.update == "x"
    assert resource.calls == ["current", "desired", "patch:current:desired", "apply"]
