from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    INVALID_CONFIG = "invalidConfig"
    CONFIGMAP_NOT_FOUND = "configMapNotFound"
    CONFIGMAP_KEY_NOT_FOUND = "configMapKeyNotFound"
    INVALID_CONFIGMAP = "invalidConfigMap"
    WRONG_NAME = "wrongName"
    WRONG_NAMESPACE = "wrongNamespace"
    WRONG_TYPE = "wrongType"
    RELOAD_THROTTLE = "reloadThrottle"
    EXECUTION_FAILED = "executionFailed"
    CANCELLED = "cancelled"


# Kinds that signal a programming error or an intentional stop; retrying
# them cannot change the outcome.
NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.WRONG_NAME,
        ErrorKind.WRONG_NAMESPACE,
        ErrorKind.WRONG_TYPE,
        ErrorKind.CANCELLED,
    }
)


class ControllerError(RuntimeError):
    """Single error type raised by controller components.

    Callers branch on :attr:`kind` instead of the exception class. The
    underlying exception, when there is one, is attached with
    ``raise ... from exc`` and is also available as :attr:`cause`.
    ``retry_after`` is only set for :attr:`ErrorKind.RELOAD_THROTTLE` and holds
    the seconds left until a reload is allowed again.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


def is_error_kind(exc: BaseException | None, kind: ErrorKind) -> bool:
    return isinstance(exc, ControllerError) and exc.kind is kind


def cancelled_error(step: str) -> ControllerError:
    return ControllerError(ErrorKind.CANCELLED, f"{step} cancelled")
