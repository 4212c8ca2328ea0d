"""Error taxonomy shared by every reconciler.

Failures are classified into a small fixed set of types.  Each classified
error carries a retryable flag, free-form diagnostic context and the call
path captured at construction time.  ``to_condition_reason`` maps a
classification to the stable reason string written into status conditions.
"""

from __future__ import annotations

import traceback
from enum import StrEnum


class ErrorType(StrEnum):
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    VALIDATION = "Validation"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    INTERNAL = "Internal"
    EXTERNAL_TOOL = "GTCLI"


_CONDITION_REASONS: dict[ErrorType, str] = {
    ErrorType.TRANSIENT: "TransientError",
    ErrorType.PERMANENT: "PermanentError",
    ErrorType.VALIDATION: "ValidationError",
    ErrorType.NOT_FOUND: "ResourceNotFound",
    ErrorType.CONFLICT: "ResourceConflict",
    ErrorType.EXTERNAL_TOOL: "GTCLIError",
    ErrorType.INTERNAL: "InternalError",
}

UNKNOWN_REASON = "UnknownError"


class GastownError(Exception):
    """A classified operator error.

    ``str(err)`` renders ``message: cause`` when a cause is attached, so the
    chain stays readable in conditions and logs.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType = ErrorType.INTERNAL,
        cause: BaseException | None = None,
        retryable: bool = False,
        context: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.cause = cause
        self.retryable = retryable
        self.context: dict[str, str] = dict(context or {})
        # Drop this frame and the helper that built the error
        self.stack = traceback.extract_stack()[:-2]
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

    def with_context(self, key: str, value: str) -> GastownError:
        self.context[key] = value
        return self

    def stack_trace(self) -> str:
        """Render the captured call path, one frame per entry."""
        return "".join(traceback.format_list(self.stack))


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def new(message: str) -> GastownError:
    return GastownError(message)


def wrap(err: BaseException, message: str) -> GastownError:
    """Wrap ``err`` as an internal error.

    Wrapping a classified error keeps its type and retryability so callers
    can add context without losing the classification.
    """
    if isinstance(err, GastownError):
        return GastownError(
            message,
            error_type=err.error_type,
            cause=err,
            retryable=err.retryable,
            context=err.context,
        )
    return GastownError(message, cause=err)


def transient(err: BaseException | None, message: str) -> GastownError:
    return GastownError(message, error_type=ErrorType.TRANSIENT, cause=err, retryable=True)


def permanent(err: BaseException | None, message: str) -> GastownError:
    return GastownError(message, error_type=ErrorType.PERMANENT, cause=err, retryable=False)


def validation(message: str) -> GastownError:
    return GastownError(message, error_type=ErrorType.VALIDATION)


def not_found(resource: str, name: str) -> GastownError:
    return GastownError(
        f'{resource} "{name}" not found',
        error_type=ErrorType.NOT_FOUND,
        context={"resource": resource, "name": name},
    )


def conflict(err: BaseException | None, message: str) -> GastownError:
    return GastownError(message, error_type=ErrorType.CONFLICT, cause=err)


def tool_error(err: BaseException | None, command: str) -> GastownError:
    """A failed external command.  Always retryable."""
    return GastownError(
        f"gt CLI command failed: {command}",
        error_type=ErrorType.EXTERNAL_TOOL,
        cause=err,
        retryable=True,
        context={"command": command},
    )


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def _find(err: BaseException | None) -> GastownError | None:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, GastownError):
            return err
        seen.add(id(err))
        err = err.__cause__
    return None


def is_retryable(err: BaseException | None) -> bool:
    found = _find(err)
    return found.retryable if found is not None else False


def is_type(err: BaseException | None, error_type: ErrorType) -> bool:
    found = _find(err)
    return found is not None and found.error_type == error_type


def is_not_found(err: BaseException | None) -> bool:
    return is_type(err, ErrorType.NOT_FOUND)


def is_validation(err: BaseException | None) -> bool:
    return is_type(err, ErrorType.VALIDATION)


def is_tool_error(err: BaseException | None) -> bool:
    return is_type(err, ErrorType.EXTERNAL_TOOL)


def error_type_of(err: BaseException | None) -> str:
    """Label value for metrics: the classification, or ``Unknown``."""
    found = _find(err)
    return found.error_type.value if found is not None else "Unknown"


def to_condition_reason(err: BaseException | None) -> str:
    found = _find(err)
    if found is None:
        return UNKNOWN_REASON
    return _CONDITION_REASONS.get(found.error_type, "InternalError")


def is_error_reason(reason: str) -> bool:
    """True for reasons written by ``to_condition_reason``."""
    return reason == UNKNOWN_REASON or reason in _CONDITION_REASONS.values()
