"""
Change Tracking Errors and Results

Every hook and recorder call returns a ``Result``: ``Ok(value)`` or
``Err(AuditError)``. The error carries a severity tag; only FATAL errors
raised under an active transaction are allowed to change the caller's
control flow.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, NoReturn, Optional, TypeVar, Union


T = TypeVar("T")


class AuditErrorKind(str, Enum):
    """Error taxonomy of the change-tracking pipeline."""
    CAPTURE_MISS = "capture_miss"  # pre-image could not be read
    NO_ACTOR = "no_actor"          # changed_by unresolvable
    DIFF = "diff"                  # malformed path or incomparable values
    PERSIST = "persist"            # change record write failed
    OPERATION = "operation"        # wrapped business operation failed


class Severity(str, Enum):
    """Whether an error must abort the enclosing unit of work."""
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


class AuditError(Exception):
    """Tagged change-tracking error."""

    def __init__(
        self,
        kind: AuditErrorKind,
        severity: Severity,
        message: str = "",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.severity = severity
        self.message = message or kind.value
        self.cause = cause

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.FATAL

    @classmethod
    def fatal(cls, kind: AuditErrorKind, message: str = "",
              cause: Optional[BaseException] = None) -> "AuditError":
        return cls(kind, Severity.FATAL, message, cause)

    @classmethod
    def recoverable(cls, kind: AuditErrorKind, message: str = "",
                    cause: Optional[BaseException] = None) -> "AuditError":
        return cls(kind, Severity.RECOVERABLE, message, cause)

    def __repr__(self) -> str:
        return (
            f"AuditError(kind={self.kind.value}, severity={self.severity.value}, "
            f"message={self.message!r})"
        )


class AuditAbort(Exception):
    """Raised by repositories when a hook reports a fatal error, to stop the business operation."""

    def __init__(self, error: AuditError):
        super().__init__(f"Change tracking aborted the operation: {error.message}")
        self.error = error


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""
    value: T = None

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed result carrying a tagged AuditError."""
    error: AuditError

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_err(self) -> bool:
        return True

    @property
    def is_fatal(self) -> bool:
        return self.error.is_fatal

    def unwrap(self) -> NoReturn:
        raise self.error


Result = Union[Ok[Any], Err]
