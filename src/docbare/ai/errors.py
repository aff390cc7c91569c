"""Standardized error types for the streaming core.

Every failure that crosses a layer boundary is a :class:`StreamError` with a
machine-readable ``error_code`` so callers can tell a cancelled request apart
from a failed one without inspecting messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in responses and logs."""

    # Upstream errors
    UPSTREAM_STATUS = "upstream_status"
    UPSTREAM_CONNECTION = "upstream_connection"
    INSUFFICIENT_BALANCE = "insufficient_balance"

    # Cancellation
    OPERATION_CANCELLED = "operation_cancelled"
    TIMEOUT = "timeout"

    # Client side
    QUERY_FAILED = "query_failed"

    # General errors
    INTERNAL_ERROR = "internal_error"


TIMEOUT_REASON = "timeout"
CANCELLED_REASON = "cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class StreamError(Exception):
    """Base exception class for all streaming-core errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Upstream Errors
# -----------------------------------------------------------------------------

@dataclass
class UpstreamStatusError(StreamError):
    """The completion endpoint answered with a non-success HTTP status."""

    error_code: str = field(default=ErrorCode.UPSTREAM_STATUS)
    message: str = field(default="Upstream completion request failed")
    details: dict[str, Any] = field(default_factory=dict)
    status_code: int = 500

    def __post_init__(self) -> None:
        if self.status_code == 402 and self.error_code == ErrorCode.UPSTREAM_STATUS:
            self.error_code = ErrorCode.INSUFFICIENT_BALANCE
        self.details.setdefault("status_code", self.status_code)
        super().__post_init__()


@dataclass
class UpstreamConnectionError(StreamError):
    """The completion endpoint could not be reached or the stream broke."""

    error_code: str = field(default=ErrorCode.UPSTREAM_CONNECTION)
    message: str = field(default="Unable to reach the completion endpoint")
    details: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------

@dataclass
class OperationCancelled(StreamError):
    """Raised when a cancellation token fires during a blocking step."""

    error_code: str = field(default=ErrorCode.OPERATION_CANCELLED)
    message: str = field(default="Operation was cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    reason: str = CANCELLED_REASON

    severity: ClassVar[str] = "info"

    def __post_init__(self) -> None:
        if self.reason == TIMEOUT_REASON:
            self.error_code = ErrorCode.TIMEOUT
            if self.message == "Operation was cancelled":
                self.message = "Operation timed out"
        self.details.setdefault("reason", self.reason)
        super().__post_init__()

    @property
    def is_timeout(self) -> bool:
        return self.reason == TIMEOUT_REASON


# -----------------------------------------------------------------------------
# Client Errors
# -----------------------------------------------------------------------------

@dataclass
class QueryRequestFailed(StreamError):
    """The query endpoint rejected the request before streaming started."""

    error_code: str = field(default=ErrorCode.QUERY_FAILED)
    message: str = field(default="Query request failed")
    details: dict[str, Any] = field(default_factory=dict)
    status_code: int = 500
    body: str = ""

    def __post_init__(self) -> None:
        self.details.setdefault("status_code", self.status_code)
        super().__post_init__()


__all__ = [
    "CANCELLED_REASON",
    "ErrorCode",
    "OperationCancelled",
    "QueryRequestFailed",
    "StreamError",
    "TIMEOUT_REASON",
    "UpstreamConnectionError",
    "UpstreamStatusError",
]
