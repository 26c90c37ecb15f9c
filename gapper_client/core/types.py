"""
Core Type Definitions and Exceptions

Client-wide exceptions and the reconnect backoff state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


class GapperClientError(Exception):
    """Base exception for all gapper client errors."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationError(GapperClientError):
    """Raised when a backend payload cannot be adapted."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if field:
            ctx["field"] = field
        if value is not None:
            ctx["value"] = repr(value)[:100]  # Truncate long values
        super().__init__(message, ctx)
        self.field = field
        self.value = value


class ApiClientError(GapperClientError):
    """
    Raised when a backend request fails.

    ``status`` is 0 when no HTTP response was received.
    """

    def __init__(
        self,
        message: str,
        status: int,
        code: str,
        errors: Optional[list[str]] = None,
        retry_after_sec: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        ctx["status"] = status
        ctx["code"] = code
        super().__init__(message, ctx)
        self.status = status
        self.code = code
        self.errors = list(errors or [])
        self.retry_after_sec = retry_after_sec


class NetworkError(ApiClientError):
    """Raised when the backend could not be reached or timed out."""

    def __init__(self, message: str, code: str = "network_error") -> None:
        super().__init__(message, status=0, code=code, errors=[code])


class ServerError(ApiClientError):
    """Raised when the backend answered with an error status."""


class InvalidStreamContentType(GapperClientError):
    """Raised when the push endpoint answers with a non-SSE content type."""

    def __init__(self, content_type: str) -> None:
        super().__init__(
            "invalid_sse_content_type",
            {"content_type": content_type or "<missing>"},
        )
        self.content_type = content_type


class InvalidTransitionError(GapperClientError):
    """Raised when a connection state change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            "Illegal connection state transition",
            {"from": current, "to": target},
        )
        self.current = current
        self.target = target


class SessionClosedError(GapperClientError):
    """Raised when a closed chat session is used again."""


def is_retryable_error(error: BaseException) -> bool:
    """Only rate limiting and temporary unavailability are worth a retry."""
    return isinstance(error, ApiClientError) and error.status in (429, 503)


@dataclass
class ReconnectionState:
    """
    Tracks reconnection attempts for capped exponential backoff.

    Delays never decrease between resets, so ``exhausted`` is always
    reached after ``max_attempts`` counted failures.
    """

    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 15.0
    multiplier: float = 2.0
    max_attempts: int = 8
    current_delay: float = field(default=0.5, init=False)
    attempt_count: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.initial_delay_seconds <= 0:
            raise ValueError("initial_delay_seconds must be positive")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.current_delay = self.initial_delay_seconds

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def next_delay(self) -> float:
        """Return the delay for this attempt and advance the schedule."""
        delay = min(self.current_delay, self.max_delay_seconds)

        self.current_delay = min(
            self.current_delay * self.multiplier,
            self.max_delay_seconds,
        )
        self.attempt_count += 1

        return delay

    def reset(self) -> None:
        """Reset state after a healthy stream."""
        self.current_delay = self.initial_delay_seconds
        self.attempt_count = 0
