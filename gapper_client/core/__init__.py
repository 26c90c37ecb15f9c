"""
Gapper Client Core Utilities

Exceptions and backoff state shared by every component.
"""
from gapper_client.core.types import (
    ApiClientError,
    GapperClientError,
    InvalidStreamContentType,
    InvalidTransitionError,
    NetworkError,
    ReconnectionState,
    ServerError,
    SessionClosedError,
    ValidationError,
    is_retryable_error,
)

__all__ = [
    "ApiClientError",
    "GapperClientError",
    "InvalidStreamContentType",
    "InvalidTransitionError",
    "NetworkError",
    "ReconnectionState",
    "ServerError",
    "SessionClosedError",
    "ValidationError",
    "is_retryable_error",
]
