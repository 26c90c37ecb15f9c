"""
Stream Event Models

Wire frames from the push stream and the typed events derived from them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """Kinds of user-channel messages the backend pushes."""

    ENTERED_GAPPER = "entered_gapper"
    CARD_UPDATED = "card_updated"
    SYSTEM = "system"
    MESSAGE = "message"

    @classmethod
    def from_string(cls, value: str) -> "EventType":
        """Convert string to EventType, defaulting to MESSAGE."""
        for member in cls:
            if member.value == value.strip().lower():
                return member
        return cls.MESSAGE


class ConnectionState(str, Enum):
    """Lifecycle of the push connection for one session."""

    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FALLBACK_POLLING = "fallback_polling"
    CLOSED = "closed"


class FallbackReason(str, Enum):
    """Why the transport gave up on streaming."""

    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    TOO_MANY_STREAMS = "too_many_streams"
    INVALID_SSE_CONTENT_TYPE = "invalid_sse_content_type"
    NON_RETRYABLE_API_ERROR = "non_retryable_api_error"


@dataclass(frozen=True)
class SseFrame:
    """One server-sent-events frame, before any JSON decoding."""

    event: Optional[str] = None
    id: Optional[str] = None
    data: Optional[str] = None
    comment: Optional[str] = None

    @property
    def is_heartbeat(self) -> bool:
        return self.comment is not None and self.data is None and self.event is None


@dataclass(frozen=True)
class StreamEvent:
    """
    A user-channel message received on the push stream.

    ``channel_key`` is derived by the router from the wire channel and
    ticker; it is never sent by the backend as-is.
    """

    event_type: EventType
    channel_key: str
    ticker: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[float] = None
    reason: str = ""
    message_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.channel_key:
            raise ValueError("channel_key must be non-empty")
