"""
Gapper Client Data Models

Frozen dataclasses with validation.
"""
from gapper_client.models.cards import (
    ActionAck,
    CardFetchOk,
    CardFetchResult,
    CardNotModified,
    CardViewModel,
    Gapper,
)
from gapper_client.models.chat import (
    ChatMessage,
    ChatReply,
    Intent,
    ParsedInput,
)
from gapper_client.models.events import (
    ConnectionState,
    EventType,
    FallbackReason,
    SseFrame,
    StreamEvent,
)

__all__ = [
    "ActionAck",
    "CardFetchOk",
    "CardFetchResult",
    "CardNotModified",
    "CardViewModel",
    "ChatMessage",
    "ChatReply",
    "ConnectionState",
    "EventType",
    "FallbackReason",
    "Gapper",
    "Intent",
    "ParsedInput",
    "SseFrame",
    "StreamEvent",
]
