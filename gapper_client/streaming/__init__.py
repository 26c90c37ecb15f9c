"""
Push Stream Module

Transport lifecycle for the user SSE stream and channel routing of the
events it delivers.
"""
from gapper_client.streaming.channels import (
    KNOWN_CHANNEL_SLUGS,
    LIVE_GAPPERS,
    channel_display_name,
    default_sort_order,
    normalize_channel_name,
)
from gapper_client.streaming.router import (
    Channel,
    ChannelKind,
    ChannelRouter,
    GapperBucket,
    RouteResult,
    derive_channel_key,
    format_event_text,
    parse_stream_event,
)
from gapper_client.streaming.transport import (
    ALLOWED_TRANSITIONS,
    TransportManager,
    classify_stream_failure,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Channel",
    "ChannelKind",
    "ChannelRouter",
    "GapperBucket",
    "KNOWN_CHANNEL_SLUGS",
    "LIVE_GAPPERS",
    "RouteResult",
    "TransportManager",
    "channel_display_name",
    "classify_stream_failure",
    "default_sort_order",
    "derive_channel_key",
    "format_event_text",
    "normalize_channel_name",
    "parse_stream_event",
]
