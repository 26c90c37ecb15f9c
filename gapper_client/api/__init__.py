"""
Gapper Backend API Module

HTTP and SSE client for the gapper backend, plus payload adapters.
"""
from gapper_client.api.adapters import (
    adapt_action_response,
    adapt_card_response,
    adapt_gappers_response,
    normalize_ticker,
)
from gapper_client.api.client import ApiClient, default_message_for
from gapper_client.api.sse import iter_sse_frames, parse_sse_frame

__all__ = [
    "ApiClient",
    "adapt_action_response",
    "adapt_card_response",
    "adapt_gappers_response",
    "default_message_for",
    "iter_sse_frames",
    "normalize_ticker",
    "parse_sse_frame",
]
