"""
Gapper Client

Async client core for the chat-driven gapper trading terminal.

Architecture:
    composer text
        -> commands.parse_composer_text      intent + tickers
        -> ChatOrchestrator.submit           action calls and card fetches
        -> ConditionalFetchGateway           ETag revalidation
        -> BoundedCache (cards, etags)       per-session LRU state

    /sse/user/messages
        -> TransportManager                  reconnect, fallback polling
        -> ChannelRouter                     ticker / live_gappers / broadcast, day buckets
        -> ChatOrchestrator                  card refreshes and stream messages
"""
from gapper_client.api import ApiClient
from gapper_client.cache import BoundedCache
from gapper_client.commands import parse_composer_text
from gapper_client.config import Settings, load_settings
from gapper_client.gateway import ConditionalFetchGateway
from gapper_client.orchestrator import ChatOrchestrator
from gapper_client.streaming import ChannelRouter, TransportManager

__all__ = [
    "ApiClient",
    "BoundedCache",
    "ChannelRouter",
    "ChatOrchestrator",
    "ConditionalFetchGateway",
    "Settings",
    "TransportManager",
    "load_settings",
    "parse_composer_text",
]
