"""
Channel Router

Turns SSE frames into StreamEvents and attributes each event to a channel:

    live_gappers  ->  standalone ad-hoc feed, never merged into ticker views
    ticker        ->  per-ticker view keyed by the normalized symbol
    broadcast     ->  any other named channel without a ticker

Gapper entries and card updates outside live_gappers are also grouped into
day buckets ("Today's Gappers", "Yesterday's Gappers", "Gappers 2026-10-15")
computed against the current day in the configured time zone. Buckets are
derived at routing time and never stored on the event.
"""
from __future__ import annotations

import json
import logging
import math
from collections import deque
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from gapper_client.api.adapters import normalize_ticker
from gapper_client.cache import BoundedCache
from gapper_client.models.events import EventType, SseFrame, StreamEvent
from gapper_client.streaming.channels import (
    LIVE_GAPPERS,
    canonicalize_known_channel,
    is_known_channel,
    normalize_channel_name,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
MAX_EVENTS_PER_CHANNEL = 1000
MAX_TRACKED_CHANNELS = 200

BUCKETED_EVENT_TYPES = frozenset({EventType.ENTERED_GAPPER, EventType.CARD_UPDATED})

# Epoch values above this are milliseconds.
MILLISECONDS_EPOCH_THRESHOLD = 1e11


class ChannelKind(str, Enum):
    TICKER = "ticker"
    LIVE_GAPPERS = "live_gappers"
    BROADCAST = "broadcast"


@dataclass(frozen=True)
class Channel:
    kind: ChannelKind
    key: str


@dataclass(frozen=True)
class GapperBucket:
    """Day grouping for gapper events. ``key`` is ``day:YYYY-MM-DD``."""

    key: str
    label: str


@dataclass(frozen=True)
class RouteResult:
    """
    Where an event belongs.

    ``new_bucket`` is only set by ChannelRouter.dispatch(), when the bucket
    differs from the previous one seen on the same channel.
    """

    channel: Channel
    bucket: Optional[GapperBucket] = None
    new_bucket: bool = False


# ── Wire parsing ──────────────────────────────────────────────────────────────

def derive_channel_key(message: dict[str, Any]) -> Optional[str]:
    """
    Channel key for a user-channel message.

    live_gappers wins, then the ticker, then the channel name as sent.
    """
    raw_channel = message.get("channel")
    raw_channel = raw_channel.strip() if isinstance(raw_channel, str) else ""

    if canonicalize_known_channel(raw_channel) == LIVE_GAPPERS:
        return LIVE_GAPPERS

    raw_ticker = message.get("ticker")
    ticker = normalize_ticker(raw_ticker) if isinstance(raw_ticker, str) else None
    if ticker:
        return ticker

    return normalize_channel_name(raw_channel) or None


def _event_timestamp(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    try:
        ts = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(ts) or ts <= 0:
        return None
    return ts / 1000.0 if ts > MILLISECONDS_EPOCH_THRESHOLD else ts


def parse_stream_event(frame: SseFrame) -> Optional[StreamEvent]:
    """
    Decode a ``message`` frame into a StreamEvent.

    Heartbeats, non-message events and malformed JSON all return None.
    """
    if frame.is_heartbeat or frame.data is None:
        return None
    if (frame.event or "message") != "message":
        return None

    try:
        message = json.loads(frame.data)
    except json.JSONDecodeError as e:
        logger.warning(
            "Failed to parse stream message as JSON",
            extra={"error": str(e), "message_preview": frame.data[:200]},
        )
        return None

    if not isinstance(message, dict):
        return None
    if not isinstance(message.get("channel"), str) or not isinstance(message.get("event_type"), str):
        return None

    channel_key = derive_channel_key(message)
    if not channel_key:
        return None

    raw_ticker = message.get("ticker")
    reason = message.get("reason")
    message_id = message.get("message_id")

    return StreamEvent(
        event_type=EventType.from_string(message["event_type"]),
        channel_key=channel_key,
        ticker=normalize_ticker(raw_ticker) if isinstance(raw_ticker, str) else None,
        payload=message,
        timestamp=_event_timestamp(message.get("ts")),
        reason=reason.strip() if isinstance(reason, str) else "",
        message_id=str(message_id) if message_id else frame.id,
    )


# ── Day buckets ───────────────────────────────────────────────────────────────

def _bucket_for_day(event_day: date, today: date) -> GapperBucket:
    key = f"day:{event_day.isoformat()}"
    if event_day == today:
        return GapperBucket(key=key, label="Today's Gappers")
    if event_day == today - timedelta(days=1):
        return GapperBucket(key=key, label="Yesterday's Gappers")
    return GapperBucket(key=key, label=f"Gappers {event_day.isoformat()}")


def resolve_gapper_bucket(
    timestamp: Optional[float],
    zone: ZoneInfo,
    now: Optional[datetime] = None,
) -> Optional[GapperBucket]:
    """Bucket for an epoch timestamp (seconds or milliseconds), relative to ``now`` in ``zone``."""
    seconds = _event_timestamp(timestamp)
    if seconds is None:
        return None

    try:
        event_day = datetime.fromtimestamp(seconds, tz=zone).date()
    except (OverflowError, ValueError, OSError):
        logger.debug(f"Timestamp out of range for day bucket: {timestamp}")
        return None
    current = now.astimezone(zone) if now is not None else datetime.now(zone)
    return _bucket_for_day(event_day, current.date())


def format_event_text(event: StreamEvent) -> str:
    """Fallback text for an event that does not trigger a card refresh."""
    ticker = event.ticker
    if event.event_type is EventType.ENTERED_GAPPER and ticker:
        if event.reason == "threshold_cross":
            return f"{ticker} crossed gap threshold."
        return f"{ticker} entered gapper stream."
    if event.event_type is EventType.CARD_UPDATED and ticker:
        return f"{ticker} card updated."
    if event.event_type is EventType.SYSTEM:
        return event.reason or "System message."
    if event.reason:
        return event.reason
    return f"{ticker} update received." if ticker else "Channel update received."


# ── Router ────────────────────────────────────────────────────────────────────

class ChannelRouter:
    """
    Routes stream events into bounded per-channel views.

    route() is pure. dispatch() also records the event and tracks the last
    bucket per channel so the renderer knows when to draw a separator.
    """

    def __init__(
        self,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        max_events_per_channel: int = MAX_EVENTS_PER_CHANNEL,
        max_channels: int = MAX_TRACKED_CHANNELS,
    ) -> None:
        self._zone = ZoneInfo(timezone)
        self._max_events = max_events_per_channel

        self._views: BoundedCache[str, deque[StreamEvent]] = BoundedCache(
            max_channels, name="channel_views"
        )
        self._live_feed: deque[StreamEvent] = deque(maxlen=max_events_per_channel)
        self._last_bucket: BoundedCache[str, str] = BoundedCache(
            max_channels, name="channel_buckets"
        )
        self._warned_channels: set[str] = set()

        # Stats
        self._events_routed = 0
        self._live_events = 0

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def route(self, event: StreamEvent, now: Optional[datetime] = None) -> RouteResult:
        """Classify an event. No state is read or written."""
        if event.channel_key == LIVE_GAPPERS:
            return RouteResult(channel=Channel(kind=ChannelKind.LIVE_GAPPERS, key=LIVE_GAPPERS))

        kind = ChannelKind.TICKER if event.ticker == event.channel_key else ChannelKind.BROADCAST
        channel = Channel(kind=kind, key=event.channel_key)

        bucket = None
        if event.event_type in BUCKETED_EVENT_TYPES:
            bucket = resolve_gapper_bucket(event.timestamp, self._zone, now)

        return RouteResult(channel=channel, bucket=bucket)

    def dispatch(self, event: StreamEvent, now: Optional[datetime] = None) -> RouteResult:
        """Route an event and append it to its channel view."""
        self._warn_unknown_channel(event)
        result = self.route(event, now)
        self._events_routed += 1

        if result.channel.kind is ChannelKind.LIVE_GAPPERS:
            self._live_feed.append(event)
            self._live_events += 1
            return result

        view = self._views.get(result.channel.key)
        if view is None:
            view = deque(maxlen=self._max_events)
            self._views.set(result.channel.key, view)
        view.append(event)

        if result.bucket is None:
            return result

        previous = self._last_bucket.get(result.channel.key)
        if previous == result.bucket.key:
            return result
        self._last_bucket.set(result.channel.key, result.bucket.key)
        return replace(result, new_bucket=True)

    def events_for(self, channel_key: str) -> list[StreamEvent]:
        """Events recorded for a ticker or broadcast channel, oldest first."""
        view = self._views.peek(channel_key)
        return list(view) if view is not None else []

    def live_feed(self) -> list[StreamEvent]:
        return list(self._live_feed)

    def channel_keys(self) -> list[str]:
        return self._views.keys()

    def clear(self) -> None:
        self._views.clear()
        self._last_bucket.clear()
        self._live_feed.clear()

    def _warn_unknown_channel(self, event: StreamEvent) -> None:
        raw_channel = event.payload.get("channel")
        if not isinstance(raw_channel, str) or not raw_channel.strip():
            return
        if is_known_channel(raw_channel) or raw_channel in self._warned_channels:
            return
        self._warned_channels.add(raw_channel)
        logger.warning(f"Received unknown channel from stream: {raw_channel}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "events_routed": self._events_routed,
            "live_events": self._live_events,
            "channels": len(self._views),
            "live_feed_size": len(self._live_feed),
        }
