"""
Tests for gapper_client.streaming.router and channels
"""
import json
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from gapper_client.models.events import EventType, SseFrame, StreamEvent
from gapper_client.streaming.channels import (
    channel_display_name,
    default_sort_order,
    normalize_channel_name,
)
from gapper_client.streaming.router import (
    ChannelKind,
    ChannelRouter,
    derive_channel_key,
    format_event_text,
    parse_stream_event,
)

NEW_YORK = ZoneInfo("America/New_York")

# 2026-10-15 14:00 in New York
NOW = datetime(2026, 10, 15, 14, 0, tzinfo=NEW_YORK)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _ts(year: int, month: int, day: int, hour: int = 9) -> float:
    return datetime(year, month, day, hour, 30, tzinfo=NEW_YORK).timestamp()


def _event(
    channel_key: str,
    event_type: EventType = EventType.ENTERED_GAPPER,
    ticker=None,
    timestamp=None,
    channel=None,
) -> StreamEvent:
    return StreamEvent(
        event_type=event_type,
        channel_key=channel_key,
        ticker=ticker,
        payload={"channel": channel or channel_key},
        timestamp=timestamp,
    )


def _frame(message: dict, event: str = "message", frame_id: str = "1") -> SseFrame:
    return SseFrame(event=event, id=frame_id, data=json.dumps(message))


# ── Channel names ─────────────────────────────────────────────────────────────

def test_channel_name_canonicalization():
    assert normalize_channel_name("Live-Gappers") == "live_gappers"
    assert normalize_channel_name("  my-custom  ") == "my-custom"
    assert normalize_channel_name("   ") == ""


def test_channel_display_names():
    assert channel_display_name("live_gappers") == "Live Gappers"
    assert channel_display_name("biotech_runners") == "Biotech Runners"
    assert channel_display_name("popular", "Hot Right Now") == "Hot Right Now"


def test_default_sort_order():
    assert default_sort_order("live_gappers") == 10
    assert default_sort_order("momentum") == 70
    assert default_sort_order("unknown") == 1000


# ── derive_channel_key() / parse_stream_event() ───────────────────────────────

def test_live_gappers_wins_over_ticker():
    assert derive_channel_key({"channel": "live-gappers", "ticker": "NVDA"}) == "live_gappers"


def test_ticker_wins_over_channel_name():
    assert derive_channel_key({"channel": "small_cap", "ticker": "$nvda"}) == "NVDA"


def test_channel_name_when_no_ticker():
    assert derive_channel_key({"channel": "Popular"}) == "popular"
    assert derive_channel_key({"channel": ""}) is None


def test_parse_stream_event():
    frame = _frame(
        {
            "channel": "all_gappers",
            "message_id": "m-1",
            "event_type": "entered_gapper",
            "ticker": "tsla",
            "reason": "threshold_cross",
            "ts": 1760500000,
        }
    )

    event = parse_stream_event(frame)

    assert event.event_type is EventType.ENTERED_GAPPER
    assert event.channel_key == "TSLA"
    assert event.ticker == "TSLA"
    assert event.reason == "threshold_cross"
    assert event.timestamp == 1760500000.0
    assert event.message_id == "m-1"


def test_parse_unknown_event_type_maps_to_message():
    event = parse_stream_event(_frame({"channel": "popular", "event_type": "brand_new"}))
    assert event.event_type is EventType.MESSAGE


@pytest.mark.parametrize(
    "frame",
    [
        SseFrame(comment="ping"),
        SseFrame(event="message", data="not json"),
        SseFrame(event="message", data="[1, 2]"),
        SseFrame(event="message", data=json.dumps({"channel": "x"})),
        SseFrame(event="error", data=json.dumps({"channel": "x", "event_type": "system"})),
        SseFrame(event="message", data=json.dumps({"channel": "", "event_type": "system"})),
    ],
)
def test_parse_rejects_heartbeats_and_malformed_frames(frame):
    assert parse_stream_event(frame) is None


# ── route() ───────────────────────────────────────────────────────────────────

def test_live_gappers_route_has_no_bucket():
    router = ChannelRouter()
    result = router.route(
        _event("live_gappers", ticker="NVDA", timestamp=_ts(2026, 10, 15)), now=NOW
    )

    assert result.channel.kind is ChannelKind.LIVE_GAPPERS
    assert result.bucket is None


def test_ticker_route_buckets_today():
    router = ChannelRouter()
    result = router.route(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 15)), now=NOW)

    assert result.channel.kind is ChannelKind.TICKER
    assert result.channel.key == "NVDA"
    assert result.bucket.key == "day:2026-10-15"
    assert result.bucket.label == "Today's Gappers"


def test_route_buckets_yesterday_and_older():
    router = ChannelRouter()

    yesterday = router.route(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 14)), now=NOW)
    older = router.route(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 10)), now=NOW)

    assert yesterday.bucket.label == "Yesterday's Gappers"
    assert older.bucket.label == "Gappers 2026-10-10"


def test_bucket_uses_configured_zone_not_utc():
    router = ChannelRouter(timezone="America/New_York")
    # 22:00 New York on the 14th is already the 15th in UTC.
    late_evening = _ts(2026, 10, 14, hour=22)

    result = router.route(_event("NVDA", ticker="NVDA", timestamp=late_evening), now=NOW)

    assert result.bucket.label == "Yesterday's Gappers"


def test_bucket_is_rederived_when_day_changes():
    router = ChannelRouter()
    event = _event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 15))

    today = router.route(event, now=NOW)
    next_day = router.route(event, now=datetime(2026, 10, 16, 8, 0, tzinfo=NEW_YORK))

    assert today.bucket.label == "Today's Gappers"
    assert next_day.bucket.label == "Yesterday's Gappers"


def test_system_events_and_missing_timestamps_get_no_bucket():
    router = ChannelRouter()

    system = router.route(_event("popular", EventType.SYSTEM, timestamp=_ts(2026, 10, 15)), now=NOW)
    undated = router.route(_event("NVDA", ticker="NVDA"), now=NOW)

    assert system.channel.kind is ChannelKind.BROADCAST
    assert system.bucket is None
    assert undated.bucket is None


def test_millisecond_timestamps_are_bucketed_like_seconds():
    router = ChannelRouter()
    millis = _ts(2026, 10, 14) * 1000

    result = router.route(_event("NVDA", ticker="NVDA", timestamp=millis), now=NOW)

    assert result.bucket.label == "Yesterday's Gappers"


def test_millisecond_ts_on_the_wire_is_converted():
    event = parse_stream_event(
        _frame({"channel": "all_gappers", "event_type": "entered_gapper", "ticker": "NVDA", "ts": 1760500000000})
    )
    assert event.timestamp == 1760500000.0


@pytest.mark.parametrize("timestamp", [1e20, 1e300])
def test_out_of_range_timestamp_gets_no_bucket(timestamp):
    router = ChannelRouter()

    result = router.route(_event("NVDA", ticker="NVDA", timestamp=timestamp), now=NOW)

    assert result.channel.key == "NVDA"
    assert result.bucket is None


# ── dispatch() ────────────────────────────────────────────────────────────────

def test_live_gappers_events_never_reach_ticker_views():
    router = ChannelRouter()
    live = _event("live_gappers", ticker="NVDA", timestamp=_ts(2026, 10, 15))
    ticker_event = _event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 15))

    router.dispatch(live, now=NOW)
    router.dispatch(ticker_event, now=NOW)

    assert router.live_feed() == [live]
    assert router.events_for("NVDA") == [ticker_event]
    assert all(live not in router.events_for(key) for key in router.channel_keys())


def test_dispatch_flags_new_bucket_once_per_channel_and_day():
    router = ChannelRouter()
    first = router.dispatch(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 14)), now=NOW)
    second = router.dispatch(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 14, 11)), now=NOW)
    third = router.dispatch(_event("NVDA", ticker="NVDA", timestamp=_ts(2026, 10, 15)), now=NOW)
    other = router.dispatch(_event("AMD", ticker="AMD", timestamp=_ts(2026, 10, 15)), now=NOW)

    assert [r.new_bucket for r in (first, second, third, other)] == [True, False, True, True]


def test_channel_views_are_bounded():
    router = ChannelRouter(max_events_per_channel=3)
    for _ in range(5):
        router.dispatch(_event("popular", EventType.SYSTEM), now=NOW)

    assert len(router.events_for("popular")) == 3


def test_unknown_channel_warned_once(caplog):
    router = ChannelRouter()
    with caplog.at_level("WARNING"):
        router.dispatch(_event("weird", EventType.SYSTEM, channel="weird"), now=NOW)
        router.dispatch(_event("weird", EventType.SYSTEM, channel="weird"), now=NOW)

    warnings = [r for r in caplog.records if "unknown channel" in r.getMessage()]
    assert len(warnings) == 1


# ── format_event_text() ───────────────────────────────────────────────────────

def test_format_event_text():
    assert format_event_text(
        StreamEvent(EventType.ENTERED_GAPPER, "NVDA", ticker="NVDA", reason="threshold_cross")
    ) == "NVDA crossed gap threshold."
    assert format_event_text(
        StreamEvent(EventType.ENTERED_GAPPER, "NVDA", ticker="NVDA")
    ) == "NVDA entered gapper stream."
    assert format_event_text(StreamEvent(EventType.CARD_UPDATED, "NVDA", ticker="NVDA")) == "NVDA card updated."
    assert format_event_text(StreamEvent(EventType.SYSTEM, "popular")) == "System message."
    assert format_event_text(StreamEvent(EventType.MESSAGE, "popular")) == "Channel update received."
