"""
Tests for gapper_client.streaming.transport

Streams are fake async context managers; asyncio.sleep is patched so
backoff and polling delays are recorded instead of waited.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest

from gapper_client.config import StreamConfig
from gapper_client.core.types import (
    InvalidStreamContentType,
    InvalidTransitionError,
    NetworkError,
    ServerError,
)
from gapper_client.models.events import ConnectionState, FallbackReason, SseFrame
from gapper_client.streaming.transport import (
    StreamInterruptedError,
    TransportManager,
    classify_stream_failure,
)

_real_sleep = asyncio.sleep


# ── Helpers ───────────────────────────────────────────────────────────────────

class _ScriptedStreams:
    """
    open_stream() replacement. Each script entry is either an exception to
    raise during the handshake or a list of frames to deliver before a clean
    server close. Once the script runs out the stream stays open and idle.
    """

    def __init__(self, *script) -> None:
        self._script = list(script)
        self.last_event_ids: list = []

    def __call__(self, last_event_id):
        self.last_event_ids.append(last_event_id)
        outcome = self._script.pop(0) if self._script else None
        return self._open(outcome)

    @asynccontextmanager
    async def _open(self, outcome):
        if isinstance(outcome, BaseException):
            raise outcome

        async def frames():
            if outcome is None:
                await asyncio.Event().wait()
            for frame in outcome:
                yield frame

        yield frames()


def _message_frame(frame_id: str, ticker: str = "NVDA") -> SseFrame:
    data = {"channel": "all_gappers", "event_type": "card_updated", "ticker": ticker, "ts": 1}
    return SseFrame(event="message", id=frame_id, data=json.dumps(data))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await _real_sleep(0)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def delays():
    """Patch asyncio.sleep; yields the list of requested delays."""
    recorded: list[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        recorded.append(delay)
        await _real_sleep(0)

    with patch("gapper_client.streaming.transport.asyncio.sleep", fake_sleep):
        yield recorded


def _manager(streams, poll=None, **config) -> tuple[TransportManager, list]:
    manager = TransportManager(streams, poll or AsyncMock(), StreamConfig(**config))
    states: list = []

    async def on_state(previous, current):
        states.append((previous, current))

    manager.on_state_change(on_state)
    return manager, states


# ── classify_stream_failure() ─────────────────────────────────────────────────

def test_classification():
    assert classify_stream_failure(InvalidStreamContentType("text/html")) is FallbackReason.INVALID_SSE_CONTENT_TYPE
    assert classify_stream_failure(
        ServerError("busy", status=429, code="too_many_streams")
    ) is FallbackReason.TOO_MANY_STREAMS
    assert classify_stream_failure(
        ServerError("no", status=403, code="premium_required")
    ) is FallbackReason.NON_RETRYABLE_API_ERROR
    assert classify_stream_failure(ServerError("slow", status=429, code="rate_limit_exceeded")) is None
    assert classify_stream_failure(ServerError("down", status=503, code="system_busy")) is None
    assert classify_stream_failure(NetworkError("down")) is None
    assert classify_stream_failure(None) is None


# ── Fallback reasons ──────────────────────────────────────────────────────────

async def test_invalid_content_type_goes_straight_to_fallback(delays):
    manager, states = _manager(_ScriptedStreams(InvalidStreamContentType("text/html")))
    reasons = []

    async def on_fallback(reason, error):
        reasons.append(reason)

    manager.on_fallback(on_fallback)
    await manager.start()
    await _wait_for(lambda: reasons)

    assert reasons == [FallbackReason.INVALID_SSE_CONTENT_TYPE]
    assert manager.state is ConnectionState.FALLBACK_POLLING
    assert states[0] == (ConnectionState.CONNECTING, ConnectionState.FALLBACK_POLLING)
    await manager.close()


@pytest.mark.parametrize(
    "error, reason",
    [
        (ServerError("busy", status=429, code="too_many_streams"), FallbackReason.TOO_MANY_STREAMS),
        (ServerError("nope", status=401, code="unauthorized"), FallbackReason.NON_RETRYABLE_API_ERROR),
    ],
)
async def test_non_transient_errors_fall_back_with_reason(delays, error, reason):
    manager, _ = _manager(_ScriptedStreams(NetworkError("blip"), error))

    await manager.start()
    await _wait_for(lambda: manager.state is ConnectionState.FALLBACK_POLLING)

    assert manager.fallback_reason is reason
    await manager.close()


async def test_reconnect_exhausted_after_capped_monotonic_backoff(delays):
    failures = [NetworkError("down") for _ in range(20)]
    manager, states = _manager(_ScriptedStreams(*failures))

    await manager.start()
    await _wait_for(lambda: manager.state is ConnectionState.FALLBACK_POLLING)

    backoff = delays[:8]
    assert backoff == [0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 15.0, 15.0]
    assert manager.fallback_reason is FallbackReason.RECONNECT_EXHAUSTED
    assert (ConnectionState.RECONNECTING, ConnectionState.FALLBACK_POLLING) in states
    await manager.close()


async def test_rate_limit_waits_retry_after_and_spends_attempts(delays):
    manager, _ = _manager(
        _ScriptedStreams(
            ServerError("slow", status=429, code="rate_limit_exceeded", retry_after_sec=1),
            ServerError("slow", status=429, code="rate_limit_exceeded", retry_after_sec=120),
            ServerError("slow", status=429, code="rate_limit_exceeded"),
            InvalidStreamContentType("text/plain"),
        )
    )

    await manager.start()
    await _wait_for(lambda: manager.state is ConnectionState.FALLBACK_POLLING)

    assert delays[:3] == [2.0, 60.0, 5.0]
    assert manager.get_stats()["reconnect_attempts"] == 3
    await manager.close()


async def test_endless_rate_limiting_exhausts_the_budget(delays):
    rate_limited = [
        ServerError("slow", status=429, code="rate_limit_exceeded", retry_after_sec=2)
        for _ in range(50)
    ]
    streams = _ScriptedStreams(*rate_limited)
    manager, _ = _manager(streams, max_reconnect_attempts=3)

    await manager.start()
    await _wait_for(lambda: manager.state is ConnectionState.FALLBACK_POLLING)

    assert manager.fallback_reason is FallbackReason.RECONNECT_EXHAUSTED
    assert delays[:3] == [2.0, 2.0, 2.0]
    assert len(streams.last_event_ids) == 4
    await manager.close()


# ── Streaming ─────────────────────────────────────────────────────────────────

async def test_events_are_delivered_and_last_event_id_resent(delays):
    streams = _ScriptedStreams([SseFrame(comment="hb"), _message_frame("7")])
    manager, states = _manager(streams)
    events = []

    async def on_event(event):
        events.append(event)

    manager.on_event(on_event)
    await manager.start()
    await _wait_for(lambda: len(streams.last_event_ids) == 2)

    assert [e.ticker for e in events] == ["NVDA"]
    assert streams.last_event_ids == [None, "7"]
    assert [s for _, s in states[:3]] == [
        ConnectionState.OPEN,
        ConnectionState.RECONNECTING,
        ConnectionState.OPEN,
    ]
    stats = manager.get_stats()
    assert stats["heartbeats"] == 1
    assert stats["connections"] == 2
    await manager.close()


async def test_frames_reset_the_attempt_counter(delays):
    streams = _ScriptedStreams(
        NetworkError("a"),
        NetworkError("b"),
        [_message_frame("1")],
        NetworkError("c"),
    )
    manager, _ = _manager(streams)

    await manager.start()
    await _wait_for(lambda: len(streams.last_event_ids) == 5)

    # The clean close after the frame starts a fresh schedule.
    assert delays[:4] == [0.5, 1.0, 0.5, 1.0]
    await manager.close()


async def test_error_frames_reported_as_interruptions(delays):
    streams = _ScriptedStreams([SseFrame(event="fatal_error", data="boom")])
    manager, _ = _manager(streams)
    errors = []

    async def on_error(error):
        errors.append(error)

    manager.on_error(on_error)
    await manager.start()
    await _wait_for(lambda: errors)

    assert isinstance(errors[0], StreamInterruptedError)
    await manager.close()


async def test_callback_failure_does_not_break_the_loop(delays):
    streams = _ScriptedStreams([_message_frame("1"), _message_frame("2")])
    manager, _ = _manager(streams)
    seen = []

    async def on_event(event):
        seen.append(event.message_id)
        raise RuntimeError("render blew up")

    manager.on_event(on_event)
    await manager.start()
    await _wait_for(lambda: len(seen) == 2)

    assert manager.last_event_id == "2"
    await manager.close()


# ── Polling and teardown ──────────────────────────────────────────────────────

async def test_fallback_polls_at_configured_interval(delays):
    poll = AsyncMock()
    manager, _ = _manager(
        _ScriptedStreams(InvalidStreamContentType("")),
        poll=poll,
        poll_interval_ms=5_000,
    )

    await manager.start()
    await _wait_for(lambda: poll.await_count >= 3)

    assert all(delay == 5.0 for delay in delays)
    assert manager.state is ConnectionState.FALLBACK_POLLING
    await manager.close()


async def test_poll_failures_keep_polling(delays):
    poll = AsyncMock(side_effect=[NetworkError("x"), None, None])
    manager, _ = _manager(_ScriptedStreams(InvalidStreamContentType("")), poll=poll)

    await manager.start()
    await _wait_for(lambda: poll.await_count >= 3)

    assert manager.state is ConnectionState.FALLBACK_POLLING
    await manager.close()


async def test_close_is_idempotent_and_cancels_polling(delays):
    poll = AsyncMock()
    manager, states = _manager(_ScriptedStreams(InvalidStreamContentType("")), poll=poll)
    await manager.start()
    await _wait_for(lambda: poll.await_count >= 1)

    await manager.close()
    count = poll.await_count
    await manager.close()
    for _ in range(5):
        await _real_sleep(0)

    assert manager.state is ConnectionState.CLOSED
    assert poll.await_count == count
    assert states[-1] == (ConnectionState.FALLBACK_POLLING, ConnectionState.CLOSED)
    assert [s for _, s in states].count(ConnectionState.CLOSED) == 1


async def test_close_while_open_cancels_stream(delays):
    streams = _ScriptedStreams()  # idle open stream
    manager, _ = _manager(streams)

    await manager.start()
    await _wait_for(lambda: manager.state is ConnectionState.OPEN)
    await manager.close()

    assert manager.state is ConnectionState.CLOSED
    await manager.start()
    assert len(streams.last_event_ids) == 1


async def test_illegal_transition_raises():
    manager, _ = _manager(_ScriptedStreams())

    with pytest.raises(InvalidTransitionError):
        manager._transition(ConnectionState.FALLBACK_POLLING)
        manager._transition(ConnectionState.OPEN)


async def test_transitions_after_close_are_ignored():
    manager, _ = _manager(_ScriptedStreams())
    await manager.close()

    assert manager._transition(ConnectionState.OPEN) is None
    assert manager.state is ConnectionState.CLOSED
