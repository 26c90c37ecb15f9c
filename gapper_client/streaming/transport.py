"""
Push Transport Manager

Owns the user-stream connection for one session: handshake, frame loop,
capped exponential reconnect, and the one-way switch to fallback polling.

State machine (initial ``connecting``, terminal ``closed``):

    connecting       -> open | reconnecting | fallback_polling | closed
    open             -> reconnecting | closed
    reconnecting     -> open | fallback_polling | closed
    fallback_polling -> closed

Fallback polling never promotes back to streaming. A new session builds a
new TransportManager.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
)

from gapper_client.config import StreamConfig
from gapper_client.core.types import (
    ApiClientError,
    GapperClientError,
    InvalidStreamContentType,
    InvalidTransitionError,
    ReconnectionState,
)
from gapper_client.models.events import (
    ConnectionState,
    FallbackReason,
    SseFrame,
    StreamEvent,
)
from gapper_client.streaming.router import parse_stream_event

logger = logging.getLogger(__name__)

# Type aliases for callbacks
StreamOpener = Callable[[Optional[str]], AsyncContextManager[AsyncIterator[SseFrame]]]
PollCallback = Callable[[], Awaitable[None]]
StateCallback = Callable[[ConnectionState, ConnectionState], Awaitable[None]]
EventCallback = Callable[[StreamEvent], Awaitable[None]]
FallbackCallback = Callable[[FallbackReason, Optional[BaseException]], Awaitable[None]]
ErrorCallback = Callable[[BaseException], Awaitable[None]]

ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.OPEN,
        ConnectionState.RECONNECTING,
        ConnectionState.FALLBACK_POLLING,
        ConnectionState.CLOSED,
    }),
    ConnectionState.OPEN: frozenset({
        ConnectionState.RECONNECTING,
        ConnectionState.CLOSED,
    }),
    ConnectionState.RECONNECTING: frozenset({
        ConnectionState.OPEN,
        ConnectionState.FALLBACK_POLLING,
        ConnectionState.CLOSED,
    }),
    ConnectionState.FALLBACK_POLLING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}

RATE_LIMIT_MIN_WAIT_SECONDS = 2.0
RATE_LIMIT_MAX_WAIT_SECONDS = 60.0
RATE_LIMIT_DEFAULT_WAIT_SECONDS = 5.0

STREAM_ERROR_EVENTS = frozenset({"error", "fatal_error"})


class StreamInterruptedError(GapperClientError):
    """The server sent an ``error`` or ``fatal_error`` frame."""


def classify_stream_failure(error: Optional[BaseException]) -> Optional[FallbackReason]:
    """
    Fallback reason for a failure that reconnecting cannot fix.

    Returns None for transient failures (network errors, 5xx, 429 and clean
    server closes), which are retried with backoff instead.
    """
    if isinstance(error, InvalidStreamContentType):
        return FallbackReason.INVALID_SSE_CONTENT_TYPE
    if isinstance(error, ApiClientError):
        if error.code == "too_many_streams" or "too_many_streams" in error.errors:
            return FallbackReason.TOO_MANY_STREAMS
        if 400 <= error.status < 500 and error.status != 429:
            return FallbackReason.NON_RETRYABLE_API_ERROR
    return None


def rate_limit_wait(error: ApiClientError) -> float:
    """Seconds to wait after a 429, from Retry-After clamped to 2..60."""
    retry_after = (
        float(error.retry_after_sec)
        if error.retry_after_sec is not None
        else RATE_LIMIT_DEFAULT_WAIT_SECONDS
    )
    return min(RATE_LIMIT_MAX_WAIT_SECONDS, max(RATE_LIMIT_MIN_WAIT_SECONDS, retry_after))


class TransportManager:
    """
    Streams user-channel events, reconnecting and finally falling back to
    polling when the stream cannot be kept alive.

    The stream is opened through an injected ``open_stream(last_event_id)``
    callable that returns an async context manager yielding SseFrames.
    Entering it is the handshake. Every reconnect opens a fresh stream; an
    old one is never resumed.
    """

    def __init__(
        self,
        open_stream: StreamOpener,
        poll: PollCallback,
        config: Optional[StreamConfig] = None,
    ) -> None:
        self._open_stream = open_stream
        self._poll = poll
        self._config = config or StreamConfig()

        # Connection state
        self._state = ConnectionState.CONNECTING
        self._fallback_reason: Optional[FallbackReason] = None
        self._last_event_id: Optional[str] = None
        self._reconnection_state = ReconnectionState(
            initial_delay_seconds=self._config.initial_backoff_ms / 1000.0,
            max_delay_seconds=self._config.max_backoff_ms / 1000.0,
            max_attempts=self._config.max_reconnect_attempts,
        )

        # Callbacks
        self._on_state_change: Optional[StateCallback] = None
        self._on_event: Optional[EventCallback] = None
        self._on_fallback: Optional[FallbackCallback] = None
        self._on_error: Optional[ErrorCallback] = None

        # Stats
        self._connections = 0
        self._frames_received = 0
        self._events_received = 0
        self._heartbeats = 0
        self._polls = 0
        self._last_frame_time: Optional[datetime] = None

        # Task management
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._poll_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def fallback_reason(self) -> Optional[FallbackReason]:
        return self._fallback_reason

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    def on_state_change(self, callback: StateCallback) -> None:
        """Register callback for (previous, current) state changes."""
        self._on_state_change = callback

    def on_event(self, callback: EventCallback) -> None:
        """Register callback for decoded stream events."""
        self._on_event = callback

    def on_fallback(self, callback: FallbackCallback) -> None:
        """Register callback for the switch to fallback polling."""
        self._on_fallback = callback

    def on_error(self, callback: ErrorCallback) -> None:
        """Register callback for stream failures and interruption frames."""
        self._on_error = callback

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the stream loop in the background. No-op if already started."""
        if self._stream_task is not None or self._state is ConnectionState.CLOSED:
            return
        self._stream_task = asyncio.create_task(self._run(), name="gapper-stream")

    async def close(self) -> None:
        """Cancel streaming and polling. Safe to call any number of times."""
        if self._state is ConnectionState.CLOSED:
            return

        previous = self._transition(ConnectionState.CLOSED)

        current = asyncio.current_task()
        for task in (self._stream_task, self._poll_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._stream_task = None
        self._poll_task = None

        logger.info(
            "Transport closed",
            extra={"previous_state": previous.value if previous else None},
        )
        if previous is not None:
            await self._notify_state(previous, ConnectionState.CLOSED)

    async def __aenter__(self) -> TransportManager:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ── State machine ─────────────────────────────────────────────────────────

    def _transition(self, target: ConnectionState) -> Optional[ConnectionState]:
        """
        Move to ``target`` and return the previous state.

        Returns None when nothing changed: same state, or already closed.
        Never suspends, so two transitions cannot interleave.

        Raises:
            InvalidTransitionError: If the move is not in ALLOWED_TRANSITIONS
        """
        current = self._state
        if current is ConnectionState.CLOSED or current is target:
            return None
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)

        self._state = target
        logger.debug(f"Connection state {current.value} -> {target.value}")
        return current

    async def _set_state(self, target: ConnectionState) -> None:
        previous = self._transition(target)
        if previous is not None:
            await self._notify_state(previous, target)

    async def _notify_state(self, previous: ConnectionState, current: ConnectionState) -> None:
        if self._on_state_change:
            try:
                await self._on_state_change(previous, current)
            except Exception as e:
                logger.error(
                    "State change callback failed",
                    extra={"error": str(e)},
                    exc_info=True,
                )

    # ── Stream loop ───────────────────────────────────────────────────────────

    async def _run(self) -> None:
        """Open, consume and reopen the stream until fallback or close."""
        while self._state is not ConnectionState.CLOSED:
            failure: Optional[BaseException] = None
            try:
                await self._consume_stream()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = e

            if self._state is ConnectionState.CLOSED:
                return

            reason = classify_stream_failure(failure)
            if reason is not None:
                await self._report_error(failure)
                await self._enter_fallback(reason, failure)
                return

            if self._reconnection_state.exhausted:
                await self._enter_fallback(FallbackReason.RECONNECT_EXHAUSTED, failure)
                return

            # A 429 spends an attempt but waits Retry-After instead of the backoff.
            delay = self._reconnection_state.next_delay()
            if isinstance(failure, ApiClientError) and failure.status == 429:
                delay = rate_limit_wait(failure)

            logger.warning(
                "Stream dropped, reconnecting",
                extra={
                    "attempt": self._reconnection_state.attempt_count,
                    "delay_seconds": delay,
                    "error": str(failure) if failure else "server closed stream",
                },
            )
            await self._set_state(ConnectionState.RECONNECTING)
            if failure is not None:
                await self._report_error(failure)
            await asyncio.sleep(delay)

    async def _consume_stream(self) -> None:
        async with self._open_stream(self._last_event_id) as frames:
            self._connections += 1
            await self._set_state(ConnectionState.OPEN)
            logger.info(
                "User stream open",
                extra={"last_event_id": self._last_event_id, "connections": self._connections},
            )
            async for frame in frames:
                if self._state is ConnectionState.CLOSED:
                    return
                await self._handle_frame(frame)

    async def _handle_frame(self, frame: SseFrame) -> None:
        self._frames_received += 1
        self._last_frame_time = datetime.now(timezone.utc)
        self._reconnection_state.reset()

        if frame.id:
            self._last_event_id = frame.id

        if frame.is_heartbeat:
            self._heartbeats += 1
            return

        event_name = frame.event or "message"
        if event_name in STREAM_ERROR_EVENTS:
            await self._report_error(
                StreamInterruptedError(
                    "Realtime stream interruption received",
                    {"event": event_name, "data": (frame.data or "")[:200]},
                )
            )
            return

        event = parse_stream_event(frame)
        if event is None:
            return

        self._events_received += 1
        if self._on_event:
            try:
                await self._on_event(event)
            except Exception as e:
                logger.error(
                    "Event callback failed",
                    extra={"error": str(e), "channel_key": event.channel_key},
                    exc_info=True,
                )

    async def _report_error(self, error: Optional[BaseException]) -> None:
        if error is None or not self._on_error:
            return
        try:
            await self._on_error(error)
        except Exception as e:
            logger.error(
                "Error callback failed",
                extra={"error": str(e)},
            )

    # ── Fallback polling ──────────────────────────────────────────────────────

    async def _enter_fallback(
        self,
        reason: FallbackReason,
        error: Optional[BaseException],
    ) -> None:
        if self._state is ConnectionState.CLOSED:
            return

        self._fallback_reason = reason
        code = getattr(error, "code", None)
        logger.warning(
            f"Stream unavailable, falling back to polling: {reason.value}",
            extra={"reason": reason.value, "code": code, "error": str(error) if error else None},
        )

        # open has no direct edge to fallback_polling.
        if self._state is ConnectionState.OPEN:
            await self._set_state(ConnectionState.RECONNECTING)
        await self._set_state(ConnectionState.FALLBACK_POLLING)
        if self._state is not ConnectionState.FALLBACK_POLLING:
            return

        self._poll_task = asyncio.create_task(self._poll_loop(), name="gapper-poll")

        if self._on_fallback:
            try:
                await self._on_fallback(reason, error)
            except Exception as e:
                logger.error(
                    "Fallback callback failed",
                    extra={"error": str(e)},
                    exc_info=True,
                )

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_seconds
        while self._state is ConnectionState.FALLBACK_POLLING:
            await asyncio.sleep(interval)
            if self._state is not ConnectionState.FALLBACK_POLLING:
                return
            self._polls += 1
            try:
                await self._poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Fallback poll failed",
                    extra={"error": str(e), "polls": self._polls},
                )

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self._state.value,
            "fallback_reason": self._fallback_reason.value if self._fallback_reason else None,
            "connections": self._connections,
            "frames_received": self._frames_received,
            "events_received": self._events_received,
            "heartbeats": self._heartbeats,
            "polls": self._polls,
            "last_event_id": self._last_event_id,
            "last_frame_time": (
                self._last_frame_time.isoformat()
                if self._last_frame_time
                else None
            ),
            "reconnect_attempts": self._reconnection_state.attempt_count,
        }
