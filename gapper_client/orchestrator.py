"""
Chat Orchestrator

Session object behind the composer. It owns the caches, the fetch gateway,
the channel router and (once started) the push transport, and turns each
submission into a ChatReply.

Per-submission flows:
    analyze / pin   card fetch started first, action awaited, then card
    scan            top gappers, then the card of the top-ranked ticker
    tickers         one card fetch per ticker, concurrently, isolated
    anything else   static usage reply, no backend call
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from gapper_client.api.adapters import adapt_card_response, normalize_ticker
from gapper_client.api.client import ApiClient
from gapper_client.cache import BoundedCache
from gapper_client.commands.parser import parse_composer_text
from gapper_client.config import Settings
from gapper_client.core.types import (
    ApiClientError,
    GapperClientError,
    SessionClosedError,
    is_retryable_error,
)
from gapper_client.gateway import ConditionalFetchGateway
from gapper_client.models.cards import (
    ActionAck,
    CardFetchOk,
    CardFetchResult,
    CardViewModel,
)
from gapper_client.models.chat import ChatMessage, ChatReply, Intent, ParsedInput
from gapper_client.models.events import EventType, FallbackReason, StreamEvent
from gapper_client.replies import (
    action_ack_text,
    card_refresh_failed_text,
    card_timeout_reply,
    command_usage_reply,
    fallback_notice,
    format_api_error,
    format_gappers_line,
    invalid_ticker_reply,
    select_card_treatment,
)
from gapper_client.streaming.channels import (
    channel_display_name,
    default_sort_order,
    normalize_channel_name,
)
from gapper_client.streaming.router import ChannelRouter, format_event_text
from gapper_client.streaming.transport import TransportManager

logger = logging.getLogger(__name__)

RenderCallback = Callable[[ChatMessage], Awaitable[None]]

ACTION_COMMANDS = frozenset({"analyze", "pin"})
SCAN_GAPPERS_LIMIT = 12
BOOTSTRAP_GAPPERS_LIMIT = 8
MAX_REPLY_TICKERS = 6

CARD_FETCH_ATTEMPTS = 2
CARD_RETRY_MIN_WAIT_SECONDS = 0.5
CARD_RETRY_MAX_WAIT_SECONDS = 4.0
CARD_RETRY_DEFAULT_WAIT_SECONDS = 1.0

MAX_REFRESH_COOLDOWN_ENTRIES = 200


class ChatOrchestrator:
    """
    One chat session.

    Submissions are serialized with a lock. Stream-triggered refreshes run
    alongside them; the last write to a ticker's cache entry wins.
    """

    def __init__(
        self,
        api: ApiClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self._api = api
        self._settings = settings or Settings()

        cache_config = self._settings.cache
        self._card_cache: BoundedCache[str, CardViewModel] = BoundedCache(
            cache_config.card_entries, name="cards"
        )
        self._etag_cache: BoundedCache[str, str] = BoundedCache(
            cache_config.etag_entries, name="etags"
        )
        self._gateway = ConditionalFetchGateway(api, self._card_cache, self._etag_cache)
        self._router = ChannelRouter(timezone=self._settings.timezone)
        self._transport: Optional[TransportManager] = None

        self._lock = asyncio.Lock()
        self._closed = False
        self._focused_ticker: Optional[str] = None
        self._catalog: list[dict[str, Any]] = []

        # Stream refresh bookkeeping
        self._refreshes_in_flight: set[str] = set()
        self._last_refresh: BoundedCache[str, float] = BoundedCache(
            MAX_REFRESH_COOLDOWN_ENTRIES, name="refresh_cooldowns"
        )
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._pending_watchers: dict[str, asyncio.Task[None]] = {}

        # Callbacks
        self._on_message: Optional[RenderCallback] = None

        # Stats
        self._submissions = 0
        self._card_failures = 0
        self._action_failures = 0
        self._refreshes_deduped = 0
        self._refreshes_throttled = 0
        self._pending_timeouts = 0

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def card_cache(self) -> BoundedCache[str, CardViewModel]:
        return self._card_cache

    @property
    def etag_cache(self) -> BoundedCache[str, str]:
        return self._etag_cache

    @property
    def gateway(self) -> ConditionalFetchGateway:
        return self._gateway

    @property
    def router(self) -> ChannelRouter:
        return self._router

    @property
    def transport(self) -> Optional[TransportManager]:
        return self._transport

    @property
    def focused_ticker(self) -> Optional[str]:
        return self._focused_ticker

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def channel_catalog(self) -> list[dict[str, Any]]:
        """Backend channels from bootstrap(), in display order."""
        return list(self._catalog)

    def on_message(self, callback: RenderCallback) -> None:
        """Register callback for messages produced outside submit()."""
        self._on_message = callback

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def bootstrap(self) -> list[ChatMessage]:
        """Load the channel catalog and greet with the current top gappers."""
        self._ensure_open()

        try:
            raw_catalog = await self._api.fetch_channels_catalog()
        except ApiClientError as e:
            logger.warning(
                "Channel catalog unavailable",
                extra={"status": e.status, "code": e.code},
            )
        else:
            self._catalog = self._build_catalog(raw_catalog)

        try:
            gappers = await self._api.fetch_top_gappers(BOOTSTRAP_GAPPERS_LIMIT)
        except ApiClientError as e:
            return [ChatMessage(format_api_error(e), status="error")]

        if not gappers:
            return []
        return [
            ChatMessage(
                f"Backend connected. {format_gappers_line(gappers[:MAX_REPLY_TICKERS])}",
                intent=Intent.SCAN,
                tickers=tuple(item.ticker for item in gappers[:MAX_REPLY_TICKERS]),
            )
        ]

    async def start_stream(self) -> Optional[TransportManager]:
        """Start the push transport. Returns None when streaming is disabled."""
        self._ensure_open()

        stream_config = self._settings.stream
        if not stream_config.enabled:
            logger.info("Streaming disabled by configuration")
            return None
        if self._transport is not None:
            return self._transport

        def open_stream(last_event_id: Optional[str]):
            return self._api.stream_user_messages(
                replay=stream_config.replay,
                heartbeat_sec=stream_config.heartbeat_sec,
                last_event_id=last_event_id,
            )

        transport = TransportManager(open_stream, self._poll_focused_ticker, stream_config)
        transport.on_event(self._handle_stream_event)
        transport.on_fallback(self._handle_fallback)
        transport.on_error(self._handle_stream_error)

        self._transport = transport
        await transport.start()
        return transport

    async def close(self) -> None:
        """Tear the session down. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._transport is not None:
            await self._transport.close()

        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._pending_watchers.clear()

        self._gateway.close()
        self._card_cache.clear()
        self._etag_cache.clear()
        self._last_refresh.clear()
        self._router.clear()

        logger.info(
            "Chat session closed",
            extra={"submissions": self._submissions},
        )

    async def __aenter__(self) -> ChatOrchestrator:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Chat session is closed")

    # ── Submissions ───────────────────────────────────────────────────────────

    async def submit(self, raw_text: str) -> ChatReply:
        """
        Handle one composer submission.

        Backend failures become error messages in the reply; nothing raises
        except use after close().

        Raises:
            SessionClosedError: If the session was closed
        """
        self._ensure_open()
        async with self._lock:
            self._ensure_open()
            self._submissions += 1

            parsed = parse_composer_text(raw_text)
            messages = await self._dispatch(parsed)

            logger.debug(
                f"Submission handled: {parsed.command_name or parsed.intent.value}",
                extra={"tickers": list(parsed.tickers), "messages": len(messages)},
            )
            return ChatReply(parsed=parsed, messages=tuple(messages))

    async def _dispatch(self, parsed: ParsedInput) -> list[ChatMessage]:
        command = parsed.command_name
        intent = parsed.intent

        if command == "scan" or intent is Intent.SCAN:
            return await self._run_scan()

        if command in ACTION_COMMANDS:
            ticker = parsed.primary_ticker
            if not ticker:
                return [ChatMessage(command_usage_reply(command), intent=intent)]
            return await self._run_action(command, ticker, intent)

        tickers = parsed.tickers or (
            (parsed.bare_ticker_only,) if parsed.bare_ticker_only else ()
        )
        if not tickers:
            reply = (
                command_usage_reply(command)
                if command
                else invalid_ticker_reply(parsed.normalized_message)
            )
            return [ChatMessage(reply, intent=intent)]

        self._focused_ticker = tickers[0]
        return list(
            await asyncio.gather(*(self._card_message(ticker, intent) for ticker in tickers))
        )

    async def _run_scan(self) -> list[ChatMessage]:
        try:
            gappers = await self._api.fetch_top_gappers(SCAN_GAPPERS_LIMIT)
        except ApiClientError as e:
            return [ChatMessage(format_api_error(e), intent=Intent.SCAN, status="error")]

        messages = [
            ChatMessage(
                format_gappers_line(gappers),
                intent=Intent.SCAN,
                tickers=tuple(item.ticker for item in gappers[:MAX_REPLY_TICKERS]),
            )
        ]
        if gappers:
            top = min(gappers, key=lambda item: item.rank)
            self._focused_ticker = top.ticker
            messages.append(await self._card_message(top.ticker, Intent.SCAN))
        return messages

    async def _run_action(self, command: str, ticker: str, intent: Intent) -> list[ChatMessage]:
        """
        Run analyze or pin.

        The card task is created before the action task, so the card request
        goes out before the action call is awaited. An action failure never
        cancels the card fetch.
        """
        self._focused_ticker = ticker
        card_tasks = [asyncio.create_task(self._card_message(ticker, intent))]
        action_task = asyncio.create_task(self._post_action(command, ticker))

        messages: list[ChatMessage] = []
        try:
            ack = await action_task
        except GapperClientError as e:
            self._action_failures += 1
            detail = format_api_error(e) if isinstance(e, ApiClientError) else str(e)
            logger.warning(
                f"{command} failed for {ticker}",
                extra={"ticker": ticker, "error": str(e)},
            )
            messages.append(
                ChatMessage(
                    f"{ticker}: {command} request failed. {detail}",
                    intent=intent,
                    tickers=(ticker,),
                    status="error",
                )
            )
        except BaseException:
            card_tasks[0].cancel()
            raise
        else:
            messages.append(
                ChatMessage(action_ack_text(command, ack), intent=intent, tickers=(ack.ticker,))
            )
            if ack.ticker != ticker:
                card_tasks.append(asyncio.create_task(self._card_message(ack.ticker, intent)))

        messages.extend(await asyncio.gather(*card_tasks))
        return messages

    async def _post_action(self, command: str, ticker: str) -> ActionAck:
        if command == "pin":
            return await self._api.pin_ticker(ticker)
        return await self._api.post_analyze(ticker)

    # ── Cards ─────────────────────────────────────────────────────────────────

    async def _fetch_with_retry(self, ticker: str) -> CardFetchResult:
        """Gateway fetch with one retry for 429/503."""
        attempt = 1
        while True:
            try:
                return await self._gateway.fetch_card(ticker)
            except ApiClientError as e:
                if not is_retryable_error(e) or attempt >= CARD_FETCH_ATTEMPTS:
                    raise
                wait = (
                    float(e.retry_after_sec)
                    if e.retry_after_sec is not None
                    else CARD_RETRY_DEFAULT_WAIT_SECONDS
                )
                wait = min(CARD_RETRY_MAX_WAIT_SECONDS, max(CARD_RETRY_MIN_WAIT_SECONDS, wait))
                logger.info(
                    f"Card fetch for {ticker} got {e.status}, retrying in {wait}s",
                    extra={"ticker": ticker, "attempt": attempt},
                )
                attempt += 1
                await asyncio.sleep(wait)

    async def _fetch_card_view(self, ticker: str) -> Optional[CardViewModel]:
        result = await self._fetch_with_retry(ticker)
        cached = self._gateway.cached_card(ticker)
        if cached is not None or not isinstance(result, CardFetchOk):
            return cached
        # Gateway closed mid-flight: nothing was cached.
        return adapt_card_response(result.payload, result.etag)

    async def _card_message(
        self,
        ticker: str,
        intent: Intent,
        status_label: str = "ready.",
    ) -> ChatMessage:
        """Fetch a card and render it. Failures become error messages."""
        key = normalize_ticker(ticker) or ticker
        try:
            view_model = await self._fetch_card_view(key)
        except GapperClientError as e:
            return self._card_failure_message(key, intent, e)

        if view_model is None:
            # 304 for a card that is no longer cached.
            return ChatMessage(
                card_refresh_failed_text(key, "Card not cached; retry shortly.", has_cached=False),
                intent=intent,
                tickers=(key,),
                status="error",
            )

        message = self._render_card(key, view_model, intent, status_label)
        if message.refresh_pending:
            self._watch_pending_card(key, intent)
        return message

    @staticmethod
    def _render_card(
        ticker: str,
        view_model: CardViewModel,
        intent: Intent,
        status_label: str,
    ) -> ChatMessage:
        treatment = select_card_treatment(view_model, status_label)
        return ChatMessage(
            treatment.content,
            intent=intent,
            tickers=(ticker,),
            status=treatment.status,
            card=view_model if treatment.kind == "ready" else None,
            refresh_pending=treatment.refresh_pending,
        )

    def _card_failure_message(
        self,
        ticker: str,
        intent: Intent,
        error: GapperClientError,
    ) -> ChatMessage:
        self._card_failures += 1
        detail = format_api_error(error) if isinstance(error, ApiClientError) else error.message
        cached = self._card_cache.peek(ticker)

        logger.warning(
            f"Card refresh failed for {ticker}",
            extra={"ticker": ticker, "error": str(error), "has_cached": cached is not None},
        )
        return ChatMessage(
            card_refresh_failed_text(ticker, detail, has_cached=cached is not None),
            intent=intent,
            tickers=(ticker,),
            status="error",
            card=cached,
            refresh_pending=cached is not None,
        )

    # ── Pending cards ─────────────────────────────────────────────────────────

    def _watch_pending_card(self, ticker: str, intent: Intent) -> None:
        """Follow a refresh-pending card in the background. One watcher per ticker."""
        if self._closed or ticker in self._pending_watchers:
            return

        task = asyncio.create_task(
            self._follow_pending_card(ticker, intent),
            name=f"pending-card-{ticker}",
        )
        self._pending_watchers[ticker] = task
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _follow_pending_card(self, ticker: str, intent: Intent) -> None:
        timeout = self._settings.stream.pending_refresh_timeout_seconds
        try:
            message = await asyncio.wait_for(
                self._poll_until_settled(ticker, intent),
                timeout,
            )
        except asyncio.TimeoutError:
            self._pending_timeouts += 1
            logger.warning(
                f"Card refresh for {ticker} still pending after {timeout:g}s",
                extra={"ticker": ticker},
            )
            message = ChatMessage(
                card_timeout_reply(ticker),
                intent=intent,
                tickers=(ticker,),
                status="error",
            )
        finally:
            self._pending_watchers.pop(ticker, None)

        if message is not None:
            await self._emit(message)

    async def _poll_until_settled(self, ticker: str, intent: Intent) -> Optional[ChatMessage]:
        """
        Refetch until the backend stops reporting a pending refresh.

        Returns the settled card message, or None when a non-retryable
        error ends the watch.
        """
        interval = self._settings.stream.pending_refresh_poll_seconds
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                view_model = await self._fetch_card_view(ticker)
            except ApiClientError as e:
                if is_retryable_error(e):
                    continue
                logger.warning(
                    f"Stopped following pending card for {ticker}",
                    extra={"ticker": ticker, "status": e.status, "code": e.code},
                )
                return None
            except GapperClientError as e:
                logger.warning(
                    f"Stopped following pending card for {ticker}",
                    extra={"ticker": ticker, "error": str(e)},
                )
                return None

            if view_model is None or view_model.refresh_pending:
                continue
            return self._render_card(ticker, view_model, intent, "updated.")
        return None

    # ── Stream handling ───────────────────────────────────────────────────────

    async def _emit(self, message: ChatMessage) -> None:
        if self._closed or not self._on_message:
            return
        try:
            await self._on_message(message)
        except Exception as e:
            logger.error(
                "Message callback failed",
                extra={"error": str(e)},
                exc_info=True,
            )

    async def _handle_stream_event(self, event: StreamEvent) -> None:
        if self._closed:
            return

        result = self._router.dispatch(event)
        channel_key = result.channel.key

        if result.new_bucket and result.bucket is not None:
            await self._emit(ChatMessage(result.bucket.label, channel_key=channel_key))

        ticker = event.ticker
        if ticker and event.event_type is EventType.CARD_UPDATED:
            self._schedule_refresh(ticker, channel_key, Intent.MESSAGE, require_focused=True)
            return
        if ticker and event.event_type is EventType.ENTERED_GAPPER:
            self._schedule_refresh(ticker, channel_key, Intent.QUICK_GAP, require_focused=False)
            return

        await self._emit(
            ChatMessage(
                format_event_text(event),
                tickers=(ticker,) if ticker else (),
                channel_key=channel_key,
            )
        )

    def _schedule_refresh(
        self,
        ticker: str,
        channel_key: str,
        intent: Intent,
        *,
        require_focused: bool,
    ) -> None:
        """Refresh a card off the stream loop, deduplicated and rate limited."""
        if require_focused and ticker != self._focused_ticker:
            return
        if ticker in self._refreshes_in_flight:
            self._refreshes_deduped += 1
            return

        now = time.monotonic()
        cooldown = self._settings.stream.card_refresh_cooldown_ms / 1000.0
        last = self._last_refresh.peek(ticker)
        if last is not None and now - last < cooldown:
            self._refreshes_throttled += 1
            return

        self._refreshes_in_flight.add(ticker)
        self._last_refresh.set(ticker, now)

        task = asyncio.create_task(self._refresh_card(ticker, channel_key, intent))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _refresh_card(self, ticker: str, channel_key: str, intent: Intent) -> None:
        try:
            message = await self._card_message(ticker, intent, status_label="updated.")
        finally:
            self._refreshes_in_flight.discard(ticker)
        await self._emit(replace(message, channel_key=channel_key))

    async def _poll_focused_ticker(self) -> None:
        """Fallback poll: refresh the focused card, emit only when it changed."""
        ticker = self._focused_ticker
        if self._closed or not ticker:
            return

        before = self._card_cache.peek(ticker)
        message = await self._card_message(ticker, Intent.MESSAGE, status_label="updated.")
        if self._card_cache.peek(ticker) is before:
            return
        await self._emit(message)

    async def _handle_fallback(
        self,
        reason: FallbackReason,
        error: Optional[BaseException],
    ) -> None:
        await self._emit(
            ChatMessage(
                fallback_notice(reason, self._settings.stream.poll_interval_seconds),
                status="error",
            )
        )

    async def _handle_stream_error(self, error: BaseException) -> None:
        logger.warning(
            "Realtime stream error",
            extra={"error": str(error), "code": getattr(error, "code", None)},
        )

    # ── Catalog ───────────────────────────────────────────────────────────────

    @staticmethod
    def _build_catalog(raw_catalog: list[dict[str, Any]]) -> list[dict[str, Any]]:
        channels: list[dict[str, Any]] = []
        for item in raw_catalog:
            raw_name = str(item.get("name") or "")
            name = normalize_channel_name(raw_name)
            if not name:
                continue
            display = item.get("display_name")
            order = item.get("sort_order", item.get("order"))
            channels.append({
                "name": name,
                "display_name": channel_display_name(
                    raw_name, display if isinstance(display, str) else None
                ),
                "sort_order": (
                    int(order)
                    if isinstance(order, (int, float)) and not isinstance(order, bool)
                    else default_sort_order(raw_name)
                ),
            })
        channels.sort(key=lambda channel: (channel["sort_order"], channel["name"]))
        return channels

    def get_stats(self) -> dict[str, Any]:
        return {
            "closed": self._closed,
            "submissions": self._submissions,
            "focused_ticker": self._focused_ticker,
            "card_failures": self._card_failures,
            "action_failures": self._action_failures,
            "refreshes_in_flight": len(self._refreshes_in_flight),
            "refreshes_deduped": self._refreshes_deduped,
            "refreshes_throttled": self._refreshes_throttled,
            "pending_watchers": len(self._pending_watchers),
            "pending_timeouts": self._pending_timeouts,
            "gateway": self._gateway.get_stats(),
            "router": self._router.get_stats(),
            "transport": self._transport.get_stats() if self._transport else None,
        }
