"""
Gapper Backend HTTP Client

Async aiohttp client for the card, action, gapper and user-stream endpoints.
Every failure is normalized into NetworkError or ServerError so callers
never see aiohttp exceptions.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import aiohttp

from gapper_client.api.adapters import (
    adapt_action_response,
    adapt_gappers_response,
)
from gapper_client.api.sse import SSE_CONTENT_TYPE, iter_sse_frames
from gapper_client.config import ApiConfig
from gapper_client.core.types import (
    InvalidStreamContentType,
    NetworkError,
    ServerError,
)
from gapper_client.models.cards import (
    ActionAck,
    CardFetchOk,
    CardFetchResult,
    CardNotModified,
    Gapper,
)
from gapper_client.models.events import SseFrame

logger = logging.getLogger(__name__)

KNOWN_BACKEND_CODES = frozenset({
    "auth_unavailable",
    "event_emit_failed",
    "invalid_ticker",
    "premium_required",
    "rate_limit_exceeded",
    "redis_unavailable",
    "system_busy",
    "ticker_not_found",
    "too_many_streams",
    "unauthorized",
})


def default_message_for(status: int, code: str) -> str:
    """Human-readable explanation for an error status / backend code."""
    if status == 429 or code == "rate_limit_exceeded":
        return "Backend busy/rate limited. Retry shortly."
    if status == 503 or code in ("redis_unavailable", "system_busy"):
        return "Backend busy. Please retry in a few seconds."
    if status == 401 or code == "unauthorized":
        return "Session expired or invalid. Sign in again."
    if status == 403 or code == "premium_required":
        return "Premium required for this feature."
    if status == 400 or code == "invalid_ticker":
        return "Ticker format is invalid."
    if code == "network_timeout":
        return "Backend request timed out. Retry in a few seconds."
    if code == "network_error":
        return "Backend unreachable. Check API URL and server status."
    return "Backend request failed."


def _first_error_code(errors: list[str]) -> str:
    first = errors[0].strip() if errors else ""
    return first if first in KNOWN_BACKEND_CODES else "unknown_error"


def _parse_retry_after(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        parsed = int(raw.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def _path_ticker(ticker: str) -> str:
    return quote(ticker.strip().upper(), safe="")


async def _guard_stream(frames: AsyncIterator[SseFrame]) -> AsyncIterator[SseFrame]:
    """Re-raise transport failures in the middle of a stream as NetworkError."""
    try:
        async for frame in frames:
            yield frame
    except asyncio.TimeoutError as e:
        raise NetworkError("Stream read timed out", code="network_timeout") from e
    except aiohttp.ClientError as e:
        raise NetworkError(f"Stream dropped: {e}") from e


@dataclass(frozen=True)
class _Response:
    """The parts of an HTTP response the client needs after it is released.

    Header names are lowercased.
    """

    status: int
    headers: dict[str, str]
    body: Any


class ApiClient:
    """
    Client for the gapper backend.

    Owns an aiohttp.ClientSession unless one is injected. Use as an async
    context manager or call connect() / close() explicitly.
    """

    def __init__(
        self,
        config: ApiConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._config.base_url

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Create the HTTP session if none was injected."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ApiClient:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # ── Request plumbing ──────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}{path if path.startswith('/') else '/' + path}"

    def _headers(
        self,
        *,
        if_none_match: Optional[str] = None,
        extra: Optional[dict[str, str]] = None,
    ) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._config.api_key:
            headers["X-API-Key"] = self._config.api_key
        if if_none_match:
            headers["If-None-Match"] = if_none_match
        if extra:
            headers.update(extra)
        return headers

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("ApiClient is not connected; call connect() first")
        return self._session

    @staticmethod
    async def _read_json(resp: aiohttp.ClientResponse) -> Any:
        try:
            return await resp.json(content_type=None)
        except ValueError:
            return None

    async def _error_from_response(self, resp: aiohttp.ClientResponse) -> ServerError:
        body = await self._read_json(resp)
        errors: list[str] = []
        if isinstance(body, dict) and isinstance(body.get("errors"), list):
            errors = [str(item) for item in body["errors"]]
        code = _first_error_code(errors)
        return ServerError(
            default_message_for(resp.status, code),
            status=resp.status,
            code=code,
            errors=errors,
            retry_after_sec=_parse_retry_after(resp.headers.get("Retry-After")),
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        if_none_match: Optional[str] = None,
    ) -> _Response:
        """
        Perform one request and read its body.

        Raises:
            NetworkError: Connection failure or timeout
            ServerError: Any status >= 400 (304 is not an error)
        """
        session = self._require_session()
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)

        try:
            async with session.request(
                method,
                self._url(path),
                params=params,
                headers=self._headers(if_none_match=if_none_match),
                timeout=timeout,
            ) as resp:
                if resp.status >= 400:
                    error = await self._error_from_response(resp)
                    logger.warning(
                        f"{method} {path} failed with {resp.status}",
                        extra={"status": resp.status, "code": error.code},
                    )
                    raise error

                body = None if resp.status == 304 else await self._read_json(resp)
                return _Response(status=resp.status, headers={k.lower(): v for k, v in resp.headers.items()}, body=body)

        except asyncio.TimeoutError as e:
            raise NetworkError(
                default_message_for(0, "network_timeout"),
                code="network_timeout",
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {path} unreachable: {e}")
            raise NetworkError(default_message_for(0, "network_error")) from e

    # ── Endpoints ─────────────────────────────────────────────────────────────

    async def fetch_card(
        self,
        ticker: str,
        *,
        if_none_match: Optional[str] = None,
    ) -> CardFetchResult:
        """GET /card/{ticker}, conditional when an ETag is supplied."""
        response = await self._request(
            "GET",
            f"/card/{_path_ticker(ticker)}",
            if_none_match=if_none_match,
        )
        etag = response.headers.get("etag")

        if response.status == 304:
            return CardNotModified(ticker=ticker.strip().upper(), etag=etag)

        payload = response.body if isinstance(response.body, dict) else {}
        return CardFetchOk(
            payload=payload,
            etag=etag or payload.get("etag") or None,
        )

    async def post_analyze(self, ticker: str) -> ActionAck:
        """POST /analyze/{ticker}: queue a backend analysis."""
        response = await self._request("POST", f"/analyze/{_path_ticker(ticker)}")
        return adapt_action_response(response.body)

    async def pin_ticker(
        self,
        ticker: str,
        *,
        pin_ttl_sec: Optional[int] = None,
    ) -> ActionAck:
        """POST /pin/{ticker}: ask the backend to keep the ticker fresh."""
        params = {"pin_ttl_sec": str(int(pin_ttl_sec))} if pin_ttl_sec is not None else None
        response = await self._request(
            "POST",
            f"/pin/{_path_ticker(ticker)}",
            params=params,
        )
        return adapt_action_response(response.body)

    async def fetch_top_gappers(self, limit: int = 20) -> list[Gapper]:
        """GET /gappers/top: ranked movers, limit clamped to 1..100."""
        safe_limit = max(1, min(100, int(limit)))
        response = await self._request(
            "GET",
            "/gappers/top",
            params={"limit": str(safe_limit)},
        )
        return adapt_gappers_response(response.body)

    async def fetch_channels_catalog(self) -> list[dict[str, Any]]:
        """GET /channels/catalog: raw catalog entries."""
        response = await self._request("GET", "/channels/catalog")
        body = response.body if isinstance(response.body, dict) else {}
        catalog = body.get("catalog")
        return [item for item in catalog if isinstance(item, dict)] if isinstance(catalog, list) else []

    @asynccontextmanager
    async def stream_user_messages(
        self,
        *,
        replay: int = 0,
        heartbeat_sec: int = 0,
        last_event_id: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[SseFrame]]:
        """
        Open GET /sse/user/messages and yield its frame iterator.

        Entering the context is the handshake: it raises before yielding if
        the status or content type is wrong. The response is released when
        the context exits.

        Raises:
            NetworkError: Connection failure or timeout during the handshake
            ServerError: Error status from the stream endpoint
            InvalidStreamContentType: Response is not text/event-stream
        """
        session = self._require_session()

        params: dict[str, str] = {}
        if replay > 0:
            params["replay"] = str(int(replay))
        if heartbeat_sec > 0:
            params["heartbeat"] = str(int(heartbeat_sec))

        extra = {"Accept": SSE_CONTENT_TYPE}
        if last_event_id:
            extra["Last-Event-ID"] = last_event_id

        # No total timeout: the stream is long-lived. Heartbeats keep reads alive.
        read_timeout = heartbeat_sec * 3 if heartbeat_sec > 0 else None
        timeout = aiohttp.ClientTimeout(
            total=None,
            connect=self._config.timeout_seconds,
            sock_read=read_timeout,
        )

        # Only handshake failures are translated here; once the frames are
        # handed out, _guard_stream owns error translation.
        opened = False
        try:
            async with session.request(
                "GET",
                self._url("/sse/user/messages"),
                params=params or None,
                headers=self._headers(extra=extra),
                timeout=timeout,
            ) as resp:
                if resp.status >= 400:
                    raise await self._error_from_response(resp)

                content_type = resp.headers.get("Content-Type", "")
                if SSE_CONTENT_TYPE not in content_type.lower():
                    raise InvalidStreamContentType(content_type)

                opened = True
                yield _guard_stream(iter_sse_frames(resp.content))
        except asyncio.TimeoutError as e:
            if opened:
                raise
            raise NetworkError(
                default_message_for(0, "network_timeout"),
                code="network_timeout",
            ) from e
        except aiohttp.ClientError as e:
            if opened:
                raise
            raise NetworkError(default_message_for(0, "network_error")) from e
