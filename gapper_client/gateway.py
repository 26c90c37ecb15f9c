"""
Conditional Fetch Gateway

Wraps GET /card/{ticker} with ETag revalidation and keeps the session's
card and ETag caches current. It never retries; retry policy belongs to
the caller.
"""
from __future__ import annotations

import logging
from typing import Optional

from gapper_client.api.adapters import adapt_card_response, normalize_ticker
from gapper_client.api.client import ApiClient
from gapper_client.cache import BoundedCache
from gapper_client.core.types import ValidationError
from gapper_client.models.cards import CardFetchOk, CardFetchResult, CardViewModel

logger = logging.getLogger(__name__)


class ConditionalFetchGateway:
    """
    Conditional-GET primitive for cards.

    Owns no caches of its own: both are injected so the session that
    created them decides their lifetime.
    """

    def __init__(
        self,
        api: ApiClient,
        card_cache: BoundedCache[str, CardViewModel],
        etag_cache: BoundedCache[str, str],
    ) -> None:
        self._api = api
        self._card_cache = card_cache
        self._etag_cache = etag_cache
        self._alive = True

        # Stats
        self._fetches = 0
        self._not_modified = 0

    @property
    def alive(self) -> bool:
        return self._alive

    def cached_card(self, ticker: str) -> Optional[CardViewModel]:
        """Last view model stored for the ticker, marking it recently used."""
        key = normalize_ticker(ticker)
        if not key:
            return None
        return self._card_cache.get(key)

    async def fetch_card(self, ticker: str) -> CardFetchResult:
        """
        Fetch a card, revalidating with the stored ETag when there is one.

        Returns:
            CardFetchOk with the fresh payload, or CardNotModified when the
            cached view model is still current

        Raises:
            ValidationError: If the ticker is unusable
            NetworkError: Backend unreachable or timed out
            ServerError: Backend answered with an error status
        """
        key = normalize_ticker(ticker)
        if not key:
            raise ValidationError("Ticker is required", field="ticker", value=ticker)

        # A 304 is only useful while the card it validates is still cached.
        etag = self._etag_cache.get(key) if key in self._card_cache else None

        self._fetches += 1
        result = await self._api.fetch_card(key, if_none_match=etag)

        if not self._alive:
            logger.debug(f"Gateway closed, not caching card for {key}")
            return result

        if isinstance(result, CardFetchOk):
            view_model = adapt_card_response(result.payload, result.etag)
            self._card_cache.set(key, view_model)
            if result.etag:
                self._etag_cache.set(key, result.etag)
            else:
                # The old tag describes a card that was just replaced.
                self._etag_cache.pop(key)
            return result

        self._not_modified += 1
        if result.etag:
            self._etag_cache.set(key, result.etag)
        return result

    def close(self) -> None:
        """Stop writing to the caches. Requests still in flight finish uncached."""
        self._alive = False

    def get_stats(self) -> dict[str, object]:
        return {
            "alive": self._alive,
            "fetches": self._fetches,
            "not_modified": self._not_modified,
            "cards": self._card_cache.get_stats(),
            "etags": self._etag_cache.get_stats(),
        }
