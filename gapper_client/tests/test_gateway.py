"""
Tests for gapper_client.gateway
"""
from unittest.mock import AsyncMock

import pytest

from gapper_client.cache import BoundedCache
from gapper_client.core.types import NetworkError, ValidationError
from gapper_client.gateway import ConditionalFetchGateway
from gapper_client.models.cards import CardFetchOk, CardNotModified


# ── Helpers ───────────────────────────────────────────────────────────────────

class _EtagServer:
    """Minimal stand-in for ApiClient.fetch_card with real ETag semantics."""

    def __init__(self) -> None:
        self.versions: dict[str, int] = {}
        self.requests: list[tuple[str, object]] = []

    async def fetch_card(self, ticker, *, if_none_match=None):
        self.requests.append((ticker, if_none_match))
        version = self.versions.setdefault(ticker, 1)
        etag = f'"{ticker}-{version}"'
        if if_none_match == etag:
            return CardNotModified(ticker=ticker, etag=etag)
        payload = {
            "ticker": ticker,
            "card": {"summary": f"{ticker} v{version}"},
            "is_missing": False,
            "is_stale": False,
        }
        return CardFetchOk(payload=payload, etag=etag)


def _gateway(api, card_capacity: int = 50, etag_capacity: int = 50):
    cards = BoundedCache(card_capacity, name="cards")
    etags = BoundedCache(etag_capacity, name="etags")
    return ConditionalFetchGateway(api, cards, etags), cards, etags


# ── fetch_card() ──────────────────────────────────────────────────────────────

async def test_second_fetch_without_change_is_not_modified():
    server = _EtagServer()
    gateway, cards, etags = _gateway(server)

    first = await gateway.fetch_card("nvda")
    second = await gateway.fetch_card("NVDA")

    assert first.kind == "ok"
    assert second.kind == "not_modified"
    assert server.requests == [("NVDA", None), ("NVDA", '"NVDA-1"')]
    assert cards.peek("NVDA").summary == "NVDA v1"
    assert etags.peek("NVDA") == '"NVDA-1"'


async def test_changed_card_replaces_cached_view_model():
    server = _EtagServer()
    gateway, cards, _ = _gateway(server)

    await gateway.fetch_card("NVDA")
    server.versions["NVDA"] = 2
    result = await gateway.fetch_card("NVDA")

    assert result.kind == "ok"
    assert cards.peek("NVDA").summary == "NVDA v2"
    assert cards.peek("NVDA").etag == '"NVDA-2"'


async def test_no_conditional_header_once_card_was_evicted():
    server = _EtagServer()
    gateway, cards, etags = _gateway(server, card_capacity=1, etag_capacity=10)

    await gateway.fetch_card("AAA")
    await gateway.fetch_card("BBB")  # evicts AAA's card but not its etag
    assert "AAA" not in cards
    assert "AAA" in etags

    result = await gateway.fetch_card("AAA")

    assert result.kind == "ok"
    assert server.requests[-1] == ("AAA", None)


async def test_cached_card_reads_through_card_cache():
    gateway, _, _ = _gateway(_EtagServer())
    assert gateway.cached_card("NVDA") is None

    await gateway.fetch_card("NVDA")

    assert gateway.cached_card("$nvda").ticker == "NVDA"


async def test_errors_propagate_without_retry():
    api = AsyncMock()
    api.fetch_card.side_effect = NetworkError("down")
    gateway, cards, _ = _gateway(api)

    with pytest.raises(NetworkError):
        await gateway.fetch_card("NVDA")

    assert api.fetch_card.await_count == 1
    assert len(cards) == 0


async def test_invalid_ticker_raises_validation_error():
    gateway, _, _ = _gateway(_EtagServer())
    with pytest.raises(ValidationError):
        await gateway.fetch_card("$$$")


async def test_closed_gateway_does_not_write_caches():
    server = _EtagServer()
    gateway, cards, etags = _gateway(server)
    gateway.close()

    result = await gateway.fetch_card("NVDA")

    assert result.kind == "ok"
    assert len(cards) == 0
    assert len(etags) == 0
    assert gateway.alive is False


async def test_untagged_response_drops_the_previous_etag():
    api = AsyncMock()
    api.fetch_card.side_effect = [
        CardFetchOk(payload={"ticker": "NVDA", "card": {"summary": "v1"}}, etag='"v1"'),
        CardFetchOk(payload={"ticker": "NVDA", "card": {"summary": "v2"}}, etag=None),
        CardFetchOk(payload={"ticker": "NVDA", "card": {"summary": "v3"}}, etag=None),
    ]
    gateway, cards, etags = _gateway(api)

    await gateway.fetch_card("NVDA")
    await gateway.fetch_card("NVDA")
    await gateway.fetch_card("NVDA")

    sent = [call.kwargs["if_none_match"] for call in api.fetch_card.await_args_list]
    assert sent == [None, '"v1"', None]
    assert "NVDA" not in etags
    assert cards.peek("NVDA").summary == "v3"
