"""
Assistant Reply Text

Wording for every message the orchestrator produces: usage hints, action
acknowledgements, card treatments and degraded-state notices.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from gapper_client.core.types import ApiClientError
from gapper_client.models.cards import ActionAck, CardViewModel, Gapper
from gapper_client.models.chat import MessageStatus
from gapper_client.models.events import FallbackReason

INVALID_INPUT_REPLIES = (
    "That ticker format did a backflip and landed in a bush. Try `$AAPL` or `/card AAPL`.",
    "My parser took one look and requested paid leave. Send a clean ticker like `$TSLA`.",
    "That symbol is spicy, but not in a valid way. Try one proper ticker (example: `$NVDA`).",
)

NOT_FOUND_REPLIES = (
    "I sent a search party for {ticker} and they returned with snacks, no stock. Try another ticker.",
    "Plot twist: {ticker} appears to be fictional. Send a real market ticker and I'll fetch it.",
    "I checked every shelf for {ticker}. Found vibes, found memes, found no listed stock.",
)

CARD_PENDING_REPLIES = (
    "Dispatch update: three caffeine-fueled interns are wrestling {ticker} into a readable card.",
    "{ticker} is in the volatility microwave. If it dings clean, you get fresh intel.",
    "Card goblins are forging {ticker} behind the curtain. Please do not feed them after midnight.",
)

CARD_MISSING_REPLIES = (
    "I raided every drawer for {ticker}. Found vibes, found crumbs, found no card.",
    "{ticker} just ghosted the terminal. Run `/analyze {ticker}` and we will summon it back.",
    "No card for {ticker} yet. Backend is either meditating or plotting. Retry shortly.",
)

CARD_TIMEOUT_REPLIES = (
    "{ticker} is still in the card oven and the timer is screaming. I aborted the wait.",
    "We waited on {ticker} long enough for a director's cut. Refresh timed out.",
    "{ticker} is taking the scenic route through backend space-time. Timeout called.",
)

MAX_GAPPERS_IN_LINE = 8

CardTreatmentKind = Literal["not_found", "missing", "ready"]


def _pick_reply(options: Sequence[str], seed: str) -> str:
    """Deterministic choice so the same input always gets the same line."""
    index = sum(ord(char) for char in seed) % len(options)
    return options[index]


def _with_ticker(template: str, ticker: str) -> str:
    return template.replace("{ticker}", f"${ticker}")


# ── Usage ─────────────────────────────────────────────────────────────────────

def command_usage_reply(command_name: str) -> str:
    return f"Need one ticker for `/{command_name}`. Example: `/{command_name} NVDA`."


def invalid_ticker_reply(seed: str) -> str:
    return _pick_reply(INVALID_INPUT_REPLIES, seed or "invalid-input")


# ── Backend results ───────────────────────────────────────────────────────────

def format_gappers_line(gappers: Sequence[Gapper]) -> str:
    if not gappers:
        return "No active gappers returned by backend."
    return "Top gappers: " + " | ".join(
        f"#{item.rank} {item.ticker} ({item.score:.2f})"
        for item in gappers[:MAX_GAPPERS_IN_LINE]
    )


def action_ack_text(command_name: str, ack: ActionAck) -> str:
    """Acknowledgement line for ``analyze`` and ``pin``."""
    if command_name == "pin":
        if ack.enqueued:
            return f"Pinned {ack.ticker}; backend focus refresh requested."
        if ack.deduped:
            return f"{ack.ticker} pin request deduped."
        return f"Pin accepted for {ack.ticker}."

    if ack.enqueued:
        return f"Analysis queued for {ack.ticker}."
    if ack.deduped:
        return f"{ack.ticker} is already queued."
    return f"Analyze request accepted for {ack.ticker}."


def format_api_error(error: ApiClientError) -> str:
    retry_hint = (
        f" Retry in ~{error.retry_after_sec}s."
        if error.retry_after_sec is not None
        else " Retry in a few seconds."
    )
    if error.status == 429:
        return f"Backend busy/rate limited.{retry_hint}"
    if error.status == 503:
        return f"Backend busy/unavailable.{retry_hint}"
    if error.status == 401:
        return "Backend rejected request: missing/invalid API key."
    return error.message


def card_refresh_failed_text(ticker: str, detail: str, *, has_cached: bool) -> str:
    if has_cached:
        return f"{ticker}: could not refresh card; serving cached card while backend refreshes. {detail}"
    return f"{ticker}: could not refresh card. {detail}"


def card_timeout_reply(ticker: str) -> str:
    return _with_ticker(_pick_reply(CARD_TIMEOUT_REPLIES, ticker), ticker)


def fallback_notice(reason: FallbackReason, poll_interval_seconds: float) -> str:
    every = f"{poll_interval_seconds:g}s"
    if reason is FallbackReason.RECONNECT_EXHAUSTED:
        return f"Realtime stream paused after repeated retries. Polling every {every}."
    if reason is FallbackReason.TOO_MANY_STREAMS:
        return f"Too many open realtime streams for this account. Polling every {every}."
    return f"Realtime stream unavailable. Polling every {every}."


# ── Card treatment ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CardTreatment:
    """How a fetched card should be shown."""

    kind: CardTreatmentKind
    content: str
    status: MessageStatus
    refresh_pending: bool


def _llm_status_suffix(view_model: CardViewModel) -> Optional[str]:
    if view_model.llm_pending:
        return "partial card ready; LLM enrichment pending."
    if view_model.llm_failed:
        detail = (
            f" ({view_model.llm_error})"
            if view_model.llm_error and view_model.llm_error != "llm_unavailable"
            else ""
        )
        return f"card ready; LLM enrichment unavailable{detail}"
    return None


def select_card_treatment(
    view_model: CardViewModel,
    status_label: str = "ready.",
) -> CardTreatment:
    """
    Pick the message for a card.

    ``status_label`` is "ready." for user-requested cards and "updated." for
    refreshes triggered by the stream.
    """
    ticker = view_model.ticker
    if "ticker_not_found" in view_model.errors:
        return CardTreatment(
            kind="not_found",
            content=_with_ticker(_pick_reply(NOT_FOUND_REPLIES, ticker), ticker),
            status="error",
            refresh_pending=False,
        )

    refresh_pending = view_model.refresh_pending

    if view_model.is_missing and not view_model.card:
        options = CARD_PENDING_REPLIES if refresh_pending else CARD_MISSING_REPLIES
        return CardTreatment(
            kind="missing",
            content=_with_ticker(_pick_reply(options, ticker), ticker),
            status="sent" if refresh_pending else "error",
            refresh_pending=refresh_pending,
        )

    llm_status = _llm_status_suffix(view_model)
    return CardTreatment(
        kind="ready",
        content=f"{ticker}: {llm_status}" if llm_status else f"{ticker}: {status_label}",
        status="sent",
        refresh_pending=refresh_pending,
    )
