"""
Backend Payload Adapters

Transforms backend JSON responses into view models and normalizes ticker
symbols everywhere they enter the client.
"""
from __future__ import annotations

import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

from gapper_client.core.types import ValidationError
from gapper_client.models.cards import ActionAck, CardViewModel, Gapper

logger = logging.getLogger(__name__)

# Exchange suffixes dropped from symbols like "AAPL.US"
REMOVABLE_SUFFIXES = frozenset({"US", "NASDAQ", "NYSE", "AMEX", "OTC"})

MAX_TICKER_LENGTH = 32

_DISALLOWED_TICKER_CHARS = re.compile(r"[^A-Z0-9.\-]")
_SUFFIXED_TICKER = re.compile(r"^([A-Z0-9\-]{1,32})\.([A-Z]{2,8})$")


def normalize_ticker(raw: Optional[str]) -> Optional[str]:
    """
    Canonicalize a ticker symbol.

    Returns None when nothing usable is left, which callers treat as
    "no ticker" rather than an error.
    """
    if not raw:
        return None

    trimmed = str(raw).strip().upper().lstrip("$")
    if not trimmed:
        return None

    direct = _DISALLOWED_TICKER_CHARS.sub("", "".join(trimmed.split()))
    if not direct:
        return None

    suffix_match = _SUFFIXED_TICKER.match(direct)
    if suffix_match and suffix_match.group(2) in REMOVABLE_SUFFIXES:
        return suffix_match.group(1)

    return direct[:MAX_TICKER_LENGTH]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False


def _as_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _as_str(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        return value.strip() or default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_errors(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value)


def _as_of_iso(raw: Any, server_ts: float) -> str:
    """Card header timestamps arrive as ISO strings or epoch seconds."""
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    seconds = _as_float(raw, server_ts)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def _require_ticker(payload: dict[str, Any]) -> str:
    ticker = normalize_ticker(_as_str(payload.get("ticker")))
    if not ticker:
        raise ValidationError(
            "Response has no usable ticker",
            field="ticker",
            value=payload.get("ticker"),
        )
    return ticker


def adapt_card_response(
    payload: dict[str, Any],
    etag: Optional[str] = None,
) -> CardViewModel:
    """
    Build a CardViewModel from a ``GET /card/{ticker}`` body.

    Raises:
        ValidationError: If the body is not an object or has no ticker
    """
    if not isinstance(payload, dict):
        raise ValidationError("Card response must be an object", value=payload)

    ticker = _require_ticker(payload)
    raw_card = payload.get("card") if isinstance(payload.get("card"), dict) else None
    raw_status = payload.get("status") if isinstance(payload.get("status"), dict) else None

    server_ts = _as_float(payload.get("server_ts"), time.time())
    header = _as_dict(raw_card.get("header")) if raw_card else {}
    raw_sources = _as_dict(raw_card.get("raw_sources")) if raw_card else {}
    llm_meta = _as_dict(raw_sources.get("llm_meta"))

    summary = _as_str(raw_card.get("summary")) if raw_card else ""

    version: Optional[int] = None
    if raw_status is not None:
        raw_version = _as_float(raw_status.get("version"), math.nan)
        if math.isfinite(raw_version):
            version = int(raw_version)

    return CardViewModel(
        ticker=ticker,
        summary=summary or f"No backend summary available for {ticker}.",
        as_of=_as_of_iso(header.get("as_of"), server_ts),
        card=raw_card,
        status=raw_status,
        is_missing=_as_bool(payload.get("is_missing")),
        is_stale=_as_bool(payload.get("is_stale")),
        refresh_triggered=_as_bool(payload.get("refresh_triggered")),
        refresh_deduped=_as_bool(payload.get("refresh_deduped")),
        etag=etag or _as_str(payload.get("etag")) or None,
        server_ts=server_ts,
        errors=_as_errors(payload.get("errors")),
        version=version,
        llm_pending=_as_bool(llm_meta.get("pending")),
        llm_failed=_as_bool(llm_meta.get("failed")),
        llm_error=_as_str(llm_meta.get("error")) or None,
    )


def adapt_action_response(payload: dict[str, Any]) -> ActionAck:
    """Build an ActionAck from an analyze or pin acknowledgement."""
    if not isinstance(payload, dict):
        raise ValidationError("Action response must be an object", value=payload)

    return ActionAck(
        ticker=_require_ticker(payload),
        enqueued=_as_bool(payload.get("enqueued")),
        deduped=_as_bool(payload.get("deduped")),
        server_ts=_as_float(payload.get("server_ts"), time.time()),
        errors=_as_errors(payload.get("errors")),
    )


def adapt_gappers_response(payload: dict[str, Any]) -> list[Gapper]:
    """
    Build the ranked gapper list, skipping entries without a ticker.

    Malformed entries are logged and dropped; the rest of the list survives.
    """
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return []

    gappers: list[Gapper] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        ticker = normalize_ticker(_as_str(item.get("ticker")))
        if not ticker:
            logger.debug("Skipping gapper without ticker", extra={"item": repr(item)[:100]})
            continue
        gappers.append(
            Gapper(
                rank=max(1, int(_as_float(item.get("rank"), 0))),
                ticker=ticker,
                score=_as_float(item.get("score"), 0.0),
            )
        )
    return gappers
