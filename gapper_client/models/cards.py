"""
Card Data Models

View models built from backend card, action and gapper responses.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class CardViewModel:
    """
    Validated card payload for one ticker plus its staleness flags.

    ``card`` and ``status`` keep the backend blocks untouched; rendering them
    is the UI layer's job.
    """

    ticker: str
    summary: str
    as_of: str
    card: Optional[dict[str, Any]]
    status: Optional[dict[str, Any]]
    is_missing: bool
    is_stale: bool
    refresh_triggered: bool
    refresh_deduped: bool
    etag: Optional[str]
    server_ts: float
    errors: tuple[str, ...] = ()
    version: Optional[int] = None
    llm_pending: bool = False
    llm_failed: bool = False
    llm_error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.ticker:
            raise ValueError("ticker must be non-empty")

    @property
    def refresh_pending(self) -> bool:
        """True while the backend is still producing a fresher card."""
        return (
            (self.is_missing or self.is_stale)
            and (self.refresh_triggered or self.refresh_deduped)
        ) or self.llm_pending


@dataclass(frozen=True)
class ActionAck:
    """Backend acknowledgement for analyze and pin requests."""

    ticker: str
    enqueued: bool
    deduped: bool
    server_ts: float
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class Gapper:
    """One entry of the ranked top-gappers list."""

    rank: int
    ticker: str
    score: float

    def __post_init__(self) -> None:
        if self.rank < 1:
            raise ValueError(f"rank must be >= 1, got {self.rank}")
        if not self.ticker:
            raise ValueError("ticker must be non-empty")


@dataclass(frozen=True)
class CardFetchOk:
    """200 response: fresh payload and the ETag to send next time."""

    payload: dict[str, Any]
    etag: Optional[str]
    kind: str = "ok"


@dataclass(frozen=True)
class CardNotModified:
    """304 response: the cached view model is still current."""

    ticker: str
    etag: Optional[str]
    kind: str = "not_modified"


CardFetchResult = Union[CardFetchOk, CardNotModified]
