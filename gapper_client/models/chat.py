"""
Chat Data Models

Parsed composer input and the replies handed to the rendering layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from gapper_client.models.cards import CardViewModel

MAX_TICKERS_PER_INPUT = 6


class Intent(str, Enum):
    """What the user asked for. Closed set."""

    MESSAGE = "message"
    SCAN = "scan"
    QUICK_GAP = "quick_gap"
    LEVELS = "levels"
    NEWS = "news"


@dataclass(frozen=True)
class ParsedInput:
    """
    Result of interpreting one composer submission.

    ``tickers`` is the list the orchestrator acts on: the command ticker when
    a command was recognized, the ``$`` tickers otherwise.
    """

    intent: Intent
    tickers: tuple[str, ...] = ()
    dollar_tickers: tuple[str, ...] = ()
    command_tickers: tuple[str, ...] = ()
    bare_ticker_only: Optional[str] = None
    normalized_message: str = ""
    command_name: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("tickers", "dollar_tickers", "command_tickers"):
            values = getattr(self, name)
            if len(values) > MAX_TICKERS_PER_INPUT:
                raise ValueError(
                    f"{name} must hold at most {MAX_TICKERS_PER_INPUT} tickers, got {len(values)}"
                )
            if len(set(values)) != len(values):
                raise ValueError(f"{name} must not contain duplicates")

    @property
    def primary_ticker(self) -> Optional[str]:
        if self.tickers:
            return self.tickers[0]
        return self.bare_ticker_only


MessageStatus = Literal["sent", "error"]


@dataclass(frozen=True)
class ChatMessage:
    """One assistant message for the rendering layer."""

    content: str
    intent: Intent = Intent.MESSAGE
    tickers: tuple[str, ...] = ()
    status: MessageStatus = "sent"
    card: Optional[CardViewModel] = None
    refresh_pending: bool = False
    channel_key: Optional[str] = None


@dataclass(frozen=True)
class ChatReply:
    """Everything produced by a single submission, in render order."""

    parsed: ParsedInput
    messages: tuple[ChatMessage, ...] = field(default_factory=tuple)

    @property
    def text(self) -> str:
        return "\n".join(message.content for message in self.messages)

    @property
    def cards(self) -> list[CardViewModel]:
        return [message.card for message in self.messages if message.card is not None]

    @property
    def has_errors(self) -> bool:
        return any(message.status == "error" for message in self.messages)
