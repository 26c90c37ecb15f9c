"""
Composer Text Parser

Interprets one raw composer submission into a ParsedInput.

Precedence:
    1. slash command found in the registry     (/levels TSLA)
    2. plain command verb                      (analyze nvda)
    3. inline dollar tickers                   ($TSLA and $NVDA?)
    4. a lone token that looks like a ticker   (AAPL)
    5. anything else is a plain message

Parsing never fails. Input that cannot be understood degrades to a
message with no tickers.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from gapper_client.api.adapters import normalize_ticker
from gapper_client.commands.registry import find_command
from gapper_client.models.chat import MAX_TICKERS_PER_INPUT, Intent, ParsedInput

SLASH_COMMAND_PATTERN = re.compile(r"^/(\w+)\b\s*")
PLAIN_COMMAND_PATTERN = re.compile(r"^(analyze|pin|card)\b\s*", re.IGNORECASE)
DOLLAR_TICKER_PATTERN = re.compile(r"\$([A-Za-z0-9.\-]{1,32})\b")
TOKEN_SPLIT_PATTERN = re.compile(r"[\s,]+")

MAX_BARE_TICKER_LENGTH = 6

BARE_TICKER_STOPWORDS = frozenset({
    "ALERT",
    "ANALYZE",
    "CARD",
    "DEEP",
    "GAPPERS",
    "HELLO",
    "LEVELS",
    "NEWS",
    "PLEASE",
    "PIN",
    "SCAN",
    "THANKS",
})


def _unique_tickers(tokens: Iterable[Optional[str]]) -> tuple[str, ...]:
    output: list[str] = []
    for token in tokens:
        if not token or token in output:
            continue
        output.append(token)
        if len(output) >= MAX_TICKERS_PER_INPUT:
            break
    return tuple(output)


def extract_dollar_tickers(text: str) -> tuple[str, ...]:
    """All ``$TICKER`` tokens, normalized, unique, first-seen order."""
    return _unique_tickers(
        normalize_ticker(match.group(1)) for match in DOLLAR_TICKER_PATTERN.finditer(text)
    )


def _extract_command_ticker(text: str) -> tuple[str, ...]:
    first_token = next(
        (token for token in TOKEN_SPLIT_PATTERN.split(text) if token.strip()),
        "",
    )
    return _unique_tickers([normalize_ticker(first_token)])


def detect_bare_ticker(text: str) -> Optional[str]:
    """The ticker when the whole text is one symbol-like, non-stopword token."""
    trimmed = text.strip()
    if not trimmed or any(char.isspace() for char in trimmed):
        return None

    normalized = normalize_ticker(trimmed)
    if not normalized or len(normalized) > MAX_BARE_TICKER_LENGTH:
        return None
    if normalized in BARE_TICKER_STOPWORDS:
        return None
    return normalized


def parse_composer_text(text: str) -> ParsedInput:
    """Interpret a raw submission. See the module docstring for precedence."""
    trimmed = (text or "").strip()
    if not trimmed:
        return ParsedInput(intent=Intent.MESSAGE)

    slash_match = SLASH_COMMAND_PATTERN.match(trimmed)
    plain_match = None if slash_match else PLAIN_COMMAND_PATTERN.match(trimmed)

    registry_command = find_command(slash_match.group(1)) if slash_match else None
    plain_name = plain_match.group(1).lower() if plain_match else None

    command_name = registry_command.name if registry_command else plain_name
    intent = registry_command.intent if registry_command else Intent.MESSAGE

    # Unknown slash commands still lose their "/word" prefix so the rest is
    # searched for tickers like ordinary text.
    if slash_match:
        remainder = trimmed[slash_match.end():]
    elif plain_match:
        remainder = trimmed[plain_match.end():]
    else:
        remainder = trimmed

    dollar_tickers = extract_dollar_tickers(remainder or trimmed)
    command_tickers = (
        _extract_command_ticker(remainder)
        if command_name and command_name != "scan"
        else ()
    )

    return ParsedInput(
        intent=intent,
        tickers=command_tickers if command_name else dollar_tickers,
        dollar_tickers=dollar_tickers,
        command_tickers=command_tickers,
        bare_ticker_only=None if command_name else detect_bare_ticker(remainder),
        normalized_message=remainder,
        command_name=command_name,
    )
