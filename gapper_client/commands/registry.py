"""
Composer Command Registry

Slash commands understood by the composer and the intent each maps to.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from gapper_client.models.chat import Intent


@dataclass(frozen=True)
class CommandDefinition:
    name: str
    description: str
    example: str
    intent: Intent
    aliases: tuple[str, ...] = ()


COMMAND_REGISTRY: tuple[CommandDefinition, ...] = (
    CommandDefinition(
        name="gap",
        description="Quick premarket gap context and setup quality",
        example="/gap NVDA",
        intent=Intent.QUICK_GAP,
    ),
    CommandDefinition(
        name="levels",
        description="Map support, resistance, and invalidation",
        example="/levels TSLA",
        intent=Intent.LEVELS,
    ),
    CommandDefinition(
        name="news",
        description="Pull catalyst headlines and sentiment",
        example="/news TSLA",
        intent=Intent.NEWS,
    ),
    CommandDefinition(
        name="scan",
        description="Scan for active gappers",
        example="/scan gappers",
        intent=Intent.SCAN,
    ),
    CommandDefinition(
        name="analyze",
        description="Queue backend analysis for a ticker",
        example="/analyze NVDA",
        intent=Intent.MESSAGE,
        aliases=("force",),
    ),
    CommandDefinition(
        name="pin",
        description="Pin ticker for backend focus",
        example="/pin AAPL",
        intent=Intent.MESSAGE,
    ),
    CommandDefinition(
        name="card",
        description="Fetch latest backend card",
        example="/card TSLA",
        intent=Intent.MESSAGE,
    ),
    CommandDefinition(
        name="float",
        description="Estimate float pressure and squeeze risk",
        example="/float TSLA",
        intent=Intent.QUICK_GAP,
    ),
    CommandDefinition(
        name="halt",
        description="Check halt risk and circuit profile",
        example="/halt TSLA",
        intent=Intent.QUICK_GAP,
    ),
)


def find_command(name: str) -> Optional[CommandDefinition]:
    """Look up a command by name or alias, case-insensitively."""
    key = name.strip().lower()
    for command in COMMAND_REGISTRY:
        if command.name == key or key in command.aliases:
            return command
    return None
