"""
Command Interpreter

Turns composer text into an intent and a list of tickers.
"""
from gapper_client.commands.parser import parse_composer_text
from gapper_client.commands.registry import (
    COMMAND_REGISTRY,
    CommandDefinition,
    find_command,
)

__all__ = [
    "COMMAND_REGISTRY",
    "CommandDefinition",
    "find_command",
    "parse_composer_text",
]
