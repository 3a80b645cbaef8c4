"""Typed control-surface commands.

The Discord layer turns messages and reactions into these values; nothing
past this module ever looks at raw command text or emoji literals.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from .models import ControlCapability

DEFAULT_SETTLE_SECONDS = 5

_MENTION_RE = re.compile(r"^<@!?(\d{15,21})>$")


@dataclass(frozen=True)
class StartRound:
    settle_seconds: Optional[int] = DEFAULT_SETTLE_SECONDS


@dataclass(frozen=True)
class EndRound:
    pass


@dataclass(frozen=True)
class MarkDead:
    target: Optional[int] = None


@dataclass(frozen=True)
class StopBot:
    pass


@dataclass(frozen=True)
class SetAlias:
    name: Optional[str] = None


Command = Union[StartRound, EndRound, MarkDead, StopBot, SetAlias]


@dataclass(frozen=True)
class Invocation:
    """Who issued a command and where."""

    author_id: int
    channel_id: int
    guild_id: int
    message_id: Optional[int] = None


def parse_settle(
    raw: Optional[str], default: int = DEFAULT_SETTLE_SECONDS
) -> Optional[int]:
    """Missing, junk or negative values use ``default``; ``0`` disables the delay."""

    fallback = default if default > 0 else None
    if raw is None:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    if value == 0:
        return None
    if value < 0:
        return fallback
    return value


def parse_mention(raw: Optional[str]) -> Optional[int]:
    """Extract a user id from ``<@id>``/``<@!id>`` or a bare snowflake."""

    if not raw:
        return None
    raw = raw.strip()
    match = _MENTION_RE.match(raw)
    if match:
        return int(match.group(1))
    if raw.isdigit() and 15 <= len(raw) <= 21:
        return int(raw)
    return None


def capability_for(
    emoji: str, emoji_map: Mapping[str, ControlCapability]
) -> Optional[ControlCapability]:
    return emoji_map.get(emoji)


__all__ = [
    "Command",
    "DEFAULT_SETTLE_SECONDS",
    "EndRound",
    "Invocation",
    "MarkDead",
    "SetAlias",
    "StartRound",
    "StopBot",
    "capability_for",
    "parse_mention",
    "parse_settle",
]
