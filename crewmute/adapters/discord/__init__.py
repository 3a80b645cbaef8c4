"""Discord adapter: discord.py transport and message helpers."""

from __future__ import annotations

from .transport import DiscordTransport

__all__ = ["DiscordTransport"]
