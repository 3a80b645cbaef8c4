"""Discord message helpers and formatting utilities."""

from __future__ import annotations

import logging
from typing import Optional

import discord

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LENGTH = 1900


def _clamp_text(text: str) -> str:
    """Ensure Discord-compatible message length."""

    if len(text) <= _MAX_MESSAGE_LENGTH:
        return text
    return text[: _MAX_MESSAGE_LENGTH - 1].rstrip() + "…"


async def _post_to_channel(
    client: discord.Client,
    channel_id: Optional[int],
    content: str,
    *,
    purpose: str,
) -> None:
    """Send content to a configured channel if possible."""

    if channel_id is None:
        logger.debug("Skipping %s post; channel not configured", purpose)
        return
    channel = client.get_channel(channel_id)
    if channel is None:
        logger.warning("Failed to locate %s channel with id %s", purpose, channel_id)
        return
    try:
        await channel.send(_clamp_text(content))
    except discord.HTTPException:
        logger.exception("Failed to send %s message", purpose)


__all__ = ["_clamp_text", "_post_to_channel"]
