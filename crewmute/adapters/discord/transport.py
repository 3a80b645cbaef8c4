"""discord.py implementation of the voice transport."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import discord

from ...models import VoiceOccupant
from .handlers import _clamp_text

logger = logging.getLogger(__name__)

_AUDIT_REASON = "crewmute voice moderation"


def occupant_from_member(member: discord.Member) -> VoiceOccupant:
    return VoiceOccupant(
        user_id=member.id,
        guild_id=member.guild.id,
        account_name=member.name,
        display_name=member.display_name,
        roles=frozenset(role.id for role in member.roles),
        bot=member.bot,
    )


class DiscordTransport:
    """Remote calls go through discord.py REST; membership comes from its cache."""

    def __init__(self, client: discord.Client) -> None:
        self._client = client

    async def _messageable(self, channel_id: int) -> Any:
        channel = self._client.get_channel(channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(channel_id)
        return channel

    async def send_message(self, channel_id: int, content: str) -> int:
        channel = await self._messageable(channel_id)
        message = await channel.send(_clamp_text(content))
        return message.id

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        channel = await self._messageable(channel_id)
        await channel.get_partial_message(message_id).delete()

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        channel = await self._messageable(channel_id)
        await channel.get_partial_message(message_id).add_reaction(emoji)

    async def update_voice_state(
        self,
        guild_id: int,
        user_id: int,
        *,
        mute: Optional[bool] = None,
        deafen: Optional[bool] = None,
        channel_id: Optional[int] = None,
    ) -> None:
        changes: Dict[str, Any] = {}
        if mute is not None:
            changes["mute"] = mute
        if deafen is not None:
            changes["deafen"] = deafen
        if channel_id is not None:
            changes["voice_channel"] = discord.Object(id=channel_id)
        if not changes:
            return
        guild = self._client.get_guild(guild_id)
        if guild is None:
            raise LookupError(f"Guild {guild_id} is not cached")
        member = guild.get_member(user_id) or await guild.fetch_member(user_id)
        await member.edit(reason=_AUDIT_REASON, **changes)
        logger.debug("Updated voice state of %s: %s", user_id, changes)

    def occupants_of(self, channel_id: int) -> List[VoiceOccupant]:
        channel = self._client.get_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            return []
        return [occupant_from_member(member) for member in channel.members]

    def has_channel(self, channel_id: int) -> bool:
        channel = self._client.get_channel(channel_id)
        return isinstance(channel, (discord.VoiceChannel, discord.StageChannel))

    def guild_of(self, channel_id: int) -> Optional[int]:
        channel = self._client.get_channel(channel_id)
        guild = getattr(channel, "guild", None)
        return guild.id if guild is not None else None


__all__ = ["DiscordTransport", "occupant_from_member"]
