"""Contract between the reconciliation engine and the chat platform."""
from __future__ import annotations

from typing import List, Optional, Protocol

from .models import VoiceOccupant


class VoiceTransport(Protocol):
    """Remote calls and cached membership the engine relies on.

    Every coroutine may raise a transport-specific exception; callers decide
    whether that is fatal.
    """

    async def send_message(self, channel_id: int, content: str) -> int:
        """Post ``content`` and return the new message id."""

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        ...

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        ...

    async def update_voice_state(
        self,
        guild_id: int,
        user_id: int,
        *,
        mute: Optional[bool] = None,
        deafen: Optional[bool] = None,
        channel_id: Optional[int] = None,
    ) -> None:
        ...

    def occupants_of(self, channel_id: int) -> List[VoiceOccupant]:
        """Members currently connected to ``channel_id`` according to the cache."""

    def has_channel(self, channel_id: int) -> bool:
        ...


__all__ = ["VoiceTransport"]
