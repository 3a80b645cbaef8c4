"""Shared fixtures: an in-memory transport standing in for Discord."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Set, Tuple

import pytest

from crewmute.batch import Orchestrator, VoiceLayout
from crewmute.models import VoiceOccupant, VoiceUpdate
from crewmute.state import GameStateStore

GUILD = 1000
LIVING = 2001
DEAD = 2002
CONTROL = 3001
SPECTATOR_ROLE = 4001


class TransportError(RuntimeError):
    pass


class FakeTransport:
    """Records every call; voice updates for ``failing`` users raise.

    ``refuse_messages`` makes every message send fail and ``delay`` slows
    each voice update down.
    """

    def __init__(self) -> None:
        self.channels: Dict[int, List[VoiceOccupant]] = {LIVING: [], DEAD: []}
        self.sent: List[Tuple[int, str]] = []
        self.deleted: List[Tuple[int, int]] = []
        self.reactions: List[Tuple[int, int, str]] = []
        self.updates: List[VoiceUpdate] = []
        self.failing: Set[int] = set()
        self.refuse_messages = False
        self.delay = 0.0
        self._next_message = 9000

    def seat(self, channel_id: int, *occupants: VoiceOccupant) -> None:
        self.channels.setdefault(channel_id, []).extend(occupants)

    async def send_message(self, channel_id: int, content: str) -> int:
        if self.refuse_messages:
            raise TransportError(f"Cannot send to {channel_id}")
        self._next_message += 1
        self.sent.append((channel_id, content))
        return self._next_message

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        self.deleted.append((channel_id, message_id))

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        self.reactions.append((channel_id, message_id, emoji))

    async def update_voice_state(
        self,
        guild_id: int,
        user_id: int,
        *,
        mute: Optional[bool] = None,
        deafen: Optional[bool] = None,
        channel_id: Optional[int] = None,
    ) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if user_id in self.failing:
            raise TransportError(f"Missing permissions for {user_id}")
        self.updates.append(VoiceUpdate(guild_id, user_id, mute, deafen, channel_id))

    def occupants_of(self, channel_id: int) -> List[VoiceOccupant]:
        return list(self.channels.get(channel_id, []))

    def has_channel(self, channel_id: int) -> bool:
        return channel_id in self.channels

    def updates_for(self, user_id: int) -> List[VoiceUpdate]:
        return [update for update in self.updates if update.user_id == user_id]


def occupant(user_id: int, name: str, *, nick: Optional[str] = None, **kwargs) -> VoiceOccupant:
    return VoiceOccupant(
        user_id=user_id, guild_id=GUILD, account_name=name, display_name=nick, **kwargs
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> GameStateStore:
    return GameStateStore(owners={1})


@pytest.fixture
def layout() -> VoiceLayout:
    return VoiceLayout(living_channel=LIVING, dead_channel=DEAD)


@pytest.fixture
def orchestrator(store, transport, layout) -> Orchestrator:
    return Orchestrator(
        store,
        transport,
        layout,
        spectator_role=SPECTATOR_ROLE,
        meeting_settle_seconds=0,
    )
