"""Authoritative in-memory record of the active round.

Every handler shares one :class:`GameStateStore`. Reads take the shared side
of an async readers-writer lock and return immutable snapshots; mutations
take the exclusive side and never await anything else while holding it, so
slow Discord calls cannot stall unrelated readers.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Dict, Iterable, Optional

from .models import GameRecord, LifecyclePhase

logger = logging.getLogger(__name__)


class GameAlreadyActive(RuntimeError):
    """Raised when a round is started while another is still running."""


class ReadWriteLock:
    """Writer-preferring readers-writer lock for asyncio tasks."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._waiting_writers == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class GameStateStore:
    """Guarded access to the game record, lifecycle phase and alias overrides."""

    def __init__(self, owners: Optional[Iterable[int]] = None) -> None:
        self._lock = ReadWriteLock()
        self._game: Optional[GameRecord] = None
        self._phase = LifecyclePhase.PRE_GAME
        self._aliases: Dict[int, str] = {}
        self._owners = frozenset(owners or ())

    @property
    def owners(self) -> frozenset:
        return self._owners

    def set_owners(self, owners: Iterable[int]) -> None:
        """Replace the owner set; called once the application info is known."""

        self._owners = frozenset(owners)
        logger.info("Bot owners: %s", sorted(self._owners))

    # Reads -----------------------------------------------------------------

    async def read_game(self) -> Optional[GameRecord]:
        async with self._lock.read():
            return self._game

    async def is_active(self) -> bool:
        async with self._lock.read():
            return self._game is not None

    async def phase(self) -> LifecyclePhase:
        async with self._lock.read():
            return self._phase

    async def is_in_control(self, user_id: int) -> bool:
        if user_id in self._owners:
            return True
        async with self._lock.read():
            return self._game is not None and self._game.control_user == user_id

    async def is_control_message(self, message_id: int) -> bool:
        async with self._lock.read():
            return self._game is not None and self._game.control_message == message_id

    async def aliases(self) -> Dict[int, str]:
        async with self._lock.read():
            return dict(self._aliases)

    # Writes ----------------------------------------------------------------

    async def start_game(
        self,
        control_channel: Optional[int],
        control_message: Optional[int],
        control_user: Optional[int],
        guild_id: int,
    ) -> GameRecord:
        async with self._lock.write():
            if self._game is not None:
                raise GameAlreadyActive("A round is already in progress")
            self._game = GameRecord(
                guild_id=guild_id,
                control_channel=control_channel,
                control_message=control_message,
                control_user=control_user,
            )
            record = self._game
        logger.info("Round started in guild %s by %s", guild_id, control_user)
        return record

    async def end_game(self) -> Optional[GameRecord]:
        async with self._lock.write():
            record, self._game = self._game, None
        if record is not None:
            logger.info("Round ended in guild %s", record.guild_id)
        return record

    async def mark_dead(self, user_id: int) -> bool:
        """Add ``user_id`` to the dead set; ``True`` only for a new addition."""

        async with self._lock.write():
            if self._game is None or user_id in self._game.dead_players:
                return False
            self._game = replace(
                self._game, dead_players=self._game.dead_players | {user_id}
            )
        logger.info("Marked %s dead", user_id)
        return True

    async def set_meeting_in_progress(self, flag: bool) -> None:
        async with self._lock.write():
            if self._game is None:
                logger.debug("No round to set meeting_in_progress=%s on", flag)
                return
            self._game = replace(self._game, meeting_in_progress=flag)

    async def transition(
        self, expected: Iterable[LifecyclePhase], new: LifecyclePhase
    ) -> bool:
        """Move to ``new`` only if the current phase is one of ``expected``."""

        allowed = frozenset(expected)
        async with self._lock.write():
            if self._phase not in allowed:
                return False
            previous, self._phase = self._phase, new
        logger.info("Lifecycle %s -> %s", previous.value, new.value)
        return True

    async def set_alias(self, user_id: int, name: Optional[str]) -> None:
        async with self._lock.write():
            if name:
                self._aliases[user_id] = name
            else:
                self._aliases.pop(user_id, None)


__all__ = ["GameAlreadyActive", "GameStateStore", "ReadWriteLock"]
