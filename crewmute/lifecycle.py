"""Lifecycle state machine driven by the observed game-state feed."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence, Tuple

from .batch import Orchestrator
from .feed import FeedClosed, StateWatch
from .models import (
    InRound,
    LifecyclePhase,
    Lobby,
    ObservedKind,
    ObservedState,
    Player,
    classify,
)
from .state import GameAlreadyActive, GameStateStore

logger = logging.getLogger(__name__)

_ROUND_PHASES = (LifecyclePhase.IN_GAME, LifecyclePhase.IN_MEETING)


def players_of(state: Optional[ObservedState]) -> Optional[Tuple[Player, ...]]:
    if isinstance(state, (InRound, Lobby)):
        return state.players
    return None


class LifecycleMachine:
    """Maps observed states onto phase changes and orchestration routines.

    Side effects fire only when the phase actually changes, so repeated
    identical observations are harmless.
    """

    def __init__(
        self,
        store: GameStateStore,
        orchestrator: Orchestrator,
        *,
        guild_id: int,
        control_channel: Optional[int] = None,
        telemetry=None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.guild_id = guild_id
        self.control_channel = control_channel
        self.telemetry = telemetry
        self._players: Optional[Tuple[Player, ...]] = None
        self._watch: Optional[StateWatch] = None
        self.accepting = True
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @asynccontextmanager
    async def _busy(self) -> AsyncIterator[None]:
        self._inflight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Stop taking new observations and let the current one finish."""

        self.accepting = False
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Lifecycle watcher still busy at shutdown")
            return False
        return True

    def latest_roster(self) -> Optional[Sequence[Player]]:
        """Most recent roster, read straight from the feed when attached."""

        if self._watch is not None:
            players = players_of(self._watch.latest)
            if players is not None:
                return players
        return self._players

    async def _moved(self, expected, new: LifecyclePhase) -> bool:
        if isinstance(expected, LifecyclePhase):
            expected = (expected,)
        moved = await self.store.transition(expected, new)
        if moved and self.telemetry is not None:
            self.telemetry.track_transition(new.value)
        return moved

    async def _ensure_round(self) -> None:
        if await self.store.is_active():
            return
        try:
            await self.store.start_game(
                control_channel=self.control_channel,
                control_message=None,
                control_user=None,
                guild_id=self.guild_id,
            )
        except GameAlreadyActive:
            logger.debug("Round was started concurrently")

    async def observe(self, state: Optional[ObservedState]) -> LifecyclePhase:
        """Apply one observed state and return the resulting phase."""

        players = players_of(state)
        if players is not None:
            self._players = players
        kind = classify(state)

        if kind is ObservedKind.MEETING:
            if await self._moved(
                (LifecyclePhase.PRE_GAME, LifecyclePhase.IN_GAME), LifecyclePhase.IN_MEETING
            ):
                await self._ensure_round()
                await self.orchestrator.start_meeting(players)

        elif kind is ObservedKind.GAMEPLAY:
            if await self._moved(LifecyclePhase.IN_MEETING, LifecyclePhase.IN_GAME):
                concluded = await self.orchestrator.end_meeting(self.latest_roster)
                if concluded:
                    await self._moved(LifecyclePhase.IN_GAME, LifecyclePhase.GAME_OVER)
            elif await self._moved(LifecyclePhase.PRE_GAME, LifecyclePhase.IN_GAME):
                await self._ensure_round()
                await self.orchestrator.start_game(players)

        else:
            if await self._moved(_ROUND_PHASES, LifecyclePhase.PRE_GAME):
                await self.orchestrator.end_game()
            else:
                await self._moved(LifecyclePhase.GAME_OVER, LifecyclePhase.PRE_GAME)

        return await self.store.phase()

    async def run(self, watch: StateWatch) -> None:
        """Follow the feed until it closes.

        Each wake-up handles only the newest value. Closure is fatal to the
        watcher: it is logged and the task ends.
        """

        self._watch = watch
        subscription = watch.subscribe()
        if watch.latest is not None:
            await self._apply(watch.latest)
        while self.accepting:
            try:
                state = await subscription.changed()
            except FeedClosed:
                if self.accepting:
                    logger.error("Observed game-state feed closed; lifecycle watcher stopping")
                else:
                    logger.info("Observed game-state feed closed during shutdown")
                return
            if not self.accepting:
                return
            await self._apply(state)

    async def _apply(self, state: Optional[ObservedState]) -> None:
        async with self._busy():
            try:
                await self.observe(state)
            except Exception:
                logger.exception("Failed to apply observed state %r", state)


__all__ = ["LifecycleMachine", "players_of"]
