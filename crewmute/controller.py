"""Control surface: typed commands and control-message reactions.

Authorization lives here. Round control (ending a round, marking someone
else dead, toggling meetings, stopping the bot) is limited to the user who
started the round and the bot owners; marking yourself dead and setting your
in-game name are open to everyone.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from .batch import Orchestrator
from .commands import (
    Command,
    EndRound,
    Invocation,
    MarkDead,
    SetAlias,
    StartRound,
    StopBot,
)
from .models import ControlCapability, LifecyclePhase
from .state import GameAlreadyActive, GameStateStore
from .transport import VoiceTransport

logger = logging.getLogger(__name__)

NO_ROUND = "There is no game running"
ROUND_RUNNING = "A game is already in progress; end it before starting another."
NOT_IN_CONTROL = "You must have started the game or be an owner of the bot to do that."
DEAD_NOT_IN_CONTROL = (
    "You must have started the game or be an owner of the bot to make others dead\n"
    "To make yourself dead, please use the reactions"
)
DEAD_NO_TARGET = "You must mention the user you wish to die"

_ROUND_PHASES = (LifecyclePhase.IN_GAME, LifecyclePhase.IN_MEETING)


def control_message_text(author_id: int, emoji: Dict[ControlCapability, str]) -> str:
    return (
        f"A game is in progress, <@{author_id}> can react to this message with "
        f"{emoji[ControlCapability.TOGGLE_MEETING]} to call a meeting.\n"
        f"Anyone can react to this message with {emoji[ControlCapability.MARK_SELF_DEAD]} "
        "to access dead chat after the next meeting"
    )


class Controller:
    """Translates control-surface events into store and orchestration calls."""

    def __init__(
        self,
        store: GameStateStore,
        orchestrator: Orchestrator,
        transport: VoiceTransport,
        *,
        emoji: Dict[ControlCapability, str],
        reply_ttl_seconds: float = 5.0,
        on_stop: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.transport = transport
        self.emoji = dict(emoji)
        self.reply_ttl_seconds = reply_ttl_seconds
        self.on_stop = on_stop
        self.accepting = True
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_task: Optional[asyncio.Task] = None

    # In-flight bookkeeping ---------------------------------------------------

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
        """Stop accepting events and wait for running handlers to finish."""

        self.accepting = False
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("%d handlers still running at shutdown", self._inflight)
            return False
        return True

    # Helpers -----------------------------------------------------------------

    async def _say(self, channel_id: Optional[int], content: str) -> Optional[int]:
        if channel_id is None:
            return None
        try:
            return await self.transport.send_message(channel_id, content)
        except Exception:
            logger.exception("Failed to send message to %s", channel_id)
            return None

    async def _delete(self, channel_id: int, message_id: Optional[int]) -> None:
        if message_id is None:
            return
        try:
            await self.transport.delete_message(channel_id, message_id)
        except Exception:
            logger.warning("Failed to delete message %s", message_id, exc_info=True)

    async def _broadcast_channel(self, invocation: Invocation) -> Optional[int]:
        record = await self.store.read_game()
        if record is not None and record.control_channel is not None:
            return record.control_channel
        return invocation.channel_id

    # Commands ----------------------------------------------------------------

    async def handle(self, command: Command, invocation: Invocation) -> None:
        if not self.accepting:
            logger.debug("Ignoring %s during shutdown", command)
            return
        async with self._busy():
            await self._delete(invocation.channel_id, invocation.message_id)
            if isinstance(command, StartRound):
                await self.start_round(command, invocation)
            elif isinstance(command, EndRound):
                await self.end_round(invocation)
            elif isinstance(command, MarkDead):
                await self.mark_dead(command, invocation)
            elif isinstance(command, StopBot):
                await self.stop(invocation)
            elif isinstance(command, SetAlias):
                await self.set_alias(command, invocation)
            else:  # pragma: no cover - exhaustive over Command
                logger.warning("Unhandled command %r", command)

    async def _seed_reactions(self, channel_id: int, message_id: int) -> None:
        for capability in (ControlCapability.TOGGLE_MEETING, ControlCapability.MARK_SELF_DEAD):
            await self.transport.add_reaction(channel_id, message_id, self.emoji[capability])

    async def start_round(self, command: StartRound, invocation: Invocation) -> None:
        if await self.store.is_active():
            await self._say(invocation.channel_id, ROUND_RUNNING)
            return
        control_message = await self.transport.send_message(
            invocation.channel_id,
            control_message_text(invocation.author_id, self.emoji),
        )
        # Adding reactions is slow; do it alongside the initial mute.
        seeding = asyncio.create_task(
            self._seed_reactions(invocation.channel_id, control_message)
        )
        try:
            await self.store.start_game(
                control_channel=invocation.channel_id,
                control_message=control_message,
                control_user=invocation.author_id,
                guild_id=invocation.guild_id,
            )
        except GameAlreadyActive:
            seeding.cancel()
            await self._delete(invocation.channel_id, control_message)
            await self._say(invocation.channel_id, ROUND_RUNNING)
            return

        if command.settle_seconds:
            await asyncio.sleep(command.settle_seconds)
        await self.orchestrator.start_game()

        try:
            await seeding
        except Exception:
            logger.exception("Failed to add control reactions")

    async def _end_game(self) -> None:
        await self.orchestrator.end_game()
        # Feed observations are ignored until the game returns to a lobby or menu.
        await self.store.transition(_ROUND_PHASES, LifecyclePhase.GAME_OVER)

    async def end_round(self, invocation: Invocation) -> None:
        if not await self.store.is_active():
            await self._say(invocation.channel_id, NO_ROUND)
            return
        if not await self.store.is_in_control(invocation.author_id):
            await self._say(await self._broadcast_channel(invocation), NOT_IN_CONTROL)
            return
        await self._end_game()

    async def mark_dead(self, command: MarkDead, invocation: Invocation) -> None:
        if not await self.store.is_active():
            await self._say(invocation.channel_id, NO_ROUND)
            return
        channel = await self._broadcast_channel(invocation)
        if not await self.store.is_in_control(invocation.author_id):
            await self._say(channel, DEAD_NOT_IN_CONTROL)
            return
        if command.target is None:
            await self._say(channel, DEAD_NO_TARGET)
            return
        reply = await self._say(channel, f"deadifying <@{command.target}>")
        await self.orchestrator.mark_dead(command.target)
        if reply is not None and channel is not None:
            await asyncio.sleep(self.reply_ttl_seconds)
            await self._delete(channel, reply)

    async def stop(self, invocation: Invocation) -> None:
        if not await self.store.is_in_control(invocation.author_id):
            await self._say(invocation.channel_id, NOT_IN_CONTROL)
            return
        if await self.store.is_active():
            await self._end_game()
        logger.info("Stop requested by %s", invocation.author_id)
        self.accepting = False
        if self.on_stop is not None:
            # close() waits for handlers to go idle, so it must not run inside one.
            self._stop_task = asyncio.create_task(self.on_stop())

    async def set_alias(self, command: SetAlias, invocation: Invocation) -> None:
        await self.store.set_alias(invocation.author_id, command.name)
        if command.name:
            text = f"<@{invocation.author_id}> will be matched as **{command.name}**"
        else:
            text = f"<@{invocation.author_id}> will be matched by display name"
        await self._say(invocation.channel_id, text)

    # Reactions ---------------------------------------------------------------

    async def reaction_added(
        self, message_id: int, user_id: int, capability: Optional[ControlCapability]
    ) -> None:
        if capability is None or not self.accepting:
            return
        if not await self.store.is_control_message(message_id):
            return
        async with self._busy():
            if capability is ControlCapability.TOGGLE_MEETING:
                if await self.store.is_in_control(user_id):
                    await self.store.transition(
                        (LifecyclePhase.IN_GAME,), LifecyclePhase.IN_MEETING
                    )
                    await self.orchestrator.start_meeting()
            elif capability is ControlCapability.MARK_SELF_DEAD:
                await self.orchestrator.mark_dead(user_id)

    async def reaction_removed(
        self, message_id: int, user_id: int, capability: Optional[ControlCapability]
    ) -> None:
        if capability is not ControlCapability.TOGGLE_MEETING or not self.accepting:
            return
        if not await self.store.is_control_message(message_id):
            return
        if not await self.store.is_in_control(user_id):
            return
        async with self._busy():
            await self.store.transition((LifecyclePhase.IN_MEETING,), LifecyclePhase.IN_GAME)
            await self.orchestrator.end_meeting()


__all__ = ["Controller", "control_message_text"]
