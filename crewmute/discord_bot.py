"""Discord bot entry point for crewmute."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Coroutine, Optional, Set

import discord
from discord.ext import commands

from .adapters.discord import DiscordTransport
from .adapters.discord.handlers import _post_to_channel
from .batch import Orchestrator, VoiceLayout
from .commands import (
    EndRound,
    Invocation,
    MarkDead,
    SetAlias,
    StartRound,
    StopBot,
    capability_for,
    parse_mention,
    parse_settle,
)
from .config import ConfigurationError, Settings, get_settings
from .controller import Controller
from .feed import StateWatch, pump_process
from .lifecycle import LifecycleMachine
from .state import GameStateStore
from .telemetry import get_telemetry
from .telemetry_decorator import track_command

logger = logging.getLogger(__name__)


def default_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.members = True
    intents.voice_states = True
    intents.guild_reactions = True
    return intents


class CrewmuteBot(commands.Bot):
    """Bot that lets in-flight voice batches finish before disconnecting."""

    def __init__(self, *args, shutdown_grace_seconds: float = 30.0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.controller: Optional[Controller] = None
        self.lifecycle: Optional[LifecycleMachine] = None
        self.feed_pump: Optional[asyncio.Task] = None
        self.startup_error: Optional[Exception] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._closing = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Create and track a background task with exception logging."""

        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)

        def _discard_and_log(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            if t.cancelled():
                logger.debug("Background task %s cancelled", name)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background task %s failed", name, exc_info=exc)

        task.add_done_callback(_discard_and_log)
        return task

    async def setup_hook(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, lambda: self.spawn(self.close(), name="shutdown"))
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            logger.debug("SIGTERM handler not supported on this platform")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        logger.info("Shutting down; waiting for in-flight voice updates")
        waits = []
        if self.controller is not None:
            waits.append(self.controller.wait_idle(self.shutdown_grace_seconds))
        if self.lifecycle is not None:
            waits.append(self.lifecycle.wait_idle(self.shutdown_grace_seconds))
        if self.feed_pump is not None:
            self.feed_pump.cancel()
        await asyncio.gather(*waits)
        current = asyncio.current_task()
        for task in list(self._background_tasks):
            if task is not current:
                task.cancel()
        get_telemetry().flush()
        await super().close()


def build_bot(settings: Settings, intents: Optional[discord.Intents] = None) -> CrewmuteBot:
    intents = intents or default_intents()
    bot = CrewmuteBot(
        command_prefix=settings.command_prefix,
        intents=intents,
        help_command=None,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )
    telemetry = get_telemetry()
    store = GameStateStore(owners=settings.owners)
    transport = DiscordTransport(bot)
    orchestrator = Orchestrator(
        store,
        transport,
        VoiceLayout(settings.living_channel, settings.dead_channel, settings.voice_mode),
        spectator_role=settings.spectator_role,
        announce_channel=settings.announce_channel,
        meeting_settle_seconds=settings.meeting_settle_seconds,
        telemetry=telemetry,
    )
    controller = Controller(
        store,
        orchestrator,
        transport,
        emoji=settings.emoji,
        reply_ttl_seconds=settings.reply_ttl_seconds,
        on_stop=bot.close,
    )
    bot.controller = controller
    setattr(bot, "state_store", store)
    capabilities = settings.emoji_capabilities
    ready_once = False

    def _invocation(ctx: commands.Context) -> Invocation:
        return Invocation(
            author_id=ctx.author.id,
            channel_id=ctx.channel.id,
            guild_id=ctx.guild.id,
            message_id=ctx.message.id,
        )

    async def _load_owners() -> None:
        owners = set(settings.owners)
        try:
            app_info = await bot.application_info()
        except discord.HTTPException:
            logger.exception("Failed to fetch application info; using configured owners only")
        else:
            if app_info.team is not None:
                owners.update(member.id for member in app_info.team.members)
            else:
                owners.add(app_info.owner.id)
        store.set_owners(owners)

    def _start_feed() -> None:
        guild_id = transport.guild_of(settings.living_channel)
        if guild_id is None:  # pragma: no cover - checked in on_ready
            return
        watch = StateWatch()
        machine = LifecycleMachine(
            store,
            orchestrator,
            guild_id=guild_id,
            control_channel=settings.announce_channel,
            telemetry=telemetry,
        )
        bot.lifecycle = machine
        bot.feed_pump = bot.spawn(pump_process(settings.feed_command, watch), name="feed.pump")
        bot.spawn(machine.run(watch), name="feed.lifecycle")
        logger.info("Following observed game state from %s", settings.feed_command)

    @bot.event
    async def on_ready() -> None:
        nonlocal ready_once
        logger.info("crewmute connected as %s", bot.user)
        if ready_once:
            return
        ready_once = True
        for label, channel_id in (
            ("living", settings.living_channel),
            ("dead", settings.dead_channel),
        ):
            if not transport.has_channel(channel_id):
                bot.startup_error = ConfigurationError(
                    f"Configured {label} channel {channel_id} is not a voice channel the bot can see"
                )
                logger.critical("%s", bot.startup_error)
                await bot.close()
                return
        await _load_owners()
        if settings.feed_command:
            _start_feed()
        await _post_to_channel(
            bot, settings.announce_channel, "crewmute is online", purpose="startup"
        )

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            return
        if isinstance(error, commands.NoPrivateMessage):
            await ctx.send("crewmute commands only work inside a server.")
            return
        if isinstance(error, commands.UserInputError):
            await ctx.send(f"Invalid arguments: {error}")
            return
        logger.error(
            "Error processing command %r from %s", ctx.message.content, ctx.author, exc_info=error
        )

    @bot.event
    async def on_raw_reaction_add(payload: discord.RawReactionActionEvent) -> None:
        if bot.user is not None and payload.user_id == bot.user.id:
            return
        await controller.reaction_added(
            payload.message_id,
            payload.user_id,
            capability_for(str(payload.emoji), capabilities),
        )

    @bot.event
    async def on_raw_reaction_remove(payload: discord.RawReactionActionEvent) -> None:
        if bot.user is not None and payload.user_id == bot.user.id:
            return
        await controller.reaction_removed(
            payload.message_id,
            payload.user_id,
            capability_for(str(payload.emoji), capabilities),
        )

    @bot.command(name="new")
    @commands.guild_only()
    @track_command
    async def new_round(ctx: commands.Context, settle: Optional[str] = None) -> None:
        settle_seconds = parse_settle(settle, settings.settle_seconds)
        await controller.handle(StartRound(settle_seconds), _invocation(ctx))

    @bot.command(name="end")
    @commands.guild_only()
    @track_command
    async def end_round(ctx: commands.Context) -> None:
        await controller.handle(EndRound(), _invocation(ctx))

    @bot.command(name="dead")
    @commands.guild_only()
    @track_command
    async def mark_dead(ctx: commands.Context, target: Optional[str] = None) -> None:
        await controller.handle(MarkDead(parse_mention(target)), _invocation(ctx))

    @bot.command(name="stop")
    @commands.guild_only()
    @track_command
    async def stop_bot(ctx: commands.Context) -> None:
        await controller.handle(StopBot(), _invocation(ctx))

    @bot.command(name="iam")
    @commands.guild_only()
    @track_command
    async def set_alias(ctx: commands.Context, *, name: Optional[str] = None) -> None:
        await controller.handle(SetAlias(name.strip() if name else None), _invocation(ctx))

    return bot


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("CREWMUTE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    token = os.environ.get("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    settings = get_settings()
    bot = build_bot(settings)
    bot.run(token, log_handler=None)
    if bot.startup_error is not None:
        raise bot.startup_error


__all__ = ["CrewmuteBot", "build_bot", "default_intents", "main"]
