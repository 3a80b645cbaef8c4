"""Tests for the control surface and its authorization rules."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import CONTROL, GUILD, LIVING, occupant

from crewmute.commands import EndRound, Invocation, MarkDead, SetAlias, StartRound, StopBot
from crewmute.controller import (
    DEAD_NO_TARGET,
    DEAD_NOT_IN_CONTROL,
    NO_ROUND,
    NOT_IN_CONTROL,
    ROUND_RUNNING,
    Controller,
    control_message_text,
)
from crewmute.lifecycle import LifecycleMachine
from crewmute.models import (
    ControlCapability,
    InRound,
    LifecyclePhase,
    Lobby,
    MeetingPhase,
    Player,
    VoiceUpdate,
)

EMOJI = {ControlCapability.TOGGLE_MEETING: "M", ControlCapability.MARK_SELF_DEAD: "D"}
OWNER, STARTER, BYSTANDER = 1, 5, 6


def _invocation(author_id: int, message_id: int = 77) -> Invocation:
    return Invocation(author_id=author_id, channel_id=CONTROL, guild_id=GUILD, message_id=message_id)


@pytest.fixture
def controller(store, orchestrator, transport) -> Controller:
    return Controller(store, orchestrator, transport, emoji=EMOJI, reply_ttl_seconds=0)


async def _start(controller: Controller) -> int:
    await controller.handle(StartRound(settle_seconds=None), _invocation(STARTER))
    record = await controller.store.read_game()
    return record.control_message


@pytest.mark.asyncio
async def test_start_round_posts_control_message_and_mutes(controller, store, transport):
    transport.seat(LIVING, occupant(20, "Red"))

    control_message = await _start(controller)

    assert transport.deleted == [(CONTROL, 77)]
    assert transport.sent[0] == (CONTROL, control_message_text(STARTER, EMOJI))
    assert transport.reactions == [(CONTROL, control_message, "M"), (CONTROL, control_message, "D")]
    assert transport.updates == [VoiceUpdate(GUILD, 20, mute=True)]
    record = await store.read_game()
    assert record.control_user == STARTER
    assert record.control_channel == CONTROL


@pytest.mark.asyncio
async def test_second_start_is_refused(controller, transport):
    first = await _start(controller)
    await controller.handle(StartRound(settle_seconds=None), _invocation(BYSTANDER))

    assert transport.sent[-1] == (CONTROL, ROUND_RUNNING)
    assert (await controller.store.read_game()).control_message == first


@pytest.mark.asyncio
async def test_end_round_requires_control(controller, store, transport):
    await controller.handle(EndRound(), _invocation(BYSTANDER))
    assert transport.sent == [(CONTROL, NO_ROUND)]

    await _start(controller)
    await controller.handle(EndRound(), _invocation(BYSTANDER))
    assert transport.sent[-1] == (CONTROL, NOT_IN_CONTROL)
    assert await store.is_active()

    await controller.handle(EndRound(), _invocation(OWNER))
    assert not await store.is_active()


@pytest.mark.asyncio
async def test_mark_dead_by_bystander_changes_nothing(controller, store, transport):
    await _start(controller)
    await controller.handle(MarkDead(target=42), _invocation(BYSTANDER))

    assert transport.sent[-1] == (CONTROL, DEAD_NOT_IN_CONTROL)
    assert (await store.read_game()).dead_players == frozenset()


@pytest.mark.asyncio
async def test_mark_dead_without_target_is_corrected(controller, store, transport):
    await _start(controller)
    await controller.handle(MarkDead(target=None), _invocation(STARTER))

    assert transport.sent[-1] == (CONTROL, DEAD_NO_TARGET)
    assert (await store.read_game()).dead_players == frozenset()


@pytest.mark.asyncio
async def test_mark_dead_by_starter_records_and_cleans_up(controller, store, transport):
    await _start(controller)
    await controller.handle(MarkDead(target=42), _invocation(STARTER, message_id=78))

    assert (await store.read_game()).dead_players == frozenset({42})
    channel, text = transport.sent[-1]
    assert text == "deadifying <@42>"
    assert transport.deleted[-1][0] == channel


@pytest.mark.asyncio
async def test_reactions_toggle_meeting_and_mark_self_dead(controller, store):
    control_message = await _start(controller)

    await controller.reaction_added(control_message, BYSTANDER, ControlCapability.TOGGLE_MEETING)
    assert not (await store.read_game()).meeting_in_progress

    await controller.reaction_added(control_message, STARTER, ControlCapability.TOGGLE_MEETING)
    assert (await store.read_game()).meeting_in_progress

    await controller.reaction_removed(control_message, BYSTANDER, ControlCapability.TOGGLE_MEETING)
    assert (await store.read_game()).meeting_in_progress

    await controller.reaction_removed(control_message, STARTER, ControlCapability.TOGGLE_MEETING)
    assert not (await store.read_game()).meeting_in_progress

    await controller.reaction_added(control_message, BYSTANDER, ControlCapability.MARK_SELF_DEAD)
    assert (await store.read_game()).dead_players == frozenset({BYSTANDER})


@pytest.mark.asyncio
async def test_reactions_on_other_messages_are_ignored(controller, store):
    await _start(controller)
    await controller.reaction_added(1, BYSTANDER, ControlCapability.MARK_SELF_DEAD)
    await controller.reaction_added(1, STARTER, None)
    assert (await store.read_game()).dead_players == frozenset()


@pytest.mark.asyncio
async def test_stop_ends_round_and_invokes_shutdown(store, orchestrator, transport):
    on_stop = AsyncMock()
    controller = Controller(store, orchestrator, transport, emoji=EMOJI, on_stop=on_stop)
    await _start(controller)

    await controller.handle(StopBot(), _invocation(BYSTANDER))
    assert controller.accepting
    on_stop.assert_not_called()

    await controller.handle(StopBot(), _invocation(OWNER))
    await asyncio.sleep(0)

    assert not controller.accepting
    assert not await store.is_active()
    on_stop.assert_awaited_once()

    sent = len(transport.sent)
    await controller.handle(StartRound(settle_seconds=None), _invocation(OWNER))
    assert len(transport.sent) == sent


@pytest.mark.asyncio
async def test_set_alias_is_open_to_everyone(controller, store, transport):
    await controller.handle(SetAlias("Red"), _invocation(BYSTANDER))
    assert await store.aliases() == {BYSTANDER: "Red"}
    assert "**Red**" in transport.sent[-1][1]

    await controller.handle(SetAlias(None), _invocation(BYSTANDER))
    assert await store.aliases() == {}


@pytest.mark.asyncio
async def test_wait_idle_stops_accepting(controller):
    assert await controller.wait_idle(timeout=1)
    assert not controller.accepting


@pytest.mark.asyncio
async def test_ending_a_feed_round_holds_the_feed_until_the_lobby(controller, orchestrator, store):
    machine = LifecycleMachine(store, orchestrator, guild_id=GUILD, control_channel=CONTROL)
    roster = (Player("Red"), Player("Blue", impostor=True))

    await machine.observe(InRound(roster))
    await controller.handle(EndRound(), _invocation(OWNER))
    assert not await store.is_active()
    assert await store.phase() is LifecyclePhase.GAME_OVER

    assert await machine.observe(InRound(roster, MeetingPhase.DISCUSSION)) is LifecyclePhase.GAME_OVER
    assert await machine.observe(InRound(roster)) is LifecyclePhase.GAME_OVER
    assert not await store.is_active(), "ended round is not restarted"

    assert await machine.observe(Lobby(roster)) is LifecyclePhase.PRE_GAME
    assert await machine.observe(InRound(roster)) is LifecyclePhase.IN_GAME
    assert await store.is_active()


@pytest.mark.asyncio
async def test_meeting_reactions_move_the_feed_phase(controller, orchestrator, store):
    machine = LifecycleMachine(store, orchestrator, guild_id=GUILD)
    control_message = await _start(controller)
    await machine.observe(InRound((Player("Red"),)))
    assert await store.phase() is LifecyclePhase.IN_GAME

    await controller.reaction_added(control_message, STARTER, ControlCapability.TOGGLE_MEETING)
    assert await store.phase() is LifecyclePhase.IN_MEETING

    await controller.reaction_removed(control_message, STARTER, ControlCapability.TOGGLE_MEETING)
    assert await store.phase() is LifecyclePhase.IN_GAME


@pytest.mark.asyncio
async def test_failed_replies_do_not_break_commands(controller, store, transport):
    transport.refuse_messages = True

    await controller.handle(EndRound(), _invocation(BYSTANDER))
    await controller.handle(SetAlias("Red"), _invocation(BYSTANDER))

    assert transport.sent == []
    assert await store.aliases() == {BYSTANDER: "Red"}
