"""Voice-state reconciliation: plan per-member mutations and apply them.

The four orchestration routines (start-game, start-meeting, end-meeting,
end-game) share one execution primitive, :func:`batch_apply`, which fires
every request concurrently and collects failures without rolling anything
back. Planning is kept in pure functions so it can be tested without a
transport.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence

from .matching import MatchReport, match_occupants
from .models import (
    BatchResult,
    GameRecord,
    Player,
    VoiceMode,
    VoiceOccupant,
    VoiceUpdate,
    round_concluded,
)
from .state import GameStateStore
from .transport import VoiceTransport

logger = logging.getLogger(__name__)

RosterSource = Callable[[], Optional[Sequence[Player]]]

FAILURE_NOTICE = "Errors occurred while updating {failed} of {total} members; check the log."


async def batch_apply(
    transport: VoiceTransport, requests: Sequence[VoiceUpdate]
) -> BatchResult:
    """Issue every request concurrently and wait for all of them.

    Failures are collected next to the request that produced them; successes
    stay applied regardless of what happened to their siblings.
    """

    result = BatchResult()
    if not requests:
        return result
    outcomes = await asyncio.gather(
        *(
            transport.update_voice_state(
                request.guild_id,
                request.user_id,
                mute=request.mute,
                deafen=request.deafen,
                channel_id=request.channel_id,
            )
            for request in requests
        ),
        return_exceptions=True,
    )
    for request, outcome in zip(requests, outcomes):
        if isinstance(outcome, BaseException):
            result.failed.append((request, outcome))
        else:
            result.applied.append(request)
    return result


@dataclass(frozen=True)
class VoiceLayout:
    """Where living and dead players sit and how silence is applied."""

    living_channel: int
    dead_channel: int
    mode: VoiceMode = VoiceMode.MUTE

    def deafen_flag(self, value: bool) -> Optional[bool]:
        return value if self.mode is VoiceMode.MUTE_DEAFEN else None

    def silence(self, occupant: VoiceOccupant) -> VoiceUpdate:
        return VoiceUpdate(
            occupant.guild_id, occupant.user_id, mute=True, deafen=self.deafen_flag(True)
        )

    def release(self, occupant: VoiceOccupant, channel_id: Optional[int] = None) -> VoiceUpdate:
        return VoiceUpdate(
            occupant.guild_id,
            occupant.user_id,
            mute=False,
            deafen=self.deafen_flag(False),
            channel_id=channel_id,
        )


def _is_dead(
    occupant: VoiceOccupant, dead: FrozenSet[int], report: Optional[MatchReport]
) -> bool:
    if occupant.user_id in dead:
        return True
    if report is not None:
        player = report.player_for(occupant.user_id)
        return player is not None and player.dead
    return False


def _relevant(
    occupants: Iterable[VoiceOccupant], report: Optional[MatchReport]
) -> List[VoiceOccupant]:
    """Drop occupants the roster could not account for."""

    if report is None:
        return list(occupants)
    unmatched = {occupant.user_id for occupant in report.unmatched}
    return [occupant for occupant in occupants if occupant.user_id not in unmatched]


def plan_start_game(
    layout: VoiceLayout,
    living: Sequence[VoiceOccupant],
    dead: FrozenSet[int] = frozenset(),
    report: Optional[MatchReport] = None,
) -> List[VoiceUpdate]:
    return [
        layout.silence(occupant)
        for occupant in _relevant(living, report)
        if not _is_dead(occupant, dead, report)
    ]


def plan_start_meeting(
    layout: VoiceLayout,
    living: Sequence[VoiceOccupant],
    in_dead_channel: Sequence[VoiceOccupant],
    dead: FrozenSet[int] = frozenset(),
    report: Optional[MatchReport] = None,
) -> List[VoiceUpdate]:
    requests = [
        layout.release(occupant)
        for occupant in _relevant(living, report)
        if not _is_dead(occupant, dead, report)
    ]
    # Dead players come back to listen but stay silent.
    for occupant in in_dead_channel:
        requests.append(
            VoiceUpdate(
                occupant.guild_id,
                occupant.user_id,
                mute=True,
                deafen=layout.deafen_flag(False),
                channel_id=layout.living_channel,
            )
        )
    return requests


def plan_end_meeting(
    layout: VoiceLayout,
    living: Sequence[VoiceOccupant],
    dead: FrozenSet[int] = frozenset(),
    report: Optional[MatchReport] = None,
) -> List[VoiceUpdate]:
    requests: List[VoiceUpdate] = []
    for occupant in _relevant(living, report):
        if _is_dead(occupant, dead, report):
            requests.append(layout.release(occupant, channel_id=layout.dead_channel))
        else:
            requests.append(layout.silence(occupant))
    return requests


def plan_end_game(
    layout: VoiceLayout,
    living: Sequence[VoiceOccupant],
    in_dead_channel: Sequence[VoiceOccupant],
) -> List[VoiceUpdate]:
    requests = [layout.release(occupant) for occupant in living]
    requests.extend(
        VoiceUpdate(
            occupant.guild_id,
            occupant.user_id,
            deafen=layout.deafen_flag(False),
            channel_id=layout.living_channel,
        )
        for occupant in in_dead_channel
    )
    return requests


class Orchestrator:
    """Runs the orchestration routines against live membership."""

    def __init__(
        self,
        store: GameStateStore,
        transport: VoiceTransport,
        layout: VoiceLayout,
        *,
        spectator_role: Optional[int] = None,
        announce_channel: Optional[int] = None,
        meeting_settle_seconds: float = 5.0,
        telemetry=None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.layout = layout
        self.spectator_role = spectator_role
        self.announce_channel = announce_channel
        self.meeting_settle_seconds = meeting_settle_seconds
        self.telemetry = telemetry
        self._last_unmatched: FrozenSet[int] = frozenset()

    def members_in(self, channel_id: int) -> List[VoiceOccupant]:
        """Occupants of a voice channel, minus bots and spectators."""

        members = []
        for occupant in self.transport.occupants_of(channel_id):
            if occupant.bot:
                continue
            if self.spectator_role is not None and self.spectator_role in occupant.roles:
                continue
            members.append(occupant)
        return members

    def _notify_channel(self, record: Optional[GameRecord]) -> Optional[int]:
        if record is not None and record.control_channel is not None:
            return record.control_channel
        return self.announce_channel

    async def _match(
        self,
        occupants: Sequence[VoiceOccupant],
        roster: Optional[Sequence[Player]],
        record: Optional[GameRecord],
    ) -> Optional[MatchReport]:
        if roster is None:
            return None
        report = match_occupants(occupants, roster, await self.store.aliases())
        await self._report_unmatched(report, record)
        return report

    async def _report_unmatched(
        self, report: MatchReport, record: Optional[GameRecord]
    ) -> None:
        unmatched = report.unmatched
        ids = frozenset(occupant.user_id for occupant in unmatched)
        if ids == self._last_unmatched:
            return
        self._last_unmatched = ids
        if not unmatched:
            return
        names = ", ".join(occupant.known_as for occupant in unmatched)
        logger.info("Could not match %d members to players: %s", len(unmatched), names)
        channel = self._notify_channel(record)
        if channel is None:
            return
        try:
            await self.transport.send_message(
                channel,
                f"Could not match {len(unmatched)} member(s) to in-game names: {names}. "
                "Use the `iam` command to set your in-game name.",
            )
        except Exception:
            logger.exception("Failed to post unmatched member report")

    async def apply(
        self,
        requests: Sequence[VoiceUpdate],
        *,
        purpose: str,
        notify_channel: Optional[int] = None,
    ) -> BatchResult:
        """Run a batch and raise at most one notification for its failures."""

        result = await batch_apply(self.transport, requests)
        logger.info(
            "%s: applied %d of %d voice updates",
            purpose,
            len(result.applied),
            len(result),
        )
        if self.telemetry is not None:
            self.telemetry.track_batch(
                purpose, applied=len(result.applied), failed=len(result.failed)
            )
        if result.ok:
            return result
        for request, error in result.failed:
            logger.error("%s failed for %s: %s", purpose, request.describe(), error)
        if notify_channel is not None:
            try:
                await self.transport.send_message(
                    notify_channel,
                    FAILURE_NOTICE.format(failed=len(result.failed), total=len(result)),
                )
            except Exception:
                logger.exception("Failed to post %s failure notice", purpose)
        return result

    async def start_game(self, roster: Optional[Sequence[Player]] = None) -> BatchResult:
        record = await self.store.read_game()
        dead = record.dead_players if record is not None else frozenset()
        living = self.members_in(self.layout.living_channel)
        report = await self._match(living, roster, record)
        requests = plan_start_game(self.layout, living, dead, report)
        result = await self.apply(
            requests, purpose="start-game", notify_channel=self._notify_channel(record)
        )
        await self.store.set_meeting_in_progress(False)
        return result

    async def start_meeting(
        self, roster: Optional[Sequence[Player]] = None
    ) -> Optional[BatchResult]:
        record = await self.store.read_game()
        if record is None:
            logger.debug("Ignoring meeting start with no round in progress")
            return None
        living = self.members_in(self.layout.living_channel)
        in_dead_channel = self.members_in(self.layout.dead_channel)
        report = await self._match(living, roster, record)
        requests = plan_start_meeting(
            self.layout, living, in_dead_channel, record.dead_players, report
        )
        result = await self.apply(
            requests, purpose="start-meeting", notify_channel=self._notify_channel(record)
        )
        await self.store.set_meeting_in_progress(True)
        return result

    async def end_meeting(self, roster_source: Optional[RosterSource] = None) -> bool:
        """Re-mute after a meeting; returns ``True`` when the round concluded.

        With a roster source the routine first waits for the upstream state to
        settle and ends the round instead if its outcome is decided.
        """

        roster: Optional[Sequence[Player]] = None
        if roster_source is not None:
            if self.meeting_settle_seconds > 0:
                await asyncio.sleep(self.meeting_settle_seconds)
            roster = roster_source()
            if roster and round_concluded(roster):
                logger.info("Round concluded after meeting; ending game")
                await self.end_game()
                return True

        record = await self.store.read_game()
        if record is None:
            logger.debug("Ignoring meeting end with no round in progress")
            return False
        living = self.members_in(self.layout.living_channel)
        report = await self._match(living, roster, record)
        requests = plan_end_meeting(self.layout, living, record.dead_players, report)
        await self.apply(
            requests, purpose="end-meeting", notify_channel=self._notify_channel(record)
        )
        await self.store.set_meeting_in_progress(False)
        return False

    async def end_game(self) -> Optional[BatchResult]:
        record = await self.store.end_game()
        if record is None:
            return None
        if record.control_channel is not None and record.control_message is not None:
            try:
                await self.transport.delete_message(
                    record.control_channel, record.control_message
                )
            except Exception:
                logger.warning(
                    "Failed to delete control message %s", record.control_message,
                    exc_info=True,
                )
        self._last_unmatched = frozenset()
        requests = plan_end_game(
            self.layout,
            self.members_in(self.layout.living_channel),
            self.members_in(self.layout.dead_channel),
        )
        return await self.apply(
            requests, purpose="end-game", notify_channel=self._notify_channel(record)
        )

    async def mark_dead(self, user_id: int) -> bool:
        """Record a death, silencing the player at once if a meeting is running."""

        if not await self.store.mark_dead(user_id):
            return False
        record = await self.store.read_game()
        if record is not None and record.meeting_in_progress:
            try:
                await self.transport.update_voice_state(
                    record.guild_id, user_id, mute=True
                )
            except Exception as exc:
                logger.error("Error occurred when making %s dead: %s", user_id, exc)
        return True


__all__ = [
    "FAILURE_NOTICE",
    "Orchestrator",
    "VoiceLayout",
    "batch_apply",
    "plan_end_game",
    "plan_end_meeting",
    "plan_start_game",
    "plan_start_meeting",
]
