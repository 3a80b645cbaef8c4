"""Core data models for crewmute."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple, Union


class LifecyclePhase(str, Enum):
    PRE_GAME = "pre_game"
    IN_GAME = "in_game"
    IN_MEETING = "in_meeting"
    GAME_OVER = "game_over"


class MeetingPhase(str, Enum):
    NONE = "none"
    DISCUSSION = "discussion"
    NOT_VOTED = "not_voted"
    VOTED = "voted"
    RESULTS = "results"


class ObservedKind(str, Enum):
    """Coarse classification of an observed game state."""

    NO_ROUND = "no_round"
    GAMEPLAY = "gameplay"
    MEETING = "meeting"


class VoiceMode(str, Enum):
    MUTE = "mute"
    MUTE_DEAFEN = "mute_deafen"


class ControlCapability(str, Enum):
    """Actions a reaction on the control message can trigger."""

    TOGGLE_MEETING = "toggle_meeting"
    MARK_SELF_DEAD = "mark_self_dead"


@dataclass(frozen=True)
class Player:
    name: str
    dead: bool = False
    impostor: bool = False


@dataclass(frozen=True)
class VoiceOccupant:
    user_id: int
    guild_id: int
    account_name: str
    display_name: Optional[str] = None
    roles: FrozenSet[int] = frozenset()
    bot: bool = False

    @property
    def known_as(self) -> str:
        return self.display_name or self.account_name


@dataclass(frozen=True)
class GameRecord:
    """Snapshot of the active round."""

    guild_id: int
    control_channel: Optional[int]
    control_message: Optional[int]
    control_user: Optional[int]
    dead_players: FrozenSet[int] = frozenset()
    meeting_in_progress: bool = False


@dataclass(frozen=True)
class Lobby:
    players: Tuple[Player, ...] = ()


@dataclass(frozen=True)
class Menu:
    pass


@dataclass(frozen=True)
class InRound:
    players: Tuple[Player, ...] = ()
    meeting: MeetingPhase = MeetingPhase.NONE


ObservedState = Union[Lobby, Menu, InRound]


def classify(state: Optional[ObservedState]) -> ObservedKind:
    """Collapse an observed state into the signal the lifecycle acts on."""

    if isinstance(state, InRound):
        if state.meeting is MeetingPhase.NONE:
            return ObservedKind.GAMEPLAY
        return ObservedKind.MEETING
    return ObservedKind.NO_ROUND


def round_concluded(players: Sequence[Player]) -> bool:
    """All impostors are out, or they are no longer outnumbered."""

    impostors = sum(1 for player in players if player.impostor and not player.dead)
    crew = sum(1 for player in players if not player.impostor and not player.dead)
    return impostors == 0 or impostors >= crew


@dataclass(frozen=True)
class VoiceUpdate:
    """A single remote voice-state mutation for one member."""

    guild_id: int
    user_id: int
    mute: Optional[bool] = None
    deafen: Optional[bool] = None
    channel_id: Optional[int] = None

    def describe(self) -> str:
        parts: List[str] = []
        if self.channel_id is not None:
            parts.append(f"move to {self.channel_id}")
        if self.mute is not None:
            parts.append("mute" if self.mute else "unmute")
        if self.deafen is not None:
            parts.append("deafen" if self.deafen else "undeafen")
        return f"{self.user_id}: {', '.join(parts) or 'no-op'}"


@dataclass
class BatchResult:
    applied: List[VoiceUpdate] = field(default_factory=list)
    failed: List[Tuple[VoiceUpdate, BaseException]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def __len__(self) -> int:
        return len(self.applied) + len(self.failed)


__all__ = [
    "BatchResult",
    "ControlCapability",
    "GameRecord",
    "InRound",
    "LifecyclePhase",
    "Lobby",
    "MeetingPhase",
    "Menu",
    "ObservedKind",
    "ObservedState",
    "Player",
    "VoiceMode",
    "VoiceOccupant",
    "VoiceUpdate",
    "classify",
    "round_concluded",
]
