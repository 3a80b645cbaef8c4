"""Resolve voice-channel occupants to in-game players."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .models import Player, VoiceOccupant


@dataclass
class MatchReport:
    pairs: List[Tuple[VoiceOccupant, Optional[Player]]] = field(default_factory=list)

    @property
    def matched(self) -> List[Tuple[VoiceOccupant, Player]]:
        return [(occupant, player) for occupant, player in self.pairs if player is not None]

    @property
    def unmatched(self) -> List[VoiceOccupant]:
        return [occupant for occupant, player in self.pairs if player is None]

    def player_for(self, user_id: int) -> Optional[Player]:
        for occupant, player in self.pairs:
            if occupant.user_id == user_id:
                return player
        return None


def lookup_key(occupant: VoiceOccupant, aliases: Mapping[int, str]) -> str:
    """Alias override, else guild display name, else account name."""

    return aliases.get(occupant.user_id) or occupant.known_as


def match_occupants(
    occupants: Sequence[VoiceOccupant],
    players: Sequence[Player],
    aliases: Optional[Mapping[int, str]] = None,
) -> MatchReport:
    """Pair each occupant with the player whose name equals its lookup key.

    Matching is exact and case-sensitive. When the roster holds duplicate
    names the earliest entry wins, so results are stable for a given roster
    order.
    """

    aliases = aliases or {}
    by_name: Dict[str, Player] = {}
    for player in players:
        by_name.setdefault(player.name, player)

    report = MatchReport()
    for occupant in occupants:
        report.pairs.append((occupant, by_name.get(lookup_key(occupant, aliases))))
    return report


__all__ = ["MatchReport", "lookup_key", "match_occupants"]
