"""Tests for occupant-to-player matching."""
from __future__ import annotations

from conftest import occupant

from crewmute.matching import lookup_key, match_occupants
from crewmute.models import Player


def test_display_name_exact_match():
    red = occupant(1, "acct_red", nick="Red")
    report = match_occupants([red], [Player("Red"), Player("Blue")])
    assert report.matched == [(red, Player("Red"))]
    assert report.unmatched == []


def test_account_name_used_without_nickname():
    blue = occupant(2, "Blue")
    report = match_occupants([blue], [Player("Blue")])
    assert report.player_for(2) == Player("Blue")


def test_matching_is_case_sensitive_and_reports_unmatched():
    lower = occupant(3, "red")
    report = match_occupants([lower], [Player("Red")])
    assert report.matched == []
    assert report.unmatched == [lower]


def test_alias_override_wins_over_display_name():
    green = occupant(4, "acct", nick="Greenie")
    assert lookup_key(green, {4: "Green"}) == "Green"
    report = match_occupants([green], [Player("Greenie"), Player("Green", dead=True)], {4: "Green"})
    assert report.player_for(4) == Player("Green", dead=True)


def test_duplicate_names_resolve_to_first_roster_entry():
    pink = occupant(5, "Pink")
    roster = [Player("Pink", impostor=True), Player("Pink", dead=True)]
    report = match_occupants([pink], roster)
    assert report.player_for(5) is roster[0]


def test_pairs_preserve_occupant_order():
    occupants = [occupant(6, "A"), occupant(7, "Z"), occupant(8, "B")]
    report = match_occupants(occupants, [Player("B"), Player("A")])
    assert [o.user_id for o, _ in report.pairs] == [6, 7, 8]
    assert [o.user_id for o in report.unmatched] == [7]
