"""Tests for command argument parsing."""
from __future__ import annotations

from crewmute.commands import (
    DEFAULT_SETTLE_SECONDS,
    capability_for,
    parse_mention,
    parse_settle,
)
from crewmute.models import ControlCapability


def test_parse_settle():
    assert parse_settle(None) == DEFAULT_SETTLE_SECONDS
    assert parse_settle("12") == 12
    assert parse_settle("0") is None
    assert parse_settle("-3") == DEFAULT_SETTLE_SECONDS
    assert parse_settle("soon") == DEFAULT_SETTLE_SECONDS


def test_parse_mention_accepts_both_mention_forms():
    assert parse_mention("<@123456789012345678>") == 123456789012345678
    assert parse_mention("<@!123456789012345678>") == 123456789012345678
    assert parse_mention(" 123456789012345678 ") == 123456789012345678


def test_parse_mention_rejects_everything_else():
    assert parse_mention(None) is None
    assert parse_mention("") is None
    assert parse_mention("@someone") is None
    assert parse_mention("<#123456789012345678>") is None
    assert parse_mention("12345") is None


def test_capability_for_unknown_emoji_is_none():
    emoji_map = {"A": ControlCapability.TOGGLE_MEETING, "B": ControlCapability.MARK_SELF_DEAD}
    assert capability_for("A", emoji_map) is ControlCapability.TOGGLE_MEETING
    assert capability_for("B", emoji_map) is ControlCapability.MARK_SELF_DEAD
    assert capability_for("C", emoji_map) is None


def test_parse_settle_uses_configured_default():
    assert parse_settle(None, default=8) == 8
    assert parse_settle("later", default=8) == 8
    assert parse_settle("-1", default=8) == 8
    assert parse_settle("3", default=8) == 3
    assert parse_settle(None, default=0) is None
