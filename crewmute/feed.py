"""Observed game-state feed.

The upstream extractor reports the game's state as JSON lines; only the most
recent value matters, so the feed is a single-slot watch channel rather than
a queue. Subscribers that fall behind skip straight to the latest value.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from .models import InRound, Lobby, MeetingPhase, Menu, ObservedState, Player

logger = logging.getLogger(__name__)


class FeedClosed(RuntimeError):
    """Raised to subscribers once the upstream feed has gone away."""


class StateWatch:
    """Latest-value channel for observed game state."""

    def __init__(self, initial: Optional[ObservedState] = None) -> None:
        self._value = initial
        self._version = 0
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def latest(self) -> Optional[ObservedState]:
        return self._value

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, value: Optional[ObservedState]) -> None:
        async with self._cond:
            if self._closed:
                raise FeedClosed("Cannot publish to a closed feed")
            self._value = value
            self._version += 1
            self._cond.notify_all()

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def subscribe(self) -> "StateSubscription":
        return StateSubscription(self)


class StateSubscription:
    """Per-consumer cursor over a :class:`StateWatch`."""

    def __init__(self, watch: StateWatch) -> None:
        self._watch = watch
        self._seen = watch._version

    async def changed(self) -> Optional[ObservedState]:
        """Wait for a value newer than the last one seen and return it."""

        watch = self._watch
        async with watch._cond:
            await watch._cond.wait_for(
                lambda: watch._version != self._seen or watch._closed
            )
            if watch._version == self._seen:
                raise FeedClosed("Observed game-state feed closed")
            self._seen = watch._version
            return watch._value


def _parse_players(raw: Any) -> Tuple[Player, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError(f"Invalid player list: {raw!r}")
    players = []
    for entry in raw:
        if not isinstance(entry, Mapping) or "name" not in entry:
            raise ValueError(f"Invalid player entry: {entry!r}")
        players.append(
            Player(
                name=str(entry["name"]),
                dead=bool(entry.get("dead", False)),
                impostor=bool(entry.get("impostor", False)),
            )
        )
    return tuple(players)


def parse_state(payload: Any) -> Optional[ObservedState]:
    """Turn one decoded JSON object from the extractor into an observed state.

    ``{"state": null}`` (or a null payload) means the game is not running or
    the extractor is disconnected from it.
    """

    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise ValueError(f"Game state must be a JSON object, got {type(payload).__name__}")
    kind = payload.get("state")
    if kind is None:
        return None
    kind = str(kind).lower()
    if kind == "menu":
        return Menu()
    if kind == "lobby":
        return Lobby(players=_parse_players(payload.get("players")))
    if kind in {"in_game", "ingame", "tasks", "discussion"}:
        # A bare "discussion" state is a meeting, not gameplay.
        default_meeting = "discussion" if kind == "discussion" else "none"
        meeting_raw = str(payload.get("meeting") or default_meeting).lower().replace("-", "_")
        try:
            meeting = MeetingPhase(meeting_raw)
        except ValueError:
            raise ValueError(f"Unknown meeting phase: {meeting_raw}") from None
        return InRound(players=_parse_players(payload.get("players")), meeting=meeting)
    raise ValueError(f"Unknown game state: {kind}")


def decode_line(line: Union[bytes, str]) -> Optional[ObservedState]:
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    data: Any = json.loads(line)
    return parse_state(data)


async def pump_process(command: Union[str, Sequence[str]], watch: StateWatch) -> int:
    """Run the external extractor and publish every state it prints.

    Malformed lines are logged and skipped. When the process exits the watch
    is closed, which the lifecycle watcher treats as fatal. Returns the
    process exit code.
    """

    argv = shlex.split(command) if isinstance(command, str) else list(command)
    logger.info("Starting game-state extractor: %s", " ".join(argv))
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
    )
    assert process.stdout is not None
    try:
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            if not line.strip():
                continue
            try:
                state = decode_line(line)
            except ValueError as exc:
                logger.warning("Skipping malformed game-state line %r: %s", line[:200], exc)
                continue
            await watch.publish(state)
        return await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.terminate()
            await process.wait()
        raise
    finally:
        logger.info("Game-state extractor exited with %s", process.returncode)
        await watch.close()


__all__ = [
    "FeedClosed",
    "StateSubscription",
    "StateWatch",
    "decode_line",
    "parse_state",
    "pump_process",
]
