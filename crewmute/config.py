"""Configuration loading utilities for crewmute."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import ControlCapability, VoiceMode

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or invalid."""


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    value = env.get(key)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer %s for %s", value, key)
        return None


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, "", 0):
        return None
    return int(value)


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    living_channel: int
    dead_channel: int
    announce_channel: Optional[int] = None
    spectator_role: Optional[int] = None
    voice_mode: VoiceMode = VoiceMode.MUTE
    command_prefix: str = "~"
    meeting_emoji: str = "\N{POLICE CARS REVOLVING LIGHT}"
    dead_emoji: str = "\N{SKULL}"
    settle_seconds: int = 5
    meeting_settle_seconds: float = 5.0
    reply_ttl_seconds: float = 5.0
    shutdown_grace_seconds: float = 30.0
    feed_command: Optional[str] = None
    owners: List[int] = field(default_factory=list)

    @property
    def emoji(self) -> Dict[ControlCapability, str]:
        return {
            ControlCapability.TOGGLE_MEETING: self.meeting_emoji,
            ControlCapability.MARK_SELF_DEAD: self.dead_emoji,
        }

    @property
    def emoji_capabilities(self) -> Dict[str, ControlCapability]:
        return {value: key for key, value in self.emoji.items()}

    @staticmethod
    def from_dict(
        data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        env = os.environ if env is None else env
        data = data or {}
        channels = data.get("channels", {}) or {}
        emoji_cfg = data.get("emoji", {}) or {}
        timing = data.get("timing", {}) or {}
        feed_cfg = data.get("feed", {}) or {}

        living = _env_int(env, "CREWMUTE_LIVING_CHANNEL") or _optional_int(channels.get("living"))
        dead = _env_int(env, "CREWMUTE_DEAD_CHANNEL") or _optional_int(channels.get("dead"))
        if living is None or dead is None:
            raise ConfigurationError("Both channels.living and channels.dead must be configured")
        if living == dead:
            raise ConfigurationError("Living and dead channels must differ")

        mode_raw = str(data.get("voice_mode", VoiceMode.MUTE.value)).lower()
        try:
            voice_mode = VoiceMode(mode_raw)
        except ValueError:
            raise ConfigurationError(f"Unknown voice_mode: {mode_raw}") from None

        meeting_emoji = str(emoji_cfg.get("meeting", "\N{POLICE CARS REVOLVING LIGHT}"))
        dead_emoji = str(emoji_cfg.get("dead", "\N{SKULL}"))
        if meeting_emoji == dead_emoji:
            raise ConfigurationError("Meeting and dead emoji must differ")

        return Settings(
            living_channel=living,
            dead_channel=dead,
            announce_channel=_env_int(env, "CREWMUTE_ANNOUNCE_CHANNEL")
            or _optional_int(channels.get("announce")),
            spectator_role=_env_int(env, "CREWMUTE_SPECTATOR_ROLE")
            or _optional_int(data.get("spectator_role")),
            voice_mode=voice_mode,
            command_prefix=str(data.get("command_prefix", "~")),
            meeting_emoji=meeting_emoji,
            dead_emoji=dead_emoji,
            settle_seconds=int(timing.get("settle_seconds", 5)),
            meeting_settle_seconds=float(timing.get("meeting_settle_seconds", 5.0)),
            reply_ttl_seconds=float(timing.get("reply_ttl_seconds", 5.0)),
            shutdown_grace_seconds=float(timing.get("shutdown_grace_seconds", 30.0)),
            feed_command=env.get("CREWMUTE_FEED_COMMAND") or feed_cfg.get("command") or None,
            owners=[int(owner) for owner in data.get("owners", []) or []],
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.environ.get("CREWMUTE_SETTINGS")
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        self._cache = Settings.from_dict(data or {})
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["ConfigurationError", "Settings", "SettingsLoader", "get_settings"]
