"""Typed settings built from the raw YAML config."""

from __future__ import annotations

import os
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from notifier_hub.core.config.constants import (
    BROADCAST_CHANNEL_NAME,
    BROADCAST_SOCKET_DIR,
    CONFIRM_DELAY_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    LEADER_KEY,
    MAX_MESSAGES,
    MAX_START_JITTER_SECONDS,
    RELAY_HISTORY_SIZE,
    RELAY_PREFIX_PATTERNS,
    RELAY_WINDOW_SECONDS,
    STALE_MULTIPLIER,
    TIMEOUT_MULTIPLIER,
)
from notifier_hub.core.config.manager import ensure_list


def generate_session_id() -> str:
    """Return an opaque, practically unique session identifier."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _positive_float(raw_value: object, default: float) -> float:
    """Parse a positive float with safe fallback."""
    if isinstance(raw_value, bool) or raw_value is None:
        return default
    try:
        value = float(raw_value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return value


def _non_negative_float(raw_value: object, default: float) -> float:
    if isinstance(raw_value, bool) or raw_value is None:
        return default
    try:
        value = float(raw_value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(value, 0.0)


def _positive_int(raw_value: object, default: int) -> int:
    if isinstance(raw_value, bool) or raw_value is None:
        return default
    try:
        value = int(raw_value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return value


def _section(config: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = config.get(key)
    return value if isinstance(value, Mapping) else {}


def _string_map(raw_value: object) -> dict[str, str]:
    if not isinstance(raw_value, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw_value.items()}


@dataclass(frozen=True, slots=True)
class ElectionSettings:
    """Heartbeat/expiry protocol parameters."""

    key: str = LEADER_KEY
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    timeout_multiplier: float = TIMEOUT_MULTIPLIER
    stale_multiplier: float = STALE_MULTIPLIER
    max_start_jitter: float = MAX_START_JITTER_SECONDS
    confirm_delay: float = CONFIRM_DELAY_SECONDS

    @property
    def timeout(self) -> float:
        """Seconds after the last heartbeat before a leader counts as dead."""
        return self.heartbeat_interval * self.timeout_multiplier

    @property
    def stale_after(self) -> float:
        """Seconds after which a record is cleared without ceremony."""
        return self.timeout * self.stale_multiplier


@dataclass(frozen=True, slots=True)
class BroadcastSettings:
    """Local broadcast channel location."""

    name: str = BROADCAST_CHANNEL_NAME
    socket_dir: str = BROADCAST_SOCKET_DIR


@dataclass(frozen=True, slots=True)
class DedupSettings:
    """Relay-echo suppression tuning."""

    window_seconds: float = RELAY_WINDOW_SECONDS
    history_size: int = RELAY_HISTORY_SIZE
    prefix_patterns: tuple[str, ...] = RELAY_PREFIX_PATTERNS


@dataclass(frozen=True, slots=True)
class DiscordSettings:
    token: str = ""
    channels: tuple[str, ...] = ()
    channel_names: dict[str, str] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.token)


@dataclass(frozen=True, slots=True)
class TelegramSettings:
    bot_token: str = ""
    groups: tuple[str, ...] = ()
    exclude_groups: tuple[str, ...] = ()
    topic_names: dict[str, str] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)


@dataclass(frozen=True, slots=True)
class TwitchSettings:
    username: str = ""
    oauth: str = ""
    channels: tuple[str, ...] = ()
    client_id: str = ""
    access_token: str = ""
    stream_monitors: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.username and self.oauth and self.channels)

    @property
    def helix_token(self) -> str:
        """Bearer token for Helix calls; the chat token works when none is set."""
        return self.access_token or self.oauth.removeprefix("oauth:")

    @property
    def stream_alerts_enabled(self) -> bool:
        return bool(self.client_id and self.helix_token and self.stream_monitors)


@dataclass(frozen=True, slots=True)
class RelaySettings:
    url: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True, slots=True)
class HubSettings:
    """Everything one hub session needs to run."""

    session_id: str = field(default_factory=generate_session_id)
    storage_path: str = "notifier-hub.db"
    message_capacity: int = MAX_MESSAGES
    log_level: str = "INFO"
    election: ElectionSettings = field(default_factory=ElectionSettings)
    broadcast: BroadcastSettings = field(default_factory=BroadcastSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)
    discord: DiscordSettings = field(default_factory=DiscordSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    twitch: TwitchSettings = field(default_factory=TwitchSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)


def _env(name: str, env: Mapping[str, str]) -> str:
    return env.get(name, "").strip()


def load_settings(
    config: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
) -> HubSettings:
    """Build typed settings from a raw config mapping.

    Credentials missing from the config file are taken from the environment
    (``DISCORD_TOKEN``, ``TELEGRAM_TOKEN``, ``TWITCH_USERNAME``, ...).
    Invalid numeric values fall back to their defaults.
    """
    environ = os.environ if env is None else env

    election_raw = _section(config, "election")
    defaults = ElectionSettings()
    election = ElectionSettings(
        key=str(election_raw.get("key") or defaults.key),
        heartbeat_interval=_positive_float(
            election_raw.get("heartbeat_interval"),
            defaults.heartbeat_interval,
        ),
        timeout_multiplier=_positive_float(
            election_raw.get("timeout_multiplier"),
            defaults.timeout_multiplier,
        ),
        stale_multiplier=_positive_float(
            election_raw.get("stale_multiplier"),
            defaults.stale_multiplier,
        ),
        max_start_jitter=_non_negative_float(
            election_raw.get("max_start_jitter"),
            defaults.max_start_jitter,
        ),
        confirm_delay=_non_negative_float(
            election_raw.get("confirm_delay"),
            defaults.confirm_delay,
        ),
    )

    broadcast_raw = _section(config, "broadcast")
    broadcast = BroadcastSettings(
        name=str(broadcast_raw.get("name") or BROADCAST_CHANNEL_NAME),
        socket_dir=str(broadcast_raw.get("socket_dir") or BROADCAST_SOCKET_DIR),
    )

    dedup_raw = _section(config, "dedup")
    patterns = dedup_raw.get("prefix_patterns")
    dedup = DedupSettings(
        window_seconds=_positive_float(
            dedup_raw.get("window_seconds"),
            RELAY_WINDOW_SECONDS,
        ),
        history_size=_positive_int(dedup_raw.get("history_size"), RELAY_HISTORY_SIZE),
        prefix_patterns=(
            tuple(str(pattern) for pattern in patterns)
            if isinstance(patterns, list)
            else RELAY_PREFIX_PATTERNS
        ),
    )

    discord_raw = _section(config, "discord")
    discord = DiscordSettings(
        token=str(discord_raw.get("token") or _env("DISCORD_TOKEN", environ)),
        channels=tuple(
            ensure_list(
                discord_raw.get("channels") or _env("DISCORD_CHANNELS", environ),
            ),
        ),
        channel_names=_string_map(discord_raw.get("channel_names")),
    )

    telegram_raw = _section(config, "telegram")
    telegram = TelegramSettings(
        bot_token=str(telegram_raw.get("bot_token") or _env("TELEGRAM_TOKEN", environ)),
        groups=tuple(
            ensure_list(telegram_raw.get("groups") or _env("TELEGRAM_GROUPS", environ)),
        ),
        exclude_groups=tuple(
            ensure_list(
                telegram_raw.get("exclude_groups")
                or _env("TELEGRAM_EXCLUDE_GROUPS", environ),
            ),
        ),
        topic_names=_string_map(telegram_raw.get("topic_names")),
    )

    twitch_raw = _section(config, "twitch")
    twitch = TwitchSettings(
        username=str(twitch_raw.get("username") or _env("TWITCH_USERNAME", environ)),
        oauth=str(twitch_raw.get("oauth") or _env("TWITCH_OAUTH", environ)),
        channels=tuple(
            ensure_list(twitch_raw.get("channels") or _env("TWITCH_CHANNELS", environ)),
        ),
        client_id=str(twitch_raw.get("client_id") or _env("TWITCH_CLIENT_ID", environ)),
        access_token=str(
            twitch_raw.get("access_token") or _env("TWITCH_ACCESS_TOKEN", environ),
        ),
        stream_monitors=tuple(
            login.lower()
            for login in ensure_list(
                twitch_raw.get("stream_monitors")
                or _env("TWITCH_STREAM_MONITORS", environ),
            )
        ),
    )

    relay_raw = _section(config, "relay")
    relay = RelaySettings(url=str(relay_raw.get("url") or _env("RELAY_URL", environ)))

    session_id = config.get("session_id")
    return HubSettings(
        session_id=str(session_id) if session_id else generate_session_id(),
        storage_path=str(config.get("storage_path") or "notifier-hub.db"),
        message_capacity=_positive_int(config.get("message_capacity"), MAX_MESSAGES),
        log_level=str(config.get("log_level") or "INFO").upper(),
        election=election,
        broadcast=broadcast,
        dedup=dedup,
        discord=discord,
        telegram=telegram,
        twitch=twitch,
        relay=relay,
    )
