"""Configuration loading and constants for notifier-hub.

This package exposes the split configuration modules as a single interface.
"""

from notifier_hub.core.config.channels import (
    get_discord_channel_name,
    get_telegram_topic_name,
)
from notifier_hub.core.config.http import (
    DEFAULT_USER_AGENT,
    HttpxClientOptions,
    get_or_create_httpx_client,
)
from notifier_hub.core.config.manager import (
    CONFIG_CACHE_TTL,
    ConfigFileEmptyError,
    ConfigFileNotFoundError,
    clear_config_cache,
    ensure_list,
    get_config,
)
from notifier_hub.core.config.settings import (
    BroadcastSettings,
    DedupSettings,
    DiscordSettings,
    ElectionSettings,
    HubSettings,
    RelaySettings,
    TelegramSettings,
    TwitchSettings,
    generate_session_id,
    load_settings,
)

__all__ = [
    "CONFIG_CACHE_TTL",
    "DEFAULT_USER_AGENT",
    "BroadcastSettings",
    "ConfigFileEmptyError",
    "ConfigFileNotFoundError",
    "DedupSettings",
    "DiscordSettings",
    "ElectionSettings",
    "HttpxClientOptions",
    "HubSettings",
    "RelaySettings",
    "TelegramSettings",
    "TwitchSettings",
    "clear_config_cache",
    "ensure_list",
    "generate_session_id",
    "get_config",
    "get_discord_channel_name",
    "get_or_create_httpx_client",
    "get_telegram_topic_name",
    "load_settings",
]
