"""Platform adapters feeding events into the hub."""

from notifier_hub.services.adapters.base import (
    EventSink,
    PlatformAdapter,
    ReconnectingService,
)
from notifier_hub.services.adapters.discord import DiscordAdapter
from notifier_hub.services.adapters.telegram import TelegramAdapter
from notifier_hub.services.adapters.twitch import TwitchAdapter
from notifier_hub.services.adapters.twitch_eventsub import StreamAlertService

__all__ = [
    "DiscordAdapter",
    "EventSink",
    "PlatformAdapter",
    "ReconnectingService",
    "StreamAlertService",
    "TelegramAdapter",
    "TwitchAdapter",
]
