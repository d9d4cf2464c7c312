"""Human-readable names for platform channel identifiers."""

from collections.abc import Mapping

DEFAULT_DISCORD_CHANNEL_NAMES: dict[str, str] = {}

DEFAULT_TELEGRAM_TOPIC_NAMES: dict[str, str] = {}

GENERAL_TOPIC_NAME = "general"


def get_discord_channel_name(
    channel_id: str,
    names: Mapping[str, str] | None = None,
) -> str:
    """Return the configured name for a Discord channel ID."""
    table = names if names is not None else DEFAULT_DISCORD_CHANNEL_NAMES
    return table.get(str(channel_id)) or f"channel-{channel_id}"


def get_telegram_topic_name(
    topic_id: str | int | None,
    names: Mapping[str, str] | None = None,
) -> str:
    """Return the configured name for a Telegram forum topic.

    Messages without a topic belong to the group's general chat.
    """
    if topic_id is None or str(topic_id) in {"", "null"}:
        return GENERAL_TOPIC_NAME
    table = names if names is not None else DEFAULT_TELEGRAM_TOPIC_NAMES
    return table.get(str(topic_id)) or f"topic-{topic_id}"
