from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import discord
import pytest

from notifier_hub.core.config.settings import DiscordSettings
from notifier_hub.core.models import ConnectionStatus
from notifier_hub.services.adapters.discord import DiscordAdapter

from ._fakes import RecordingSink, wait_until

SENT_AT = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _author(name: str = "alice", *, bot: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        display_name=name,
        bot=bot,
        display_avatar=SimpleNamespace(url=f"https://cdn.test/{name}.png"),
    )


def _message(content: str = "hello", **overrides: Any) -> SimpleNamespace:
    fields: dict[str, Any] = {
        "id": 111,
        "content": content,
        "system_content": content,
        "type": discord.MessageType.default,
        "guild": SimpleNamespace(name="Guild"),
        "channel": SimpleNamespace(id=222, name="general"),
        "author": _author(),
        "created_at": SENT_AT,
        "attachments": [],
        "stickers": [],
        "embeds": [],
        "reference": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _adapter(sink: RecordingSink, **settings: Any) -> DiscordAdapter:
    return DiscordAdapter(
        sink,
        DiscordSettings(token="discord-token", **settings),
        reconnect_step=0.0,
        max_attempts=0,
    )


def test_guild_message_becomes_event(sink: RecordingSink) -> None:
    adapter = _adapter(sink)

    event = adapter.build_event(_message())

    assert event is not None
    assert event["platform"] == "discord"
    assert event["platformMessageId"] == "111"
    assert event["author"] == "alice"
    assert event["channelId"] == "222"
    assert event["channelName"] == "general"
    assert event["isDM"] is False
    assert event["isBot"] is False
    assert event["timestamp"] == SENT_AT
    assert event["avatarUrl"] == "https://cdn.test/alice.png"
    assert event["extras"] == {"guildName": "Guild"}
    assert event["replyTo"] is None


def test_direct_messages_bypass_channel_filter(sink: RecordingSink) -> None:
    adapter = _adapter(sink, channels=("999",))

    dm = adapter.build_event(_message("psst", guild=None))
    filtered = adapter.build_event(_message("noise"))

    assert dm is not None
    assert dm["isDM"] is True
    assert dm["channelName"] == "DM with alice"
    assert filtered is None


def test_configured_channel_names_win(sink: RecordingSink) -> None:
    adapter = _adapter(sink, channel_names={"222": "announcements"})

    event = adapter.build_event(_message())

    assert event is not None
    assert event["channelName"] == "announcements"


def test_bot_authors_are_kept_and_flagged(sink: RecordingSink) -> None:
    adapter = _adapter(sink)

    event = adapter.build_event(_message("[Twitch] bob: hi", author=_author("bridge", bot=True)))

    assert event is not None
    assert event["isBot"] is True


def test_attachments_reply_and_embed_fallback(sink: RecordingSink) -> None:
    adapter = _adapter(sink)
    attachment = SimpleNamespace(
        id=5,
        filename="cat.png",
        size=2048,
        url="https://cdn.test/cat.png",
        proxy_url="https://media.test/cat.png",
        content_type="image/png",
        width=640,
        height=480,
    )
    parent = SimpleNamespace(author=_author("bob"), content="original")
    message = _message(
        "",
        type=discord.MessageType.reply,
        attachments=[attachment],
        embeds=[SimpleNamespace(description="embedded text", title=None)],
        reference=SimpleNamespace(resolved=parent),
    )

    event = adapter.build_event(message)

    assert event is not None
    assert event["content"] == "embedded text"
    assert event["replyTo"] == {"author": "bob", "content": "original"}
    assert event["attachments"] == [
        {
            "id": "5",
            "filename": "cat.png",
            "size": 2048,
            "url": "https://cdn.test/cat.png",
            "proxyUrl": "https://media.test/cat.png",
            "contentType": "image/png",
            "width": 640,
            "height": 480,
        },
    ]


def test_member_join_and_system_messages(sink: RecordingSink) -> None:
    adapter = _adapter(sink)

    joined = adapter.build_event(_message("", type=discord.MessageType.new_member))
    pinned = adapter.build_event(
        _message(
            "",
            type=discord.MessageType.pins_add,
            system_content="alice pinned a message to this channel.",
        ),
    )

    assert joined is not None
    assert joined["messageType"] == "user_join"
    assert joined["content"] == "alice joined the server"
    assert pinned is not None
    assert pinned["messageType"] == "system"
    assert pinned["content"].startswith("alice pinned")


def test_empty_messages_are_skipped(sink: RecordingSink) -> None:
    adapter = _adapter(sink)

    assert adapter.build_event(_message("")) is None


def test_deletions_and_edits_respect_channel_filter(sink: RecordingSink) -> None:
    adapter = _adapter(sink, channels=("222",))

    adapter.handle_delete(222, 111)
    adapter.handle_delete(333, 112)
    adapter.handle_edit(222, 111, "fixed typo")
    adapter.handle_edit(333, 112, "ignored")

    assert sink.deletions == [("discord", "111")]
    assert sink.updates == [("discord", "111", "fixed typo")]


class _FailingClient:
    def __init__(self, error: BaseException | None) -> None:
        self.error = error
        self.closed = False

    async def start(self, token: str) -> None:
        assert token == "discord-token"  # noqa: S105
        if self.error is not None:
            raise self.error

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_login_failure_stops_without_retry(sink: RecordingSink) -> None:
    clients: list[_FailingClient] = []

    def _factory(_adapter: DiscordAdapter) -> _FailingClient:
        client = _FailingClient(discord.LoginFailure("Improper token has been passed."))
        clients.append(client)
        return client

    adapter = DiscordAdapter(
        sink,
        DiscordSettings(token="discord-token"),
        client_factory=_factory,
        reconnect_step=0.0,
        max_attempts=3,
    )

    await adapter.connect()
    assert await wait_until(lambda: not adapter.running)

    assert len(clients) == 1
    assert clients[0].closed is True
    assert sink.statuses[-1] == (
        "discord",
        ConnectionStatus.ERROR,
        "Improper token has been passed.",
    )


@pytest.mark.asyncio
async def test_stopped_client_is_reconnected(sink: RecordingSink) -> None:
    clients: list[_FailingClient] = []

    def _factory(_adapter: DiscordAdapter) -> _FailingClient:
        client = _FailingClient(None)
        clients.append(client)
        return client

    adapter = DiscordAdapter(
        sink,
        DiscordSettings(token="discord-token"),
        client_factory=_factory,
        reconnect_step=0.0,
        max_attempts=1,
    )

    await adapter.connect()
    assert await wait_until(lambda: not adapter.running)

    assert len(clients) == 2  # noqa: PLR2004
    assert sink.statuses[1][2] == "Discord client stopped"
    assert sink.statuses[-1][1] is ConnectionStatus.DISCONNECTED
