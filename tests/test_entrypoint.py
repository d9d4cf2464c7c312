from __future__ import annotations

import asyncio
import io
import logging
from datetime import UTC, datetime

import pytest

from notifier_hub import entrypoint
from notifier_hub.coordination.broadcast import BroadcastChannel
from notifier_hub.coordination.storage import MemoryStorage
from notifier_hub.core.models import Attachment, Message, Platform, ReplyContext
from notifier_hub.services.hub import NotifierHub, build_hub
from notifier_hub.stores.messages import MessageStore

CREDENTIAL_VARIABLES = (
    "DISCORD_TOKEN",
    "TELEGRAM_TOKEN",
    "TWITCH_USERNAME",
    "TWITCH_OAUTH",
    "TWITCH_CHANNELS",
    "TWITCH_CLIENT_ID",
    "TWITCH_STREAM_MONITORS",
    "RELAY_URL",
)


def _message(message_id: str, content: str = "hello") -> Message:
    return Message(
        id=message_id,
        platform=Platform.TWITCH,
        author="viewer",
        content=content,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        channel_id="77",
        channel_name="#streamer",
    )


def test_format_message_mentions_reply_and_attachments() -> None:
    message = _message("twitch-1")
    message.reply_to = ReplyContext(author="streamer", content="hi")
    message.attachments = [Attachment(id="a", filename="clip.mp4", url="https://x.test/a")]

    line = entrypoint.format_message(message)

    assert "[twitch] #streamer | viewer: hello" in line
    assert line.endswith("(replying to streamer) [+1 attachment(s)]")


def test_console_printer_prints_each_message_once() -> None:
    stream = io.StringIO()
    store = MessageStore(capacity=2)
    store.subscribe(entrypoint.ConsolePrinter(stream=stream))

    store.append(_message("twitch-1", "one"))
    store.mark_read("twitch-1")
    store.append(_message("twitch-2", "two"))
    store.append(_message("twitch-3", "three"))

    lines = stream.getvalue().splitlines()
    assert [line.rsplit(": ", 1)[-1] for line in lines] == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_main_runs_until_stopped_and_releases_the_hub(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path,
) -> None:
    built: list[NotifierHub] = []

    async def _build(settings) -> NotifierHub:
        hub = await build_hub(settings, storage=MemoryStorage(), channel=BroadcastChannel())
        built.append(hub)
        return hub

    for name in CREDENTIAL_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    root_level = logging.getLogger().level
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(entrypoint, "build_hub", _build)
    monkeypatch.setattr(entrypoint, "_install_signal_handlers", lambda event: event.set())
    try:
        await asyncio.wait_for(entrypoint.main("missing.yaml"), timeout=5)
    finally:
        logging.getLogger().setLevel(root_level)

    assert len(built) == 1
    assert entrypoint._STATE.hub is None  # noqa: SLF001
    assert built[0].election.is_leader is False


@pytest.mark.asyncio
async def test_shutdown_without_hub_is_a_no_op() -> None:
    await entrypoint.shutdown()
    await entrypoint.shutdown()

    assert entrypoint._STATE.hub is None  # noqa: SLF001
