from __future__ import annotations

import asyncio
import socket
import sys
from typing import Any

import pytest

from notifier_hub.coordination.broadcast import (
    BroadcastChannel,
    LocalBroadcastHub,
    UnixDatagramTransport,
    open_broadcast_channel,
)
from notifier_hub.core.config.settings import BroadcastSettings

from ._fakes import wait_until

unix_only = pytest.mark.skipif(
    sys.platform == "win32" or not hasattr(socket, "AF_UNIX"),
    reason="needs Unix datagram sockets",
)


def _pair(hub: LocalBroadcastHub) -> tuple[BroadcastChannel, BroadcastChannel]:
    return BroadcastChannel(hub.open("notifier-hub")), BroadcastChannel(
        hub.open("notifier-hub"),
    )


@pytest.mark.asyncio
async def test_payload_reaches_other_sessions(broadcast_hub: LocalBroadcastHub) -> None:
    sender, receiver = _pair(broadcast_hub)
    received: list[Any] = []
    receiver.on("new-message", received.append)

    sender.send("new-message", {"id": "discord-1", "content": "hi"})
    await asyncio.sleep(0.01)

    assert received == [{"id": "discord-1", "content": "hi"}]


@pytest.mark.asyncio
async def test_sender_does_not_hear_itself(broadcast_hub: LocalBroadcastHub) -> None:
    sender, _receiver = _pair(broadcast_hub)
    echoed: list[Any] = []
    sender.on("new-message", echoed.append)

    sender.send("new-message", {"id": "x"})
    await asyncio.sleep(0.01)

    assert echoed == []


@pytest.mark.asyncio
async def test_delivery_is_scheduled_not_inline(broadcast_hub: LocalBroadcastHub) -> None:
    sender, receiver = _pair(broadcast_hub)
    received: list[Any] = []
    receiver.on("t", received.append)

    sender.send("t", 1)
    assert received == []
    await asyncio.sleep(0.01)
    assert received == [1]


@pytest.mark.asyncio
async def test_topics_are_dispatched_separately(broadcast_hub: LocalBroadcastHub) -> None:
    sender, receiver = _pair(broadcast_hub)
    messages: list[Any] = []
    deletions: list[Any] = []
    receiver.on("new-message", messages.append)
    receiver.on("message-deleted", deletions.append)

    sender.send("message-deleted", {"platform": "telegram", "platformMessageId": "1"})
    sender.send("unknown-topic", {"ignored": True})
    await asyncio.sleep(0.01)

    assert messages == []
    assert deletions == [{"platform": "telegram", "platformMessageId": "1"}]


@pytest.mark.asyncio
async def test_registering_a_topic_again_replaces_the_handler(
    broadcast_hub: LocalBroadcastHub,
) -> None:
    sender, receiver = _pair(broadcast_hub)
    first: list[Any] = []
    second: list[Any] = []
    receiver.on("t", first.append)
    receiver.on("t", second.append)

    sender.send("t", "payload")
    await asyncio.sleep(0.01)

    assert first == []
    assert second == ["payload"]


@pytest.mark.asyncio
async def test_suspended_session_misses_messages(broadcast_hub: LocalBroadcastHub) -> None:
    sender_transport = broadcast_hub.open("notifier-hub")
    receiver_transport = broadcast_hub.open("notifier-hub")
    sender = BroadcastChannel(sender_transport)
    receiver = BroadcastChannel(receiver_transport)
    received: list[Any] = []
    receiver.on("t", received.append)

    receiver_transport.suspended = True
    sender.send("t", "lost")
    await asyncio.sleep(0.01)
    receiver_transport.suspended = False
    sender.send("t", "kept")
    await asyncio.sleep(0.01)

    assert received == ["kept"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_the_channel(
    broadcast_hub: LocalBroadcastHub,
) -> None:
    sender, receiver = _pair(broadcast_hub)
    received: list[Any] = []

    def _explode(_payload: Any) -> None:
        msg = "bad payload"
        raise ValueError(msg)

    receiver.on("bad", _explode)
    receiver.on("good", received.append)

    sender.send("bad", 1)
    sender.send("good", 2)
    await asyncio.sleep(0.01)

    assert received == [2]


def test_malformed_datagrams_are_ignored() -> None:
    channel = BroadcastChannel()
    received: list[Any] = []
    channel.on("t", received.append)

    channel._receive(b"\xff\xfe")  # noqa: SLF001
    channel._receive(b"[1, 2]")  # noqa: SLF001
    channel._receive(b'{"topic": 5}')  # noqa: SLF001
    channel._receive(b'{"topic": "t", "payload": "ok"}')  # noqa: SLF001

    assert received == ["ok"]


def test_channel_without_transport_is_a_no_op() -> None:
    channel = BroadcastChannel()

    channel.send("new-message", {"id": "x"})
    channel.close()

    assert channel.available is False


@pytest.mark.asyncio
async def test_closed_session_stops_receiving(broadcast_hub: LocalBroadcastHub) -> None:
    sender, receiver = _pair(broadcast_hub)
    received: list[Any] = []
    receiver.on("t", received.append)

    receiver.close()
    sender.send("t", 1)
    await asyncio.sleep(0.01)

    assert received == []


@unix_only
@pytest.mark.asyncio
async def test_unix_transport_delivers_between_sessions(tmp_path) -> None:
    settings = BroadcastSettings(name="hub", socket_dir=str(tmp_path))
    sender = await open_broadcast_channel(settings, "a")
    receiver = await open_broadcast_channel(settings, "b")
    received: list[Any] = []
    echoed: list[Any] = []
    receiver.on("new-message", received.append)
    sender.on("new-message", echoed.append)

    try:
        assert sender.available
        sender.send("new-message", {"content": "héllo"})
        assert await wait_until(lambda: received == [{"content": "héllo"}])
        assert echoed == []
    finally:
        sender.close()
        receiver.close()

    assert not (tmp_path / "hub" / "a.sock").exists()


@unix_only
@pytest.mark.asyncio
async def test_unix_transport_removes_sockets_of_dead_sessions(tmp_path) -> None:
    channel_dir = tmp_path / "hub"
    channel_dir.mkdir()
    dead_path = channel_dir / "dead.sock"
    dead = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    dead.bind(str(dead_path))
    dead.close()
    transport = await UnixDatagramTransport.open("hub", tmp_path, "live")
    assert transport is not None

    try:
        transport.post(b'{"topic": "t", "payload": 1}')
    finally:
        transport.close()

    assert not dead_path.exists()
