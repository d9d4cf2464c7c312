from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from aiohttp import test_utils, web

from notifier_hub.core.config.http import HttpxClientOptions
from notifier_hub.core.config.settings import TwitchSettings
from notifier_hub.core.exceptions import AdapterAuthError
from notifier_hub.core.models import ConnectionStatus, Message, MessageType
from notifier_hub.services.adapters import twitch_eventsub
from notifier_hub.services.adapters.twitch_eventsub import (
    HelixClient,
    RecentIds,
    StreamAlertService,
    build_stream_alert,
)
from notifier_hub.services.http import RetryOptions

from ._fakes import RecordingSink, wait_until

API = "https://api.test/helix"
ONLINE_EVENT = {
    "id": "9001",
    "broadcaster_user_id": "42",
    "broadcaster_user_login": "streamer",
    "broadcaster_user_name": "Streamer",
    "type": "live",
    "started_at": "2024-05-01T12:00:00Z",
}
STREAM = {
    "id": "9001",
    "user_id": "42",
    "title": "Any% practice",
    "game_name": "Celeste",
    "viewer_count": 12,
    "thumbnail_url": "https://thumb.test/live_{width}x{height}.jpg",
}


def _helix_handler(
    requests: list[httpx.Request],
    *,
    stream_status: int = 200,
) -> Callable[[httpx.Request], httpx.Response]:
    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path.removeprefix("/helix/")
        if path == "users":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "42",
                            "login": "streamer",
                            "profile_image_url": "https://img.test/42.png",
                        },
                    ],
                },
            )
        if path == "streams":
            return httpx.Response(stream_status, json={"data": [STREAM]})
        if path == "eventsub/subscriptions":
            return httpx.Response(202, json={"data": [{"id": "sub-1"}]})
        return httpx.Response(404, json={"message": "not found"})

    return _handler


def _service(
    sink: RecordingSink,
    handler: Callable[[httpx.Request], httpx.Response],
    url: str = "ws://eventsub.test/ws",
    monitors: tuple[str, ...] = ("streamer",),
) -> StreamAlertService:
    settings = TwitchSettings(client_id="cid", access_token="tok", stream_monitors=monitors)
    return StreamAlertService(
        sink,
        settings,
        url=url,
        helix=HelixClient(
            settings.client_id,
            settings.helix_token,
            api_base=API,
            client_options=HttpxClientOptions(transport=httpx.MockTransport(handler)),
            retry_options=RetryOptions(retries=0),
        ),
        reconnect_step=0.0,
        max_attempts=0,
    )


def _frame(message_type: str, payload: dict[str, Any], message_id: str, **extra: str) -> str:
    return json.dumps(
        {
            "metadata": {
                "message_id": message_id,
                "message_type": message_type,
                "message_timestamp": "2024-05-01T12:00:01Z",
                **extra,
            },
            "payload": payload,
        },
    )


def _welcome(session_id: str, message_id: str = "w1", keepalive: float = 10) -> str:
    return _frame(
        "session_welcome",
        {
            "session": {
                "id": session_id,
                "status": "connected",
                "keepalive_timeout_seconds": keepalive,
                "reconnect_url": None,
            },
        },
        message_id,
    )


def _online(message_id: str, event: dict[str, Any] | None = None) -> str:
    return _frame(
        "notification",
        {
            "subscription": {"id": "sub-1", "type": "stream.online"},
            "event": event or ONLINE_EVENT,
        },
        message_id,
        subscription_type="stream.online",
    )


def test_stream_alert_becomes_a_system_message() -> None:
    event = build_stream_alert(ONLINE_EVENT, STREAM, "https://img.test/42.png")
    message = Message.from_event(event)

    assert message.message_type is MessageType.SYSTEM
    assert message.channel_name == "Stream Notifications"
    assert message.platform_message_id == "stream-9001"
    assert message.content == "🔴 Streamer is now LIVE!\n\nAny% practice\nPlaying: Celeste"
    assert message.attachments[0].url == "https://thumb.test/live_640x360.jpg"
    assert message.avatar_url == "https://img.test/42.png"
    assert message.timestamp.year == 2024  # noqa: PLR2004
    assert message.extras["isStreamNotification"] is True


def test_stream_alert_without_details_links_the_channel() -> None:
    event = build_stream_alert(ONLINE_EVENT)

    assert event["content"] == "🔴 Streamer is now LIVE!\n\nhttps://twitch.tv/streamer"
    assert event["attachments"] == []


def test_recent_ids_forget_the_oldest() -> None:
    recent = RecentIds(2)

    assert recent.add("a") is True
    assert recent.add("a") is False
    recent.add("b")
    recent.add("c")

    assert "a" not in recent
    assert "c" in recent


@pytest.mark.asyncio
async def test_each_stream_is_announced_once(sink: RecordingSink) -> None:
    requests: list[httpx.Request] = []
    service = _service(sink, _helix_handler(requests))

    await service.handle_text(_online("n1"))
    await service.handle_text(_online("n1"))
    await service.handle_text(_online("n2"))
    await service.handle_text(_online("n3", {**ONLINE_EVENT, "id": "9002"}))

    assert [event["platformMessageId"] for event in sink.messages] == [
        "stream-9001",
        "stream-9002",
    ]
    assert sink.messages[0]["messageType"] == "system"
    assert sink.messages[0]["avatarUrl"] == "https://img.test/42.png"
    assert sink.statuses == []
    await service.helix.aclose()


@pytest.mark.asyncio
async def test_helix_failure_still_announces_the_stream(sink: RecordingSink) -> None:
    requests: list[httpx.Request] = []
    service = _service(sink, _helix_handler(requests, stream_status=500))

    assert await service.handle_stream_online(ONLINE_EVENT) is True

    assert sink.messages[0]["content"].endswith("https://twitch.tv/streamer")
    await service.helix.aclose()


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped(
    sink: RecordingSink,
    caplog: pytest.LogCaptureFixture,
) -> None:
    service = _service(sink, _helix_handler([]))

    assert await service.handle_text("not json") is None
    assert await service.handle_text("[1]") is None
    assert await service.handle_text('{"payload": {}}') is None

    assert sink.messages == []
    assert "Ignoring EventSub" in caplog.text


@pytest.mark.asyncio
async def test_revocation_forgets_the_subscription(sink: RecordingSink) -> None:
    service = _service(sink, _helix_handler([]))
    service.subscriptions["streamer"] = "sub-1"

    await service.handle_text(
        _frame(
            "revocation",
            {"subscription": {"id": "sub-1", "status": "authorization_revoked"}},
            "r1",
        ),
    )

    assert service.subscriptions == {}


@pytest.mark.asyncio
async def test_session_subscribes_after_welcome_and_publishes_alerts(
    sink: RecordingSink,
) -> None:
    requests: list[httpx.Request] = []

    async def _eventsub(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(_welcome("session-1"))
        await ws.send_str(_frame("session_keepalive", {}, "k1"))
        await ws.send_str(_online("n1"))
        await ws.close()
        return ws

    app = web.Application()
    app.router.add_get("/ws", _eventsub)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        service = _service(sink, _helix_handler(requests), str(server.make_url("/ws")))
        await service.connect()
        assert await wait_until(lambda: bool(sink.messages))
        assert await wait_until(lambda: not service.running)
    finally:
        await service.disconnect()
        await server.close()

    subscribe = next(r for r in requests if r.url.path.endswith("eventsub/subscriptions"))
    assert json.loads(subscribe.content) == {
        "type": "stream.online",
        "version": "1",
        "condition": {"broadcaster_user_id": "42"},
        "transport": {"method": "websocket", "session_id": "session-1"},
    }
    assert subscribe.headers["Client-Id"] == "cid"
    assert subscribe.headers["Authorization"] == "Bearer tok"
    assert [event["channelName"] for event in sink.messages] == ["Stream Notifications"]
    assert service.session_id == "session-1"
    assert service.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnect_moves_the_session_without_resubscribing(
    sink: RecordingSink,
) -> None:
    requests: list[httpx.Request] = []
    first_closed: list[bool] = []

    async def _first(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(_welcome("session-1"))
        await ws.send_str(
            _frame(
                "session_reconnect",
                {
                    "session": {
                        "id": "session-1",
                        "reconnect_url": str(request.url.with_path("/moved")),
                    },
                },
                "m1",
            ),
        )
        async for _ in ws:
            pass
        first_closed.append(True)
        return ws

    async def _moved(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(_welcome("session-2", message_id="w2"))
        await ws.send_str(_online("n1"))
        await ws.close()
        return ws

    app = web.Application()
    app.router.add_get("/ws", _first)
    app.router.add_get("/moved", _moved)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        service = _service(sink, _helix_handler(requests), str(server.make_url("/ws")))
        await service.connect()
        assert await wait_until(lambda: bool(sink.messages))
        assert await wait_until(lambda: bool(first_closed))
        assert service.session_id == "session-2"
    finally:
        await service.disconnect()
        await server.close()

    subscriptions = [r for r in requests if r.url.path.endswith("eventsub/subscriptions")]
    assert len(subscriptions) == 1
    assert len(sink.messages) == 1


@pytest.mark.asyncio
async def test_silent_connection_times_out(
    sink: RecordingSink,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setattr(twitch_eventsub, "TWITCH_KEEPALIVE_GRACE_SECONDS", 0.0)

    async def _silent(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(_welcome("session-1", keepalive=0.1))
        async for _ in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_get("/ws", _silent)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        service = _service(sink, _helix_handler([]), str(server.make_url("/ws")))
        await service.connect()
        assert await wait_until(lambda: not service.running)
    finally:
        await service.disconnect()
        await server.close()

    assert "No EventSub message" in caplog.text


@pytest.mark.asyncio
async def test_rejected_token_stops_the_service(sink: RecordingSink) -> None:
    async def _eventsub(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str(_welcome("session-1"))
        async for _ in ws:
            pass
        return ws

    def _unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Invalid OAuth token"})

    app = web.Application()
    app.router.add_get("/ws", _eventsub)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        service = _service(sink, _unauthorized, str(server.make_url("/ws")))
        await service.connect()
        assert await wait_until(lambda: not service.running)
        assert service.status is ConnectionStatus.ERROR
    finally:
        await service.disconnect()
        await server.close()

    with pytest.raises(AdapterAuthError):
        await service.helix.get_users(logins=["streamer"])
    await service.helix.aclose()
