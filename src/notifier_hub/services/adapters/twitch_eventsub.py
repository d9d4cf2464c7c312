"""Twitch stream-online alerts over an EventSub websocket.

Twitch pushes `stream.online` notifications for the monitored channels to a
websocket session. Subscriptions are created through the Helix API once the
session's welcome message arrives, and each alert becomes a system message in
the "Stream Notifications" channel of the feed.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar

import aiohttp
import httpx

from notifier_hub.core.config.constants import (
    STREAM_ALERT_MEMORY,
    STREAM_NOTIFICATIONS_CHANNEL_ID,
    STREAM_NOTIFICATIONS_CHANNEL_NAME,
    TWITCH_EVENTSUB_URL,
    TWITCH_HELIX_BASE,
    TWITCH_KEEPALIVE_GRACE_SECONDS,
    TWITCH_KEEPALIVE_SECONDS,
)
from notifier_hub.core.config.http import (
    HttpxClientOptions,
    get_or_create_httpx_client,
)
from notifier_hub.core.exceptions import AdapterAuthError, AdapterConnectionError
from notifier_hub.core.models import ConnectionStatus, MessageType, Platform
from notifier_hub.services.adapters.base import EventSink, ReconnectingService
from notifier_hub.services.http import RetryOptions, request_with_retries

if TYPE_CHECKING:
    from notifier_hub.core.config.settings import TwitchSettings

logger = logging.getLogger(__name__)

SERVICE_NAME = "twitch-eventsub"
HTTP_UNAUTHORIZED = 401
HTTP_CONFLICT = 409
HTTP_BAD_REQUEST = 400
THUMBNAIL_WIDTH = 640
THUMBNAIL_HEIGHT = 360
_CLOSED_TYPES = frozenset(
    {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED},
)


class RecentIds:
    """Remembers the last `capacity` ids it was given."""

    def __init__(self, capacity: int) -> None:
        self._order: deque[str] = deque()
        self._members: set[str] = set()
        self.capacity = capacity

    def __contains__(self, key: object) -> bool:
        return key in self._members

    def add(self, key: str) -> bool:
        """Remember `key`; return False if it was already known."""
        if key in self._members:
            return False
        self._order.append(key)
        self._members.add(key)
        while len(self._order) > self.capacity:
            self._members.discard(self._order.popleft())
        return True


class HelixClient:
    """The few Helix API calls stream alerts need."""

    def __init__(
        self,
        client_id: str,
        token: str,
        *,
        api_base: str = TWITCH_HELIX_BASE,
        client_options: HttpxClientOptions | None = None,
        retry_options: RetryOptions | None = None,
    ) -> None:
        """Store credentials; the HTTP client is created on first use."""
        self.client_id = client_id
        self.token = token
        self.api_base = api_base.rstrip("/")
        self._client_options = client_options
        self._retry_options = retry_options
        self._client_holder: list[httpx.AsyncClient | None] = []

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        client = get_or_create_httpx_client(
            self._client_holder,
            options=self._client_options,
        )
        headers = {
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {self.token}",
        }
        try:
            response = await request_with_retries(
                lambda: client.request(
                    method,
                    f"{self.api_base}/{path}",
                    params=params,
                    json=body,
                    headers=headers,
                ),
                options=self._retry_options,
                log_context=f"helix {path}",
            )
        except httpx.HTTPError as exc:
            msg = f"Helix {path} failed: {type(exc).__name__}"
            raise AdapterConnectionError(msg) from exc
        if response.status_code == HTTP_UNAUTHORIZED:
            raise AdapterAuthError(
                SERVICE_NAME,
                "client id or access token rejected (HTTP 401)",
            )
        return response

    @staticmethod
    def _data(response: httpx.Response, path: str) -> list[dict[str, Any]]:
        if response.status_code >= HTTP_BAD_REQUEST:
            msg = f"Helix {path} returned HTTP {response.status_code}: {response.text}"
            raise AdapterConnectionError(msg)
        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"Helix {path} returned invalid JSON"
            raise AdapterConnectionError(msg) from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            msg = f"Helix {path} returned no data list"
            raise AdapterConnectionError(msg)
        return [item for item in data if isinstance(item, dict)]

    async def get_users(
        self,
        *,
        logins: list[str] | tuple[str, ...] = (),
        ids: list[str] | tuple[str, ...] = (),
    ) -> list[dict[str, Any]]:
        params = {"login": list(logins), "id": list(ids)}
        response = await self._send(
            "GET",
            "users",
            params={key: value for key, value in params.items() if value},
        )
        return self._data(response, "users")

    async def get_stream(self, user_id: str) -> dict[str, Any] | None:
        """Return the live stream of `user_id`, or None when offline."""
        response = await self._send("GET", "streams", params={"user_id": user_id})
        streams = self._data(response, "streams")
        return streams[0] if streams else None

    async def subscribe_stream_online(
        self,
        broadcaster_id: str,
        session_id: str,
    ) -> str | None:
        """Create a websocket `stream.online` subscription.

        Returns the subscription id, or None if Twitch already has one.
        """
        response = await self._send(
            "POST",
            "eventsub/subscriptions",
            body={
                "type": "stream.online",
                "version": "1",
                "condition": {"broadcaster_user_id": broadcaster_id},
                "transport": {"method": "websocket", "session_id": session_id},
            },
        )
        if response.status_code == HTTP_CONFLICT:
            return None
        data = self._data(response, "eventsub/subscriptions")
        return str(data[0].get("id") or "") if data else ""

    async def aclose(self) -> None:
        if self._client_holder and self._client_holder[0] is not None:
            client = self._client_holder[0]
            self._client_holder[0] = None
            await client.aclose()


def thumbnail_url(template: str) -> str:
    return template.replace("{width}", str(THUMBNAIL_WIDTH)).replace(
        "{height}",
        str(THUMBNAIL_HEIGHT),
    )


def build_stream_alert(
    event: Mapping[str, Any],
    stream: Mapping[str, Any] | None = None,
    avatar_url: str | None = None,
) -> dict[str, Any]:
    """Map a `stream.online` event, plus stream details if known, to an event."""
    login = str(event.get("broadcaster_user_login") or "")
    name = str(event.get("broadcaster_user_name") or login)
    channel_url = f"https://twitch.tv/{login}"
    stream_id = str(event.get("id") or f"{login}-{event.get('started_at')}")

    extras: dict[str, Any] = {
        "isStreamNotification": True,
        "streamUrl": channel_url,
        "broadcasterLogin": login,
    }
    attachments: list[dict[str, Any]] = []
    if stream:
        title = str(stream.get("title") or "")
        game = str(stream.get("game_name") or "")
        content = f"🔴 {name} is now LIVE!\n\n{title}"
        if game:
            content += f"\nPlaying: {game}"
        extras.update(
            {
                "title": title,
                "gameName": game,
                "viewerCount": stream.get("viewer_count"),
            },
        )
        if stream.get("thumbnail_url"):
            url = thumbnail_url(str(stream["thumbnail_url"]))
            attachments.append(
                {
                    "id": f"stream-{login}",
                    "filename": "stream-thumbnail.jpg",
                    "url": url,
                    "proxyUrl": url,
                    "contentType": "image/jpeg",
                    "width": THUMBNAIL_WIDTH,
                    "height": THUMBNAIL_HEIGHT,
                },
            )
    else:
        content = f"🔴 {name} is now LIVE!\n\n{channel_url}"

    return {
        "platform": str(Platform.TWITCH),
        "platformMessageId": f"stream-{stream_id}",
        "author": name,
        "content": content,
        "timestamp": event.get("started_at"),
        "channelId": STREAM_NOTIFICATIONS_CHANNEL_ID,
        "channelName": STREAM_NOTIFICATIONS_CHANNEL_NAME,
        "isDM": False,
        "avatarUrl": avatar_url,
        "messageType": str(MessageType.SYSTEM),
        "attachments": attachments,
        "extras": extras,
    }


class StreamAlertService(ReconnectingService):
    """Announces when monitored Twitch channels go live.

    Runs on the leader next to the chat adapters. Its connection state is
    only logged: it shares the Twitch platform slot with the chat adapter
    and must not overwrite it.
    """

    name: ClassVar[str] = SERVICE_NAME

    def __init__(
        self,
        sink: EventSink,
        settings: TwitchSettings,
        *,
        url: str = TWITCH_EVENTSUB_URL,
        helix: HelixClient | None = None,
        **kwargs: Any,
    ) -> None:
        """Configure the service; nothing is contacted until `connect()`."""
        super().__init__(**kwargs)
        self.sink = sink
        self.settings = settings
        self.url = url
        self.helix = helix or HelixClient(settings.client_id, settings.helix_token)
        self.status = ConnectionStatus.DISCONNECTED
        self.session_id: str | None = None
        self.subscriptions: dict[str, str] = {}
        self.keepalive_timeout = TWITCH_KEEPALIVE_SECONDS + TWITCH_KEEPALIVE_GRACE_SECONDS
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._retiring: aiohttp.ClientWebSocketResponse | None = None
        self._seen_messages = RecentIds(STREAM_ALERT_MEMORY)
        self._alerted_streams = RecentIds(STREAM_ALERT_MEMORY)

    def _report(self, status: ConnectionStatus, error: str | None = None) -> None:
        if status is self.status:
            return
        self.status = status
        if error:
            logger.warning("Stream alerts %s: %s", status, error)
        else:
            logger.info("Stream alerts %s", status)

    async def _open(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        try:
            return await self._http.ws_connect(url)
        except aiohttp.ClientError as exc:
            msg = f"Could not reach EventSub at {url}: {exc}"
            raise AdapterConnectionError(msg) from exc

    async def _session(self) -> None:
        self.session_id = None
        self.subscriptions.clear()
        self.keepalive_timeout = TWITCH_KEEPALIVE_SECONDS + TWITCH_KEEPALIVE_GRACE_SECONDS
        url = self.url
        while True:
            ws = await self._open(url)
            # The old connection stays open until the new one says welcome
            self._retiring, self._ws = self._ws, ws
            url = await self._read(ws)
            logger.info("EventSub moving this session to %s", url)

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        """Handle frames until Twitch hands out a reconnect URL."""
        while True:
            try:
                frame = await ws.receive(timeout=self.keepalive_timeout)
            except TimeoutError as exc:
                msg = f"No EventSub message for {self.keepalive_timeout:.0f}s"
                raise AdapterConnectionError(msg) from exc
            if frame.type == aiohttp.WSMsgType.TEXT:
                reconnect_url = await self.handle_text(frame.data)
                if reconnect_url:
                    return reconnect_url
            elif frame.type in _CLOSED_TYPES:
                msg = f"EventSub closed the connection (code {ws.close_code})"
                raise AdapterConnectionError(msg)
            elif frame.type == aiohttp.WSMsgType.ERROR:
                msg = f"EventSub websocket error: {ws.exception()}"
                raise AdapterConnectionError(msg)

    async def _close_session(self) -> None:
        for ws in (self._retiring, self._ws):
            if ws is not None and not ws.closed:
                await ws.close()
        self._retiring = self._ws = None
        http, self._http = self._http, None
        if http is not None and not http.closed:
            await http.close()
        await self.helix.aclose()

    async def handle_text(self, text: str) -> str | None:
        """Decode one frame; returns the reconnect URL when Twitch sends one."""
        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring EventSub frame: %s", exc)
            return None
        if not isinstance(message, Mapping):
            logger.warning("Ignoring EventSub frame that is not an object")
            return None
        return await self.handle_message(message)

    async def handle_message(self, message: Mapping[str, Any]) -> str | None:
        metadata = message.get("metadata")
        payload = message.get("payload")
        if not isinstance(metadata, Mapping):
            logger.warning("Ignoring EventSub message without metadata")
            return None
        if not isinstance(payload, Mapping):
            payload = {}

        message_id = metadata.get("message_id")
        if message_id and not self._seen_messages.add(str(message_id)):
            logger.debug("Ignoring redelivered EventSub message %s", message_id)
            return None

        match metadata.get("message_type"):
            case "session_welcome":
                await self._on_welcome(payload.get("session") or {})
            case "session_keepalive":
                pass
            case "notification":
                if metadata.get("subscription_type") == "stream.online":
                    await self.handle_stream_online(payload.get("event") or {})
            case "session_reconnect":
                session = payload.get("session") or {}
                reconnect_url = session.get("reconnect_url")
                if reconnect_url:
                    return str(reconnect_url)
            case "revocation":
                self._on_revocation(payload.get("subscription") or {})
            case other:
                logger.debug("Ignoring EventSub message type %r", other)
        return None

    async def _on_welcome(self, session: Mapping[str, Any]) -> None:
        self.session_id = str(session.get("id") or "")
        keepalive = session.get("keepalive_timeout_seconds")
        if isinstance(keepalive, int | float) and keepalive > 0:
            self.keepalive_timeout = keepalive + TWITCH_KEEPALIVE_GRACE_SECONDS

        retiring, self._retiring = self._retiring, None
        if retiring is not None:
            # Subscriptions move over with a reconnect
            await retiring.close()
            logger.info("EventSub session %s resumed", self.session_id)
            return
        logger.info("EventSub session %s established", self.session_id)
        await self._subscribe_all()
        self._mark_connected()

    async def _subscribe_all(self) -> None:
        users = await self.helix.get_users(logins=self.settings.stream_monitors)
        found = {str(user.get("login") or "").lower(): user for user in users}
        for login in self.settings.stream_monitors:
            user = found.get(login)
            if user is None:
                logger.warning("Twitch user %s not found, not monitoring", login)
                continue
            try:
                subscription_id = await self.helix.subscribe_stream_online(
                    str(user.get("id")),
                    self.session_id or "",
                )
            except AdapterConnectionError as exc:
                logger.warning("Could not monitor %s: %s", login, exc)
                continue
            self.subscriptions[login] = subscription_id or ""
            logger.info("Monitoring %s for stream starts", login)
        if not self.subscriptions:
            msg = "None of the monitored Twitch channels could be subscribed"
            raise AdapterConnectionError(msg)

    def _on_revocation(self, subscription: Mapping[str, Any]) -> None:
        logger.warning(
            "Twitch revoked subscription %s (%s)",
            subscription.get("id"),
            subscription.get("status"),
        )
        revoked = subscription.get("id")
        for login, subscription_id in list(self.subscriptions.items()):
            if subscription_id and subscription_id == revoked:
                del self.subscriptions[login]

    async def handle_stream_online(self, event: Mapping[str, Any]) -> bool:
        """Publish one alert per stream; returns False for repeats."""
        login = str(event.get("broadcaster_user_login") or "")
        stream_key = str(event.get("id") or f"{login}-{event.get('started_at')}")
        if not self._alerted_streams.add(stream_key):
            logger.debug("Already announced stream %s of %s", stream_key, login)
            return False

        logger.info("%s went live", event.get("broadcaster_user_name") or login)
        stream: dict[str, Any] | None = None
        avatar_url: str | None = None
        broadcaster_id = str(event.get("broadcaster_user_id") or "")
        try:
            stream = await self.helix.get_stream(broadcaster_id)
            users = await self.helix.get_users(ids=[broadcaster_id])
        except (AdapterConnectionError, AdapterAuthError) as exc:
            logger.warning("Stream details for %s unavailable: %s", login, exc)
        else:
            if users:
                avatar_url = users[0].get("profile_image_url")
        self.sink.publish_message(build_stream_alert(event, stream, avatar_url))
        return True
