"""WebSocket client for the optional backend relay.

The backend runs server-side platform bots and pushes their events as JSON
frames ``{"event": ..., "data": ...}``. Those events take the same path into
the hub as events from the in-process adapters.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar

import aiohttp

from notifier_hub.core.exceptions import AdapterConnectionError, RelayProtocolError
from notifier_hub.core.models import ConnectionStatus
from notifier_hub.services.adapters.base import EventSink, ReconnectingService

if TYPE_CHECKING:
    from notifier_hub.core.config.settings import RelaySettings

logger = logging.getLogger(__name__)

WS_HEARTBEAT_SECONDS = 20.0


def _require(data: Mapping[str, Any], key: str, event: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        msg = f"{event} frame is missing {key!r}"
        raise RelayProtocolError(msg)
    return value


class RelayClient(ReconnectingService):
    """Consumes backend relay frames and forwards them to an `EventSink`."""

    name: ClassVar[str] = "relay"

    def __init__(
        self,
        sink: EventSink,
        settings: RelaySettings,
        *,
        heartbeat: float = WS_HEARTBEAT_SECONDS,
        **kwargs: Any,
    ) -> None:
        """Configure the client; nothing is contacted until `connect()`."""
        super().__init__(**kwargs)
        self.sink = sink
        self.settings = settings
        self.heartbeat = heartbeat
        self.status = ConnectionStatus.DISCONNECTED
        self._session_http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    def _report(self, status: ConnectionStatus, error: str | None = None) -> None:
        if status is self.status:
            return
        self.status = status
        if error:
            logger.warning("Relay %s: %s", status, error)
        else:
            logger.info("Relay %s", status)

    async def _session(self) -> None:
        self._session_http = aiohttp.ClientSession()
        try:
            self._ws = await self._session_http.ws_connect(
                self.settings.url,
                heartbeat=self.heartbeat,
            )
        except aiohttp.ClientError as exc:
            msg = f"Could not reach relay at {self.settings.url}: {exc}"
            raise AdapterConnectionError(msg) from exc
        self._mark_connected()

        async for frame in self._ws:
            if frame.type == aiohttp.WSMsgType.TEXT:
                self.handle_text(frame.data)
            elif frame.type == aiohttp.WSMsgType.ERROR:
                msg = f"Relay websocket error: {self._ws.exception()}"
                raise AdapterConnectionError(msg)
        msg = "Relay closed the connection"
        raise AdapterConnectionError(msg)

    async def _close_session(self) -> None:
        ws, self._ws = self._ws, None
        http, self._session_http = self._session_http, None
        if ws is not None and not ws.closed:
            await ws.close()
        if http is not None and not http.closed:
            await http.close()

    def handle_text(self, text: str) -> None:
        """Decode one text frame; malformed frames are logged and skipped."""
        try:
            frame = json.loads(text)
            if not isinstance(frame, Mapping):
                msg = "Relay frame must be a JSON object"
                raise RelayProtocolError(msg)  # noqa: TRY301
            self.handle_frame(frame)
        except (json.JSONDecodeError, RelayProtocolError, ValueError) as exc:
            logger.warning("Ignoring relay frame: %s", exc)

    def handle_frame(self, frame: Mapping[str, Any]) -> None:
        """Dispatch a decoded ``{event, data}`` frame to the sink.

        Raises RelayProtocolError for frames that can't be interpreted.
        """
        event = frame.get("event")
        data = frame.get("data")
        if not isinstance(event, str) or not isinstance(data, Mapping):
            msg = "Relay frame needs a string 'event' and an object 'data'"
            raise RelayProtocolError(msg)

        match event:
            case "new-message":
                self.sink.publish_message(data)
            case "message-deleted":
                self.sink.publish_deletion(
                    _require(data, "platform", event),
                    str(_require(data, "platformMessageId", event)),
                )
            case "message-updated":
                self.sink.publish_update(
                    _require(data, "platform", event),
                    str(_require(data, "platformMessageId", event)),
                    str(data.get("newContent") or ""),
                )
            case "service-status":
                status = (
                    ConnectionStatus.CONNECTED
                    if data.get("connected")
                    else ConnectionStatus.DISCONNECTED
                )
                self.sink.publish_status(_require(data, "platform", event), status)
            case "service-error":
                self.sink.publish_status(
                    _require(data, "platform", event),
                    ConnectionStatus.ERROR,
                    str(data.get("error") or "Unknown error"),
                )
            case _:
                logger.debug("Ignoring relay event %r", event)

    async def emit(self, event: str, data: Mapping[str, Any]) -> bool:
        """Send an event to the backend; return False when not connected."""
        if self._ws is None or self._ws.closed:
            logger.debug("Relay not connected, dropping outgoing %s", event)
            return False
        await self._ws.send_json({"event": event, "data": dict(data)})
        return True
