"""Per-session hub tying the election, broadcast channel and stores together.

Only the leader runs platform adapters. Everything the leader's adapters
observe goes through the local stores first and is then broadcast; the other
sessions apply what they receive through the same store gates, so a message
is counted once per session no matter how it arrived.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from notifier_hub.coordination.broadcast import open_broadcast_channel
from notifier_hub.coordination.election import LeaderElection
from notifier_hub.coordination.storage import LibsqlStorage
from notifier_hub.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from notifier_hub.core.models import (
    ConnectionState,
    ConnectionStatus,
    Message,
    Platform,
    parse_platform,
)
from notifier_hub.services.adapters.discord import DiscordAdapter
from notifier_hub.services.adapters.telegram import TelegramAdapter
from notifier_hub.services.adapters.twitch import TwitchAdapter
from notifier_hub.services.adapters.twitch_eventsub import StreamAlertService
from notifier_hub.services.dedup import RelaySuppressor
from notifier_hub.services.relay import RelayClient
from notifier_hub.stores.connections import ConnectionStore
from notifier_hub.stores.messages import MessageStore

if TYPE_CHECKING:
    from collections.abc import Mapping

    from notifier_hub.coordination.broadcast import BroadcastChannel
    from notifier_hub.coordination.storage import SharedStorage
    from notifier_hub.core.config.settings import HubSettings
    from notifier_hub.services.adapters.base import ReconnectingService

logger = logging.getLogger(__name__)

TOPIC_NEW_MESSAGE = "new-message"
TOPIC_MESSAGE_DELETED = "message-deleted"
TOPIC_MESSAGE_UPDATED = "message-updated"
TOPIC_CONNECTION_STATUS = "connection-status"
TOPIC_READ_STATE = "read-state"
TOPIC_SESSION_HELLO = "session-hello"


class NotifierHub:
    """One session of the notifier.

    Implements the adapters' `EventSink`. Construct it with `build_hub()`
    for a real process, or directly with in-memory parts in tests.
    """

    def __init__(
        self,
        *,
        storage: SharedStorage,
        channel: BroadcastChannel,
        election: LeaderElection,
        messages: MessageStore | None = None,
        connections: ConnectionStore | None = None,
    ) -> None:
        """Assemble a hub; call `start()` to join the election."""
        self.storage = storage
        self.channel = channel
        self.election = election
        self.messages = messages or MessageStore()
        self.connections = connections or ConnectionStore()
        self.services: list[ReconnectingService] = []
        self.relay: RelayClient | None = None
        self._lock = asyncio.Lock()
        self._transitions: set[asyncio.Task[None]] = set()
        self._started = False
        self._stopped = False

    @property
    def session_id(self) -> str:
        return self.election.session_id

    @property
    def is_leader(self) -> bool:
        return self.election.is_leader

    def add_service(self, service: ReconnectingService) -> None:
        """Register an adapter (or the relay) to run while this session leads."""
        self.services.append(service)
        if isinstance(service, RelayClient):
            self.relay = service

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.channel.on(TOPIC_NEW_MESSAGE, self._on_remote_message)
        self.channel.on(TOPIC_MESSAGE_DELETED, self._on_remote_deletion)
        self.channel.on(TOPIC_MESSAGE_UPDATED, self._on_remote_update)
        self.channel.on(TOPIC_CONNECTION_STATUS, self._on_remote_status)
        self.channel.on(TOPIC_READ_STATE, self._on_remote_read_state)
        self.channel.on(TOPIC_SESSION_HELLO, self._on_session_hello)
        self.election.start(self._on_leadership_change)
        # Sessions joining late ask the leader for the connection states
        self.channel.send(TOPIC_SESSION_HELLO, {"sessionId": self.session_id})
        logger.info(
            "Session %s started with %d service(s)",
            self.session_id,
            len(self.services),
        )

    async def stop(self) -> None:
        """Leave the election and release everything; safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        await self.election.stop()
        if self._transitions:
            await asyncio.gather(*self._transitions, return_exceptions=True)
        async with self._lock:
            await self._disconnect_services()
        self.connections.disconnect_all()
        self.channel.close()
        close = getattr(self.storage, "close", None)
        if callable(close):
            close()
        logger.info("Session %s stopped", self.session_id)

    def _on_leadership_change(self, is_leader: bool) -> None:  # noqa: FBT001
        task = asyncio.create_task(
            self._apply_leadership(),
            name=f"hub-leadership-{self.session_id}",
        )
        self._transitions.add(task)
        task.add_done_callback(self._transitions.discard)
        logger.debug("Leadership flipped to %s, services follow", is_leader)

    async def _apply_leadership(self) -> None:
        # Flips can queue up; act on the role held when the lock is acquired
        async with self._lock:
            if self.election.is_leader and not self._stopped:
                for service in self.services:
                    try:
                        await service.connect()
                    except COMMON_HANDLER_EXCEPTIONS as exc:
                        log_exception(
                            logger=logger,
                            message="Could not start service",
                            error=exc,
                            context={"service": service.name},
                        )
            else:
                await self._disconnect_services()

    async def _disconnect_services(self) -> None:
        for service in self.services:
            try:
                await service.disconnect()
            except COMMON_HANDLER_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message="Could not stop service",
                    error=exc,
                    context={"service": service.name},
                )

    # Event sink (leader side)

    def publish_message(self, event: Mapping[str, Any]) -> Message | None:
        """Store an adapter event and broadcast it if the store accepted it."""
        try:
            message = Message.from_event(event)
        except ValueError as exc:
            logger.warning("Dropping event with unusable platform: %s", exc)
            return None
        if not self.messages.append(message):
            return None
        self.channel.send(TOPIC_NEW_MESSAGE, message.to_payload())
        return message

    def publish_deletion(
        self,
        platform: Platform | str,
        platform_message_id: str,
    ) -> bool:
        platform = parse_platform(platform)
        if not self.messages.delete(platform, platform_message_id):
            return False
        self.channel.send(
            TOPIC_MESSAGE_DELETED,
            {"platform": str(platform), "platformMessageId": platform_message_id},
        )
        return True

    def publish_update(
        self,
        platform: Platform | str,
        platform_message_id: str,
        content: str,
    ) -> bool:
        platform = parse_platform(platform)
        if not self.messages.update_content(platform, platform_message_id, content):
            return False
        self.channel.send(
            TOPIC_MESSAGE_UPDATED,
            {
                "platform": str(platform),
                "platformMessageId": platform_message_id,
                "newContent": content,
            },
        )
        return True

    def publish_status(
        self,
        platform: Platform | str,
        status: ConnectionStatus,
        error: str | None = None,
    ) -> None:
        """Record a connection transition of one of this session's adapters.

        Only the leader's view is authoritative; followers mirror it, so
        reports from adapters shutting down after losing leadership are
        dropped.
        """
        if not self.is_leader:
            logger.debug("Ignoring %s status %s from a follower", platform, status)
            return
        platform = parse_platform(platform)
        match status:
            case ConnectionStatus.CONNECTING:
                state = self.connections.set_connecting(platform)
            case ConnectionStatus.CONNECTED:
                state = self.connections.set_connected(platform)
            case ConnectionStatus.ERROR:
                state = self.connections.set_error(platform, error or "Unknown error")
            case _:
                state = self.connections.set_disconnected(platform)
        self.channel.send(
            TOPIC_CONNECTION_STATUS,
            {"platform": str(platform), **state.to_payload()},
        )

    def _send_connection_states(self) -> None:
        for platform, state in self.connections.snapshot().items():
            self.channel.send(
                TOPIC_CONNECTION_STATUS,
                {"platform": str(platform), **state.to_payload()},
            )

    # User actions

    def mark_read(self, message_id: str) -> bool:
        if not self.messages.mark_read(message_id):
            return False
        self.channel.send(TOPIC_READ_STATE, {"messageId": message_id})
        return True

    def mark_all_read(self, platform: Platform | str | None = None) -> int:
        target = None if platform is None else parse_platform(platform)
        changed = self.messages.mark_all_read(target)
        if changed:
            self.channel.send(
                TOPIC_READ_STATE,
                {"all": True, "platform": str(target) if target else None},
            )
        return changed

    # Broadcast handlers (mirror side)

    def _on_remote_message(self, payload: Any) -> None:
        self.messages.append(Message.from_payload(payload))

    def _on_remote_deletion(self, payload: Any) -> None:
        self.messages.delete(payload["platform"], str(payload["platformMessageId"]))

    def _on_remote_update(self, payload: Any) -> None:
        self.messages.update_content(
            payload["platform"],
            str(payload["platformMessageId"]),
            str(payload.get("newContent") or ""),
        )

    def _on_remote_status(self, payload: Any) -> None:
        self.connections.apply(
            payload["platform"],
            ConnectionState.from_payload(payload),
        )

    def _on_remote_read_state(self, payload: Any) -> None:
        if payload.get("all"):
            self.messages.mark_all_read(payload.get("platform"))
        elif payload.get("messageId"):
            self.messages.mark_read(str(payload["messageId"]))

    def _on_session_hello(self, payload: Any) -> None:
        if self.is_leader:
            logger.debug("Sending connection states to session %s", payload.get("sessionId"))
            self._send_connection_states()


async def build_hub(
    settings: HubSettings,
    *,
    storage: SharedStorage | None = None,
    channel: BroadcastChannel | None = None,
) -> NotifierHub:
    """Create a hub with every platform that has credentials configured."""
    if storage is None:
        storage = LibsqlStorage(settings.storage_path)
    if channel is None:
        channel = await open_broadcast_channel(settings.broadcast, settings.session_id)

    hub = NotifierHub(
        storage=storage,
        channel=channel,
        election=LeaderElection(
            storage,
            settings=settings.election,
            session_id=settings.session_id,
        ),
        messages=MessageStore(
            capacity=settings.message_capacity,
            suppressor=RelaySuppressor.from_settings(settings.dedup),
        ),
    )

    if settings.discord.enabled:
        hub.add_service(DiscordAdapter(hub, settings.discord))
    if settings.telegram.enabled:
        hub.add_service(TelegramAdapter(hub, settings.telegram))
    if settings.twitch.enabled:
        hub.add_service(TwitchAdapter(hub, settings.twitch))
    if settings.twitch.stream_alerts_enabled:
        hub.add_service(StreamAlertService(hub, settings.twitch))
    if settings.relay.enabled:
        hub.add_service(RelayClient(hub, settings.relay))

    if not hub.services:
        logger.warning("No platform credentials configured; the hub will stay idle")
    return hub
