"""Discord gateway adapter built on discord.py."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

import discord

from notifier_hub.core.config.channels import get_discord_channel_name
from notifier_hub.core.error_handling import log_discord_event_error
from notifier_hub.core.exceptions import AdapterAuthError, AdapterConnectionError
from notifier_hub.core.models import ConnectionStatus, MessageType, Platform
from notifier_hub.services.adapters.base import EventSink, PlatformAdapter

if TYPE_CHECKING:
    from collections.abc import Callable

    from notifier_hub.core.config.settings import DiscordSettings

logger = logging.getLogger(__name__)

TEXT_MESSAGE_TYPES = frozenset({discord.MessageType.default, discord.MessageType.reply})


def build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    return intents


class HubDiscordClient(discord.Client):
    """Client whose gateway events are forwarded to a `DiscordAdapter`."""

    def __init__(self, adapter: DiscordAdapter) -> None:
        """Create a client bound to `adapter`."""
        super().__init__(intents=build_intents())
        self.adapter = adapter

    async def on_ready(self) -> None:
        logger.info("Discord connected as %s", self.user)
        self.adapter._mark_connected()  # noqa: SLF001

    async def on_resumed(self) -> None:
        self.adapter._report(ConnectionStatus.CONNECTED)  # noqa: SLF001

    async def on_disconnect(self) -> None:
        # discord.py reconnects by itself; surface the gap meanwhile
        if not self.is_closed():
            self.adapter._report(ConnectionStatus.CONNECTING)  # noqa: SLF001

    async def on_message(self, message: discord.Message) -> None:
        event = self.adapter.build_event(message)
        if event is not None:
            self.adapter.sink.publish_message(event)

    async def on_raw_message_delete(
        self,
        payload: discord.RawMessageDeleteEvent,
    ) -> None:
        self.adapter.handle_delete(payload.channel_id, payload.message_id)

    async def on_raw_message_edit(
        self,
        payload: discord.RawMessageUpdateEvent,
    ) -> None:
        content = payload.data.get("content")
        if isinstance(content, str):
            self.adapter.handle_edit(payload.channel_id, payload.message_id, content)

    async def on_error(self, event_method: str, *args: object, **kwargs: object) -> None:
        log_discord_event_error(
            logger=logger,
            event_name=event_method,
            args=args,
            kwargs=kwargs,
        )


class DiscordAdapter(PlatformAdapter):
    """Receives guild and DM messages through a bot account.

    An optional channel allow-list limits which guild channels are forwarded;
    direct messages always are. Bot authors are kept and flagged `isBot`,
    because relay bridges post as bots and the relay suppressor needs to see
    their copies.
    """

    name: ClassVar[str] = "discord"
    platform: ClassVar[Platform] = Platform.DISCORD

    def __init__(
        self,
        sink: EventSink,
        settings: DiscordSettings,
        *,
        client_factory: Callable[[DiscordAdapter], discord.Client] | None = None,
        **kwargs: Any,
    ) -> None:
        """Configure the adapter; nothing is contacted until `connect()`."""
        super().__init__(sink, **kwargs)
        self.settings = settings
        self._client_factory = client_factory or HubDiscordClient
        self._client: discord.Client | None = None

    async def _session(self) -> None:
        self._client = self._client_factory(self)
        try:
            await self._client.start(self.settings.token)
        except discord.LoginFailure as exc:
            raise AdapterAuthError(self.name, str(exc) or "invalid token") from exc
        except discord.PrivilegedIntentsRequired as exc:
            raise AdapterAuthError(
                self.name,
                "the message content intent is not enabled for this bot",
            ) from exc
        except (discord.GatewayNotFound, discord.ConnectionClosed) as exc:
            msg = f"Discord gateway failed: {exc}"
            raise AdapterConnectionError(msg) from exc
        except discord.HTTPException as exc:
            msg = f"Discord HTTP error {exc.status}: {exc.text}"
            raise AdapterConnectionError(msg) from exc
        msg = "Discord client stopped"
        raise AdapterConnectionError(msg)

    async def _close_session(self) -> None:
        client, self._client = self._client, None
        if client is not None and not client.is_closed():
            await client.close()

    def is_channel_allowed(self, channel_id: int | str, *, is_dm: bool = False) -> bool:
        if is_dm or not self.settings.channels:
            return True
        return str(channel_id) in self.settings.channels

    def channel_name(self, channel: Any) -> str:
        channel_id = str(channel.id)
        configured = self.settings.channel_names.get(channel_id)
        if configured:
            return configured
        return getattr(channel, "name", None) or get_discord_channel_name(
            channel_id,
            self.settings.channel_names,
        )

    def build_event(self, message: discord.Message) -> dict[str, Any] | None:
        """Map a gateway message to an adapter event, or None to skip it."""
        is_dm = message.guild is None
        if not self.is_channel_allowed(message.channel.id, is_dm=is_dm):
            return None

        content = message.content
        if message.type in TEXT_MESSAGE_TYPES:
            message_type = MessageType.TEXT
        elif message.type == discord.MessageType.new_member:
            message_type = MessageType.USER_JOIN
            content = f"{message.author.display_name} joined the server"
        else:
            message_type = MessageType.SYSTEM
            content = message.system_content or content

        extras: dict[str, Any] = {}
        if message.guild is not None:
            extras["guildName"] = message.guild.name
        if message.stickers:
            extras["stickers"] = [sticker.name for sticker in message.stickers]
        if not content and message.embeds:
            embed = message.embeds[0]
            content = embed.description or embed.title or ""

        if not content and not message.attachments and not message.stickers:
            return None

        author = message.author
        return {
            "platform": str(self.platform),
            "platformMessageId": str(message.id),
            "author": author.display_name,
            "content": content,
            "timestamp": message.created_at,
            "channelId": str(message.channel.id),
            "channelName": (
                f"DM with {author.display_name}" if is_dm else self.channel_name(message.channel)
            ),
            "isDM": is_dm,
            "avatarUrl": str(author.display_avatar.url),
            "isBot": bool(author.bot),
            "messageType": str(message_type),
            "attachments": [
                {
                    "id": str(attachment.id),
                    "filename": attachment.filename,
                    "size": attachment.size,
                    "url": attachment.url,
                    "proxyUrl": attachment.proxy_url,
                    "contentType": attachment.content_type,
                    "width": attachment.width,
                    "height": attachment.height,
                }
                for attachment in message.attachments
            ],
            "replyTo": self._reply_context(message),
            "extras": extras,
        }

    @staticmethod
    def _reply_context(message: discord.Message) -> dict[str, str] | None:
        reference = message.reference
        resolved = getattr(reference, "resolved", None) if reference else None
        author = getattr(resolved, "author", None)
        if author is None:
            return None
        return {
            "author": author.display_name,
            "content": getattr(resolved, "content", "") or "",
        }

    def handle_delete(self, channel_id: int, message_id: int) -> None:
        if self.is_channel_allowed(channel_id, is_dm=self._is_dm_channel(channel_id)):
            self.sink.publish_deletion(self.platform, str(message_id))

    def handle_edit(self, channel_id: int, message_id: int, content: str) -> None:
        if self.is_channel_allowed(channel_id, is_dm=self._is_dm_channel(channel_id)):
            self.sink.publish_update(self.platform, str(message_id), content)

    def _is_dm_channel(self, channel_id: int) -> bool:
        if self._client is None:
            return False
        channel = self._client.get_channel(channel_id)
        return isinstance(channel, discord.DMChannel)
