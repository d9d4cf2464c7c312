"""Telegram Bot API adapter (long polling over httpx)."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from notifier_hub.core.config.channels import get_telegram_topic_name
from notifier_hub.core.config.constants import (
    TELEGRAM_API_BASE,
    TELEGRAM_LONG_POLL_SECONDS,
)
from notifier_hub.core.config.http import (
    HttpxClientOptions,
    get_or_create_httpx_client,
)
from notifier_hub.core.exceptions import AdapterAuthError, AdapterConnectionError
from notifier_hub.core.models import MessageType, Platform
from notifier_hub.services.adapters.base import EventSink, PlatformAdapter
from notifier_hub.services.http import RetryOptions, request_with_retries

if TYPE_CHECKING:
    from collections.abc import Mapping

    from notifier_hub.core.config.settings import TelegramSettings

logger = logging.getLogger(__name__)

HTTP_UNAUTHORIZED = 401
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
ALLOWED_UPDATES = (
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
)


def chat_display_name(chat: Mapping[str, Any]) -> str:
    """Group title, username, or the private chat's full name."""
    if chat.get("title"):
        return str(chat["title"])
    if chat.get("username"):
        return str(chat["username"])
    full_name = f"{chat.get('first_name') or ''} {chat.get('last_name') or ''}".strip()
    return full_name or "Unknown"


def sender_name(message: Mapping[str, Any]) -> str:
    sender = message.get("from")
    if isinstance(sender, dict):
        return str(sender.get("username") or sender.get("first_name") or "Unknown")
    sender_chat = message.get("sender_chat") or message.get("chat") or {}
    return chat_display_name(sender_chat)


def message_text(message: Mapping[str, Any]) -> str:
    return str(message.get("text") or message.get("caption") or "")


class TelegramAdapter(PlatformAdapter):
    """Receives group and private messages through `getUpdates`.

    Groups can be allow- or deny-listed by chat id or title. Photos and
    documents are resolved to downloadable URLs with `getFile`.
    """

    name: ClassVar[str] = "telegram"
    platform: ClassVar[Platform] = Platform.TELEGRAM

    def __init__(
        self,
        sink: EventSink,
        settings: TelegramSettings,
        *,
        api_base: str = TELEGRAM_API_BASE,
        poll_timeout: int = TELEGRAM_LONG_POLL_SECONDS,
        client_options: HttpxClientOptions | None = None,
        retry_options: RetryOptions | None = None,
        **kwargs: Any,
    ) -> None:
        """Configure the adapter; nothing is contacted until `connect()`."""
        super().__init__(sink, **kwargs)
        self.settings = settings
        self.api_base = api_base.rstrip("/")
        self.poll_timeout = poll_timeout
        self._client_options = client_options
        self._retry_options = retry_options
        self._client_holder: list[httpx.AsyncClient | None] = []
        self._offset = 0
        self.bot_username: str | None = None

    async def call(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        """Invoke a Bot API method and return its `result`."""
        client = get_or_create_httpx_client(
            self._client_holder,
            options=self._client_options,
        )
        url = f"{self.api_base}/bot{self.settings.bot_token}/{method}"
        body = dict(params or {})
        try:
            response = await request_with_retries(
                lambda: client.post(url, json=body),
                options=self._retry_options,
                log_context=f"telegram {method}",
            )
        except httpx.HTTPError as exc:
            # The exception text carries the URL, and with it the token
            msg = f"Telegram {method} failed: {type(exc).__name__}"
            raise AdapterConnectionError(msg) from exc

        if response.status_code in {HTTP_UNAUTHORIZED, HTTP_NOT_FOUND}:
            raise AdapterAuthError(
                self.name,
                f"bot token rejected (HTTP {response.status_code})",
            )
        if response.status_code == HTTP_CONFLICT:
            msg = "Another client is already polling this bot (HTTP 409)"
            raise AdapterConnectionError(msg)

        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"Telegram {method} returned invalid JSON"
            raise AdapterConnectionError(msg) from exc
        if not isinstance(payload, dict) or not payload.get("ok"):
            description = (
                payload.get("description") if isinstance(payload, dict) else None
            )
            msg = f"Telegram {method} failed: {description or response.status_code}"
            raise AdapterConnectionError(msg)
        return payload.get("result")

    async def _session(self) -> None:
        me = await self.call("getMe")
        self.bot_username = (me or {}).get("username")
        logger.info("Telegram connected as @%s", self.bot_username)
        self._mark_connected()

        while True:
            updates = await self.call(
                "getUpdates",
                {
                    "offset": self._offset,
                    "timeout": self.poll_timeout,
                    "allowed_updates": json.dumps(ALLOWED_UPDATES),
                },
            )
            for update in updates or []:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                await self.handle_update(update)

    async def _close_session(self) -> None:
        if self._client_holder and self._client_holder[0] is not None:
            client = self._client_holder[0]
            self._client_holder[0] = None
            await client.aclose()

    def is_chat_allowed(self, chat: Mapping[str, Any]) -> bool:
        """Apply the exclude list, then the allow list (empty allows all)."""
        keys = {str(chat.get("id")), chat_display_name(chat)}
        if keys & set(self.settings.exclude_groups):
            return False
        if self.settings.groups and not keys & set(self.settings.groups):
            return False
        return True

    async def handle_update(self, update: Mapping[str, Any]) -> None:
        edited = update.get("edited_message") or update.get("edited_channel_post")
        if isinstance(edited, dict):
            if self.is_chat_allowed(edited.get("chat") or {}):
                self.sink.publish_update(
                    self.platform,
                    self.platform_message_id(edited),
                    message_text(edited),
                )
            return

        message = update.get("message") or update.get("channel_post")
        if not isinstance(message, dict):
            return
        event = await self.build_event(message)
        if event is not None:
            self.sink.publish_message(event)

    @staticmethod
    def platform_message_id(message: Mapping[str, Any]) -> str:
        # message_id is only unique per chat
        chat = message.get("chat") or {}
        return f"{chat.get('id')}:{message.get('message_id')}"

    async def build_event(self, message: Mapping[str, Any]) -> dict[str, Any] | None:
        """Turn a Bot API message into an adapter event, or None to skip it."""
        chat = message.get("chat") or {}
        if not self.is_chat_allowed(chat):
            return None

        content = message_text(message)
        message_type = MessageType.TEXT
        extras: dict[str, Any] = {}
        if message.get("new_chat_members"):
            names = ", ".join(
                str(member.get("username") or member.get("first_name") or "someone")
                for member in message["new_chat_members"]
            )
            content = f"{names} joined the group"
            message_type = MessageType.USER_JOIN
        elif message.get("left_chat_member"):
            member = message["left_chat_member"]
            name = member.get("username") or member.get("first_name") or "someone"
            content = f"{name} left the group"
            message_type = MessageType.USER_LEAVE

        sticker = message.get("sticker")
        if isinstance(sticker, dict):
            content = content or str(sticker.get("emoji") or "[sticker]")
            extras["sticker"] = {
                "emoji": sticker.get("emoji"),
                "setName": sticker.get("set_name"),
                "fileId": sticker.get("file_id"),
            }

        attachments = await self._collect_attachments(message)
        if not content and not attachments:
            return None

        channel_name = chat_display_name(chat)
        if chat.get("is_forum"):
            topic_id = message.get("message_thread_id")
            topic_name = get_telegram_topic_name(topic_id, self.settings.topic_names)
            channel_name = f"{channel_name} / {topic_name}"
            extras["topicId"] = topic_id

        sender = message.get("from") if isinstance(message.get("from"), dict) else {}
        return {
            "platform": str(self.platform),
            "platformMessageId": self.platform_message_id(message),
            "author": sender_name(message),
            "content": content,
            "timestamp": int(message.get("date") or 0) * 1000 or None,
            "channelId": str(chat.get("id")),
            "channelName": channel_name,
            "isDM": chat.get("type") == "private",
            "isBot": bool(sender.get("is_bot", False)),
            "messageType": str(message_type),
            "attachments": attachments,
            "replyTo": self._reply_context(message),
            "extras": extras,
        }

    @staticmethod
    def _reply_context(message: Mapping[str, Any]) -> dict[str, str] | None:
        reply = message.get("reply_to_message")
        # Forum messages reply to the topic's creation message implicitly
        if not isinstance(reply, dict) or reply.get("forum_topic_created"):
            return None
        return {"author": sender_name(reply), "content": message_text(reply)}

    async def _collect_attachments(
        self,
        message: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        attachments: list[dict[str, Any]] = []
        photos = message.get("photo")
        if isinstance(photos, list) and photos:
            largest = photos[-1]
            url = await self.resolve_file_url(largest.get("file_id"))
            if url:
                attachments.append(
                    {
                        "id": largest.get("file_unique_id") or largest.get("file_id"),
                        "filename": "photo.jpg",
                        "size": largest.get("file_size") or 0,
                        "url": url,
                        "contentType": "image/jpeg",
                        "width": largest.get("width"),
                        "height": largest.get("height"),
                    },
                )

        document = message.get("document")
        if isinstance(document, dict):
            url = await self.resolve_file_url(document.get("file_id"))
            if url:
                attachments.append(
                    {
                        "id": document.get("file_unique_id") or document.get("file_id"),
                        "filename": document.get("file_name") or "file",
                        "size": document.get("file_size") or 0,
                        "url": url,
                        "contentType": document.get("mime_type"),
                    },
                )
        return attachments

    async def resolve_file_url(self, file_id: str | None) -> str | None:
        """Return a download URL for `file_id`, or None if it can't be resolved."""
        if not file_id:
            return None
        try:
            result = await self.call("getFile", {"file_id": file_id})
        except AdapterConnectionError as exc:
            logger.warning("Could not resolve Telegram file %s: %s", file_id, exc)
            return None
        file_path = (result or {}).get("file_path")
        if not file_path:
            return None
        return f"{self.api_base}/file/bot{self.settings.bot_token}/{file_path}"
