"""Data models for notifier-hub."""

from __future__ import annotations

import json
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Platform(StrEnum):
    """External chat platforms the hub aggregates."""

    DISCORD = "discord"
    TELEGRAM = "telegram"
    TWITCH = "twitch"


class ConnectionStatus(StrEnum):
    """Lifecycle of a platform session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MessageType(StrEnum):
    TEXT = "text"
    USER_JOIN = "user_join"
    USER_LEAVE = "user_leave"
    SYSTEM = "system"


def _now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: object) -> datetime:
    """Coerce an event timestamp into an aware UTC datetime.

    Accepts datetimes, epoch milliseconds (as the platforms and the relay
    backend send them) and ISO-8601 strings. Anything else means "now".
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return _now()
    if isinstance(value, int | float):
        return _from_epoch_ms(value)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            try:
                return _from_epoch_ms(float(value))
            except ValueError:
                return _now()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return _now()


def _from_epoch_ms(value: float) -> datetime:
    # NaN, infinities and out-of-range values cannot be represented
    try:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return _now()


def parse_platform(value: object) -> Platform:
    """Return the Platform for `value` or raise ValueError."""
    if isinstance(value, Platform):
        return value
    return Platform(str(value).strip().lower())


@dataclass(frozen=True, slots=True)
class Attachment:
    """A file or image attached to a message."""

    id: str
    filename: str
    url: str
    size: int = 0
    proxy_url: str = ""
    content_type: str | None = None
    width: int | None = None
    height: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "size": self.size,
            "url": self.url,
            "proxyUrl": self.proxy_url or self.url,
            "contentType": self.content_type,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Attachment:
        url = str(payload.get("url") or "")
        return cls(
            id=str(payload.get("id") or url),
            filename=str(payload.get("filename") or "file"),
            url=url,
            size=int(payload.get("size") or 0),
            proxy_url=str(
                payload.get("proxyUrl") or payload.get("proxy_url") or url,
            ),
            content_type=payload.get("contentType") or payload.get("content_type"),
            width=payload.get("width"),
            height=payload.get("height"),
        )


@dataclass(frozen=True, slots=True)
class ReplyContext:
    """The message a reply points at."""

    author: str
    content: str


@dataclass(slots=True)
class Message:
    """A single chat event in the unified feed.

    Instances are owned by one session's MessageStore. The wire form used on
    the broadcast channel and by the backend relay is the camelCase dict
    produced by `to_payload`.
    """

    id: str
    platform: Platform
    author: str
    content: str
    timestamp: datetime = field(default_factory=_now)
    channel_id: str = ""
    channel_name: str = ""
    is_dm: bool = False
    is_read: bool = False
    platform_message_id: str | None = None
    avatar_url: str | None = None
    is_bot: bool = False
    message_type: MessageType = MessageType.TEXT
    attachments: list[Attachment] = field(default_factory=list)
    reply_to: ReplyContext | None = None
    # Platform-specific payload (emotes, stickers, embeds, server names, ...)
    extras: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def make_id(platform: Platform, platform_message_id: str | None) -> str:
        """Build a message id.

        IDs derived from the platform's own message id are stable, so the same
        event arriving twice maps to the same store entry.
        """
        if platform_message_id:
            return f"{platform}-{platform_message_id}"
        return f"{platform}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> Message:
        """Create a new, unread message from the uniform adapter event shape.

        Raises ValueError when the platform is missing or unknown.
        """
        platform = parse_platform(event.get("platform"))
        raw_message_id = event.get("platformMessageId")
        platform_message_id = str(raw_message_id) if raw_message_id else None
        reply = event.get("replyTo")
        known_keys = {
            "id",
            "platform",
            "author",
            "content",
            "timestamp",
            "channelId",
            "channelName",
            "isDM",
            "isRead",
            "platformMessageId",
            "avatarUrl",
            "isBot",
            "messageType",
            "attachments",
            "replyTo",
            "extras",
        }
        extras = dict(event.get("extras") or {})
        extras.update({key: value for key, value in event.items() if key not in known_keys})
        try:
            message_type = MessageType(event.get("messageType") or MessageType.TEXT)
        except ValueError:
            message_type = MessageType.TEXT
        return cls(
            id=Message.make_id(platform, platform_message_id),
            platform=platform,
            author=str(event.get("author") or "Unknown"),
            content=str(event.get("content") or ""),
            timestamp=parse_timestamp(event.get("timestamp")),
            channel_id=str(event.get("channelId") or ""),
            channel_name=str(event.get("channelName") or ""),
            is_dm=bool(event.get("isDM", False)),
            platform_message_id=platform_message_id,
            avatar_url=event.get("avatarUrl") or None,
            is_bot=bool(event.get("isBot", False)),
            message_type=message_type,
            attachments=[
                Attachment.from_payload(item)
                for item in event.get("attachments") or []
                if isinstance(item, Mapping)
            ],
            reply_to=(
                ReplyContext(
                    author=str(reply.get("author") or ""),
                    content=str(reply.get("content") or ""),
                )
                if isinstance(reply, Mapping)
                else None
            ),
            extras=extras,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Message:
        """Rebuild a message received from another session, keeping its id."""
        message = cls.from_event(payload)
        if payload.get("id"):
            message.id = str(payload["id"])
        message.is_read = bool(payload.get("isRead", False))
        return message

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-serializable wire form."""
        return {
            "id": self.id,
            "platform": str(self.platform),
            "author": self.author,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "isDM": self.is_dm,
            "isRead": self.is_read,
            "platformMessageId": self.platform_message_id,
            "avatarUrl": self.avatar_url,
            "isBot": self.is_bot,
            "messageType": str(self.message_type),
            "attachments": [item.to_payload() for item in self.attachments],
            "replyTo": (
                {"author": self.reply_to.author, "content": self.reply_to.content}
                if self.reply_to
                else None
            ),
            "extras": self.extras,
        }


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Connection lifecycle state of one platform."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: str | None = None
    last_connected_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "error": self.error,
            "lastConnectedAt": (
                self.last_connected_at.isoformat() if self.last_connected_at else None
            ),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ConnectionState:
        last_connected = payload.get("lastConnectedAt")
        return cls(
            status=ConnectionStatus(payload.get("status") or "disconnected"),
            error=payload.get("error") or None,
            last_connected_at=parse_timestamp(last_connected) if last_connected else None,
        )


@dataclass(frozen=True, slots=True)
class LeaderRecord:
    """Contents of the shared leadership slot.

    Times are wall-clock seconds in memory and epoch milliseconds on disk.
    """

    owner_id: str
    last_heartbeat: float
    elected_at: float

    def renewed(self, now: float) -> LeaderRecord:
        return replace(self, last_heartbeat=now)

    def age(self, now: float) -> float:
        return now - self.last_heartbeat

    def to_json(self) -> str:
        return json.dumps(
            {
                "ownerId": self.owner_id,
                "lastHeartbeat": int(self.last_heartbeat * 1000),
                "electedAt": int(self.elected_at * 1000),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> LeaderRecord:
        """Parse a stored record.

        Raises ValueError for anything that is not a well-formed record.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            message = "Leader record is not valid JSON"
            raise ValueError(message) from exc
        if not isinstance(data, dict):
            message = "Leader record must be a JSON object"
            raise ValueError(message)  # noqa: TRY004
        owner_id = data.get("ownerId")
        heartbeat = data.get("lastHeartbeat", data.get("timestamp"))
        if not isinstance(owner_id, str) or not owner_id:
            message = "Leader record has no ownerId"
            raise ValueError(message)
        if isinstance(heartbeat, bool) or not isinstance(heartbeat, int | float):
            message = "Leader record has no numeric heartbeat"
            raise ValueError(message)
        elected_at = data.get("electedAt", heartbeat)
        if isinstance(elected_at, bool) or not isinstance(elected_at, int | float):
            elected_at = heartbeat
        return cls(
            owner_id=owner_id,
            last_heartbeat=heartbeat / 1000,
            elected_at=elected_at / 1000,
        )
