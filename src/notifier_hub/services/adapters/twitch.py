"""Twitch chat adapter speaking IRC over TLS."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from notifier_hub.core.config.constants import (
    TWITCH_IRC_HOST,
    TWITCH_IRC_PORT,
    TWITCH_PING_INTERVAL_SECONDS,
)
from notifier_hub.core.exceptions import AdapterAuthError, AdapterConnectionError
from notifier_hub.core.models import MessageType, Platform
from notifier_hub.services.adapters.base import EventSink, PlatformAdapter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from notifier_hub.core.config.settings import TwitchSettings

    OpenConnection = Callable[
        ...,
        Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]],
    ]

logger = logging.getLogger(__name__)

CAPABILITIES = "twitch.tv/membership twitch.tv/tags twitch.tv/commands"
AUTH_FAILURE_NOTICES = (
    "Login authentication failed",
    "Improperly formatted auth",
)
AVATAR_URL_TEMPLATE = "https://unavatar.io/twitch/{login}"
_ACTION_PREFIX = "\x01ACTION "
_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}
_TAG_ESCAPE_RE = re.compile(r"\\(.?)")


def unescape_tag_value(value: str) -> str:
    """Undo IRCv3 tag escaping (``\\s`` for space, ``\\:`` for ``;``, ...)."""
    return _TAG_ESCAPE_RE.sub(lambda match: _TAG_ESCAPES.get(match[1], match[1]), value)


@dataclass(slots=True)
class IrcMessage:
    command: str
    params: list[str] = field(default_factory=list)
    prefix: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> str | None:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def parse_irc_line(line: str) -> IrcMessage:
    """Parse one IRC line (without CRLF) into tags, prefix, command and params.

    Raises ValueError for a line without a command.
    """
    rest = line.rstrip("\r\n")
    tags: dict[str, str] = {}
    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        for item in raw_tags.split(";"):
            if not item:
                continue
            key, _, value = item.partition("=")
            tags[key] = unescape_tag_value(value)
        rest = rest.lstrip(" ")

    prefix = None
    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")
        rest = rest.lstrip(" ")

    head, separator, trailing = rest.partition(" :")
    parts = head.split()
    if not parts:
        msg = f"IRC line has no command: {line!r}"
        raise ValueError(msg)
    params = parts[1:]
    if separator:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, prefix=prefix, tags=tags)


def parse_emotes(raw: str) -> dict[str, list[str]]:
    """Map emote ids to their ``start-end`` ranges from the `emotes` tag."""
    emotes: dict[str, list[str]] = {}
    for entry in raw.split("/"):
        emote_id, _, ranges = entry.partition(":")
        if emote_id and ranges:
            emotes[emote_id] = ranges.split(",")
    return emotes


def parse_badges(raw: str) -> dict[str, str]:
    badges: dict[str, str] = {}
    for entry in raw.split(","):
        name, _, version = entry.partition("/")
        if name:
            badges[name] = version
    return badges


def normalize_oauth(token: str) -> str:
    return token if token.startswith("oauth:") else f"oauth:{token}"


def normalize_channel(channel: str) -> str:
    channel = channel.strip().lower()
    return channel if channel.startswith("#") else f"#{channel}"


class TwitchAdapter(PlatformAdapter):
    """Reads chat from the configured channels.

    The session counts as connected once the server welcomes us (``001``);
    channels are joined at that point. A rejected token ends the adapter
    without retries.
    """

    name: ClassVar[str] = "twitch"
    platform: ClassVar[Platform] = Platform.TWITCH

    def __init__(
        self,
        sink: EventSink,
        settings: TwitchSettings,
        *,
        host: str = TWITCH_IRC_HOST,
        port: int = TWITCH_IRC_PORT,
        ping_interval: float = TWITCH_PING_INTERVAL_SECONDS,
        open_connection: OpenConnection | None = None,
        **kwargs: Any,
    ) -> None:
        """Configure the adapter; nothing is contacted until `connect()`."""
        super().__init__(sink, **kwargs)
        self.settings = settings
        self.host = host
        self.port = port
        self.ping_interval = ping_interval
        self._open_connection = open_connection or asyncio.open_connection
        self._writer: asyncio.StreamWriter | None = None
        self.joined_channels: set[str] = set()

    async def _session(self) -> None:
        reader, self._writer = await self._open_connection(
            self.host,
            self.port,
            ssl=True,
        )
        await self.send(f"PASS {normalize_oauth(self.settings.oauth)}")
        await self.send(f"NICK {self.settings.username.lower()}")
        await self.send(f"CAP REQ :{CAPABILITIES}")

        awaiting_pong = False
        while True:
            try:
                raw = await asyncio.wait_for(reader.readline(), self.ping_interval)
            except TimeoutError:
                if awaiting_pong:
                    msg = "Twitch IRC stopped answering keepalive pings"
                    raise AdapterConnectionError(msg) from None
                awaiting_pong = True
                await self.send("PING :tmi.twitch.tv")
                continue
            if not raw:
                msg = "Twitch IRC closed the connection"
                raise AdapterConnectionError(msg)
            awaiting_pong = False
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                await self.handle_line(line)

    async def _close_session(self) -> None:
        writer, self._writer = self._writer, None
        self.joined_channels.clear()
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError, asyncio.CancelledError):
            await writer.wait_closed()

    async def send(self, line: str) -> None:
        if self._writer is None:
            logger.warning("Cannot send to Twitch IRC, no open connection")
            return
        logger.debug("Twitch > %s", "PASS oauth:***" if line.startswith("PASS") else line)
        self._writer.write(f"{line}\r\n".encode())
        await self._writer.drain()

    async def handle_line(self, line: str) -> None:
        try:
            message = parse_irc_line(line)
        except ValueError:
            logger.debug("Skipping unparsable IRC line %r", line)
            return

        match message.command:
            case "PING":
                await self.send(f"PONG :{message.trailing or 'tmi.twitch.tv'}")
            case "001":
                logger.info("Twitch IRC authenticated as %s", self.settings.username)
                for channel in self.settings.channels:
                    await self.send(f"JOIN {normalize_channel(channel)}")
                self._mark_connected()
            case "NOTICE":
                notice = message.trailing
                if any(text in notice for text in AUTH_FAILURE_NOTICES):
                    raise AdapterAuthError(self.name, notice)
                logger.info("Twitch notice: %s", notice)
            case "RECONNECT":
                msg = "Twitch asked the client to reconnect"
                raise AdapterConnectionError(msg)
            case "JOIN" | "PART":
                if message.nick == self.settings.username.lower() and message.params:
                    if message.command == "JOIN":
                        self.joined_channels.add(message.params[0])
                    else:
                        self.joined_channels.discard(message.params[0])
            case "PRIVMSG":
                event = self.build_event(message)
                if event is not None:
                    self.sink.publish_message(event)
            case "USERNOTICE":
                self.sink.publish_message(self.build_notice_event(message))
            case "CLEARMSG":
                target = message.tags.get("target-msg-id")
                if target:
                    self.sink.publish_deletion(self.platform, target)
            case _:
                pass

    def _base_event(self, message: IrcMessage) -> dict[str, Any]:
        tags = message.tags
        channel = message.params[0] if message.params else ""
        login = tags.get("login") or message.nick or ""
        sent_at = tags.get("tmi-sent-ts")
        extras: dict[str, Any] = {}
        if tags.get("color"):
            extras["color"] = tags["color"]
        if tags.get("badges"):
            extras["badges"] = parse_badges(tags["badges"])
        if tags.get("user-id"):
            extras["userId"] = tags["user-id"]
        return {
            "platform": str(self.platform),
            "platformMessageId": tags.get("id") or None,
            "author": tags.get("display-name") or login or "Unknown",
            "timestamp": int(sent_at) if sent_at and sent_at.isdigit() else None,
            "channelId": tags.get("room-id") or channel,
            "channelName": channel,
            "isDM": False,
            "avatarUrl": AVATAR_URL_TEMPLATE.format(login=login) if login else None,
            "extras": extras,
        }

    def build_event(self, message: IrcMessage) -> dict[str, Any] | None:
        """Map a PRIVMSG to an adapter event."""
        if len(message.params) < 2:  # noqa: PLR2004
            return None
        content = message.trailing
        event = self._base_event(message)
        if content.startswith(_ACTION_PREFIX):
            content = content.removeprefix(_ACTION_PREFIX).removesuffix("\x01")
            event["extras"]["action"] = True
        if message.tags.get("emotes"):
            event["extras"]["emotes"] = parse_emotes(message.tags["emotes"])
        parent_author = message.tags.get("reply-parent-display-name")
        if parent_author:
            event["replyTo"] = {
                "author": parent_author,
                "content": message.tags.get("reply-parent-msg-body", ""),
            }
        event["content"] = content
        return event

    def build_notice_event(self, message: IrcMessage) -> dict[str, Any]:
        """Map a USERNOTICE (subs, raids, ...) to a system message."""
        event = self._base_event(message)
        system_text = message.tags.get("system-msg", "")
        user_text = message.trailing if len(message.params) > 1 else ""
        event["content"] = " ".join(part for part in (system_text, user_text) if part)
        event["messageType"] = str(MessageType.SYSTEM)
        if message.tags.get("msg-id"):
            event["extras"]["noticeType"] = message.tags["msg-id"]
        return event
