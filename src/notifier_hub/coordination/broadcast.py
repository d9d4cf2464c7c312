"""Best-effort publish/subscribe between hub sessions on one machine.

Messages travel as JSON envelopes ``{"topic": ..., "payload": ...}`` over a
transport. Delivery is at-most-once, never back to the sender, and unordered
across topics. Without a usable transport the channel silently does nothing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, Self

from notifier_hub.core.config.constants import MAX_DATAGRAM_BYTES
from notifier_hub.core.error_handling import call_listener

if TYPE_CHECKING:
    from collections.abc import Callable

    from notifier_hub.core.config.settings import BroadcastSettings

logger = logging.getLogger(__name__)


class BroadcastTransport(Protocol):
    """Moves opaque datagrams to every other session on the channel."""

    def post(self, data: bytes) -> None: ...
    def set_receiver(self, receiver: Callable[[bytes], None] | None) -> None: ...
    def close(self) -> None: ...


class LocalBroadcastHub:
    """In-process transport factory.

    Transports opened from one hub under the same name reach each other, the
    way tabs of one browser profile share a named channel. Delivery is
    scheduled on the event loop, never run inline.
    """

    def __init__(self) -> None:
        self._members: dict[str, list[LocalTransport]] = {}

    def open(self, name: str) -> LocalTransport:
        transport = LocalTransport(self, name)
        self._members.setdefault(name, []).append(transport)
        return transport

    def _peers(self, transport: LocalTransport) -> list[LocalTransport]:
        return [
            member
            for member in self._members.get(transport.name, [])
            if member is not transport
        ]

    def _leave(self, transport: LocalTransport) -> None:
        members = self._members.get(transport.name, [])
        if transport in members:
            members.remove(transport)


class LocalTransport:
    """One session's end of a `LocalBroadcastHub` channel.

    While `suspended` is set, incoming datagrams are dropped, like a
    throttled background tab missing broadcasts.
    """

    def __init__(self, hub: LocalBroadcastHub, name: str) -> None:
        self._hub = hub
        self.name = name
        self._receiver: Callable[[bytes], None] | None = None
        self._closed = False
        self.suspended = False

    def post(self, data: bytes) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        for peer in self._hub._peers(self):  # noqa: SLF001
            loop.call_soon(peer._deliver, data)  # noqa: SLF001

    def _deliver(self, data: bytes) -> None:
        if self._closed or self.suspended or self._receiver is None:
            return
        self._receiver(data)

    def set_receiver(self, receiver: Callable[[bytes], None] | None) -> None:
        self._receiver = receiver

    def close(self) -> None:
        self._closed = True
        self._receiver = None
        self._hub._leave(self)  # noqa: SLF001


class UnixDatagramTransport:
    """Cross-process transport built on Unix datagram sockets.

    Every session binds ``<socket_dir>/<channel>/<session_id>.sock``; posting
    sends the datagram to every other socket file in that directory. Socket
    files left behind by crashed sessions are removed when a send to them is
    refused.
    """

    def __init__(self, channel_dir: Path, own_path: Path, sock: socket.socket) -> None:
        self._channel_dir = channel_dir
        self._own_path = own_path
        self._sock = sock
        self._receiver: Callable[[bytes], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        name: str,
        socket_dir: str | Path,
        session_id: str,
    ) -> Self | None:
        """Bind this session's socket, or return None if the OS lacks support."""
        if not hasattr(socket, "AF_UNIX"):
            return None
        channel_dir = Path(socket_dir) / name
        own_path = channel_dir / f"{session_id}.sock"
        try:
            channel_dir.mkdir(parents=True, exist_ok=True)
            own_path.unlink(missing_ok=True)
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        except OSError as exc:
            logger.warning("Broadcast transport unavailable: %s", exc)
            return None
        try:
            sock.bind(str(own_path))
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            logger.warning("Broadcast transport unavailable: %s", exc)
            return None

        transport = cls(channel_dir, own_path, sock)
        loop = asyncio.get_running_loop()
        try:
            loop.add_reader(sock.fileno(), transport._on_readable)  # noqa: SLF001
        except NotImplementedError:
            transport.close()
            logger.warning("Event loop cannot watch Unix sockets; broadcast disabled")
            return None
        transport._loop = loop  # noqa: SLF001
        return transport

    def _on_readable(self) -> None:
        while not self._closed:
            try:
                data = self._sock.recv(MAX_DATAGRAM_BYTES)
            except BlockingIOError:
                return
            except OSError as exc:
                logger.debug("Broadcast receive failed: %s", exc)
                return
            if self._receiver is not None:
                self._receiver(data)

    def post(self, data: bytes) -> None:
        if self._closed:
            return
        if len(data) > MAX_DATAGRAM_BYTES:
            logger.warning(
                "Dropping broadcast of %d bytes (limit %d)",
                len(data),
                MAX_DATAGRAM_BYTES,
            )
            return
        for peer in self._channel_dir.glob("*.sock"):
            if peer == self._own_path:
                continue
            try:
                self._sock.sendto(data, str(peer))
            except ConnectionRefusedError:
                logger.debug("Removing stale broadcast socket %s", peer.name)
                peer.unlink(missing_ok=True)
            except FileNotFoundError:
                continue
            except OSError as exc:
                # Full receive buffers and similar: the peer misses this one.
                logger.debug("Broadcast to %s dropped: %s", peer.name, exc)

    def set_receiver(self, receiver: Callable[[bytes], None] | None) -> None:
        self._receiver = receiver

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._receiver = None
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(self._sock.fileno())
        self._sock.close()
        self._own_path.unlink(missing_ok=True)


class BroadcastChannel:
    """Topic-multiplexed channel with one handler per topic.

    Registering a second handler for a topic replaces the first.
    """

    def __init__(self, transport: BroadcastTransport | None = None) -> None:
        """Wrap `transport`; with None the channel is a silent no-op."""
        self._transport = transport
        self._handlers: dict[str, Callable[[Any], None]] = {}
        if transport is not None:
            transport.set_receiver(self._receive)

    @property
    def available(self) -> bool:
        """Return True when messages can actually leave this session."""
        return self._transport is not None

    def on(self, topic: str, handler: Callable[[Any], None]) -> None:
        self._handlers[topic] = handler

    def off(self, topic: str) -> None:
        self._handlers.pop(topic, None)

    def send(self, topic: str, payload: Any) -> None:
        """Publish `payload` (must be JSON-serializable) to other sessions."""
        if self._transport is None:
            return
        data = json.dumps(
            {"topic": topic, "payload": payload},
            ensure_ascii=False,
            separators=(",", ":"),
        ).encode("utf-8")
        self._transport.post(data)

    def _receive(self, data: bytes) -> None:
        try:
            envelope = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Ignoring malformed broadcast datagram")
            return
        if not isinstance(envelope, dict):
            return
        topic = envelope.get("topic")
        if not isinstance(topic, str):
            return
        handler = self._handlers.get(topic)
        if handler is None:
            return
        call_listener(
            handler,
            envelope.get("payload"),
            logger=logger,
            message="Broadcast handler failed",
            context={"topic": topic},
        )

    def close(self) -> None:
        """Stop receiving and release the transport; idempotent."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._handlers.clear()


async def open_broadcast_channel(
    settings: BroadcastSettings,
    session_id: str,
) -> BroadcastChannel:
    """Open the cross-process channel, degrading to a no-op channel."""
    transport = await UnixDatagramTransport.open(
        settings.name,
        settings.socket_dir,
        session_id,
    )
    if transport is None:
        logger.info("Running without cross-session broadcast")
    return BroadcastChannel(transport)
