"""Entrypoint module for running one hub session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TextIO

from notifier_hub.core.config import ConfigFileNotFoundError, get_config, load_settings
from notifier_hub.services.hub import NotifierHub, build_hub

if TYPE_CHECKING:
    from notifier_hub.core.models import ConnectionState, Message, Platform
    from notifier_hub.stores.messages import MessageStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _EntrypointState:
    hub: NotifierHub | None = None


_STATE = _EntrypointState()


def format_message(message: Message) -> str:
    """Render one feed line for the console."""
    stamp = message.timestamp.astimezone().strftime("%H:%M:%S")
    where = message.channel_name or message.channel_id
    line = f"[{stamp}] [{message.platform}] {where} | {message.author}: {message.content}"
    if message.reply_to is not None:
        line = f"{line} (replying to {message.reply_to.author})"
    if message.attachments:
        line = f"{line} [+{len(message.attachments)} attachment(s)]"
    return line


@dataclass(slots=True)
class ConsolePrinter:
    """Store listener printing each message once, as it arrives."""

    stream: TextIO = field(default_factory=lambda: sys.stdout)
    _seen: set[str] = field(default_factory=set)

    def __call__(self, store: MessageStore) -> None:
        current = store.messages
        for message in current:
            if message.id not in self._seen:
                print(format_message(message), file=self.stream, flush=True)  # noqa: T201
        # Forget evicted messages so the set stays bounded
        self._seen = {message.id for message in current}


def _log_connection_change(platform: Platform, state: ConnectionState) -> None:
    if state.error:
        logger.warning("%s is %s: %s", platform, state.status, state.error)
    else:
        logger.info("%s is %s", platform, state.status)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        # Not supported on every platform; Ctrl+C still ends the runner there
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)


async def shutdown() -> None:
    """Best-effort shutdown; erases this session's leader record if held.

    This is safe to call multiple times.
    """
    hub, _STATE.hub = _STATE.hub, None
    if hub is not None:
        with contextlib.suppress(Exception):
            await hub.stop()


async def main(config_filename: str = "config.yaml") -> None:
    """Build the hub from config and run until interrupted."""
    try:
        config = get_config(config_filename)
    except ConfigFileNotFoundError as exc:
        logger.warning("%s; using environment variables only", exc)
        config = {}
    settings = load_settings(config)
    logging.getLogger().setLevel(settings.log_level)

    hub = await build_hub(settings)
    _STATE.hub = hub
    hub.messages.subscribe(ConsolePrinter())
    hub.connections.subscribe(_log_connection_change)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    try:
        await hub.start()
        logger.info("Session %s running; press Ctrl+C to stop", hub.session_id)
        await stop_event.wait()
    finally:
        # Ctrl+C may cancel the main task; shield shutdown so the leader
        # record is released before the loop closes.
        with contextlib.suppress(Exception):
            await asyncio.shield(shutdown())
