"""Shared reconnect loop for long-lived platform sessions."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from notifier_hub.core.config.constants import (
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_MAX_DELAY_SECONDS,
    RECONNECT_STEP_SECONDS,
)
from notifier_hub.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from notifier_hub.core.exceptions import AdapterAuthError, AdapterConnectionError
from notifier_hub.core.models import ConnectionStatus, Platform

if TYPE_CHECKING:
    from collections.abc import Mapping

    from notifier_hub.core.models import Message

logger = logging.getLogger(__name__)

SESSION_EXCEPTIONS = (AdapterConnectionError, *COMMON_HANDLER_EXCEPTIONS)


class EventSink(Protocol):
    """Where adapters deliver what they observe (the hub, in practice)."""

    def publish_message(self, event: Mapping[str, Any]) -> Message | None: ...
    def publish_deletion(
        self,
        platform: Platform | str,
        platform_message_id: str,
    ) -> bool: ...
    def publish_update(
        self,
        platform: Platform | str,
        platform_message_id: str,
        content: str,
    ) -> bool: ...
    def publish_status(
        self,
        platform: Platform | str,
        status: ConnectionStatus,
        error: str | None = None,
    ) -> None: ...


class ReconnectingService(abc.ABC):
    """Runs `_session()` in a background task, reconnecting on failure.

    Retries back off linearly (``attempt * step`` seconds, capped) and give up
    after `max_attempts` consecutive failures. A session that reached
    `_mark_connected()` resets the attempt counter. `AdapterAuthError` is
    permanent and ends the loop immediately.
    """

    name: ClassVar[str] = "service"

    def __init__(
        self,
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_step: float = RECONNECT_STEP_SECONDS,
        max_reconnect_delay: float = RECONNECT_MAX_DELAY_SECONDS,
    ) -> None:
        """Configure the reconnect policy."""
        self.max_attempts = max_attempts
        self.reconnect_step = reconnect_step
        self.max_reconnect_delay = max_reconnect_delay
        self._task: asyncio.Task[None] | None = None
        self._attempts = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def connect(self) -> None:
        """Start the session loop unless it is already running."""
        if self.running:
            return
        self._attempts = 0
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-session")

    async def disconnect(self) -> None:
        """Stop the loop and close the session; safe to call repeatedly."""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_session()
        self._report(ConnectionStatus.DISCONNECTED)

    async def _run(self) -> None:
        while True:
            self._report(ConnectionStatus.CONNECTING)
            try:
                await self._session()
            except AdapterAuthError as exc:
                logger.error("%s rejected the credentials: %s", self.name, exc.reason)  # noqa: TRY400
                self._report(ConnectionStatus.ERROR, exc.reason)
                await self._close_session()
                return
            except SESSION_EXCEPTIONS as exc:
                log_exception(
                    logger=logger,
                    message=f"{self.name} session failed",
                    error=exc,
                    context={"attempt": self._attempts + 1},
                )
                self._report(ConnectionStatus.ERROR, str(exc) or type(exc).__name__)
            await self._close_session()

            self._attempts += 1
            if self._attempts > self.max_attempts:
                logger.warning(
                    "%s giving up after %d reconnect attempts",
                    self.name,
                    self.max_attempts,
                )
                self._report(ConnectionStatus.DISCONNECTED)
                return
            delay = min(self._attempts * self.reconnect_step, self.max_reconnect_delay)
            logger.info(
                "Reconnecting %s in %.1fs (attempt %d/%d)",
                self.name,
                delay,
                self._attempts,
                self.max_attempts,
            )
            await asyncio.sleep(delay)

    def _mark_connected(self) -> None:
        self._attempts = 0
        self._report(ConnectionStatus.CONNECTED)

    @abc.abstractmethod
    async def _session(self) -> None:
        """Run one connection until it fails; raise to trigger a reconnect."""

    async def _close_session(self) -> None:  # noqa: B027
        """Release per-connection resources."""

    @abc.abstractmethod
    def _report(self, status: ConnectionStatus, error: str | None = None) -> None:
        """Surface a lifecycle transition."""


class PlatformAdapter(ReconnectingService):
    """A reconnecting session that feeds one platform's events to a sink."""

    platform: ClassVar[Platform]

    def __init__(self, sink: EventSink, **kwargs: Any) -> None:
        """Bind the adapter to its sink."""
        super().__init__(**kwargs)
        self.sink = sink

    def _report(self, status: ConnectionStatus, error: str | None = None) -> None:
        self.sink.publish_status(self.platform, status, error)
