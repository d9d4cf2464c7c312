"""Per-platform connection state for one session."""

from __future__ import annotations

import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from notifier_hub.core.error_handling import call_listener
from notifier_hub.core.models import (
    ConnectionState,
    ConnectionStatus,
    Platform,
    parse_platform,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ConnectionStore:
    """Connection state of every platform.

    The leader's adapters drive the transitions; followers only `apply`
    states received over the broadcast channel. Applying the same state
    twice is harmless.
    """

    def __init__(self) -> None:
        self._states: dict[Platform, ConnectionState] = {
            platform: ConnectionState() for platform in Platform
        }
        self._listeners: list[Callable[[Platform, ConnectionState], None]] = []

    def get(self, platform: Platform | str) -> ConnectionState:
        return self._states[parse_platform(platform)]

    def snapshot(self) -> dict[Platform, ConnectionState]:
        return dict(self._states)

    def set_connecting(self, platform: Platform | str) -> ConnectionState:
        current = self.get(platform)
        return self.apply(
            platform,
            ConnectionState(
                status=ConnectionStatus.CONNECTING,
                last_connected_at=current.last_connected_at,
            ),
        )

    def set_connected(self, platform: Platform | str) -> ConnectionState:
        return self.apply(
            platform,
            ConnectionState(
                status=ConnectionStatus.CONNECTED,
                last_connected_at=datetime.now(UTC),
            ),
        )

    def set_error(self, platform: Platform | str, reason: str) -> ConnectionState:
        current = self.get(platform)
        return self.apply(
            platform,
            ConnectionState(
                status=ConnectionStatus.ERROR,
                error=reason,
                last_connected_at=current.last_connected_at,
            ),
        )

    def set_disconnected(self, platform: Platform | str) -> ConnectionState:
        current = self.get(platform)
        return self.apply(
            platform,
            ConnectionState(
                status=ConnectionStatus.DISCONNECTED,
                last_connected_at=current.last_connected_at,
            ),
        )

    def apply(self, platform: Platform | str, state: ConnectionState) -> ConnectionState:
        """Replace the state of `platform`, notifying only on real changes."""
        platform = parse_platform(platform)
        if self._states[platform] == state:
            return state
        self._states[platform] = state
        for listener in list(self._listeners):
            call_listener(
                listener,
                platform,
                state,
                logger=logger,
                message="Connection store listener failed",
                context={"platform": str(platform)},
            )
        return state

    def disconnect_all(self) -> None:
        for platform in Platform:
            self.set_disconnected(platform)

    @property
    def is_any_connected(self) -> bool:
        return any(
            state.status is ConnectionStatus.CONNECTED for state in self._states.values()
        )

    @property
    def connected_platforms(self) -> list[Platform]:
        return [
            platform
            for platform, state in self._states.items()
            if state.status is ConnectionStatus.CONNECTED
        ]

    def subscribe(
        self,
        listener: Callable[[Platform, ConnectionState], None],
    ) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe
