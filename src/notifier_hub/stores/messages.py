"""Bounded in-memory message log for one session."""

from __future__ import annotations

import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from notifier_hub.core.config.constants import MAX_MESSAGES
from notifier_hub.core.error_handling import call_listener
from notifier_hub.core.models import Message, Platform, parse_platform

if TYPE_CHECKING:
    from collections.abc import Callable

    from notifier_hub.services.dedup import RelaySuppressor

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MessageFilter:
    """Which messages the filtered view shows. The default shows all."""

    platform: Platform | None = None
    channel_id: str | None = None
    dm_only: bool = False
    unread_only: bool = False

    @classmethod
    def coerce(cls, value: MessageFilter | Platform | str | None) -> MessageFilter:
        """Accept a filter, a platform, or ``"all"``/None for everything."""
        if isinstance(value, MessageFilter):
            return value
        if value is None or value == "all":
            return cls()
        return cls(platform=parse_platform(value))

    def matches(self, message: Message) -> bool:
        if self.platform is not None and message.platform != self.platform:
            return False
        if self.channel_id is not None and message.channel_id != self.channel_id:
            return False
        if self.dm_only and not message.is_dm:
            return False
        return not (self.unread_only and message.is_read)


@dataclass(frozen=True, slots=True)
class UnreadCounts:
    total: int = 0
    by_platform: dict[Platform, int] = field(default_factory=dict)

    def __getitem__(self, platform: Platform | str) -> int:
        return self.by_platform.get(parse_platform(platform), 0)


class MessageStore:
    """Most recent messages of the unified feed, oldest first.

    Every insertion passes through two gates: the same message (by id, or by
    platform and platform message id) is only stored once, and relay echoes
    are dropped by the suppressor. Past `capacity`, the oldest message is
    evicted.
    """

    def __init__(
        self,
        *,
        capacity: int = MAX_MESSAGES,
        suppressor: RelaySuppressor | None = None,
    ) -> None:
        """Create an empty store."""
        self.capacity = capacity
        self._suppressor = suppressor
        self._messages: deque[Message] = deque(maxlen=capacity)
        self._filter = MessageFilter()
        self._listeners: list[Callable[[MessageStore], None]] = []

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def filter(self) -> MessageFilter:
        return self._filter

    def get(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def find(self, platform: Platform | str, platform_message_id: str) -> Message | None:
        """Look up a message by its platform-scoped id."""
        platform = parse_platform(platform)
        for message in self._messages:
            if (
                message.platform == platform
                and message.platform_message_id == platform_message_id
            ):
                return message
        return None

    def contains(self, message: Message) -> bool:
        if self.get(message.id) is not None:
            return True
        return bool(
            message.platform_message_id
            and self.find(message.platform, message.platform_message_id),
        )

    def append(self, message: Message) -> bool:
        """Insert `message`; return False if it was a repeat or a relay echo."""
        if self.contains(message):
            logger.debug("Ignoring repeat of message %s", message.id)
            return False
        if self._suppressor is not None:
            original = self._suppressor.find_echo(message, list(self._messages))
            if original is not None:
                logger.info(
                    "Suppressed relay echo %s on %s of %s on %s",
                    message.id,
                    message.platform,
                    original.id,
                    original.platform,
                )
                return False
        self._messages.append(message)
        self._notify()
        return True

    def mark_read(self, message_id: str) -> bool:
        message = self.get(message_id)
        if message is None or message.is_read:
            return False
        message.is_read = True
        self._notify()
        return True

    def mark_all_read(self, platform: Platform | str | None = None) -> int:
        """Mark every message (optionally of one platform) read; return how many."""
        target = None if platform is None else parse_platform(platform)
        changed = 0
        for message in self._messages:
            if message.is_read or (target is not None and message.platform != target):
                continue
            message.is_read = True
            changed += 1
        if changed:
            self._notify()
        return changed

    def delete(self, platform: Platform | str, platform_message_id: str) -> bool:
        """Remove the message with this platform-scoped id.

        Platform message ids are only unique within a platform, so the lookup
        is scoped by platform first. A missing message is logged and ignored.
        """
        message = self.find(platform, platform_message_id)
        if message is None:
            logger.info(
                "No %s message with id %s to delete",
                platform,
                platform_message_id,
            )
            return False
        self._messages.remove(message)
        self._notify()
        return True

    def update_content(
        self,
        platform: Platform | str,
        platform_message_id: str,
        content: str,
    ) -> bool:
        """Replace the content of an edited message."""
        message = self.find(platform, platform_message_id)
        if message is None:
            logger.debug(
                "No %s message with id %s to update",
                platform,
                platform_message_id,
            )
            return False
        if message.content == content:
            return False
        message.content = content
        self._notify()
        return True

    def clear(self, platform: Platform | str | None = None) -> None:
        if platform is None:
            self._messages.clear()
        else:
            target = parse_platform(platform)
            kept = [message for message in self._messages if message.platform != target]
            self._messages = deque(kept, maxlen=self.capacity)
        self._notify()

    def set_filter(self, spec: MessageFilter | Platform | str | None) -> None:
        self._filter = MessageFilter.coerce(spec)
        self._notify()

    def filtered(self) -> list[Message]:
        """Messages matching the current filter, oldest first."""
        return [message for message in self._messages if self._filter.matches(message)]

    def unread_counts(self) -> UnreadCounts:
        counts = dict.fromkeys(Platform, 0)
        for message in self._messages:
            if not message.is_read:
                counts[message.platform] += 1
        return UnreadCounts(total=sum(counts.values()), by_platform=counts)

    def subscribe(self, listener: Callable[[MessageStore], None]) -> Callable[[], None]:
        """Call `listener(store)` now and after every change."""
        self._listeners.append(listener)
        call_listener(
            listener,
            self,
            logger=logger,
            message="Message store listener failed",
        )

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            call_listener(
                listener,
                self,
                logger=logger,
                message="Message store listener failed",
            )
