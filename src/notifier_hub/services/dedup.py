"""Relay-echo suppression.

Third-party bridge bots copy messages between platforms, usually with a
prefix such as ``[Telegram] alice: ``. When both the original and the copy
reach the hub, the copy is dropped: after stripping known relay prefixes the
two contents match (case-insensitively) and they arrived within a few
seconds of each other on different platforms.

The prefix vocabulary is a table of regular expressions (see
``RELAY_PREFIX_PATTERNS`` and ``dedup.prefix_patterns`` in config.yaml), not
logic, so new bridge formats only need a new table entry.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from notifier_hub.core.config.constants import (
    RELAY_HISTORY_SIZE,
    RELAY_PREFIX_PATTERNS,
    RELAY_WINDOW_SECONDS,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from notifier_hub.core.config.settings import DedupSettings
    from notifier_hub.core.models import Message

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
# Bound on prefix layers stripped from one message (bridges can chain).
MAX_PREFIX_PASSES = 8


def compile_prefix_patterns(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    """Compile a prefix table, skipping (and logging) invalid entries."""
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            logger.warning("Ignoring invalid relay prefix pattern %r: %s", pattern, exc)
    return tuple(compiled)


class RelaySuppressor:
    """Decides whether an incoming message is a relay echo of a recent one."""

    def __init__(
        self,
        *,
        patterns: Iterable[str] = RELAY_PREFIX_PATTERNS,
        window_seconds: float = RELAY_WINDOW_SECONDS,
        history_size: int = RELAY_HISTORY_SIZE,
    ) -> None:
        """Build a suppressor from a prefix table and a time window."""
        self._patterns = compile_prefix_patterns(patterns)
        self.window_seconds = window_seconds
        self.history_size = history_size

    @classmethod
    def from_settings(cls, settings: DedupSettings) -> RelaySuppressor:
        return cls(
            patterns=settings.prefix_patterns,
            window_seconds=settings.window_seconds,
            history_size=settings.history_size,
        )

    def normalize(self, content: str) -> str:
        """Strip relay prefixes and fold case and whitespace."""
        text = content.strip()
        for _ in range(MAX_PREFIX_PASSES):
            # Earlier table entries take precedence over later, looser ones
            for pattern in self._patterns:
                stripped = pattern.sub("", text, count=1).lstrip()
                if stripped != text:
                    text = stripped
                    break
            else:
                break
        return _WHITESPACE_RE.sub(" ", text).strip().casefold()

    def find_echo(
        self,
        candidate: Message,
        history: Sequence[Message],
    ) -> Message | None:
        """Return the message `candidate` echoes, or None.

        Only the newest `history_size` entries of `history` (oldest first)
        are considered, and only those from another platform.
        """
        normalized = self.normalize(candidate.content)
        if not normalized:
            return None
        for previous in reversed(history[-self.history_size :]):
            if previous.platform == candidate.platform:
                continue
            delta = abs((candidate.timestamp - previous.timestamp).total_seconds())
            if delta >= self.window_seconds:
                continue
            if self.normalize(previous.content) == normalized:
                return previous
        return None

    def is_echo(self, candidate: Message, history: Sequence[Message]) -> bool:
        return self.find_echo(candidate, history) is not None
