from __future__ import annotations

import random
from collections.abc import Iterator

import pytest

from notifier_hub.coordination.broadcast import LocalBroadcastHub
from notifier_hub.coordination.storage import MemoryStorage
from notifier_hub.core.config import clear_config_cache
from notifier_hub.core.config.settings import ElectionSettings

from ._fakes import FakeClock, RecordingSink


@pytest.fixture(autouse=True)
def _fresh_config_cache() -> Iterator[None]:
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def broadcast_hub() -> LocalBroadcastHub:
    return LocalBroadcastHub()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)  # noqa: S311


@pytest.fixture
def fast_election() -> ElectionSettings:
    """Protocol timings shrunk so background loops settle within a test."""
    return ElectionSettings(
        heartbeat_interval=0.05,
        max_start_jitter=0.0,
        confirm_delay=0.01,
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
