"""Leader election between hub sessions sharing one storage slot.

Exactly one session should run the platform network loops. Sessions agree on
who that is through a LeaderRecord kept in shared storage and a
heartbeat/expiry protocol:

* the leader renews ``lastHeartbeat`` every half heartbeat interval;
* followers check every heartbeat interval, and whenever the storage reports
  a change to the slot;
* a record older than ``timeout`` belongs to a dead leader and may be taken
  over; one older than ``stale_after`` is cleared outright first.

Without an atomic storage primitive, a takeover writes the record, waits a
short confirm delay and re-reads it; whoever's record survives wins. Two
sessions can still both believe they lead for up to one check cycle when
their writes interleave badly. Storages implementing `compare_and_set`
close that window, and are used that way automatically.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from enum import StrEnum
from typing import TYPE_CHECKING, cast

from notifier_hub.coordination.storage import AtomicSharedStorage, SharedStorage
from notifier_hub.core.config.settings import ElectionSettings, generate_session_id
from notifier_hub.core.error_handling import call_listener
from notifier_hub.core.exceptions import SharedStorageError
from notifier_hub.core.models import LeaderRecord

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ElectionState(StrEnum):
    FOLLOWER = "follower"
    ATTEMPTING = "attempting"
    LEADER = "leader"


def _owner_of(raw: str | None) -> str | None:
    if raw is None:
        return None
    try:
        return LeaderRecord.from_json(raw).owner_id
    except ValueError:
        return None


class LeaderElection:
    """Heartbeat-based leader election for one session.

    Instances are independent: construct one per session and pass it where it
    is needed. `check()` runs a single election cycle and is what the
    background task calls; tests drive it directly with a fake clock.
    """

    def __init__(
        self,
        storage: SharedStorage,
        *,
        settings: ElectionSettings | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        """Prepare an election; nothing happens until `start()`."""
        self._storage = storage
        self.settings = settings or ElectionSettings()
        self.session_id = session_id or generate_session_id()
        self._clock = clock
        self._rng = rng or random.Random()  # noqa: S311
        self._state = ElectionState.FOLLOWER
        self._on_change: Callable[[bool], None] | None = None
        self._task: asyncio.Task[None] | None = None
        self._wakeup: asyncio.Event | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False
        self._stopped = False

    @property
    def state(self) -> ElectionState:
        return self._state

    @property
    def is_leader(self) -> bool:
        """Current belief, refreshed every check cycle."""
        return self._state is ElectionState.LEADER

    @property
    def _atomic(self) -> bool:
        return isinstance(self._storage, AtomicSharedStorage)

    def _compare_and_set(self, expected: str | None, value: str | None) -> bool:
        storage = cast("AtomicSharedStorage", self._storage)
        return storage.compare_and_set(self.settings.key, expected, value)

    def start(self, on_change: Callable[[bool], None]) -> None:
        """Begin participating; `on_change(is_leader)` fires on every flip.

        Must be called from a running event loop. Later calls are ignored.
        """
        if self._started:
            logger.warning(
                "Leader election already started for session %s",
                self.session_id,
            )
            return
        self._started = True
        self._on_change = on_change
        self._wakeup = asyncio.Event()
        self._unsubscribe = self._storage.subscribe(self._on_storage_change)
        self._task = asyncio.create_task(
            self._run(),
            name=f"leader-election-{self.session_id}",
        )

    async def stop(self) -> None:
        """Leave the election, releasing leadership immediately if held.

        Safe to call multiple times, and before `start()`.
        """
        if self._stopped:
            return
        self._stopped = True

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        try:
            raw = self._storage.get_item(self.settings.key)
            if _owner_of(raw) == self.session_id:
                if self._atomic:
                    self._compare_and_set(raw, None)
                else:
                    self._storage.remove_item(self.settings.key)
                logger.info("Session %s released leadership", self.session_id)
        except SharedStorageError as exc:
            logger.warning(
                "Could not release leader record for %s: %s",
                self.session_id,
                exc,
            )

        self._set_state(ElectionState.FOLLOWER)

    async def _run(self) -> None:
        jitter = self._rng.uniform(0, self.settings.max_start_jitter)
        if jitter > 0:
            await asyncio.sleep(jitter)

        wakeup = self._wakeup
        assert wakeup is not None  # noqa: S101
        while True:
            wakeup.clear()
            await self.check()
            interval = (
                self.settings.heartbeat_interval / 2
                if self.is_leader
                else self.settings.heartbeat_interval
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(wakeup.wait(), timeout=interval)

    def _on_storage_change(self, key: str, value: str | None) -> None:
        if key != self.settings.key or self._wakeup is None:
            return
        if value is not None and _owner_of(value) == self.session_id:
            return
        self._wakeup.set()

    async def check(self) -> bool:
        """Run one election cycle and return whether this session leads."""
        now = self._clock()
        try:
            raw = self._storage.get_item(self.settings.key)
        except SharedStorageError as exc:
            logger.warning("Leader record unreadable, keeping current role: %s", exc)
            return self.is_leader
        record = self._parse(raw)

        if record is not None and record.owner_id == self.session_id:
            self._renew(raw, record, now)
        elif record is None or record.age(now) > self.settings.timeout:
            if raw is not None and (
                record is None or record.age(now) > self.settings.stale_after
            ):
                if record is not None:
                    logger.info(
                        "Clearing leader record of %s, silent for %.1fs",
                        record.owner_id,
                        record.age(now),
                    )
                if not self._clear(raw):
                    # Another writer changed the slot first; judge their record
                    # on a fresh read instead of claiming over it
                    self._yield_cycle()
                    return self.is_leader
                raw = None
            await self._attempt_takeover(raw, now)
        elif self.is_leader:
            logger.info(
                "Session %s was superseded by %s",
                self.session_id,
                record.owner_id,
            )
            self._set_state(ElectionState.FOLLOWER)

        return self.is_leader

    @staticmethod
    def _parse(raw: str | None) -> LeaderRecord | None:
        if raw is None:
            return None
        try:
            return LeaderRecord.from_json(raw)
        except ValueError as exc:
            logger.warning("Discarding corrupt leader record: %s", exc)
            return None

    def _clear(self, raw: str) -> bool:
        """Remove the slot if it still holds `raw`; return whether it did."""
        try:
            if self._atomic:
                return self._compare_and_set(raw, None)
            self._storage.remove_item(self.settings.key)
        except SharedStorageError as exc:
            logger.warning("Could not clear leader record: %s", exc)
            return False
        return True

    def _yield_cycle(self) -> None:
        self._set_state(ElectionState.FOLLOWER)
        if self._wakeup is not None:
            self._wakeup.set()

    async def _attempt_takeover(self, expected: str | None, now: float) -> None:
        if not self.is_leader:
            self._set_state(ElectionState.ATTEMPTING)
        payload = LeaderRecord(
            owner_id=self.session_id,
            last_heartbeat=now,
            elected_at=now,
        ).to_json()

        try:
            if self._atomic:
                claimed = self._compare_and_set(expected, payload)
            else:
                self._storage.set_item(self.settings.key, payload)
                if self.settings.confirm_delay > 0:
                    await asyncio.sleep(self.settings.confirm_delay)
                claimed = (
                    _owner_of(self._storage.get_item(self.settings.key))
                    == self.session_id
                )
        except SharedStorageError as exc:
            logger.warning(
                "Session %s could not claim leadership this cycle: %s",
                self.session_id,
                exc,
            )
            claimed = False

        self._set_state(ElectionState.LEADER if claimed else ElectionState.FOLLOWER)

    def _renew(self, raw: str | None, record: LeaderRecord, now: float) -> None:
        payload = record.renewed(now).to_json()
        try:
            if self._atomic:
                if not self._compare_and_set(raw, payload):
                    logger.info(
                        "Heartbeat of %s raced with another writer",
                        self.session_id,
                    )
                    self._set_state(ElectionState.FOLLOWER)
                    if self._wakeup is not None:
                        self._wakeup.set()
                    return
            else:
                self._storage.set_item(self.settings.key, payload)
        except SharedStorageError as exc:
            logger.warning("Heartbeat renewal failed for %s: %s", self.session_id, exc)
            return
        self._set_state(ElectionState.LEADER)

    def _set_state(self, state: ElectionState) -> None:
        was_leader = self.is_leader
        self._state = state
        if was_leader == self.is_leader:
            return
        if self.is_leader:
            logger.info("Session %s is now the leader", self.session_id)
        else:
            logger.info("Session %s is no longer the leader", self.session_id)
        if self._on_change is not None:
            call_listener(
                self._on_change,
                self.is_leader,
                logger=logger,
                message="Leadership change callback failed",
                context={"session_id": self.session_id},
            )
