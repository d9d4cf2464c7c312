"""Shared key/value slots visible to every hub session.

Two backends are provided:

* `MemoryStorage` keeps values in a dict. Sessions that share one instance
  behave like browser tabs sharing one profile; it is what the tests use.
* `LibsqlStorage` keeps values in a libsql (SQLite) file, so separate
  processes on one machine see the same slots. Its single-statement updates
  are atomic, which lets the election use compare-and-set instead of the
  optimistic write-then-confirm fallback.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import libsql as libsql_module

from notifier_hub.core.error_handling import call_listener
from notifier_hub.core.exceptions import SharedStorageError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)
libsql: Any = libsql_module
LibsqlConnection = Any

LIBSQL_ERROR: type[BaseException] = getattr(
    libsql,
    "LibsqlError",
    getattr(libsql, "Error", Exception),
)


@runtime_checkable
class SharedStorage(Protocol):
    """Persistent key/value slots shared between sessions.

    Every method may raise `SharedStorageError`.
    """

    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...
    def subscribe(
        self,
        listener: Callable[[str, str | None], None],
    ) -> Callable[[], None]: ...


@runtime_checkable
class AtomicSharedStorage(SharedStorage, Protocol):
    """Storage that can replace a value only if it still holds `expected`."""

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str | None,
    ) -> bool: ...


class _ListenerRegistry:
    """Change listeners, notified after every successful write."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[str, str | None], None]] = []

    def subscribe(
        self,
        listener: Callable[[str, str | None], None],
    ) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, key: str, value: str | None) -> None:
        for listener in list(self._listeners):
            call_listener(
                listener,
                key,
                value,
                logger=logger,
                message="Storage change listener failed",
                context={"key": key},
            )


class MemoryStorage:
    """In-process shared storage.

    Deliberately offers no compare-and-set, so sessions sharing it exercise
    the optimistic claim path exactly like browser local storage would.
    Setting `fail_writes` simulates an unavailable or full storage.
    """

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._listeners = _ListenerRegistry()
        self.fail_writes = False

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.fail_writes:
            message = "Storage quota exceeded"
            raise SharedStorageError(message)
        self._items[key] = value
        self._listeners.notify(key, value)

    def remove_item(self, key: str) -> None:
        if self.fail_writes:
            message = "Storage unavailable"
            raise SharedStorageError(message)
        if self._items.pop(key, None) is not None:
            self._listeners.notify(key, None)

    def subscribe(
        self,
        listener: Callable[[str, str | None], None],
    ) -> Callable[[], None]:
        return self._listeners.subscribe(listener)


class LibsqlStorage:
    """File-backed shared storage on top of libsql.

    Change notifications only reach listeners of this instance; other
    processes notice changes on their next periodic check.
    """

    def __init__(self, path: str = "notifier-hub.db") -> None:
        """Open (or create) the storage file at `path`."""
        self.path = path
        self._conn: LibsqlConnection | None = None
        self._listeners = _ListenerRegistry()

    def _get_connection(self) -> LibsqlConnection:
        if self._conn is None:
            try:
                conn = libsql.connect(self.path)
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS shared_slots (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                    """,
                )
                conn.commit()
            except (ValueError, LIBSQL_ERROR) as exc:
                message = f"Cannot open shared storage at {self.path}"
                raise SharedStorageError(message) from exc
            self._conn = conn
        return self._conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> Any:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params)
        except (ValueError, LIBSQL_ERROR) as exc:
            message = f"Shared storage query failed: {exc}"
            raise SharedStorageError(message) from exc

    def _commit_changes(self) -> int:
        """Commit and return how many rows the last statement touched."""
        row = self._execute("SELECT changes()").fetchone()
        try:
            self._get_connection().commit()
        except (ValueError, LIBSQL_ERROR) as exc:
            message = f"Shared storage commit failed: {exc}"
            raise SharedStorageError(message) from exc
        return int(row[0]) if row else 0

    def get_item(self, key: str) -> str | None:
        row = self._execute(
            "SELECT value FROM shared_slots WHERE key = ?",
            (key,),
        ).fetchone()
        return None if row is None else str(row[0])

    def set_item(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO shared_slots (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value),
        )
        self._commit_changes()
        self._listeners.notify(key, value)

    def remove_item(self, key: str) -> None:
        self._execute("DELETE FROM shared_slots WHERE key = ?", (key,))
        if self._commit_changes():
            self._listeners.notify(key, None)

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str | None,
    ) -> bool:
        """Atomically replace the slot if it still holds `expected`.

        `expected=None` means "only if absent"; `value=None` deletes.
        """
        if expected is None and value is None:
            return self.get_item(key) is None
        if expected is None:
            self._execute(
                "INSERT OR IGNORE INTO shared_slots (key, value) VALUES (?, ?)",
                (key, value),
            )
        elif value is None:
            self._execute(
                "DELETE FROM shared_slots WHERE key = ? AND value = ?",
                (key, expected),
            )
        else:
            self._execute(
                """
                UPDATE shared_slots
                SET value = ?, updated_at = CURRENT_TIMESTAMP
                WHERE key = ? AND value = ?
                """,
                (value, key, expected),
            )
        swapped = self._commit_changes() > 0
        if swapped:
            self._listeners.notify(key, value)
        return swapped

    def subscribe(
        self,
        listener: Callable[[str, str | None], None],
    ) -> Callable[[], None]:
        return self._listeners.subscribe(listener)

    def close(self) -> None:
        """Close the underlying connection; safe to call multiple times."""
        if self._conn is not None:
            with contextlib.suppress(ValueError, LIBSQL_ERROR):
                self._conn.close()
            self._conn = None
