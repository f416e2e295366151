"""
Transactional state documents for lifecycle components.

Shadow tests, tracked predictions and the alert log are each a single JSON
document. Components never read-modify-write those documents by hand; they go
through a StateStore, which guarantees readers observe either the previous or
the new committed state.

Backends:
- JsonFileStateStore: one JSON file, fcntl lock + temp file/rename
- DuckDBStateStore: one row in a DuckDB ``state_documents`` table
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import duckdb

from libs.common.exceptions import StorageError
from libs.model_lifecycle.serialization import atomic_write_json

logger = logging.getLogger(__name__)

State = dict[str, Any]


class StateStore(Protocol):
    """Minimal transactional document store."""

    def load(self) -> State:
        """Return a copy of the last committed state."""
        ...

    def commit_atomic(self, state: State) -> None:
        """Replace the committed state in one step."""
        ...

    def transaction(self) -> Any:
        """Context manager yielding a mutable state committed on clean exit."""
        ...


@contextmanager
def _flock(lock_path: Path, *, exclusive: bool) -> Iterator[None]:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(lock_path, "a+")
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        yield
    finally:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        lock_file.close()


class JsonFileStateStore:
    """State document kept in a single JSON file.

    A sibling ``.<name>.lock`` file serializes writers across threads and
    processes; readers take a shared lock.
    """

    def __init__(self, path: Path, default_factory: Callable[[], State] = dict) -> None:
        self.path = Path(path)
        self._default_factory = default_factory
        self._lock_path = self.path.parent / f".{self.path.name}.lock"

    def _read(self) -> State:
        if not self.path.exists():
            return self._default_factory()
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"State file {self.path} does not contain an object")
        return data

    def load(self) -> State:
        with _flock(self._lock_path, exclusive=False):
            return self._read()

    def commit_atomic(self, state: State) -> None:
        with _flock(self._lock_path, exclusive=True):
            atomic_write_json(self.path, state)

    @contextmanager
    def transaction(self) -> Iterator[State]:
        """Hold the writer lock across read, modify and commit.

        Nothing is written if the body raises.
        """
        with _flock(self._lock_path, exclusive=True):
            state = self._read()
            yield state
            atomic_write_json(self.path, state)


STATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS state_documents (
    key VARCHAR PRIMARY KEY,
    body VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);
"""


class DuckDBStateStore:
    """State document kept as one row of a DuckDB table.

    Several documents (one per ``key``) can share a database file.
    """

    def __init__(
        self,
        db_path: Path,
        key: str,
        default_factory: Callable[[], State] = dict,
    ) -> None:
        self.db_path = Path(db_path)
        self.key = key
        self._default_factory = default_factory
        self._lock_path = self.db_path.parent / f".{self.db_path.name}.lock"
        with _flock(self._lock_path, exclusive=True):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(str(self.db_path))
            try:
                conn.execute(STATE_SCHEMA_SQL)
            finally:
                conn.close()

    def _read(self, conn: duckdb.DuckDBPyConnection) -> State:
        row = conn.execute(
            "SELECT body FROM state_documents WHERE key = ?", [self.key]
        ).fetchone()
        if row is None:
            return self._default_factory()
        return json.loads(row[0])

    def _write(self, conn: duckdb.DuckDBPyConnection, state: State) -> None:
        conn.execute(
            """
            INSERT INTO state_documents (key, body, updated_at) VALUES (?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET body = excluded.body, updated_at = excluded.updated_at
            """,
            [self.key, json.dumps(state, default=str), datetime.now(UTC).isoformat()],
        )

    def load(self) -> State:
        with _flock(self._lock_path, exclusive=False):
            conn = duckdb.connect(str(self.db_path), read_only=True)
            try:
                return self._read(conn)
            finally:
                conn.close()

    def commit_atomic(self, state: State) -> None:
        with self.transaction() as current:
            current.clear()
            current.update(copy.deepcopy(state))

    @contextmanager
    def transaction(self) -> Iterator[State]:
        with _flock(self._lock_path, exclusive=True):
            conn = duckdb.connect(str(self.db_path))
            try:
                conn.execute("BEGIN TRANSACTION")
                try:
                    state = self._read(conn)
                    yield state
                    self._write(conn, state)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except duckdb.Error as e:
                raise StorageError(f"State transaction failed for {self.key}: {e}") from e
            finally:
                conn.close()
