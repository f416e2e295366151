"""
DuckDB-backed version store for trained ensembles.

This module provides:
- VersionStore: immutable ensemble versions plus one production pointer
- Copy-on-write production history (promote / rollback entries)
- Retention cleanup that never deletes production or guarded versions
- Per-version performance metrics kept in the catalog

Key design decisions:
- metadata.json sidecar is AUTHORITATIVE for version metadata; its checksum
  is stored in the catalog and verified on every load
- Versions are staged in a hidden directory and renamed into place, so a
  reader never sees a half-copied version
- The production pointer is the newest ``production_history`` row; rows are
  only ever appended, never edited
- Single-writer, multi-reader pattern via fcntl locks around DuckDB
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import secrets
import shutil
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb

from libs.common.exceptions import NoPriorVersionError, StorageError, VersionNotFoundError
from libs.model_lifecycle.manifest import StoreManifestManager
from libs.model_lifecycle.serialization import (
    capture_provenance,
    compute_checksum,
    copy_artifact,
    directory_size,
    load_version_metadata,
    write_version_metadata,
)
from libs.model_lifecycle.types import (
    CleanupResult,
    ModelVersion,
    PointerAction,
    ProductionPointer,
    VersionMetadata,
)

logger = logging.getLogger(__name__)

RetentionGuard = Callable[[], Iterable[str]]

# Caller-supplied metadata keys mapped onto VersionMetadata fields;
# anything else lands in ``extra``.
_METADATA_FIELDS = frozenset(
    {
        "git_commit",
        "git_branch",
        "avg_accuracy",
        "min_accuracy",
        "max_accuracy",
        "member_accuracies",
        "training_duration_seconds",
        "notes",
    }
)
_RESERVED_FIELDS = frozenset({"version_id", "timestamp", "num_models", "extra"})


# =============================================================================
# Schema
# =============================================================================


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS versions (
    version_id VARCHAR PRIMARY KEY,
    created_seq BIGINT NOT NULL,
    path VARCHAR NOT NULL,
    num_models INTEGER NOT NULL,
    metadata_sha256 VARCHAR NOT NULL,
    avg_accuracy DOUBLE,
    created_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS production_history (
    seq BIGINT PRIMARY KEY,
    version_id VARCHAR NOT NULL,
    action VARCHAR NOT NULL,
    changed_at VARCHAR NOT NULL,
    changed_by VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS version_performance (
    version_id VARCHAR PRIMARY KEY,
    metrics_json VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);
"""


def generate_version_id(now: datetime | None = None) -> str:
    """Timestamp-derived id with a random suffix, e.g. ``v20240115_083000_1a2b3c``."""
    now = now or datetime.now(UTC)
    return f"v{now:%Y%m%d_%H%M%S}_{secrets.token_hex(3)}"


def replay_production_stack(history: Sequence[ProductionPointer]) -> list[str]:
    """Rebuild the production stack from the pointer history.

    ``promote`` pushes its version; ``rollback`` pops until its target is on
    top. The last element is the current production version.
    """
    stack: list[str] = []
    for entry in history:
        if entry.action is PointerAction.promote:
            stack.append(entry.version_id)
            continue
        while stack and stack[-1] != entry.version_id:
            stack.pop()
        if not stack:
            stack.append(entry.version_id)
    return stack


def _artifact_index(path: Path) -> int:
    return int(path.name.rsplit("-", 1)[1])


# =============================================================================
# Version Store
# =============================================================================


class VersionStore:
    """Versioned ensemble storage with a single production pointer.

    Directory structure:
        store_dir/
        ├── catalog.db            # DuckDB catalog
        ├── manifest.json         # Pointer mirror / status
        ├── .store.lock
        └── versions/
            ├── v20240115_083000_1a2b3c/
            │   ├── model-1/
            │   ├── model-2/
            │   └── metadata.json
            └── ...
    """

    def __init__(
        self,
        store_dir: Path,
        *,
        provenance_provider: Callable[[], Mapping[str, Any]] | None = capture_provenance,
    ) -> None:
        """Initialize store.

        Args:
            store_dir: Root directory of the store (created if missing).
            provenance_provider: Callable returning git/environment provenance
                merged into new version metadata. None disables capture.
        """
        self.store_dir = Path(store_dir)
        self.db_path = self.store_dir / "catalog.db"
        self.versions_dir = self.store_dir / "versions"
        self.manifest_manager = StoreManifestManager(self.store_dir)
        self._lock_file_path = self.store_dir / ".store.lock"
        self._lock_tls: threading.local = threading.local()
        self._provenance_provider = provenance_provider
        self._retention_guards: list[RetentionGuard] = []

        self.versions_dir.mkdir(parents=True, exist_ok=True)
        self._init_db()

        if not self.manifest_manager.exists():
            self.manifest_manager.create_manifest()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute(SCHEMA_SQL)

    def _get_lock_file(self) -> Any:
        """Get (and cache) the lock file handle per thread.

        Each thread keeps its own open file description so flock
        serializes threads as well as processes.
        """
        lock_file = getattr(self._lock_tls, "handle", None)
        if lock_file is None:
            lock_file = open(self._lock_file_path, "a+")
            self._lock_tls.handle = lock_file
        return lock_file

    @contextmanager
    def _store_lock(self, *, shared: bool = False) -> Iterator[None]:
        """Hold the store lock; nested acquisitions on the same thread are free.

        Raises:
            StorageError: If an exclusive lock is requested inside a shared one.
        """
        lock_file = self._get_lock_file()
        held = getattr(self._lock_tls, "mode", None)
        if held is not None:
            if held == "shared" and not shared:
                raise StorageError("Cannot upgrade a shared store lock to exclusive")
            yield
            return

        fcntl.flock(lock_file.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        self._lock_tls.mode = "shared" if shared else "exclusive"
        try:
            yield
        finally:
            self._lock_tls.mode = None
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def writer_lock(self) -> AbstractContextManager[None]:
        """Hold the store's exclusive lock across several calls.

        Store reads and writes made by the holding thread go through; other
        threads and processes wait until the block exits. Cleanup evaluates
        retention guards under this lock, so state a guard reports that is
        committed inside the block is seen by every later cleanup.

        Example:
            >>> with store.writer_lock():
            ...     store.get_version(candidate_id)
            ...     state_store.commit_atomic(...)
        """
        return self._store_lock()

    @contextmanager
    def _get_connection(self, *, read_only: bool = False) -> Iterator[duckdb.DuckDBPyConnection]:
        """Get catalog connection under the store lock.

        Writers hold LOCK_EX for the whole operation (artifact copy included);
        readers share LOCK_SH and therefore only ever see committed state.

        Raises:
            StorageError: If DuckDB fails.
        """
        with self._store_lock(shared=read_only):
            try:
                conn = duckdb.connect(str(self.db_path), read_only=read_only)
            except duckdb.Error as e:
                raise StorageError(f"Cannot open catalog {self.db_path}: {e}") from e
            try:
                yield conn
            except duckdb.Error as e:
                raise StorageError(f"Catalog operation failed: {e}") from e
            finally:
                conn.close()

    def register_retention_guard(self, guard: RetentionGuard) -> None:
        """Register a callable whose returned version ids cleanup must keep."""
        self._retention_guards.append(guard)

    # =========================================================================
    # Saving
    # =========================================================================

    def _build_metadata(
        self,
        version_id: str,
        now: datetime,
        num_models: int,
        supplied: Mapping[str, Any] | None,
    ) -> VersionMetadata:
        fields: dict[str, Any] = {}
        tags: dict[str, str] = {}
        extra: dict[str, Any] = {}

        if self._provenance_provider is not None:
            provenance = dict(self._provenance_provider())
            tags.update({str(k): str(v) for k, v in (provenance.pop("tags", None) or {}).items()})
            fields.update({k: v for k, v in provenance.items() if k in _METADATA_FIELDS})

        for key, value in (supplied or {}).items():
            if key == "tags":
                tags.update({str(k): str(v) for k, v in dict(value).items()})
            elif key in _METADATA_FIELDS:
                fields[key] = value
            elif key in _RESERVED_FIELDS:
                logger.warning(
                    "Ignoring reserved metadata key supplied by caller",
                    extra={"key": key, "version_id": version_id},
                )
            else:
                extra[key] = value

        return VersionMetadata(
            version_id=version_id,
            timestamp=now,
            num_models=num_models,
            tags=tags,
            extra=extra,
            **fields,
        )

    def save_version(
        self,
        artifacts: Sequence[Path | str],
        metadata: Mapping[str, Any] | None = None,
    ) -> ModelVersion:
        """Store trained artifacts as a new immutable version.

        Args:
            artifacts: One path (file or directory) per ensemble member, in order.
            metadata: Training metadata. Known keys map onto VersionMetadata,
                the rest are kept under ``extra``.

        Returns:
            The stored ModelVersion.

        Raises:
            StorageError: If the list is empty, an artifact is unreadable, the
                target version already exists, or the copy fails.
        """
        sources = [Path(a) for a in artifacts]
        if not sources:
            raise StorageError("At least one model artifact is required")
        for source in sources:
            if not source.exists():
                raise StorageError(f"Artifact not found: {source}")
            if not os.access(source, os.R_OK):
                raise StorageError(f"Artifact not readable: {source}")

        now = datetime.now(UTC)
        version_id = generate_version_id(now)
        version_metadata = self._build_metadata(version_id, now, len(sources), metadata)
        version_dir = self.versions_dir / version_id
        staging_dir = self.versions_dir / f".staging_{version_id}"

        with self._get_connection() as conn:
            if version_dir.exists() or self._version_exists(version_id, conn=conn):
                raise StorageError(f"Version {version_id} already exists; refusing to overwrite")

            try:
                staging_dir.mkdir(parents=True)
                for index, source in enumerate(sources, start=1):
                    copy_artifact(source, staging_dir / f"model-{index}")
                metadata_checksum = write_version_metadata(staging_dir, version_metadata)
                os.rename(staging_dir, version_dir)
            except StorageError:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise
            except OSError as e:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise StorageError(f"Failed to stage version {version_id}: {e}") from e

            try:
                conn.execute("BEGIN TRANSACTION")
                seq_row = conn.execute("SELECT COALESCE(MAX(created_seq), 0) FROM versions").fetchone()
                conn.execute(
                    """
                    INSERT INTO versions (
                        version_id, created_seq, path, num_models,
                        metadata_sha256, avg_accuracy, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        version_id,
                        (seq_row[0] if seq_row else 0) + 1,
                        str(version_dir),
                        len(sources),
                        metadata_checksum,
                        version_metadata.avg_accuracy,
                        now.isoformat(),
                    ],
                )
                conn.execute("COMMIT")
            except Exception as e:
                conn.execute("ROLLBACK")
                logger.warning(
                    "Cleaning up version directory after catalog insert failure",
                    extra={"version_dir": str(version_dir), "error": str(e)},
                )
                shutil.rmtree(version_dir, ignore_errors=True)
                raise

        self._refresh_manifest()

        logger.info(
            "Saved model version",
            extra={
                "version_id": version_id,
                "num_models": len(sources),
                "avg_accuracy": version_metadata.avg_accuracy,
                "checksum": metadata_checksum[:16],
            },
        )
        return ModelVersion(
            version_id=version_id,
            path=version_dir,
            artifact_paths=self._artifact_paths(version_dir),
            metadata=version_metadata,
            created_at=now,
        )

    def _version_exists(self, version_id: str, *, conn: duckdb.DuckDBPyConnection) -> bool:
        result = conn.execute(
            "SELECT 1 FROM versions WHERE version_id = ?", [version_id]
        ).fetchone()
        return result is not None

    # =========================================================================
    # Queries
    # =========================================================================

    def _artifact_paths(self, version_dir: Path) -> list[Path]:
        members = [p for p in version_dir.iterdir() if p.is_dir() and p.name.startswith("model-")]
        return sorted(members, key=_artifact_index)

    def _load_version(self, row: tuple[Any, ...]) -> ModelVersion:
        """Build a ModelVersion from a catalog row, verifying the sidecar checksum.

        Raises:
            StorageError: If metadata.json is missing or was modified.
        """
        version_id, path, metadata_sha256, created_at = row
        version_dir = Path(path)
        metadata_path = version_dir / "metadata.json"
        if not metadata_path.exists():
            raise StorageError(f"Metadata missing for version {version_id}: {metadata_path}")

        actual_checksum = compute_checksum(metadata_path)
        if actual_checksum != metadata_sha256:
            logger.error(
                "Metadata integrity check failed",
                extra={
                    "version_id": version_id,
                    "expected": metadata_sha256[:16],
                    "actual": actual_checksum[:16],
                },
            )
            raise StorageError(
                f"Metadata integrity check failed for {version_id}: "
                f"expected {metadata_sha256[:16]}..., got {actual_checksum[:16]}..."
            )

        return ModelVersion(
            version_id=version_id,
            path=version_dir,
            artifact_paths=self._artifact_paths(version_dir),
            metadata=load_version_metadata(version_dir),
            created_at=datetime.fromisoformat(created_at),
        )

    def find_version(self, version_id: str) -> ModelVersion | None:
        """Get a version, or None if it does not exist."""
        with self._get_connection(read_only=True) as conn:
            row = conn.execute(
                "SELECT version_id, path, metadata_sha256, created_at FROM versions WHERE version_id = ?",
                [version_id],
            ).fetchone()
            if row is None:
                return None
            return self._load_version(row)

    def get_version(self, version_id: str) -> ModelVersion:
        """Get a version.

        Raises:
            VersionNotFoundError: If the version does not exist.
        """
        version = self.find_version(version_id)
        if version is None:
            raise VersionNotFoundError(version_id)
        return version

    def list_versions(self) -> list[ModelVersion]:
        """All stored versions, newest first."""
        with self._get_connection(read_only=True) as conn:
            rows = conn.execute(
                """
                SELECT version_id, path, metadata_sha256, created_at
                FROM versions ORDER BY created_seq DESC
                """
            ).fetchall()
            return [self._load_version(row) for row in rows]

    def get_model_paths(self, version_id: str) -> list[Path]:
        """Ordered artifact paths (``model-1..N``) of a version."""
        return self.get_version(version_id).artifact_paths

    # =========================================================================
    # Production pointer
    # =========================================================================

    def _read_history(self, conn: duckdb.DuckDBPyConnection) -> list[ProductionPointer]:
        rows = conn.execute(
            """
            SELECT seq, version_id, action, changed_at, changed_by
            FROM production_history ORDER BY seq
            """
        ).fetchall()
        return [
            ProductionPointer(
                sequence=seq,
                version_id=version_id,
                action=PointerAction(action),
                set_at=datetime.fromisoformat(changed_at),
                changed_by=changed_by,
            )
            for seq, version_id, action, changed_at, changed_by in rows
        ]

    def _current_pointer(self, conn: duckdb.DuckDBPyConnection) -> ProductionPointer | None:
        row = conn.execute(
            """
            SELECT seq, version_id, action, changed_at, changed_by
            FROM production_history ORDER BY seq DESC LIMIT 1
            """
        ).fetchone()
        if row is None:
            return None
        seq, version_id, action, changed_at, changed_by = row
        return ProductionPointer(
            sequence=seq,
            version_id=version_id,
            action=PointerAction(action),
            set_at=datetime.fromisoformat(changed_at),
            changed_by=changed_by,
        )

    def _append_pointer(
        self,
        conn: duckdb.DuckDBPyConnection,
        version_id: str,
        action: PointerAction,
        changed_by: str,
    ) -> ProductionPointer:
        """Append a history row inside the caller's transaction."""
        seq_row = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM production_history").fetchone()
        pointer = ProductionPointer(
            sequence=(seq_row[0] if seq_row else 0) + 1,
            version_id=version_id,
            action=action,
            set_at=datetime.now(UTC),
            changed_by=changed_by,
        )
        conn.execute(
            """
            INSERT INTO production_history (seq, version_id, action, changed_at, changed_by)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                pointer.sequence,
                pointer.version_id,
                pointer.action.value,
                pointer.set_at.isoformat(),
                pointer.changed_by,
            ],
        )
        return pointer

    def set_production(self, version_id: str, *, changed_by: str = "unknown") -> ProductionPointer:
        """Point production at ``version_id``.

        Setting the version that is already production is a no-op.

        Raises:
            VersionNotFoundError: If the version does not exist.
        """
        with self._get_connection() as conn:
            if not self._version_exists(version_id, conn=conn):
                raise VersionNotFoundError(version_id)

            current = self._current_pointer(conn)
            if current is not None and current.version_id == version_id:
                logger.info(
                    "Version already in production",
                    extra={"version_id": version_id},
                )
                return current

            try:
                conn.execute("BEGIN TRANSACTION")
                pointer = self._append_pointer(conn, version_id, PointerAction.promote, changed_by)
                conn.execute("COMMIT")
            except Exception as e:
                conn.execute("ROLLBACK")
                logger.error(f"Production pointer transaction failed: {e}")
                raise

        self._refresh_manifest()

        logger.info(
            "Set production version",
            extra={
                "version_id": version_id,
                "previous_version_id": current.version_id if current else None,
                "changed_by": changed_by,
            },
        )
        return pointer

    def get_production_pointer(self) -> ProductionPointer | None:
        with self._get_connection(read_only=True) as conn:
            return self._current_pointer(conn)

    def get_production_version(self) -> ModelVersion | None:
        """The version production currently points at, or None."""
        pointer = self.get_production_pointer()
        if pointer is None:
            return None
        return self.get_version(pointer.version_id)

    def production_history(self) -> list[ProductionPointer]:
        """All pointer entries, oldest first."""
        with self._get_connection(read_only=True) as conn:
            return self._read_history(conn)

    def rollback(self, *, changed_by: str = "unknown") -> ModelVersion:
        """Restore the version that was production before the current one.

        Entries whose versions were since deleted are skipped.

        Raises:
            NoPriorVersionError: If there is no earlier production version.
        """
        with self._get_connection() as conn:
            stack = replay_production_stack(self._read_history(conn))
            if not stack:
                raise NoPriorVersionError("No production version set; nothing to roll back")
            current_id = stack.pop()
            while stack and not self._version_exists(stack[-1], conn=conn):
                logger.warning(
                    "Skipping deleted version during rollback",
                    extra={"version_id": stack[-1]},
                )
                stack.pop()
            if not stack:
                raise NoPriorVersionError()
            target_id = stack[-1]

            try:
                conn.execute("BEGIN TRANSACTION")
                self._append_pointer(conn, target_id, PointerAction.rollback, changed_by)
                conn.execute("COMMIT")
            except Exception as e:
                conn.execute("ROLLBACK")
                logger.error(f"Rollback transaction failed: {e}")
                raise

        self._refresh_manifest()

        logger.info(
            "Rolled back production version",
            extra={
                "from_version_id": current_id,
                "to_version_id": target_id,
                "changed_by": changed_by,
            },
        )
        return self.get_version(target_id)

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup_old_versions(self, keep: int = 10) -> CleanupResult:
        """Delete all but the ``keep`` newest versions.

        The production version and every id returned by a registered
        retention guard are kept regardless of age.
        """
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")

        # Guards are evaluated under the writer lock that start_shadow_mode holds
        with self._store_lock():
            guarded: set[str] = set()
            for guard in self._retention_guards:
                guarded.update(guard())
            result = self._delete_unprotected(keep, guarded)

        if result.deleted_ids:
            self._refresh_manifest()
        return result

    def _delete_unprotected(self, keep: int, guarded: set[str]) -> CleanupResult:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT version_id, path FROM versions ORDER BY created_seq DESC"
            ).fetchall()
            current = self._current_pointer(conn)
            protected = set(guarded)
            if current is not None:
                protected.add(current.version_id)

            to_delete = [(vid, Path(path)) for vid, path in rows[keep:] if vid not in protected]
            if to_delete:
                try:
                    conn.execute("BEGIN TRANSACTION")
                    for version_id, _ in to_delete:
                        conn.execute("DELETE FROM versions WHERE version_id = ?", [version_id])
                        conn.execute(
                            "DELETE FROM version_performance WHERE version_id = ?", [version_id]
                        )
                    conn.execute("COMMIT")
                except Exception as e:
                    conn.execute("ROLLBACK")
                    logger.error(f"Cleanup transaction failed: {e}")
                    raise

                for version_id, path in to_delete:
                    try:
                        shutil.rmtree(path)
                    except OSError as e:
                        logger.warning(
                            "Failed to remove version directory",
                            extra={"version_id": version_id, "path": str(path), "error": str(e)},
                        )

        deleted_ids = [vid for vid, _ in to_delete]
        retained_ids = [vid for vid, _ in rows if vid not in set(deleted_ids)]

        logger.info(
            "Cleaned up old versions",
            extra={
                "deleted": len(deleted_ids),
                "kept": len(retained_ids),
                "protected": sorted(protected),
            },
        )
        return CleanupResult(
            deleted=len(deleted_ids),
            kept=len(retained_ids),
            deleted_ids=deleted_ids,
            retained_ids=retained_ids,
        )

    # =========================================================================
    # Performance metrics
    # =========================================================================

    def save_performance_metrics(self, version_id: str, metrics: Mapping[str, Any]) -> None:
        """Attach live performance metrics to a version (replaces previous ones).

        Raises:
            VersionNotFoundError: If the version does not exist.
        """
        with self._get_connection() as conn:
            if not self._version_exists(version_id, conn=conn):
                raise VersionNotFoundError(version_id)
            conn.execute(
                """
                INSERT INTO version_performance (version_id, metrics_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (version_id) DO UPDATE SET
                    metrics_json = excluded.metrics_json,
                    updated_at = excluded.updated_at
                """,
                [version_id, json.dumps(dict(metrics), default=str), datetime.now(UTC).isoformat()],
            )

    def get_performance_metrics(self, version_id: str) -> dict[str, Any] | None:
        with self._get_connection(read_only=True) as conn:
            row = conn.execute(
                "SELECT metrics_json FROM version_performance WHERE version_id = ?",
                [version_id],
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def compare_versions(self, version_a: str, version_b: str) -> dict[str, Any]:
        """Side-by-side training and live metrics of two versions."""
        a = self.get_version(version_a)
        b = self.get_version(version_b)
        acc_a = a.metadata.avg_accuracy
        acc_b = b.metadata.avg_accuracy
        return {
            "version_a": version_a,
            "version_b": version_b,
            "avg_accuracy_a": acc_a,
            "avg_accuracy_b": acc_b,
            "accuracy_difference": (acc_b - acc_a) if acc_a is not None and acc_b is not None else None,
            "performance_a": self.get_performance_metrics(version_a),
            "performance_b": self.get_performance_metrics(version_b),
        }

    # =========================================================================
    # Manifest
    # =========================================================================

    def _refresh_manifest(self) -> None:
        """Mirror catalog state into manifest.json.

        The catalog is authoritative; a failed refresh is logged and the
        manifest is rewritten on the next successful write.
        """
        try:
            with self._get_connection(read_only=True) as conn:
                count_row = conn.execute("SELECT COUNT(*) FROM versions").fetchone()
                current = self._current_pointer(conn)
            total_size = sum(
                directory_size(p)
                for p in self.versions_dir.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )
            self.manifest_manager.update_manifest(
                version_count=count_row[0] if count_row else 0,
                total_size_bytes=total_size,
                production_version_id=current.version_id if current else None,
                production_set_at=current.set_at if current else None,
            )
        except (OSError, ValueError, StorageError) as e:
            logger.error(
                f"Failed to update manifest - manifest may be stale: {e}",
                extra={"manifest_path": str(self.manifest_manager.manifest_path)},
            )
