"""
Store manifest: a human-readable mirror of the version store.

This module provides:
- StoreManifestManager: creates, updates and loads ``manifest.json``
- Production pointer mirror for quick status checks without DuckDB

Key design decisions:
- The DuckDB catalog is authoritative; the manifest is a cache
- manifest.json is replaced by temp file + atomic rename
- Read-modify-write cycles are serialized with an fcntl lock
"""

from __future__ import annotations

import fcntl
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from libs.model_lifecycle.serialization import atomic_write_bytes
from libs.model_lifecycle.types import StoreManifest

logger = logging.getLogger(__name__)


class StoreManifestManager:
    """Manages the store-level manifest.

    The manifest tracks:
    - Schema version
    - Current production version and when it was set
    - Version count and total artifact size

    Lifecycle:
    - Created on first store initialization
    - Updated after every save/set_production/rollback/cleanup
    """

    MANIFEST_FILENAME = "manifest.json"
    STORE_VERSION = "1.0.0"

    def __init__(self, store_dir: Path) -> None:
        self.store_dir = store_dir
        self.manifest_path = store_dir / self.MANIFEST_FILENAME
        self._lock_path = store_dir / ".manifest.lock"

    @contextmanager
    def _manifest_lock(self) -> Iterator[None]:
        """Acquire exclusive lock for manifest updates."""
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self._lock_path, "w")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            lock_file.close()

    def exists(self) -> bool:
        return self.manifest_path.exists()

    def create_manifest(self) -> StoreManifest:
        now = datetime.now(UTC)
        manifest = StoreManifest(
            store_version=self.STORE_VERSION,
            created_at=now,
            last_updated=now,
        )
        with self._manifest_lock():
            self._save_manifest(manifest)
        logger.info("Created store manifest", extra={"path": str(self.manifest_path)})
        return manifest

    def load_manifest(self) -> StoreManifest:
        """Load manifest from file.

        Raises:
            FileNotFoundError: If manifest doesn't exist.
        """
        if not self.manifest_path.exists():
            raise FileNotFoundError(f"Manifest not found: {self.manifest_path}")

        with open(self.manifest_path) as f:
            data = json.load(f)

        return StoreManifest.model_validate(data)

    def update_manifest(
        self,
        *,
        version_count: int,
        total_size_bytes: int,
        production_version_id: str | None,
        production_set_at: datetime | None,
    ) -> StoreManifest:
        """Rewrite the manifest from the catalog's current state."""
        with self._manifest_lock():
            if self.manifest_path.exists():
                created_at = self.load_manifest().created_at
            else:
                created_at = datetime.now(UTC)
            manifest = StoreManifest(
                store_version=self.STORE_VERSION,
                created_at=created_at,
                last_updated=datetime.now(UTC),
                version_count=version_count,
                production_version_id=production_version_id,
                production_set_at=production_set_at,
                total_size_bytes=total_size_bytes,
            )
            self._save_manifest(manifest)

        logger.debug(
            "Updated store manifest",
            extra={
                "version_count": version_count,
                "production_version_id": production_version_id,
            },
        )
        return manifest

    def get_production_summary(self) -> str | None:
        """Production version id according to the manifest mirror."""
        if not self.exists():
            return None
        return self.load_manifest().production_version_id

    def _save_manifest(self, manifest: StoreManifest) -> None:
        atomic_write_bytes(self.manifest_path, manifest.model_dump_json(indent=2).encode("utf-8"))
