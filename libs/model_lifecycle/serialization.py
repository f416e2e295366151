"""
Artifact copy, checksum and provenance helpers for the version store.

This module provides:
- SHA-256 checksums for sidecar integrity verification
- Atomic writes using temp file + atomic rename
- Artifact copying (single files or whole directories)
- Provenance capture (git commit/branch, interpreter, platform)

Key design decisions:
- Atomic writes prevent partial/corrupt JSON state
- Checksums of metadata.json are stored in the catalog and verified on load
- Provenance lookups never fail a save; missing git yields None
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

from libs.common.exceptions import StorageError
from libs.model_lifecycle.types import VersionMetadata

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


# =============================================================================
# Checksum Utilities
# =============================================================================


def compute_checksum(path: Path) -> str:
    """Compute SHA-256 checksum of file.

    Args:
        path: Path to file.

    Returns:
        Hex-encoded SHA-256 checksum.
    """
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def directory_size(path: Path) -> int:
    """Total size in bytes of all regular files below ``path``."""
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


# =============================================================================
# Atomic Writes
# =============================================================================


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to file using temp + rename.

    Readers observe either the previous content or the new content, never
    a partial file.

    Raises:
        StorageError: If the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError as unlink_err:
            logger.warning(
                "Failed to unlink temp file during cleanup",
                extra={"temp_path": temp_path, "error": str(unlink_err)},
            )
        raise StorageError(f"Atomic write failed for {path}: {e}") from e


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically write JSON to file."""
    content = json.dumps(data, indent=2, default=str, sort_keys=True)
    atomic_write_bytes(path, content.encode("utf-8"))


# =============================================================================
# Artifacts
# =============================================================================


def copy_artifact(source: Path, destination: Path) -> Path:
    """Copy one ensemble member into its ``model-<i>`` directory.

    Directories are copied recursively; a single file is placed inside
    ``destination`` under its own name.

    Raises:
        StorageError: If the source is missing/unreadable or the copy fails.
    """
    source = Path(source)
    if not source.exists():
        raise StorageError(f"Artifact not found: {source}")
    if not os.access(source, os.R_OK):
        raise StorageError(f"Artifact not readable: {source}")
    if destination.exists():
        raise StorageError(f"Refusing to overwrite existing artifact directory: {destination}")

    try:
        if source.is_dir():
            shutil.copytree(source, destination)
        else:
            destination.mkdir(parents=True)
            shutil.copy2(source, destination / source.name)
    except OSError as e:
        raise StorageError(f"Failed to copy artifact {source}: {e}") from e
    return destination


def write_version_metadata(version_dir: Path, metadata: VersionMetadata) -> str:
    """Write the metadata.json sidecar and return its checksum."""
    metadata_path = version_dir / METADATA_FILENAME
    atomic_write_json(metadata_path, metadata.model_dump(mode="json"))
    return compute_checksum(metadata_path)


def load_version_metadata(version_dir: Path) -> VersionMetadata:
    """Load metadata.json from a version directory.

    Raises:
        StorageError: If the sidecar is missing or invalid.
    """
    metadata_path = version_dir / METADATA_FILENAME
    try:
        with open(metadata_path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Cannot read version metadata {metadata_path}: {e}") from e
    return VersionMetadata.model_validate(data)


# =============================================================================
# Provenance
# =============================================================================


def _git(*args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    value = result.stdout.strip()
    return value or None


def capture_provenance() -> dict[str, Any]:
    """Capture build provenance for a new version.

    Returns:
        Dict with ``git_commit``, ``git_branch`` (None outside a git checkout)
        and ``tags`` holding interpreter and platform.
    """
    return {
        "git_commit": _git("rev-parse", "HEAD"),
        "git_branch": _git("rev-parse", "--abbrev-ref", "HEAD"),
        "tags": {
            "python_version": sys.version.split()[0],
            "platform": f"{platform.system().lower()}-{platform.machine()}",
        },
    }
