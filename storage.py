"""
Manifest storage: one directory per monitored path, named by the SHA-256 of
the path, holding a metadata file and one JSON file per manifest snapshot.
"""

import hashlib
import json
import logging
import os
import zlib
from dataclasses import dataclass, field
from datetime import timezone
from pathlib import Path
from typing import List, Optional

from common import (
    Manifest,
    ManifestExistsError,
    SerializationError,
    StorageConsistencyError,
    manifest_from_json,
    manifest_to_json,
)


METADATA_NAME = "bitrot_meta.json"
MANIFEST_GLOB = "manifest-*.json"
# RFC 3339 with microseconds and no punctuation so names sort chronologically
MANIFEST_TIME_FORMAT = "%Y%m%dT%H%M%S%fZ"


@dataclass
class ManifestStorageEntry:
    """A monitored path, its storage id and its snapshot files (oldest first)."""
    path: str
    id: str
    manifests: List[Path] = field(default_factory=list)


def storage_key_for(path: str) -> str:
    """Hex SHA-256 of the absolute path string."""
    return hashlib.sha256(path.encode("utf-8")).hexdigest()


def short_checksum(data: bytes) -> str:
    """CRC32 of data as 8 hex digits."""
    return f"{zlib.crc32(data) & 0xFFFFFFFF:08x}"


def _write_atomic(target: Path, data: bytes) -> None:
    tmp = target.with_name(f".{target.name}.tmp")
    try:
        with tmp.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class ManifestStore:
    """Append-only store of manifests keyed by the absolute path they describe."""

    def __init__(self, root: Path) -> None:
        self.root = Path(os.path.normpath(Path(root).expanduser()))

    def __repr__(self) -> str:
        return f"ManifestStore({str(self.root)!r})"

    def storage_key_for(self, path: str) -> str:
        """Storage directory name for path."""
        return storage_key_for(path)

    def storage_dir_for(self, path: str) -> Path:
        """Directory holding metadata and snapshots for path."""
        return self.root / storage_key_for(path)

    def ensure_entry(self, path: str) -> Path:
        """Create the storage directory for path and its metadata if needed.

        Raises StorageConsistencyError when existing metadata names another path.
        """
        storage_dir = self.storage_dir_for(path)
        storage_dir.mkdir(parents=True, exist_ok=True)
        metadata_path = storage_dir / METADATA_NAME
        if metadata_path.exists():
            self._check_metadata(metadata_path, path)
        else:
            payload = json.dumps({"Path": path}).encode("utf-8")
            _write_atomic(metadata_path, payload)
            logging.debug(f"Created manifest storage {storage_dir} for {path}")
        return storage_dir

    def add_manifest(self, manifest: Manifest) -> Path:
        """Store a manifest snapshot and return the written file path."""
        content = manifest_to_json(manifest).encode("utf-8")
        storage_dir = self.ensure_entry(manifest.path)
        manifest_path = storage_dir / self.manifest_filename(manifest, content)
        if manifest_path.exists():
            raise ManifestExistsError(f"Manifest file already exists at path {manifest_path}")
        _write_atomic(manifest_path, content)
        logging.debug(f"Wrote manifest {manifest_path}")
        return manifest_path

    def manifest_filename(self, manifest: Manifest, content: bytes) -> str:
        """Snapshot name: creation time to the microsecond plus CRC32 of content."""
        timestamp = manifest.created_at.astimezone(timezone.utc).strftime(MANIFEST_TIME_FORMAT)
        return f"manifest-{timestamp}-{short_checksum(content)}.json"

    def manifest_files_for(self, path: str) -> List[Path]:
        """Snapshot files stored for path, oldest first."""
        storage_dir = self.storage_dir_for(path)
        metadata_path = storage_dir / METADATA_NAME
        if not metadata_path.exists():
            return []
        self._check_metadata(metadata_path, path)
        return sorted(storage_dir.glob(MANIFEST_GLOB), key=lambda p: p.name)

    def latest_manifest_for(self, path: str) -> Optional[Manifest]:
        """Return the most recent manifest for path, or None if nothing is stored."""
        manifest_files = self.manifest_files_for(path)
        if not manifest_files:
            return None
        return read_manifest_file(manifest_files[-1])

    def list(self) -> List[ManifestStorageEntry]:
        """Every monitored path found in the store, sorted by path."""
        entries: List[ManifestStorageEntry] = []
        if not self.root.is_dir():
            return entries
        for metadata_path in self.root.glob(f"*/{METADATA_NAME}"):
            storage_dir = metadata_path.parent
            entries.append(
                ManifestStorageEntry(
                    path=self._parse_metadata(metadata_path),
                    id=storage_dir.name,
                    manifests=sorted(storage_dir.glob(MANIFEST_GLOB), key=lambda p: p.name),
                )
            )
        entries.sort(key=lambda e: e.path)
        return entries

    def _parse_metadata(self, metadata_path: Path) -> str:
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
            return str(data["Path"])
        except (ValueError, KeyError, TypeError) as exc:
            raise SerializationError(
                f"Malformed storage metadata {metadata_path}: {exc}"
            ) from exc

    def _check_metadata(self, metadata_path: Path, path: str) -> None:
        stored_path = self._parse_metadata(metadata_path)
        if stored_path != path:
            raise StorageConsistencyError(
                f"Metadata in file {metadata_path} does not match path {path} "
                f"(records {stored_path})"
            )


def read_manifest_file(manifest_path: Path) -> Manifest:
    """Read and decode one stored manifest file."""
    data = manifest_path.read_bytes()
    try:
        return manifest_from_json(data.decode("utf-8"))
    except (SerializationError, UnicodeDecodeError) as exc:
        raise SerializationError(f"{manifest_path}: {exc}") from exc
