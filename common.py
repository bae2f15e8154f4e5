"""
Shared code for bitrot generate, validate and compare: constants, types, errors,
walking, hashing, manifest building and serialization, reporting.
"""

import hashlib
import json
import logging
import os
import re
import sys
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple


STORE_DIR_NAME = ".bitrot"
STORE_ENV_VAR = "BITROT_HOME"
DEFAULT_HASH_ALGO = "sha1"
DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
PROGRESS_EVERY = 1000

DEFAULT_EXCLUDED_NAMES: FrozenSet[str] = frozenset({
    ".git",
    ".hg",
    ".svn",
    ".bzr",
    "CVS",
    ".DS_Store",
    ".Spotlight-V100",
    ".Trashes",
    ".fseventsd",
    "Thumbs.db",
    "desktop.ini",
    STORE_DIR_NAME,
})

_FRACTION_RE = re.compile(r"\.(\d+)")


class BitrotError(Exception):
    """Base class for manifest and storage errors."""


class SerializationError(BitrotError):
    """Manifest or storage metadata could not be decoded."""


class StorageConsistencyError(BitrotError):
    """Storage metadata records a different path than the one requested."""


class ManifestExistsError(BitrotError, FileExistsError):
    """A manifest snapshot with the same file name is already stored."""


@dataclass(frozen=True)
class ChecksumRecord:
    """Checksum and modification time of a single file."""
    checksum: str
    mod_time: datetime


@dataclass
class Manifest:
    """Snapshot of every tracked file under path, keyed by relative path."""
    path: str
    created_at: datetime
    entries: Dict[str, ChecksumRecord] = field(default_factory=dict)


class PathFilter:
    """Decide whether a path relative to the scanned root is excluded.

    Every segment of the path is matched by name against excluded_names.
    Files are additionally matched by lowercase suffix against excluded_exts.
    excluded_paths holds absolute paths (the store, a report file) that the
    walk skips wherever they sit in the tree.
    """

    def __init__(
        self,
        excluded_names: Iterable[str] = DEFAULT_EXCLUDED_NAMES,
        excluded_exts: Iterable[str] = (),
        excluded_paths: Iterable[Path] = (),
    ) -> None:
        self.excluded_names: FrozenSet[str] = frozenset(excluded_names)
        self.excluded_exts: FrozenSet[str] = frozenset(excluded_exts)
        self.excluded_paths: FrozenSet[str] = frozenset(
            os.path.abspath(p) for p in excluded_paths
        )

    def is_excluded(self, path: str, is_dir: bool = False) -> bool:
        parts = [part for part in re.split(r"[\\/]", path) if part]
        if any(part in self.excluded_names for part in parts):
            return True
        if is_dir or not self.excluded_exts or not parts:
            return False
        return Path(parts[-1]).suffix.lower() in self.excluded_exts

    def __repr__(self) -> str:
        return (
            f"PathFilter(excluded_names={sorted(self.excluded_names)}, "
            f"excluded_exts={sorted(self.excluded_exts)})"
        )


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def default_store_path() -> Path:
    """Return the manifest store location from BITROT_HOME or ~/.bitrot."""
    configured = os.environ.get(STORE_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / STORE_DIR_NAME


def _split_args(args: List[str]) -> Iterable[str]:
    for item in args:
        for part in item.split(','):
            part = part.strip()
            if part:
                yield part


def parse_exclude_names(exclude_args: List[str]) -> Set[str]:
    """Normalize comma-separated or repeated exclude names into a set."""
    return set(_split_args(exclude_args))


def parse_exclude_extensions(exclude_args: List[str]) -> Set[str]:
    """Normalize exclude extensions into a set of lowercase suffixes."""
    extensions: Set[str] = set()
    for part in _split_args(exclude_args):
        ext = part.lower()
        if not ext.startswith('.'):
            ext = f".{ext}"
        extensions.add(ext)
    return extensions


def normalize_relative_path(path: str) -> str:
    """Use forward slashes and NFC so equivalent names compare equal."""
    return unicodedata.normalize("NFC", path.replace(os.sep, "/"))


def iter_files(root: Path, path_filter: PathFilter) -> Iterable[Tuple[str, os.DirEntry]]:
    """Yield (relative path, entry) for regular files under root.

    Symlinks are never followed and excluded directories are not descended
    into. OSError from listing a directory or stat-ing an entry propagates.
    """
    stack = [(root, "")]
    while stack:
        current, prefix = stack.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                rel_path = f"{prefix}{entry.name}"
                if entry.path in path_filter.excluded_paths:
                    logging.debug(f"Skipping excluded path {entry.path}")
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if path_filter.is_excluded(rel_path, is_dir=True):
                        logging.debug(f"Skipping excluded directory {entry.path}")
                        continue
                    stack.append((Path(entry.path), f"{rel_path}/"))
                elif entry.is_file(follow_symlinks=False):
                    if path_filter.is_excluded(rel_path):
                        logging.debug(f"Skipping excluded file {entry.path}")
                        continue
                    yield rel_path, entry


def compute_hash(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute the SHA-1 hex digest of a file, reading chunk_size bytes at a time."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    hasher = hashlib.sha1()
    with Path(file_path).open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def build_manifest(
    root: Path,
    path_filter: PathFilter,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Manifest:
    """Checksum every regular, non-excluded file under root.

    Any OSError aborts the whole build; a partial manifest is never returned.
    """
    root = Path(os.path.abspath(root))
    created_at = datetime.now(timezone.utc)
    entries: Dict[str, ChecksumRecord] = {}
    scanned = 0
    for rel_path, entry in iter_files(root, path_filter):
        file_stat = entry.stat(follow_symlinks=False)
        digest = compute_hash(Path(entry.path), chunk_size)
        entries[normalize_relative_path(rel_path)] = ChecksumRecord(
            checksum=digest,
            mod_time=mtime_from_ns(file_stat.st_mtime_ns),
        )
        scanned += 1
        if scanned % PROGRESS_EVERY == 0:
            logging.info(f"Progress: {scanned} files checksummed under {root}")

    logging.debug(f"Built manifest for {root} with {len(entries)} entries")
    return Manifest(path=str(root), created_at=created_at, entries=entries)


def mtime_from_ns(mtime_ns: int) -> datetime:
    """Convert a stat mtime in nanoseconds to an aware UTC datetime."""
    seconds, remainder = divmod(mtime_ns, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(
        microsecond=remainder // 1000
    )


def format_timestamp(value: datetime) -> str:
    """RFC 3339 in UTC with a Z suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp, truncating fractional seconds to microseconds."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp has no timezone: {value}")
    return parsed.astimezone(timezone.utc)


def manifest_to_dict(manifest: Manifest) -> Dict[str, object]:
    """Wire representation of a manifest with RFC 3339 timestamps."""
    return {
        "path": manifest.path,
        "created_at": format_timestamp(manifest.created_at),
        "entries": {
            rel_path: {
                "checksum": record.checksum,
                "mod_time": format_timestamp(record.mod_time),
            }
            for rel_path, record in manifest.entries.items()
        },
    }


def manifest_to_json(manifest: Manifest) -> str:
    """Serialize a manifest to indented JSON with sorted keys."""
    return json.dumps(manifest_to_dict(manifest), indent=2, sort_keys=True)


def manifest_from_json(text: str) -> Manifest:
    """Decode a manifest, raising SerializationError on any malformed content."""
    try:
        data = json.loads(text)
        entries = {
            rel_path: ChecksumRecord(
                checksum=str(record["checksum"]),
                mod_time=parse_timestamp(record["mod_time"]),
            )
            for rel_path, record in (data.get("entries") or {}).items()
        }
        return Manifest(
            path=str(data["path"]),
            created_at=parse_timestamp(data["created_at"]),
            entries=entries,
        )
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise SerializationError(f"Malformed manifest: {exc}") from exc


def build_report(
    root: str,
    store_path: Optional[Path],
    path_filter: Optional[PathFilter],
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "root": root,
        "store": str(store_path) if store_path else None,
        "hash_algo": DEFAULT_HASH_ALGO,
        "mode": mode,
        "stats": stats,
    }
    if path_filter is not None:
        report["excluded_names"] = sorted(path_filter.excluded_names)
        report["exclude_exts"] = sorted(path_filter.excluded_exts)
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
