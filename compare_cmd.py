"""
Compare commands: classify the differences between two manifests and report them.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import DefaultDict, Dict, FrozenSet, List, Optional, Tuple

from common import (
    Manifest,
    PathFilter,
    build_manifest,
    build_report,
    format_timestamp,
)
from storage import ManifestStore


@dataclass(frozen=True)
class ManifestComparison:
    """Classification of every path of an (old, new) manifest pair.

    Each path lands in exactly one set. A rename counts its old path on the
    old side and its new path on the new side.
    """
    added_paths: FrozenSet[str] = frozenset()
    deleted_paths: FrozenSet[str] = frozenset()
    renamed_paths: FrozenSet[Tuple[str, str]] = frozenset()
    modified_paths: FrozenSet[str] = frozenset()
    flagged_paths: FrozenSet[str] = frozenset()
    unchanged_paths: FrozenSet[str] = frozenset()

    @property
    def success(self) -> bool:
        return not self.flagged_paths

    @property
    def total_checked(self) -> int:
        return (
            len(self.added_paths)
            + len(self.deleted_paths)
            + len(self.renamed_paths)
            + len(self.modified_paths)
            + len(self.flagged_paths)
            + len(self.unchanged_paths)
        )

    @property
    def has_changes(self) -> bool:
        return self.total_checked != len(self.unchanged_paths)


def compare_manifests(old: Manifest, new: Manifest) -> ManifestComparison:
    """Classify paths as added, deleted, renamed, modified, flagged or unchanged.

    A path whose checksum changed while its modification time did not is
    flagged as possible corruption. An old path missing from new is a rename
    when an added path has the same checksum; with several candidates the
    lexicographically smallest one is used.
    """
    added = {path for path in new.entries if path not in old.entries}
    added_by_checksum: DefaultDict[str, List[str]] = defaultdict(list)
    for path in sorted(added):
        added_by_checksum[new.entries[path].checksum].append(path)

    deleted = set()
    renamed = set()
    modified = set()
    flagged = set()
    unchanged = set()

    for path in sorted(old.entries):
        old_record = old.entries[path]
        new_record = new.entries.get(path)
        if new_record is not None:
            if new_record.checksum == old_record.checksum:
                unchanged.add(path)
            elif new_record.mod_time != old_record.mod_time:
                modified.add(path)
            else:
                flagged.add(path)
            continue

        candidates = added_by_checksum.get(old_record.checksum)
        if candidates:
            new_path = candidates.pop(0)
            added.discard(new_path)
            renamed.add((path, new_path))
            logging.debug(f"Renamed: {path} -> {new_path}")
            continue

        deleted.add(path)

    return ManifestComparison(
        added_paths=frozenset(added),
        deleted_paths=frozenset(deleted),
        renamed_paths=frozenset(renamed),
        modified_paths=frozenset(modified),
        flagged_paths=frozenset(flagged),
        unchanged_paths=frozenset(unchanged),
    )


def _summary_line(description: str, count: int) -> str:
    return f"{description} paths: {count}\n"


def _path_section(description: str, paths: List[str]) -> str:
    if not paths:
        return f"{description} paths: none\n"
    lines = [f"{description} paths:"]
    lines.extend(f"    {path}" for path in paths)
    return "\n".join(lines) + "\n"


def render_report(comparison: ManifestComparison, list_unchanged: bool = False) -> str:
    """Human-readable summary and per-category path listing."""
    summary = "SUCCESS" if comparison.success else "FAILURE"
    summary += "\n\n"
    summary += f"{comparison.total_checked} files compared.\n\n"
    summary += _summary_line("Unchanged", len(comparison.unchanged_paths))
    summary += _summary_line("Added", len(comparison.added_paths))
    summary += _summary_line("Deleted", len(comparison.deleted_paths))
    summary += _summary_line("Renamed", len(comparison.renamed_paths))
    summary += _summary_line("Modified", len(comparison.modified_paths))
    summary += _summary_line("Flagged", len(comparison.flagged_paths))

    if list_unchanged:
        detail = _path_section("Unchanged", sorted(comparison.unchanged_paths))
    else:
        detail = _summary_line("Unchanged", len(comparison.unchanged_paths))
    detail += _path_section("Added", sorted(comparison.added_paths))
    detail += _path_section("Deleted", sorted(comparison.deleted_paths))
    detail += _path_section(
        "Renamed", [f"{old} -> {new}" for old, new in sorted(comparison.renamed_paths)]
    )
    detail += _path_section("Modified", sorted(comparison.modified_paths))
    detail += _path_section("Flagged", sorted(comparison.flagged_paths))

    return summary + "\n\n" + detail


def comparison_stats(comparison: ManifestComparison) -> Dict[str, int]:
    return {
        "compared": comparison.total_checked,
        "unchanged": len(comparison.unchanged_paths),
        "added": len(comparison.added_paths),
        "deleted": len(comparison.deleted_paths),
        "renamed": len(comparison.renamed_paths),
        "modified": len(comparison.modified_paths),
        "flagged": len(comparison.flagged_paths),
    }


def comparison_details(comparison: ManifestComparison) -> Dict[str, object]:
    """Sorted path lists for the JSON report."""
    return {
        "unchanged": sorted(comparison.unchanged_paths),
        "added": sorted(comparison.added_paths),
        "deleted": sorted(comparison.deleted_paths),
        "renamed": [
            {"old_path": old, "new_path": new}
            for old, new in sorted(comparison.renamed_paths)
        ],
        "modified": sorted(comparison.modified_paths),
        "flagged": sorted(comparison.flagged_paths),
    }


def log_comparison(comparison: ManifestComparison, verbose: bool = False) -> None:
    logging.info("\n" + render_report(comparison, list_unchanged=verbose))
    for path in sorted(comparison.flagged_paths):
        logging.warning(f"Possible corruption: {path}")


def _log_copy_result(comparison: ManifestComparison, old_root: str, new_root: str) -> None:
    if comparison.success:
        logging.info(f"Successfully validated {new_root} as a copy of {old_root}.")
    else:
        logging.error(
            f"{len(comparison.flagged_paths)} files flagged for possible corruption."
        )


def compare_paths(
    old_root: Path,
    new_root: Path,
    path_filter: PathFilter,
    verbose: bool = False,
) -> Dict[str, object]:
    """Build manifests for two trees and compare them; nothing is stored."""
    run_started = int(time.time())
    old_manifest = build_manifest(old_root, path_filter)
    new_manifest = build_manifest(new_root, path_filter)
    comparison = compare_manifests(old_manifest, new_manifest)
    log_comparison(comparison, verbose)
    _log_copy_result(comparison, old_manifest.path, new_manifest.path)

    details = comparison_details(comparison)
    details["old_root"] = old_manifest.path
    return build_report(
        root=new_manifest.path,
        store_path=None,
        path_filter=path_filter,
        stats=comparison_stats(comparison),
        run_started=run_started,
        run_finished=int(time.time()),
        mode="compare",
        details=details,
    )


def compare_latest_manifests(
    old_path: str,
    new_path: str,
    store: ManifestStore,
    verbose: bool = False,
) -> Dict[str, object]:
    """Compare the latest stored manifests of two monitored paths.

    When either path has no stored manifest the report carries "missing"
    and no comparison is made.
    """
    run_started = int(time.time())
    missing: List[str] = []
    manifests: Dict[str, Optional[Manifest]] = {}
    for path in (old_path, new_path):
        manifests[path] = store.latest_manifest_for(path)
        if manifests[path] is None:
            logging.error(f"No existing manifest for {path}")
            missing.append(path)

    details: Dict[str, object] = {"old_root": old_path, "missing": missing}
    stats: Dict[str, int] = {}
    if not missing:
        old_manifest = manifests[old_path]
        new_manifest = manifests[new_path]
        logging.info(
            f"Comparing manifest of {old_path} from {format_timestamp(old_manifest.created_at)} "
            f"with manifest of {new_path} from {format_timestamp(new_manifest.created_at)}"
        )
        comparison = compare_manifests(old_manifest, new_manifest)
        log_comparison(comparison, verbose)
        _log_copy_result(comparison, old_path, new_path)
        stats = comparison_stats(comparison)
        details.update(comparison_details(comparison))

    return build_report(
        root=new_path,
        store_path=store.root,
        path_filter=None,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="compare-latest",
        details=details,
    )
