"""
Generate and validate commands: checksum a tree, compare it with the latest
stored manifest for that tree, and (for generate) store the new manifest.
"""

import logging
import time
from pathlib import Path
from typing import Dict

from common import (
    DEFAULT_CHUNK_SIZE,
    PathFilter,
    build_manifest,
    build_report,
    format_timestamp,
)
from compare_cmd import (
    compare_manifests,
    comparison_details,
    comparison_stats,
    log_comparison,
)
from storage import ManifestStore


def generate_manifest(
    root: Path,
    store: ManifestStore,
    path_filter: PathFilter,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    verbose: bool = False,
) -> Dict[str, object]:
    """Build a manifest for root, compare it to the previous one, then store it."""
    run_started = int(time.time())
    manifest = build_manifest(root, path_filter, chunk_size)
    previous = store.latest_manifest_for(manifest.path)

    details: Dict[str, object] = {"baseline": None}
    stats: Dict[str, int] = {"entries": len(manifest.entries)}
    if previous is None:
        logging.info(f"No previous manifest for {manifest.path}")
    else:
        baseline = format_timestamp(previous.created_at)
        logging.info(f"Comparing to previous manifest from {baseline}")
        comparison = compare_manifests(previous, manifest)
        log_comparison(comparison, verbose)
        stats.update(comparison_stats(comparison))
        details.update(comparison_details(comparison))
        details["baseline"] = baseline

    manifest_path = store.add_manifest(manifest)
    logging.info(f"Wrote manifest to {manifest_path}")
    details["manifest_file"] = str(manifest_path)

    return build_report(
        root=manifest.path,
        store_path=store.root,
        path_filter=path_filter,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="generate",
        details=details,
    )


def validate_manifest(
    root: Path,
    store: ManifestStore,
    path_filter: PathFilter,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    verbose: bool = False,
) -> Dict[str, object]:
    """Compare root against its latest stored manifest without storing anything.

    The report's "baseline" is None when there is nothing to validate against.
    """
    run_started = int(time.time())
    root_str = str(root)
    previous = store.latest_manifest_for(root_str)

    details: Dict[str, object] = {"baseline": None}
    stats: Dict[str, int] = {}
    if previous is None:
        logging.error(f"No previous manifest to validate for {root_str}.")
    else:
        baseline = format_timestamp(previous.created_at)
        logging.info(f"Validating against manifest from {baseline}")
        manifest = build_manifest(root, path_filter, chunk_size)
        comparison = compare_manifests(previous, manifest)
        log_comparison(comparison, verbose)
        if comparison.success:
            logging.info(f"Validated manifest for {root_str}.")
        stats = comparison_stats(comparison)
        details.update(comparison_details(comparison))
        details["baseline"] = baseline

    return build_report(
        root=root_str,
        store_path=store.root,
        path_filter=path_filter,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="validate",
        details=details,
    )
