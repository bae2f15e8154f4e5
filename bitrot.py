#!/usr/bin/env python3
"""
Bitrot – silent corruption detection.

Takes checksum snapshots (manifests) of a directory tree and classifies the
differences between successive snapshots. A file whose content changed while
its modification time did not is flagged as possible corruption.

Commands:
  generate        Build a manifest, compare it to the previous one, store it.
  validate        Compare a tree to its latest stored manifest without storing.
  compare         Compare two directory trees (e.g. an original and a copy).
  compare-latest  Compare the latest stored manifests of two paths.
  list            Show every monitored path in the manifest store.

Manifests are stored under --store, $BITROT_HOME, or ~/.bitrot.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from common import (
    DEFAULT_EXCLUDED_NAMES,
    STORE_DIR_NAME,
    STORE_ENV_VAR,
    BitrotError,
    PathFilter,
    default_store_path,
    parse_exclude_extensions,
    parse_exclude_names,
    setup_logging,
    write_report,
)
from compare_cmd import compare_latest_manifests, compare_paths
from generate_cmd import generate_manifest, validate_manifest
from storage import ManifestStore


def _add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--exclude',
        action='append',
        default=[],
        help='File or directory names to exclude, in addition to the defaults '
             '(e.g. node_modules,.cache). Comma-separated or repeatable.',
    )
    parser.add_argument(
        '--exclude-ext',
        action='append',
        default=[],
        help='Extensions to exclude (e.g. .tmp,.part). Comma-separated or repeatable.',
    )


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--report',
        type=Path,
        help='Also write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging and list unchanged paths',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='bitrot',
        description='Detect silent file corruption by comparing checksum manifests.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  bitrot generate /path/to/photos
  bitrot generate /path/to/photos --exclude node_modules --exclude-ext .tmp
  bitrot validate /path/to/photos --report validate.json
  bitrot compare /path/to/photos /mnt/backup/photos
  bitrot compare-latest /path/to/photos /mnt/backup/photos
  bitrot --store /var/lib/bitrot list

Default excluded names: {', '.join(sorted(DEFAULT_EXCLUDED_NAMES))}
Store location: --store, ${STORE_ENV_VAR}, or ~/{STORE_DIR_NAME}
        """,
    )
    parser.add_argument(
        '--store',
        type=Path,
        help=f'Manifest store directory (default: ${STORE_ENV_VAR} or ~/{STORE_DIR_NAME})',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    generate_parser = subparsers.add_parser(
        'generate',
        help='Build and store a manifest, reporting changes since the previous one',
    )
    generate_parser.add_argument('path', type=Path, help='Directory to scan recursively')
    _add_scan_arguments(generate_parser)
    _add_output_arguments(generate_parser)

    validate_parser = subparsers.add_parser(
        'validate',
        help='Compare a directory to its latest stored manifest without storing',
    )
    validate_parser.add_argument('path', type=Path, help='Directory to scan recursively')
    _add_scan_arguments(validate_parser)
    _add_output_arguments(validate_parser)

    compare_parser = subparsers.add_parser(
        'compare',
        help='Compare two directory trees, e.g. an original and its copy',
    )
    compare_parser.add_argument('old', type=Path, help='Original directory')
    compare_parser.add_argument('new', type=Path, help='Directory to check against the original')
    _add_scan_arguments(compare_parser)
    _add_output_arguments(compare_parser)

    latest_parser = subparsers.add_parser(
        'compare-latest',
        help='Compare the latest stored manifests of two paths',
    )
    latest_parser.add_argument('old', type=Path, help='Original directory')
    latest_parser.add_argument('new', type=Path, help='Directory to check against the original')
    _add_output_arguments(latest_parser)

    list_parser = subparsers.add_parser(
        'list',
        help='List monitored paths in the manifest store',
    )
    list_parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    list_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging and list snapshot files',
    )

    return parser


def _resolve_directory(path: Path) -> Optional[Path]:
    root = path.expanduser().resolve()
    if not root.exists():
        logging.error(f"Directory does not exist: {root}")
        return None
    if not root.is_dir():
        logging.error(f"Path is not a directory: {root}")
        return None
    return root


def _path_filter(args: argparse.Namespace, store: ManifestStore) -> PathFilter:
    excluded_names = set(DEFAULT_EXCLUDED_NAMES) | parse_exclude_names(args.exclude)
    excluded_paths = [store.root]
    if args.report:
        excluded_paths.append(args.report.resolve())
    if args.log:
        excluded_paths.append(args.log.resolve())
    return PathFilter(
        excluded_names=excluded_names,
        excluded_exts=parse_exclude_extensions(args.exclude_ext),
        excluded_paths=excluded_paths,
    )


def _list_store(store: ManifestStore, verbose: bool) -> int:
    entries = store.list()
    if not entries:
        logging.info(f"No manifests stored in {store.root}")
        return 0
    lines = [f"{len(entries)} monitored paths in {store.root}:"]
    for entry in entries:
        lines.append(f"    {entry.path} ({entry.id}, {len(entry.manifests)} manifests)")
        if verbose:
            lines.extend(f"        {manifest.name}" for manifest in entry.manifests)
    logging.info("\n".join(lines))
    return 0


def run(args: argparse.Namespace) -> int:
    """Execute a parsed command and return the process exit code."""
    store = ManifestStore(args.store.resolve() if args.store else default_store_path())

    if args.command == 'list':
        return _list_store(store, args.verbose)

    if args.command == 'compare-latest':
        old_path = str(args.old.expanduser().resolve())
        new_path = str(args.new.expanduser().resolve())
        report = compare_latest_manifests(old_path, new_path, store, verbose=args.verbose)
        if args.report:
            write_report(report, args.report)
        if report["missing"] or report["stats"].get("flagged", 0):
            return 1
        return 0

    path_filter = _path_filter(args, store)
    logging.debug(f"Using {path_filter} and {store}")

    if args.command == 'compare':
        old_root = _resolve_directory(args.old)
        new_root = _resolve_directory(args.new)
        if old_root is None or new_root is None:
            return 1
        report = compare_paths(old_root, new_root, path_filter, verbose=args.verbose)
    else:
        root = _resolve_directory(args.path)
        if root is None:
            return 1
        if args.command == 'generate':
            report = generate_manifest(root, store, path_filter, verbose=args.verbose)
        else:
            report = validate_manifest(root, store, path_filter, verbose=args.verbose)

    if args.report:
        write_report(report, args.report)

    if args.command == 'validate' and report["baseline"] is None:
        return 1
    if report["stats"].get("flagged", 0):
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(getattr(args, 'log', None), getattr(args, 'verbose', False))

    try:
        exit_code = run(args)
    except (BitrotError, OSError) as exc:
        logging.error(str(exc))
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
