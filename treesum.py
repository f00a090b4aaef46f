#!/usr/bin/env python3
"""
Treesum – deterministic directory tree manifests for integrity checks.

Walks a directory tree and records every directory, symlink and regular
file, with each file's size, modification time and a 1 MiB block-wise
xxh64 checksum. Names are NFC-normalized and paths are '/'-separated, so
manifests of the same tree taken on different systems can be diffed.

Commands:
  scan     Build a JSON manifest of --root (stdout by default).
  compare  Compare two manifests and report what differs.

Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from common import (
    DEFAULT_WORKERS,
    BlockHasher,
    FileEntry,
    Manifest,
    PatternError,
    ReadError,
    SymlinkEntry,
    TraversalError,
    TreesumError,
    hash_file,
    load_manifest,
    manifest_to_dict,
    normalize_name,
    setup_logging,
    write_manifest,
    write_report,
)
from compare_cmd import compare_manifests
from patterns import ExclusionMatcher, parse_exclude_patterns
from scan_cmd import ManifestBuilder, TreeWalker, scan_tree


__all__ = [
    "BlockHasher",
    "ExclusionMatcher",
    "FileEntry",
    "Manifest",
    "ManifestBuilder",
    "PatternError",
    "ReadError",
    "SymlinkEntry",
    "TraversalError",
    "TreeWalker",
    "TreesumError",
    "compare_manifests",
    "hash_file",
    "load_manifest",
    "main",
    "manifest_to_dict",
    "normalize_name",
    "scan_tree",
    "write_manifest",
]

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2
MEBIBYTE = 1024 * 1024


def _print_progress(entries_seen: int, stats: Dict[str, int]) -> None:
    sys.stderr.write(
        "\r%6d dirs, %6d symlinks, %6d files found"
        % (stats["found_dirs"], stats["found_symlinks"], stats["found_files"])
    )
    sys.stderr.flush()


def _print_hash_progress(rel_path: str, hashed: int, total: int) -> None:
    percent = 100.0 * hashed / total if total else 100.0
    sys.stderr.write(
        "\rhashing... %5.1f%% %8.3f/%8.3f MiB"
        % (percent, hashed / MEBIBYTE, total / MEBIBYTE)
    )
    sys.stderr.flush()


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )


def run_scan(args: argparse.Namespace) -> int:
    """Scan --root and write the manifest; return the exit status."""
    output: Optional[Path] = None if args.output == '-' else Path(args.output)
    patterns = parse_exclude_patterns(args.exclude)
    try:
        manifest = scan_tree(
            root=args.root,
            exclude_patterns=patterns,
            workers=args.workers,
            progress_callback=_print_progress if args.progress else None,
            hash_progress=_print_hash_progress if args.progress else None,
        )
    except (PatternError, TraversalError) as exc:
        logging.error(str(exc))
        return EXIT_FAILURE
    finally:
        if args.progress:
            sys.stderr.write("\n")

    try:
        write_manifest(manifest, output)
    except OSError as exc:
        logging.error(f"Failed to write manifest to {output}: {exc}")
        return EXIT_FAILURE
    if manifest.errors:
        logging.warning(f"Manifest written with {len(manifest.errors)} per-entry error(s)")
        return EXIT_PARTIAL
    return EXIT_OK


def run_compare(args: argparse.Namespace) -> int:
    """Compare two manifests; return 0 when they match."""
    try:
        left = load_manifest(args.left)
        right = load_manifest(args.right)
    except (OSError, ValueError) as exc:
        logging.error(str(exc))
        return EXIT_FAILURE

    report = compare_manifests(left, right, ignore_mtime=args.ignore_mtime)
    if args.report:
        write_report(report, args.report)
    return EXIT_OK if report["match"] else EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Build deterministic manifests of directory trees (scan) '
                    'or compare two manifests (compare).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  scan:
    python treesum.py scan --root /path/to/photos > photos.json
    python treesum.py scan --root /path/to/photos --exclude '**/.DS_Store' --exclude '**/._*'
    python treesum.py scan --root /path/to/photos --output photos.json --workers 4 --progress

  compare:
    python treesum.py compare photos.json backup.json
    python treesum.py compare photos.json backup.json --ignore-mtime --report diff.json

Exclude patterns match the whole '/'-separated path relative to --root:
'*' stays within one path segment and '**' spans segments, so use
'**/.DS_Store' to exclude .DS_Store files at any depth.
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    scan_parser = subparsers.add_parser(
        'scan',
        help='Walk a directory tree and write its manifest',
    )
    scan_parser.add_argument(
        '--root',
        required=True,
        help='Root directory to scan recursively (recorded verbatim as base_dir)',
    )
    scan_parser.add_argument(
        '--exclude',
        action='append',
        default=[],
        metavar='GLOB',
        help='Glob of relative paths to exclude. Repeatable.',
    )
    scan_parser.add_argument(
        '--output',
        default='-',
        help="Manifest path, or '-' for stdout (default: -)",
    )
    scan_parser.add_argument(
        '--workers',
        type=int,
        default=DEFAULT_WORKERS,
        help=f'Number of parallel hashing threads (default: {DEFAULT_WORKERS})',
    )
    scan_parser.add_argument(
        '--progress',
        action='store_true',
        help='Show a live count of entries found on stderr',
    )
    _add_logging_args(scan_parser)

    compare_parser = subparsers.add_parser(
        'compare',
        help='Compare two manifests and report differences',
    )
    compare_parser.add_argument(
        'left',
        type=Path,
        help='Reference manifest',
    )
    compare_parser.add_argument(
        'right',
        type=Path,
        help='Manifest to check against the reference',
    )
    compare_parser.add_argument(
        '--report',
        type=Path,
        help='Write the JSON comparison report to this file',
    )
    compare_parser.add_argument(
        '--ignore-mtime',
        action='store_true',
        help='Do not report files whose content matches but modification time differs',
    )
    _add_logging_args(compare_parser)
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(getattr(args, 'log', None), getattr(args, 'verbose', False))

    if args.command == 'scan':
        sys.exit(run_scan(args))

    if args.command == 'compare':
        sys.exit(run_compare(args))


if __name__ == "__main__":
    main()
