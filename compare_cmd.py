"""
Compare command: diff two manifests of copies of the same tree.
"""

import logging
from itertools import zip_longest
from typing import Dict, List, Set

from common import FileEntry, Manifest, format_timestamp_ns, split_block_hashes


def _compare_files(
    left: Dict[str, FileEntry],
    right: Dict[str, FileEntry],
    ignore_mtime: bool,
    stats: Dict[str, int],
    mismatched: List[Dict[str, object]],
    modified_only: List[Dict[str, object]],
    unreadable: List[Dict[str, object]],
) -> None:
    """Compare files present on both sides."""
    for path in sorted(left.keys() & right.keys()):
        a = left[path]
        b = right[path]
        if a.error is not None or b.error is not None:
            stats["unreadable"] += 1
            unreadable.append(
                {
                    "path": path,
                    "left_error": a.error,
                    "right_error": b.error,
                }
            )
            continue

        if a.len != b.len or a.hash != b.hash:
            stats["mismatched"] += 1
            mismatched.append(
                {
                    "path": path,
                    "left_len": a.len,
                    "right_len": b.len,
                    "left_hash": a.hash,
                    "right_hash": b.hash,
                    "bad_blocks": _differing_blocks(a.hash, b.hash),
                }
            )
            continue

        if not ignore_mtime and a.modified_ns != b.modified_ns:
            stats["modified_only"] += 1
            modified_only.append(
                {
                    "path": path,
                    "left_modified": format_timestamp_ns(a.modified_ns),
                    "right_modified": format_timestamp_ns(b.modified_ns),
                }
            )
            continue

        stats["matched"] += 1


def _differing_blocks(left_hash: str, right_hash: str) -> List[int]:
    """Indices of 1 MiB blocks whose hashes differ, including blocks present on one side only."""
    pairs = zip_longest(split_block_hashes(left_hash), split_block_hashes(right_hash))
    return [index for index, (a, b) in enumerate(pairs) if a != b]


def compare_manifests(
    left: Manifest,
    right: Manifest,
    ignore_mtime: bool = False,
) -> Dict[str, object]:
    """Compare two manifests entry by entry.

    left is treated as the reference copy: entries it has that right lacks
    are "missing", entries only right has are "added".
    """
    stats = {
        "matched": 0,
        "mismatched": 0,
        "modified_only": 0,
        "unreadable": 0,
        "missing": 0,
        "added": 0,
        "retargeted": 0,
    }
    mismatched: List[Dict[str, object]] = []
    modified_only: List[Dict[str, object]] = []
    unreadable: List[Dict[str, object]] = []
    missing: List[Dict[str, object]] = []
    added: List[Dict[str, object]] = []
    retargeted: List[Dict[str, object]] = []

    left_dirs: Set[str] = set(left.dirs)
    right_dirs: Set[str] = set(right.dirs)
    left_links = {link.path: link.target for link in left.symlinks}
    right_links = {link.path: link.target for link in right.symlinks}
    left_files = {entry.path: entry for entry in left.files}
    right_files = {entry.path: entry for entry in right.files}

    for kind, left_paths, right_paths in (
        ("dir", left_dirs, right_dirs),
        ("symlink", left_links.keys(), right_links.keys()),
        ("file", left_files.keys(), right_files.keys()),
    ):
        for path in sorted(left_paths - right_paths):
            stats["missing"] += 1
            missing.append({"path": path, "kind": kind})
        for path in sorted(right_paths - left_paths):
            stats["added"] += 1
            added.append({"path": path, "kind": kind})

    for path in sorted(left_links.keys() & right_links.keys()):
        if left_links[path] != right_links[path]:
            stats["retargeted"] += 1
            retargeted.append(
                {
                    "path": path,
                    "left_target": left_links[path],
                    "right_target": right_links[path],
                }
            )

    _compare_files(
        left_files, right_files, ignore_mtime, stats, mismatched, modified_only, unreadable
    )

    match = not (
        stats["mismatched"]
        or stats["modified_only"]
        or stats["unreadable"]
        or stats["missing"]
        or stats["added"]
        or stats["retargeted"]
    )
    logging.info(
        f"Completed: matched={stats['matched']}, mismatched={stats['mismatched']}, "
        f"modified_only={stats['modified_only']}, unreadable={stats['unreadable']}, "
        f"missing={stats['missing']}, added={stats['added']}, retargeted={stats['retargeted']}"
    )

    report: Dict[str, object] = {
        "left": {"base_dir": left.base_dir, "timestamp": format_timestamp_ns(left.timestamp_ns)},
        "right": {"base_dir": right.base_dir, "timestamp": format_timestamp_ns(right.timestamp_ns)},
        "match": match,
        "stats": stats,
        "mismatched": mismatched,
        "modified_only": modified_only,
        "unreadable": unreadable,
        "missing": missing,
        "added": added,
        "retargeted": retargeted,
    }
    if ignore_mtime:
        report["ignore_mtime"] = True
    return report
