"""
Scan command: walk a tree, hash every regular file, and build the manifest.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from common import (
    DEFAULT_WORKERS,
    HASH_BATCH_SIZE,
    PROGRESS_EVERY,
    BlockHasher,
    EntryError,
    FileEntry,
    HashResult,
    HashTask,
    Manifest,
    SymlinkEntry,
    TraversalError,
    hash_file_task,
    normalize_name,
)
from patterns import ExclusionMatcher


ProgressCallback = Callable[[int, Dict[str, int]], None]
HashProgressCallback = Callable[[str, int, int], None]


class ManifestBuilder:
    """Accumulate walker output and produce the sorted Manifest.

    The timestamp is captured once, when the builder is created.
    """

    def __init__(
        self,
        base_dir: str,
        exclude_patterns: Sequence[str] = (),
        timestamp_ns: Optional[int] = None,
    ) -> None:
        self.timestamp_ns = time.time_ns() if timestamp_ns is None else timestamp_ns
        self.base_dir = base_dir
        self.exclude_patterns = tuple(exclude_patterns)

        self.found_dirs = 0
        self.found_symlinks = 0
        self.found_files = 0
        self.files_total_size = 0
        self.excluded = 0

        self._dirs: List[str] = []
        self._symlinks: List[SymlinkEntry] = []
        self._files: List[FileEntry] = []
        self._errors: List[EntryError] = []

    def add_dir(self, path: str) -> None:
        self._dirs.append(path)
        self.found_dirs += 1

    def add_symlink(self, entry: SymlinkEntry) -> None:
        self._symlinks.append(entry)
        self.found_symlinks += 1

    def add_file(self, entry: FileEntry) -> None:
        self._files.append(entry)
        self.found_files += 1
        self.files_total_size += entry.len

    def add_error(self, error: EntryError) -> None:
        self._errors.append(error)

    def add_excluded(self) -> None:
        self.excluded += 1

    def stats(self) -> Dict[str, int]:
        """Snapshot of the running counters."""
        return {
            "found_dirs": self.found_dirs,
            "found_symlinks": self.found_symlinks,
            "found_files": self.found_files,
            "files_total_size": self.files_total_size,
            "excluded": self.excluded,
            "errors": len(self._errors),
        }

    def finalize(self) -> Manifest:
        """Sort every collection by relative path and return the Manifest."""
        return Manifest(
            timestamp_ns=self.timestamp_ns,
            base_dir=self.base_dir,
            found_dirs=self.found_dirs,
            found_symlinks=self.found_symlinks,
            found_files=self.found_files,
            files_total_size=self.files_total_size,
            dirs=tuple(sorted(self._dirs)),
            symlinks=tuple(sorted(self._symlinks, key=lambda link: link.path)),
            files=tuple(sorted(self._files, key=lambda entry: entry.path)),
            exclude_patterns=self.exclude_patterns,
            errors=tuple(sorted(self._errors, key=lambda err: (err.path, err.kind))),
        )


def join_relative(prefix: str, name: str) -> str:
    """Join a normalized name onto a '/'-separated relative path."""
    return f"{prefix}/{name}" if prefix else name


def _list_directory(path: str) -> List[os.DirEntry]:
    try:
        with os.scandir(path) as entries:
            return list(entries)
    except OSError as exc:
        raise TraversalError(path, exc.strerror or str(exc)) from exc


class TreeWalker:
    """Depth-first walk of a root directory that never follows symlinks.

    Each directory is listed completely before its entries are processed.
    With workers > 1, file hashing is batched onto a thread pool; output is
    the same either way because the builder sorts on finalize.
    """

    def __init__(
        self,
        root: Union[str, Path],
        matcher: ExclusionMatcher,
        builder: ManifestBuilder,
        workers: int = DEFAULT_WORKERS,
        progress_callback: Optional[ProgressCallback] = None,
        hash_progress: Optional[HashProgressCallback] = None,
    ) -> None:
        self.root = os.fspath(root)
        self.matcher = matcher
        self.builder = builder
        self.workers = max(1, workers)
        self.progress_callback = progress_callback
        self.hash_progress = hash_progress

        self._hasher = BlockHasher()
        self._hash_batch: List[HashTask] = []
        self._entries_seen = 0
        self._last_progress_log = 0

    def walk(self) -> Manifest:
        """Walk the root and return the finalized manifest.

        Raises TraversalError if the root itself cannot be listed.
        """
        if self.workers > 1:
            logging.info(f"Using {self.workers} worker threads for hashing")

        root_entries = _list_directory(self.root)
        stack: List[Tuple[str, str, Optional[List[os.DirEntry]]]] = [(self.root, "", root_entries)]
        while stack:
            dir_path, prefix, entries = stack.pop()
            if entries is None:
                try:
                    entries = _list_directory(dir_path)
                except TraversalError as exc:
                    logging.warning(str(exc))
                    self.builder.add_error(EntryError(path=prefix, kind="traversal", error=exc.reason))
                    self._tick()
                    continue

            for entry in entries:
                rel_path = join_relative(prefix, normalize_name(entry.name))
                if self.matcher.is_excluded(rel_path):
                    logging.debug(f"Excluded {rel_path}")
                    self.builder.add_excluded()
                    continue
                if self._visit_entry(entry, rel_path):
                    stack.append((entry.path, rel_path, None))

        self._flush_batch()
        stats = self.builder.stats()
        logging.info(
            "Scan summary: %d dirs | %d symlinks | %d files | %d bytes | excluded: %d | errors: %d"
            % (
                stats["found_dirs"],
                stats["found_symlinks"],
                stats["found_files"],
                stats["files_total_size"],
                stats["excluded"],
                stats["errors"],
            )
        )
        self._emit_progress()
        return self.builder.finalize()

    def _visit_entry(self, entry: os.DirEntry, rel_path: str) -> bool:
        """Record one entry; return True when it is a directory to descend into."""
        try:
            if entry.is_symlink():
                self._record_symlink(entry, rel_path)
            elif entry.is_dir(follow_symlinks=False):
                self.builder.add_dir(rel_path)
                self._tick()
                return True
            elif entry.is_file(follow_symlinks=False):
                self._record_file(entry, rel_path)
            else:
                logging.debug(f"Skipping special file {rel_path}")
        except OSError as exc:
            self._record_read_error(rel_path, exc.strerror or str(exc))
        return False

    def _record_symlink(self, entry: os.DirEntry, rel_path: str) -> None:
        target = os.readlink(entry.path)
        self.builder.add_symlink(SymlinkEntry(path=rel_path, target=target))
        self._tick()

    def _record_file(self, entry: os.DirEntry, rel_path: str) -> None:
        file_stat = entry.stat(follow_symlinks=False)
        task = HashTask(
            path=Path(entry.path),
            rel_path=rel_path,
            size=file_stat.st_size,
            mtime_ns=file_stat.st_mtime_ns,
        )
        if self.workers > 1:
            self._hash_batch.append(task)
            if len(self._hash_batch) >= HASH_BATCH_SIZE:
                self._flush_batch()
            return

        progress = None
        if self.hash_progress:
            def progress(hashed: int) -> None:
                self.hash_progress(task.rel_path, hashed, task.size)
        self._record_hash_result(hash_file_task(task, self._hasher, progress))

    def _flush_batch(self) -> None:
        if not self._hash_batch:
            return
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(hash_file_task, task) for task in self._hash_batch]
            for future in as_completed(futures):
                self._record_hash_result(future.result())
        self._hash_batch.clear()

    def _record_hash_result(self, result: HashResult) -> None:
        task = result.task
        if result.error:
            logging.warning(f"Failed to hash {task.rel_path}: {result.error}")
            self.builder.add_error(EntryError(path=task.rel_path, kind="read", error=result.error))
        self.builder.add_file(FileEntry(
            path=task.rel_path,
            len=task.size,
            modified_ns=task.mtime_ns,
            hash=result.digest,
            error=result.error,
        ))
        self._tick()

    def _record_read_error(self, rel_path: str, reason: str) -> None:
        logging.warning(f"Failed to read {rel_path}: {reason}")
        self.builder.add_error(EntryError(path=rel_path, kind="read", error=reason))
        self._tick()

    def _tick(self) -> None:
        self._entries_seen += 1
        if self._entries_seen - self._last_progress_log >= PROGRESS_EVERY:
            stats = self.builder.stats()
            logging.info(
                f"Progress: dirs={stats['found_dirs']}, symlinks={stats['found_symlinks']}, "
                f"files={stats['found_files']}, bytes={stats['files_total_size']}, "
                f"errors={stats['errors']}"
            )
            self._last_progress_log = self._entries_seen
        self._emit_progress()

    def _emit_progress(self) -> None:
        if self.progress_callback:
            self.progress_callback(self._entries_seen, self.builder.stats())


def scan_tree(
    root: Union[str, Path],
    exclude_patterns: Iterable[str] = (),
    workers: int = DEFAULT_WORKERS,
    progress_callback: Optional[ProgressCallback] = None,
    hash_progress: Optional[HashProgressCallback] = None,
    timestamp_ns: Optional[int] = None,
) -> Manifest:
    """Build the manifest of root.

    Raises PatternError for an invalid exclude pattern and TraversalError
    when root is missing, not a directory, or cannot be listed; both happen
    before any entry is recorded.
    """
    base_dir = root if isinstance(root, str) else str(root)
    matcher = ExclusionMatcher(exclude_patterns)
    builder = ManifestBuilder(base_dir, matcher.patterns, timestamp_ns=timestamp_ns)

    if not os.path.exists(root):
        raise TraversalError(base_dir, "root directory does not exist")
    if not os.path.isdir(root):
        raise TraversalError(base_dir, "root path is not a directory")

    walker = TreeWalker(
        root,
        matcher,
        builder,
        workers=workers,
        progress_callback=progress_callback,
        hash_progress=hash_progress,
    )
    return walker.walk()
