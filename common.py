"""
Shared code for treesum scan and compare: constants, types, errors, hashing, serialization.
"""

import json
import logging
import sys
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

import xxhash


BLOCK_SIZE = 1 << 20
HASH_SEED = 0
HASH_HEX_WIDTH = 16
DEFAULT_WORKERS = 1
PROGRESS_EVERY = 1000
HASH_BATCH_SIZE = 100

NS_PER_SECOND = 1_000_000_000


class TreesumError(Exception):
    """Base class for all treesum errors."""


class PatternError(TreesumError, ValueError):
    """An exclusion pattern is not valid glob syntax."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid exclude pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class ReadError(TreesumError):
    """A file or link could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to read {path}: {reason}")
        self.path = path
        self.reason = reason


class TraversalError(TreesumError):
    """A directory could not be listed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to list {path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class FileEntry:
    """A regular file: size, mtime and block checksum."""
    path: str
    len: int
    modified_ns: int
    hash: str
    error: Optional[str] = None


@dataclass(frozen=True)
class SymlinkEntry:
    """A symlink and its literal, unresolved target."""
    path: str
    target: str


@dataclass(frozen=True)
class EntryError:
    """A per-entry failure recorded during traversal."""
    path: str
    kind: str
    error: str


@dataclass(frozen=True)
class Manifest:
    """Finalized, sorted description of a directory tree."""
    timestamp_ns: int
    base_dir: str
    found_dirs: int
    found_symlinks: int
    found_files: int
    files_total_size: int
    dirs: Tuple[str, ...]
    symlinks: Tuple[SymlinkEntry, ...]
    files: Tuple[FileEntry, ...]
    exclude_patterns: Tuple[str, ...] = ()
    errors: Tuple[EntryError, ...] = field(default_factory=tuple)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console.

    The console handler writes to stderr so the manifest can go to stdout.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def normalize_name(name: str) -> str:
    """Return the NFC form of a filesystem name.

    Names holding undecodable bytes (lone surrogates from surrogateescape)
    are returned unchanged.
    """
    try:
        name.encode('utf-8')
    except UnicodeEncodeError:
        return name
    if unicodedata.is_normalized('NFC', name):
        return name
    return unicodedata.normalize('NFC', name)


def _fill_block(stream: BinaryIO, view: memoryview) -> int:
    """Read into view until it is full or the stream is exhausted."""
    filled = 0
    size = len(view)
    while filled < size:
        count = stream.readinto(view[filled:])
        if not count:
            break
        filled += count
    return filled


class BlockHasher:
    """Checksum a byte stream as a sequence of independent 1 MiB block hashes.

    Each block is hashed with seeded xxh64 and rendered as 16 uppercase hex
    characters; the checksum is their concatenation in stream order. The
    buffer is allocated once and reused for every block and every stream.
    """

    def __init__(self, block_size: int = BLOCK_SIZE, seed: int = HASH_SEED) -> None:
        if block_size <= 0:
            raise ValueError(f"block_size must be positive, got {block_size}")
        self.block_size = block_size
        self.seed = seed
        self._buffer = bytearray(block_size)
        self._view = memoryview(self._buffer)

    def hash_block(self, data) -> str:
        return xxhash.xxh64(data, seed=self.seed).hexdigest().upper()

    def hash_stream(
        self,
        stream: BinaryIO,
        progress: Optional[Callable[[int], None]] = None,
    ) -> str:
        """Hash stream block by block; an empty stream yields ''."""
        digests: List[str] = []
        hashed = 0
        while True:
            filled = _fill_block(stream, self._view)
            if not filled:
                break
            digests.append(self.hash_block(self._view[:filled]))
            hashed += filled
            if progress:
                progress(hashed)
            if filled < self.block_size:
                break
        return ''.join(digests)


def split_block_hashes(checksum: str) -> List[str]:
    """Split a checksum into its per-block hex digests."""
    if len(checksum) % HASH_HEX_WIDTH:
        raise ValueError(f"Checksum length {len(checksum)} is not a multiple of {HASH_HEX_WIDTH}")
    return [checksum[i:i + HASH_HEX_WIDTH] for i in range(0, len(checksum), HASH_HEX_WIDTH)]


def hash_file(
    file_path: Path,
    hasher: Optional[BlockHasher] = None,
    progress: Optional[Callable[[int], None]] = None,
) -> str:
    """Compute the block checksum of a file, raising ReadError on I/O failure."""
    hasher = hasher or BlockHasher()
    try:
        with open(file_path, 'rb', buffering=0) as handle:
            return hasher.hash_stream(handle, progress)
    except OSError as exc:
        raise ReadError(str(file_path), exc.strerror or str(exc)) from exc


@dataclass
class HashTask:
    """A file discovered by the walker, waiting to be hashed."""
    path: Path
    rel_path: str
    size: int
    mtime_ns: int


@dataclass
class HashResult:
    """Result of a hash computation."""
    task: HashTask
    digest: str = ""
    error: Optional[str] = None


def hash_file_task(
    task: HashTask,
    hasher: Optional[BlockHasher] = None,
    progress: Optional[Callable[[int], None]] = None,
) -> HashResult:
    """Hash one file, returning a HashResult (for use in thread pool).

    Pool tasks get no hasher and allocate their own buffer.
    """
    try:
        digest = hash_file(task.path, hasher, progress)
        return HashResult(task=task, digest=digest)
    except ReadError as exc:
        return HashResult(task=task, error=exc.reason)


def format_timestamp_ns(timestamp_ns: int) -> str:
    """Render nanoseconds since the epoch as RFC 3339 UTC.

    Fractional seconds use 0, 3, 6 or 9 digits, whichever is exact.
    """
    seconds, nanos = divmod(timestamp_ns, NS_PER_SECOND)
    text = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%S')
    if nanos == 0:
        return f"{text}Z"
    if nanos % 1_000_000 == 0:
        return f"{text}.{nanos // 1_000_000:03d}Z"
    if nanos % 1_000 == 0:
        return f"{text}.{nanos // 1_000:06d}Z"
    return f"{text}.{nanos:09d}Z"


def parse_timestamp_ns(text: str) -> int:
    """Inverse of format_timestamp_ns."""
    if not text.endswith('Z'):
        raise ValueError(f"Timestamp is not UTC: {text!r}")
    body = text[:-1]
    whole, _, frac = body.partition('.')
    if len(frac) > 9 or (frac and not frac.isdigit()):
        raise ValueError(f"Invalid fractional seconds in {text!r}")
    dt = datetime.strptime(whole, '%Y-%m-%dT%H:%M:%S').replace(tzinfo=timezone.utc)
    seconds = int((dt - datetime(1970, 1, 1, tzinfo=timezone.utc)).total_seconds())
    nanos = int(frac.ljust(9, '0')) if frac else 0
    return seconds * NS_PER_SECOND + nanos


def manifest_to_dict(manifest: Manifest) -> Dict[str, object]:
    """Build the JSON-compatible manifest document."""
    files: List[Dict[str, object]] = []
    for entry in manifest.files:
        item: Dict[str, object] = {
            "path": entry.path,
            "len": entry.len,
            "modified": format_timestamp_ns(entry.modified_ns),
            "hash": entry.hash,
        }
        if entry.error is not None:
            item["error"] = entry.error
        files.append(item)

    return {
        "timestamp": format_timestamp_ns(manifest.timestamp_ns),
        "base_dir": manifest.base_dir,
        "exclude_set": list(manifest.exclude_patterns),
        "found_dirs": manifest.found_dirs,
        "found_symlinks": manifest.found_symlinks,
        "found_files": manifest.found_files,
        "files_total_size": manifest.files_total_size,
        "dirs": list(manifest.dirs),
        "symlinks": [[link.path, link.target] for link in manifest.symlinks],
        "files": files,
        "errors": [
            {"path": err.path, "kind": err.kind, "error": err.error}
            for err in manifest.errors
        ],
    }


def _checked_hash(checksum: str) -> str:
    split_block_hashes(checksum)
    return checksum


def manifest_from_dict(data: Dict[str, object]) -> Manifest:
    """Rebuild a Manifest from its JSON document."""
    try:
        files = tuple(
            FileEntry(
                path=item["path"],
                len=int(item["len"]),
                modified_ns=parse_timestamp_ns(item["modified"]),
                hash=_checked_hash(item["hash"]),
                error=item.get("error"),
            )
            for item in data["files"]
        )
        symlinks = tuple(SymlinkEntry(path=path, target=target) for path, target in data["symlinks"])
        errors = tuple(
            EntryError(path=item["path"], kind=item["kind"], error=item["error"])
            for item in data.get("errors", [])
        )
        return Manifest(
            timestamp_ns=parse_timestamp_ns(data["timestamp"]),
            base_dir=data["base_dir"],
            found_dirs=int(data["found_dirs"]),
            found_symlinks=int(data["found_symlinks"]),
            found_files=int(data["found_files"]),
            files_total_size=int(data["files_total_size"]),
            dirs=tuple(data["dirs"]),
            symlinks=symlinks,
            files=files,
            exclude_patterns=tuple(data.get("exclude_set", [])),
            errors=errors,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed manifest: {exc}") from exc


def render_manifest(manifest: Manifest) -> bytes:
    """Serialize a manifest to UTF-8 JSON bytes.

    Undecodable filename bytes are written back unchanged.
    """
    text = json.dumps(manifest_to_dict(manifest), indent=2, ensure_ascii=False)
    return (text + "\n").encode('utf-8', 'surrogateescape')


def write_manifest(manifest: Manifest, output_path: Optional[Path]) -> None:
    """Write manifest to a file, or to stdout when output_path is None."""
    payload = render_manifest(manifest)
    if output_path is None:
        sys.stdout.flush()
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(payload)
    logging.info(f"Manifest written to {output_path}")


def load_manifest(manifest_path: Path) -> Manifest:
    """Read a manifest written by write_manifest."""
    if not manifest_path.exists():
        raise FileNotFoundError(f"Manifest not found: {manifest_path}")
    text = manifest_path.read_bytes().decode('utf-8', 'surrogateescape')
    return manifest_from_dict(json.loads(text))


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True, ensure_ascii=False)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_bytes(report_json.encode('utf-8', 'surrogateescape'))
    logging.info(f"Report written to {report_path}")
