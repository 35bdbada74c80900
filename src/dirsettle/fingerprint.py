"""
Directory fingerprints for cheap change detection.

A fingerprint maps each regular file's path (relative to the captured root)
to a metadata signature of size and modification time. Nothing beyond
``stat()`` is read, so capturing a folder full of large binaries costs the
same as capturing a folder of text files. Two fingerprints are equal when
they hold the same set of (path, signature) pairs.
"""

import hashlib
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from .exceptions import CaptureError


PathLike = Union[str, Path]


@dataclass(frozen=True)
class FileSignature:
    """Metadata signature of one file."""
    size: int
    mtime_ns: int

    def __str__(self) -> str:
        return f"{self.size}:{self.mtime_ns}"


@dataclass(frozen=True)
class FingerprintDiff:
    """
    Difference between two fingerprints, used for reporting only.

    Attributes:
        added: Paths present in the current fingerprint but not the previous one
        removed: Paths present in the previous fingerprint but not the current one
        modified: Paths present in both whose signatures differ
    """
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()
    modified: FrozenSet[str] = frozenset()

    @property
    def added_count(self) -> int:
        return len(self.added)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    @property
    def modified_count(self) -> int:
        return len(self.modified)

    @property
    def total_count(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    @property
    def is_empty(self) -> bool:
        return self.total_count == 0

    def summary(self) -> str:
        """Short description such as ``3 added, 1 modified``."""
        parts = []
        if self.added:
            parts.append(f"{len(self.added)} added")
        if self.removed:
            parts.append(f"{len(self.removed)} removed")
        if self.modified:
            parts.append(f"{len(self.modified)} modified")
        return ", ".join(parts) if parts else "no changes"


@dataclass(frozen=True, eq=False)
class DirectoryFingerprint:
    """
    Immutable snapshot of a directory's file signatures.

    Attributes:
        entries: Relative path -> signature
        root: Directory the fingerprint was captured from
        captured_at: Unix timestamp of the capture
    """
    entries: Mapping[str, FileSignature]
    root: Optional[Path] = None
    captured_at: float = field(default_factory=time.time)
    digest: str = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "entries", dict(self.entries))
        object.__setattr__(self, "digest", _merkle_digest(self.entries))

    def __eq__(self, other):
        if not isinstance(other, DirectoryFingerprint):
            return NotImplemented
        return self.entries == other.entries

    def __hash__(self):
        return hash(self.digest)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, relative_path: str) -> bool:
        return relative_path in self.entries

    def changed(self, previous: "DirectoryFingerprint") -> bool:
        """True if this fingerprint differs from ``previous``."""
        return self.digest != previous.digest or self.entries != previous.entries

    def diff(self, previous: Optional["DirectoryFingerprint"]) -> FingerprintDiff:
        """
        Compute what changed since ``previous``.

        With no previous fingerprint every entry counts as added.
        """
        if previous is None:
            return FingerprintDiff(added=frozenset(self.entries))

        old = previous.entries
        new = self.entries
        old_paths = set(old)
        new_paths = set(new)

        return FingerprintDiff(
            added=frozenset(new_paths - old_paths),
            removed=frozenset(old_paths - new_paths),
            modified=frozenset(p for p in old_paths & new_paths if old[p] != new[p]),
        )


def capture(
    root: PathLike,
    recursive: bool = False,
    excluded_subpaths: Optional[Iterable[PathLike]] = None,
) -> DirectoryFingerprint:
    """
    Capture a fingerprint of a directory using stat() only.

    Hidden entries (names starting with ".") are skipped and symlinks are
    never followed. Files that vanish between listing and stat are left out.

    Args:
        root: Directory to fingerprint
        recursive: Descend into subdirectories
        excluded_subpaths: Directories whose whole subtree is skipped
            (typically folders owned by another watcher)

    Returns:
        The fingerprint of the directory

    Raises:
        CaptureError: If the root or a subdirectory cannot be listed
    """
    root = Path(root)
    if not root.is_dir():
        raise CaptureError(f"Not a directory: {root}")

    excluded = [str(Path(p)) for p in excluded_subpaths or ()]
    entries: Dict[str, FileSignature] = {}
    pending: List[Path] = [root]

    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as it:
                children = list(it)
        except FileNotFoundError:
            if directory == root:
                raise CaptureError(f"Directory disappeared: {root}")
            continue
        except OSError as e:
            raise CaptureError(f"Failed to enumerate directory {directory}: {e}") from e

        for entry in children:
            if entry.name.startswith("."):
                continue
            if _is_excluded(entry.path, excluded):
                continue

            try:
                if entry.is_dir(follow_symlinks=False):
                    if recursive:
                        pending.append(Path(entry.path))
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                stat = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                continue

            relative = Path(entry.path).relative_to(root).as_posix()
            entries[relative] = FileSignature(size=stat.st_size, mtime_ns=stat.st_mtime_ns)

    return DirectoryFingerprint(entries=entries, root=root)


def _is_excluded(path: str, excluded: List[str]) -> bool:
    for prefix in excluded:
        if path == prefix or path.startswith(prefix + os.sep):
            return True
    return False


def _merkle_digest(entries: Mapping[str, FileSignature]) -> str:
    hasher = hashlib.sha256()
    for relative in sorted(entries):
        hasher.update(f"{relative}:{entries[relative]}\n".encode("utf-8"))
    return hasher.hexdigest()[:32]
