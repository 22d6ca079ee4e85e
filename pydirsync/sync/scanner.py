"""Directory scanning utilities for sync operations."""

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import ScanError
from .cancel import CancellationToken
from .ignore import IgnoreMatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InventoryEntry:
    """A file or directory found while scanning a tree."""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes (0 for directories)"""

    modified: float
    """Last modification time (Unix timestamp)"""

    is_dir: bool
    """Whether the entry is a directory"""

    @classmethod
    def from_stat(cls, relative_path: str, st: os.stat_result) -> "InventoryEntry":
        """Create an entry from a stat result.

        Args:
            relative_path: Path relative to the scan root
            st: Result of os.stat / os.lstat for the entry

        Returns:
            InventoryEntry instance
        """
        is_dir = stat.S_ISDIR(st.st_mode)
        return cls(
            relative_path=relative_path,
            size=0 if is_dir else st.st_size,
            modified=st.st_mtime,
            is_dir=is_dir,
        )


@dataclass
class ScanResult:
    """Inventory of one tree plus the subtrees that could not be read."""

    root: Path
    """Root directory that was scanned"""

    entries: dict[str, InventoryEntry] = field(default_factory=dict)
    """Entries keyed by relative path, in walk order"""

    errors: list[ScanError] = field(default_factory=list)
    """Partial failures (unreadable subdirectories or entries)"""

    root_exists: bool = True
    """False when a missing root was accepted as an empty tree"""

    @property
    def file_count(self) -> int:
        """Number of regular files in the inventory."""
        return sum(1 for entry in self.entries.values() if not entry.is_dir)

    @property
    def total_bytes(self) -> int:
        """Sum of all file sizes in the inventory."""
        return sum(entry.size for entry in self.entries.values())

    @property
    def failed_paths(self) -> list[str]:
        """Relative paths of subtrees that could not be scanned."""
        return [error.path for error in self.errors]


class DirectoryScanner:
    """Walks a directory tree and builds an inventory.

    The walk uses an explicit stack and remembers the identity
    ``(st_dev, st_ino)`` of every directory it enters, so aliased
    directories (bind mounts, followed symlink loops) are visited once.

    Examples:
        >>> scanner = DirectoryScanner()
        >>> result = scanner.scan(Path("/sync/folder"))
        >>> for path, entry in result.entries.items():
        ...     print(path, entry.size)

        >>> # With ignore patterns
        >>> scanner = DirectoryScanner(IgnoreMatcher(["*.tmp", "cache/"]))
        >>> result = scanner.scan(Path("/sync/folder"))
    """

    def __init__(
        self,
        ignore: Optional[IgnoreMatcher] = None,
        follow_symlinks: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """Initialize directory scanner.

        Args:
            ignore: Matcher for paths to exclude from the inventory
            follow_symlinks: Follow symbolic links instead of skipping them
            cancel_token: Token checked between directory visits
        """
        self.ignore = ignore or IgnoreMatcher()
        self.follow_symlinks = follow_symlinks
        self.cancel_token = cancel_token

    def scan(self, root: Path, allow_missing: bool = False) -> ScanResult:
        """Scan a directory tree.

        Args:
            root: Directory to scan
            allow_missing: Return an empty result instead of failing when
                the root does not exist (used for a target created on apply)

        Returns:
            ScanResult with every reachable file and directory

        Raises:
            ScanError: If the root is missing, not a directory, or unreadable
            CancellationRequested: If the cancel token is set during the walk
        """
        root = Path(root)
        try:
            root_stat = root.stat()
        except FileNotFoundError as e:
            if allow_missing:
                logger.debug(f"Root does not exist yet: {root}")
                return ScanResult(root=root, root_exists=False)
            raise ScanError(str(root), e) from e
        except OSError as e:
            raise ScanError(str(root), e) from e

        if not stat.S_ISDIR(root_stat.st_mode):
            raise ScanError(str(root), NotADirectoryError(f"Not a directory: {root}"))

        result = ScanResult(root=root)
        visited: set[tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
        stack: list[tuple[Path, str]] = [(root, "")]

        while stack:
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()

            directory, rel_dir = stack.pop()
            try:
                with os.scandir(directory) as it:
                    children = sorted(it, key=lambda item: item.name)
            except OSError as e:
                if not rel_dir:
                    raise ScanError(str(root), e) from e
                logger.warning(f"Cannot read directory {rel_dir}: {e}")
                result.errors.append(ScanError(rel_dir, e))
                continue

            subdirs: list[tuple[Path, str]] = []
            for item in children:
                relative_path = f"{rel_dir}/{item.name}" if rel_dir else item.name
                try:
                    self._scan_item(item, relative_path, result, visited, subdirs)
                except OSError as e:
                    logger.warning(f"Cannot read {relative_path}: {e}")
                    result.errors.append(ScanError(relative_path, e))

            # Reversed so that siblings are walked in name order
            stack.extend(reversed(subdirs))

        logger.debug(
            "Scanned %s: %d entries, %d error(s)",
            root,
            len(result.entries),
            len(result.errors),
        )
        return result

    def _scan_item(
        self,
        item: os.DirEntry,
        relative_path: str,
        result: ScanResult,
        visited: set[tuple[int, int]],
        subdirs: list[tuple[Path, str]],
    ) -> None:
        """Add a single directory entry to the inventory.

        Args:
            item: Entry returned by os.scandir
            relative_path: Path of the entry relative to the scan root
            result: Result being built (modified in place)
            visited: Identities of directories already entered
            subdirs: Directories to descend into (modified in place)
        """
        if item.is_symlink() and not self.follow_symlinks:
            logger.debug(f"Skipping symlink: {relative_path}")
            return

        try:
            st = os.stat(item.path, follow_symlinks=self.follow_symlinks)
        except FileNotFoundError:
            # Broken symlink, or removed while scanning
            logger.debug(f"Skipping vanished entry: {relative_path}")
            return

        is_dir = stat.S_ISDIR(st.st_mode)
        if not is_dir and not stat.S_ISREG(st.st_mode):
            logger.debug(f"Skipping special file: {relative_path}")
            return

        if self.ignore.is_ignored(relative_path, is_dir=is_dir):
            logger.debug(f"Ignoring (from rules): {relative_path}")
            return

        if is_dir:
            identity = (st.st_dev, st.st_ino)
            if identity in visited:
                logger.warning(f"Skipping already visited directory: {relative_path}")
                return
            visited.add(identity)
            subdirs.append((Path(item.path), relative_path))

        result.entries[relative_path] = InventoryEntry.from_stat(relative_path, st)
