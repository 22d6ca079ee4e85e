"""Filesystem operations executed for sync actions."""

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional

from ..exceptions import CancellationRequested, TransferError
from ..utils import parent_paths
from .cancel import CancellationToken
from .comparator import ActionKind, SyncAction
from .policy import SyncPolicy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
"""Called as ``callback(bytes_done, bytes_total)``"""


class TransferExecutor:
    """Performs the physical copy/delete/mkdir work for single actions.

    Files are written to a temporary sibling and renamed into place, so a
    failed or cancelled copy never leaves a partial file at the destination
    and a failed Replace keeps the previous version.

    The target root must already exist; it is never created here, so a root
    that disappears while applying is an error rather than silently
    recreated. Unless ``follow_symlinks`` is set, no operation passes
    through a symbolic link inside the target tree.
    """

    def __init__(
        self,
        source_root: Path,
        target_root: Path,
        policy: Optional[SyncPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """Initialize the executor.

        Args:
            source_root: Root of the source tree
            target_root: Root of the target tree
            policy: Sync policy (chunking thresholds, symlink handling)
            cancel_token: Token checked between chunks of a large copy
        """
        self.source_root = Path(source_root)
        self.target_root = Path(target_root)
        self.policy = policy or SyncPolicy()
        self.cancel_token = cancel_token

    def execute(
        self,
        action: SyncAction,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> bool:
        """Execute a single sync action against the filesystem.

        Args:
            action: Action to execute
            progress_callback: Optional progress callback
                function(bytes_done, total_bytes), called for file copies only

        Returns:
            False if a directory deletion left a non-empty directory in
            place, True otherwise

        Raises:
            TransferError: If the filesystem operation fails
            CancellationRequested: If cancelled between chunks of a large copy
        """
        if action.kind in (ActionKind.CREATE, ActionKind.REPLACE):
            if action.is_dir:
                self.create_directory(action.relative_path)
            else:
                self.copy_file(action.relative_path, progress_callback)
        elif action.kind == ActionKind.DELETE:
            if action.is_dir:
                return self.delete_directory(action.relative_path)
            self.delete_file(action.relative_path)
        elif action.kind != ActionKind.KEEP:
            raise TransferError(
                action.relative_path, ValueError(f"Unknown action: {action.kind}")
            )
        return True

    def target_path(self, relative_path: str, include_self: bool = False) -> Path:
        """Return the absolute target path for a relative path.

        Args:
            relative_path: Path relative to the target root
            include_self: Also refuse the path itself being a symbolic link

        Raises:
            TransferError: If the target root is missing, or a directory on
                the way to the path is a symbolic link
        """
        if not self.target_root.is_dir():
            raise TransferError(
                relative_path,
                FileNotFoundError(
                    errno.ENOENT, "Target root is missing", str(self.target_root)
                ),
            )
        target = self.target_root / relative_path
        if self.policy.follow_symlinks:
            return target

        ancestors = reversed(parent_paths(relative_path))
        candidates = [self.target_root / p for p in ancestors]
        if include_self:
            candidates.append(target)
        for candidate in candidates:
            if candidate.is_symlink():
                raise TransferError(
                    relative_path,
                    OSError(
                        errno.ELOOP,
                        "Refusing to write through a symbolic link",
                        str(candidate),
                    ),
                )
        return target

    def copy_file(
        self,
        relative_path: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> int:
        """Copy a file from the source tree to the target tree.

        Files below ``chunk_threshold_bytes`` are copied in one streaming
        call and report progress once, at completion. Larger files are
        copied chunk by chunk; cancellation is checked and progress is
        reported after every chunk. Modification time and permission bits
        are copied from the source.

        Args:
            relative_path: Path relative to both roots
            progress_callback: Optional progress callback

        Returns:
            Number of bytes copied

        Raises:
            TransferError: On any I/O error (partial output is removed)
            CancellationRequested: If cancelled mid-copy (partial output is removed)
        """
        source = self.source_root / relative_path
        target = self.target_path(relative_path)

        try:
            size = source.stat().st_size
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".partial", dir=target.parent
            )
            os.close(fd)
        except OSError as e:
            raise TransferError(relative_path, e) from e

        temp_path = Path(temp_name)
        try:
            if size >= self.policy.chunk_threshold_bytes:
                copied = self._copy_chunked(source, temp_path, size, progress_callback)
            else:
                shutil.copyfile(source, temp_path)
                copied = size
            shutil.copystat(source, temp_path)
            os.replace(temp_path, target)
        except CancellationRequested:
            self._remove_partial(temp_path)
            logger.debug(f"Copy of {relative_path} cancelled, partial file removed")
            raise
        except OSError as e:
            self._remove_partial(temp_path)
            raise TransferError(relative_path, e) from e

        if size < self.policy.chunk_threshold_bytes and progress_callback:
            progress_callback(copied, size)
        return copied

    def _copy_chunked(
        self,
        source: Path,
        destination: Path,
        size: int,
        progress_callback: Optional[ProgressCallback],
    ) -> int:
        """Copy in bounded chunks, checking for cancellation between chunks."""
        chunk_size = self.policy.chunk_size_bytes
        copied = 0
        with open(source, "rb") as src, open(destination, "wb") as dst:
            while True:
                if self.cancel_token is not None:
                    self.cancel_token.raise_if_cancelled()
                chunk = src.read(chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
                copied += len(chunk)
                if progress_callback:
                    progress_callback(copied, size)
        return copied

    @staticmethod
    def _remove_partial(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial file {path}: {e}")

    def create_directory(self, relative_path: str) -> None:
        """Create a directory (and missing ancestors) in the target tree.

        Idempotent: an existing directory is not an error.
        """
        target = self.target_path(relative_path, include_self=True)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransferError(relative_path, e) from e

    def delete_file(self, relative_path: str) -> None:
        """Delete a file from the target tree.

        A file that is already gone counts as deleted.
        """
        target = self.target_path(relative_path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug(f"Already deleted: {relative_path}")
        except OSError as e:
            raise TransferError(relative_path, e) from e

    def delete_directory(self, relative_path: str) -> bool:
        """Delete a directory from the target tree if it is empty.

        A directory that still holds entries (for example ignored files) is
        left in place and is not an error.

        Returns:
            True if the directory is gone, False if it was left in place
        """
        target = self.target_path(relative_path)
        try:
            target.rmdir()
        except FileNotFoundError:
            logger.debug(f"Already deleted: {relative_path}")
        except OSError as e:
            if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
                logger.info(f"Directory not empty, left in place: {relative_path}")
                return False
            raise TransferError(relative_path, e) from e
        return True
