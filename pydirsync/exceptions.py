"""Exceptions raised by the directory sync engine."""

from typing import Optional


class DirSyncError(Exception):
    """Base exception for all pydirsync errors."""


class ScanError(DirSyncError):
    """A root or a subtree could not be read during scanning.

    Raised for the root itself; for subtrees the error is recorded on the
    scan result and the walk continues.
    """

    def __init__(self, path: str, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Cannot scan {path}{detail}")


class ClassifyError(DirSyncError):
    """Inventories were malformed and no plan could be built."""


class TransferError(DirSyncError):
    """A single filesystem action failed (copy, delete or mkdir)."""

    def __init__(self, path: str, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Transfer failed for {path}{detail}")


class CancellationRequested(DirSyncError):
    """The caller asked the session to stop.

    Not a failure: it is the normal outcome of a cancelled session and is
    kept apart from TransferError so callers can present it neutrally.
    """


class SyncStateError(DirSyncError):
    """An operation was requested in a session state that does not allow it."""


class SyncConfigError(DirSyncError):
    """Invalid sync policy or profile configuration."""
