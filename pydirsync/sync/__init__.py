"""Sync engine for pydirsync - one-way mirroring of a source onto a target."""

from .cancel import CancellationToken
from .comparator import ActionKind, FileComparator, SyncAction, SyncPlan
from .engine import SyncEngine
from .ignore import IgnoreMatcher
from .operations import TransferExecutor
from .policy import SyncPolicy
from .progress import ProgressEvent, SyncProgressTracker
from .scanner import DirectoryScanner, InventoryEntry, ScanResult
from .session import (
    ActionRecord,
    ActionStatus,
    FailedAction,
    SessionSnapshot,
    SessionState,
    SyncReport,
)

__all__ = [
    "SyncEngine",
    "SyncPolicy",
    "CancellationToken",
    "DirectoryScanner",
    "InventoryEntry",
    "ScanResult",
    "IgnoreMatcher",
    "FileComparator",
    "ActionKind",
    "SyncAction",
    "SyncPlan",
    "TransferExecutor",
    "ProgressEvent",
    "SyncProgressTracker",
    "SessionState",
    "SessionSnapshot",
    "ActionStatus",
    "ActionRecord",
    "FailedAction",
    "SyncReport",
]
