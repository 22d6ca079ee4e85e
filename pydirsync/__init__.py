"""PyDirSync - mirror a source directory onto a target directory."""

from .config import SyncProfile, load_sync_profiles_from_json
from .exceptions import (
    CancellationRequested,
    ClassifyError,
    DirSyncError,
    ScanError,
    SyncConfigError,
    SyncStateError,
    TransferError,
)
from .sync import (
    ActionKind,
    CancellationToken,
    SessionState,
    SyncEngine,
    SyncPlan,
    SyncPolicy,
    SyncReport,
)

__all__ = [
    "SyncEngine",
    "SyncPolicy",
    "SyncPlan",
    "SyncReport",
    "ActionKind",
    "SessionState",
    "CancellationToken",
    "SyncProfile",
    "load_sync_profiles_from_json",
    "DirSyncError",
    "ScanError",
    "ClassifyError",
    "TransferError",
    "CancellationRequested",
    "SyncStateError",
    "SyncConfigError",
]
