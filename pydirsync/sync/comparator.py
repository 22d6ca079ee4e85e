"""Change classification: turns two inventories into a sync plan."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Union

from ..exceptions import ClassifyError, ScanError
from ..utils import is_beneath, path_parts
from .policy import SyncPolicy
from .scanner import InventoryEntry, ScanResult

logger = logging.getLogger(__name__)

Inventory = Union[ScanResult, dict[str, InventoryEntry]]


class ActionKind(str, Enum):
    """Actions that can be planned for a path."""

    CREATE = "create"
    """Path exists only in the source; create it in the target"""

    REPLACE = "replace"
    """File exists in both trees but differs; overwrite the target"""

    DELETE = "delete"
    """Path must be removed from the target"""

    KEEP = "keep"
    """File is unchanged; no filesystem operation"""


@dataclass(frozen=True)
class SyncAction:
    """A single planned filesystem operation for one relative path."""

    kind: ActionKind
    """Action to take"""

    relative_path: str
    """Relative path of the file or directory"""

    is_dir: bool = False
    """Whether the action targets a directory"""

    size: int = 0
    """Known source size in bytes (Create/Replace of files only)"""

    reason: str = ""
    """Human-readable reason for this action"""

    @property
    def transfers_bytes(self) -> bool:
        """Whether executing the action copies file content."""
        return (
            self.kind in (ActionKind.CREATE, ActionKind.REPLACE) and not self.is_dir
        )

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()}({self.relative_path})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "path": self.relative_path,
            "isDir": self.is_dir,
            "size": self.size,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class SyncPlan:
    """Ordered actions for one sync session plus aggregate counters."""

    actions: tuple[SyncAction, ...] = ()
    """Actions in execution order"""

    kept_count: int = 0
    """Files found unchanged (counted even when Keep records are not emitted)"""

    blocked: tuple[str, ...] = ()
    """Type changes left untouched because they would delete target-only data"""

    scan_errors: tuple[ScanError, ...] = field(default=(), compare=False)
    """Partial scan failures of both trees"""

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self) -> Iterator[SyncAction]:
        return iter(self.actions)

    def __getitem__(self, index: int) -> SyncAction:
        return self.actions[index]

    @property
    def total_bytes(self) -> int:
        """Bytes to copy when applying the plan."""
        return sum(a.size for a in self.actions if a.transfers_bytes)

    @property
    def total_files(self) -> int:
        """Number of files to copy when applying the plan."""
        return sum(1 for a in self.actions if a.transfers_bytes)

    @property
    def is_empty(self) -> bool:
        """True when applying the plan would not touch the filesystem."""
        return all(a.kind == ActionKind.KEEP for a in self.actions)

    def count(self, kind: ActionKind) -> int:
        """Number of actions of the given kind."""
        return sum(1 for a in self.actions if a.kind == kind)

    def changes(self) -> "SyncPlan":
        """Return a copy without Keep records."""
        return self._with_actions(a for a in self.actions if a.kind != ActionKind.KEEP)

    def without(self, paths: Iterable[str]) -> "SyncPlan":
        """Return a copy with the given paths deselected.

        Every action on an excluded path or beneath it is removed, so
        deselecting a directory also deselects its contents.

        Args:
            paths: Relative paths to exclude

        Returns:
            New SyncPlan
        """
        excluded = {p.strip("/") for p in paths}
        if not excluded:
            return self

        def is_excluded(path: str) -> bool:
            return path in excluded or any(is_beneath(path, p) for p in excluded)

        return self._with_actions(
            a for a in self.actions if not is_excluded(a.relative_path)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the plan to a JSON-serializable dictionary."""
        return {
            "actions": [a.to_dict() for a in self.actions],
            "kept": self.kept_count,
            "totalBytes": self.total_bytes,
            "blocked": list(self.blocked),
            "scanErrors": [
                {"path": e.path, "cause": str(e.cause) if e.cause else str(e)}
                for e in self.scan_errors
            ],
        }

    def _with_actions(self, actions: Iterable[SyncAction]) -> "SyncPlan":
        return SyncPlan(
            actions=tuple(actions),
            kept_count=self.kept_count,
            blocked=self.blocked,
            scan_errors=self.scan_errors,
        )


def _unpack(inventory: Inventory) -> tuple[dict[str, InventoryEntry], list[ScanError]]:
    if isinstance(inventory, ScanResult):
        return inventory.entries, list(inventory.errors)
    return inventory, []


class FileComparator:
    """Compares source and target inventories to determine sync actions."""

    def __init__(self, policy: Optional[SyncPolicy] = None):
        """Initialize file comparator.

        Args:
            policy: Sync policy controlling deletions and tolerances
        """
        self.policy = policy or SyncPolicy()

    def classify(self, source: Inventory, target: Inventory) -> SyncPlan:
        """Compare two inventories and build an ordered plan.

        The plan is ordered in three phases:

        1. deletions forced by a type change (file <-> directory), deepest first
        2. creates, replaces and keeps in path order, parents before children
        3. deletions of target-only paths, deepest first

        Args:
            source: Source inventory (ignore patterns already applied)
            target: Target inventory (ignore patterns already applied)

        Returns:
            SyncPlan

        Raises:
            ClassifyError: If an inventory is malformed
        """
        source_entries, source_errors = _unpack(source)
        target_entries, target_errors = _unpack(target)
        self._validate(source_entries, "source")
        self._validate(target_entries, "target")

        type_change_deletes, replaced_paths, blocked = self._plan_type_changes(
            source_entries, target_entries
        )
        handled = {a.relative_path for a in type_change_deletes}

        forward: list[SyncAction] = []
        kept = 0
        for path in sorted(source_entries, key=path_parts):
            if path in blocked:
                continue
            source_entry = source_entries[path]
            target_entry = target_entries.get(path)

            if target_entry is None or path in replaced_paths:
                forward.append(
                    SyncAction(
                        kind=ActionKind.CREATE,
                        relative_path=path,
                        is_dir=source_entry.is_dir,
                        size=source_entry.size,
                        reason="Type changed" if target_entry else "New in source",
                    )
                )
                continue

            if source_entry.is_dir:
                # Directories are compared for existence only
                continue

            reason = self._difference(source_entry, target_entry)
            if reason is not None:
                forward.append(
                    SyncAction(
                        kind=ActionKind.REPLACE,
                        relative_path=path,
                        size=source_entry.size,
                        reason=reason,
                    )
                )
                continue

            kept += 1
            if self.policy.include_kept:
                forward.append(
                    SyncAction(
                        kind=ActionKind.KEEP,
                        relative_path=path,
                        size=source_entry.size,
                        reason="Files are identical",
                    )
                )

        extra_deletes = self._plan_extra_deletes(
            source_entries,
            target_entries,
            handled,
            protected=[e.path for e in source_errors],
        )

        actions = tuple(type_change_deletes + forward + extra_deletes)
        self._check_unique(actions)

        plan = SyncPlan(
            actions=actions,
            kept_count=kept,
            blocked=tuple(sorted(blocked)),
            scan_errors=tuple(source_errors + target_errors),
        )
        logger.debug(
            "Planned %d action(s): %d create, %d replace, %d delete, %d kept",
            len(plan),
            plan.count(ActionKind.CREATE),
            plan.count(ActionKind.REPLACE),
            plan.count(ActionKind.DELETE),
            kept,
        )
        return plan

    def _difference(
        self, source_entry: InventoryEntry, target_entry: InventoryEntry
    ) -> Optional[str]:
        """Return why two files differ, or None when they are the same."""
        if source_entry.size != target_entry.size:
            return f"Size differs ({source_entry.size} vs {target_entry.size})"
        time_diff = abs(source_entry.modified - target_entry.modified)
        if time_diff > self.policy.mtime_tolerance_seconds:
            return f"Modification time differs by {time_diff:.1f}s"
        return None

    def _plan_type_changes(
        self,
        source_entries: dict[str, InventoryEntry],
        target_entries: dict[str, InventoryEntry],
    ) -> tuple[list[SyncAction], set[str], set[str]]:
        """Plan the deletions needed where a path changed between file and dir.

        Returns:
            Tuple of (delete actions deepest first, paths to recreate,
            blocked paths)
        """
        deletes: list[SyncAction] = []
        replaced: set[str] = set()
        blocked: set[str] = set()

        for path, source_entry in source_entries.items():
            target_entry = target_entries.get(path)
            if target_entry is None or target_entry.is_dir == source_entry.is_dir:
                continue

            descendants = []
            if target_entry.is_dir:
                descendants = [p for p in target_entries if is_beneath(p, path)]
            if descendants and not self.policy.allow_delete_extra:
                logger.warning(
                    f"Skipping {path}: replacing the directory would delete "
                    f"{len(descendants)} target-only entries"
                )
                blocked.add(path)
                continue

            for descendant in descendants:
                deletes.append(
                    SyncAction(
                        kind=ActionKind.DELETE,
                        relative_path=descendant,
                        is_dir=target_entries[descendant].is_dir,
                        reason="Parent type changed",
                    )
                )
            deletes.append(
                SyncAction(
                    kind=ActionKind.DELETE,
                    relative_path=path,
                    is_dir=target_entry.is_dir,
                    reason="Type changed",
                )
            )
            replaced.add(path)

        deletes.sort(key=lambda a: path_parts(a.relative_path), reverse=True)
        return deletes, replaced, blocked

    def _plan_extra_deletes(
        self,
        source_entries: dict[str, InventoryEntry],
        target_entries: dict[str, InventoryEntry],
        handled: set[str],
        protected: list[str],
    ) -> list[SyncAction]:
        """Plan deletions of target-only paths, deepest first."""
        if not self.policy.allow_delete_extra:
            return []

        deletes: list[SyncAction] = []
        for path in sorted(target_entries, key=path_parts, reverse=True):
            if path in source_entries or path in handled:
                continue
            if any(path == p or is_beneath(path, p) for p in protected):
                logger.warning(f"Not deleting {path}: source subtree was not readable")
                continue
            deletes.append(
                SyncAction(
                    kind=ActionKind.DELETE,
                    relative_path=path,
                    is_dir=target_entries[path].is_dir,
                    reason="Not in source",
                )
            )
        return deletes

    @staticmethod
    def _validate(entries: dict[str, InventoryEntry], label: str) -> None:
        for key, entry in entries.items():
            if key != entry.relative_path:
                raise ClassifyError(
                    f"Malformed {label} inventory: key {key!r} does not match "
                    f"entry path {entry.relative_path!r}"
                )
            if not key or key.startswith("/") or ".." in path_parts(key):
                raise ClassifyError(f"Malformed {label} inventory path: {key!r}")

    @staticmethod
    def _check_unique(actions: tuple[SyncAction, ...]) -> None:
        counts = Counter((a.kind, a.relative_path) for a in actions)
        duplicates = [f"{kind.value}:{path}" for (kind, path), n in counts.items() if n > 1]
        if duplicates:
            raise ClassifyError(f"Duplicate plan entries: {', '.join(duplicates)}")
