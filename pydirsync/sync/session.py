"""Session state, per-action records and the final sync report.

The orchestrator owns a single mutable SyncSession. Everything handed to
observers (SessionSnapshot, SyncReport, ActionRecord) is immutable.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from ..exceptions import SyncStateError
from .cancel import CancellationToken
from .comparator import ActionKind, SyncAction, SyncPlan


class SessionState(str, Enum):
    """Lifecycle of a sync session."""

    IDLE = "idle"
    SCANNING = "scanning"
    PLANNING = "planning"
    APPLYING = "applying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in (
            SessionState.COMPLETED,
            SessionState.CANCELLED,
            SessionState.FAILED,
        )


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SCANNING}),
    SessionState.SCANNING: frozenset(
        {SessionState.PLANNING, SessionState.CANCELLED, SessionState.FAILED}
    ),
    SessionState.PLANNING: frozenset(
        {
            SessionState.APPLYING,
            SessionState.COMPLETED,
            SessionState.CANCELLED,
            SessionState.FAILED,
        }
    ),
    SessionState.APPLYING: frozenset(
        {SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED}
    ),
}


class ActionStatus(str, Enum):
    """Status of a single planned action."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"
    """In flight when cancellation was observed; rolled back"""

    @property
    def is_terminal(self) -> bool:
        """Whether the action has finished (successfully or not)."""
        return self in (ActionStatus.DONE, ActionStatus.FAILED, ActionStatus.CANCELLED)


@dataclass(frozen=True)
class ActionRecord:
    """Runtime status of one action of the plan."""

    index: int
    action: SyncAction
    status: ActionStatus = ActionStatus.PENDING
    bytes_done: int = 0
    error: Optional[str] = None
    note: Optional[str] = None
    """Set when a DONE action left the target unchanged"""


@dataclass(frozen=True)
class FailedAction:
    """A path that could not be synced and why."""

    path: str
    cause: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "cause": self.cause}


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session at one point in time."""

    state: SessionState
    plan: Optional[SyncPlan]
    records: tuple[ActionRecord, ...]
    bytes_done: int
    bytes_total: int
    cancel_requested: bool
    error: Optional[str] = None

    @property
    def cursor(self) -> int:
        """Number of actions that have been dispatched."""
        return sum(1 for r in self.records if r.status != ActionStatus.PENDING)

    @property
    def fraction_done(self) -> float:
        """Byte progress between 0.0 and 1.0."""
        if self.bytes_total <= 0:
            return 1.0 if self.state.is_terminal else 0.0
        return min(1.0, self.bytes_done / self.bytes_total)


@dataclass(frozen=True)
class SyncReport:
    """Final outcome of a sync session."""

    state: SessionState
    created: int = 0
    """Directories and files created"""
    replaced: int = 0
    deleted: int = 0
    kept: int = 0
    failed: tuple[FailedAction, ...] = ()
    cancelled: bool = False
    pruned: tuple[str, ...] = ()
    """Directories removed once the deletions beneath them finished"""
    left_in_place: tuple[str, ...] = ()
    """Directories planned for deletion that still hold entries"""
    bytes_transferred: int = 0
    scan_errors: tuple[FailedAction, ...] = ()
    blocked: tuple[str, ...] = ()
    error: Optional[str] = None
    """Session-level error (only set when state is FAILED)"""

    @property
    def succeeded(self) -> bool:
        """True only with zero failures and no cancellation."""
        return (
            self.state == SessionState.COMPLETED
            and not self.failed
            and not self.cancelled
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the report to a JSON-serializable dictionary."""
        return {
            "state": self.state.value,
            "created": self.created,
            "replaced": self.replaced,
            "deleted": self.deleted,
            "kept": self.kept,
            "failed": [f.to_dict() for f in self.failed],
            "cancelled": self.cancelled,
            "pruned": list(self.pruned),
            "left_in_place": list(self.left_in_place),
            "bytes_transferred": self.bytes_transferred,
            "scan_errors": [e.to_dict() for e in self.scan_errors],
            "blocked": list(self.blocked),
            "error": self.error,
        }


@dataclass
class SyncSession:
    """Mutable runtime state of one sync session.

    Owned exclusively by the SyncEngine, which serializes access to it.
    """

    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    state: SessionState = SessionState.IDLE
    plan: Optional[SyncPlan] = None
    records: list[ActionRecord] = field(default_factory=list)
    bytes_done: int = 0
    pruned: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def transition(self, new_state: SessionState) -> None:
        """Move to a new state.

        Raises:
            SyncStateError: If the transition is not allowed
        """
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise SyncStateError(
                f"Invalid session transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def set_plan(self, plan: SyncPlan) -> None:
        """Attach a plan and reset the per-action records."""
        self.plan = plan
        self.records = [ActionRecord(index=i, action=a) for i, a in enumerate(plan)]
        self.bytes_done = 0

    def update_record(self, index: int, **changes: Any) -> ActionRecord:
        """Replace the record at ``index`` with updated fields."""
        record = replace(self.records[index], **changes)
        self.records[index] = record
        return record

    def snapshot(self) -> SessionSnapshot:
        """Return an immutable view of the current state."""
        return SessionSnapshot(
            state=self.state,
            plan=self.plan,
            records=tuple(self.records),
            bytes_done=self.bytes_done,
            bytes_total=self.plan.total_bytes if self.plan else 0,
            cancel_requested=self.cancel_token.cancelled,
            error=self.error,
        )

    def build_report(self) -> SyncReport:
        """Summarize the session into a report."""
        done: dict[ActionKind, int] = {kind: 0 for kind in ActionKind}
        failed: list[FailedAction] = []
        left_in_place: list[str] = []
        for record in self.records:
            if record.status == ActionStatus.DONE and record.note:
                left_in_place.append(record.action.relative_path)
            elif record.status == ActionStatus.DONE:
                done[record.action.kind] += 1
            elif record.status == ActionStatus.FAILED:
                failed.append(
                    FailedAction(record.action.relative_path, record.error or "unknown")
                )

        plan = self.plan
        scan_errors = tuple(
            FailedAction(e.path, str(e.cause) if e.cause else str(e))
            for e in (plan.scan_errors if plan else ())
        )
        return SyncReport(
            state=self.state,
            created=done[ActionKind.CREATE],
            replaced=done[ActionKind.REPLACE],
            deleted=done[ActionKind.DELETE],
            kept=plan.kept_count if plan else 0,
            failed=tuple(failed),
            cancelled=self.state == SessionState.CANCELLED,
            pruned=tuple(self.pruned),
            left_in_place=tuple(left_in_place),
            bytes_transferred=self.bytes_done,
            scan_errors=scan_errors,
            blocked=plan.blocked if plan else (),
            error=self.error,
        )
