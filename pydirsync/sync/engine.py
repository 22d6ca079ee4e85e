"""Core sync engine that orchestrates directory synchronization."""

import heapq
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Iterable, Optional

from ..exceptions import (
    CancellationRequested,
    DirSyncError,
    SyncConfigError,
    SyncStateError,
    TransferError,
)
from ..utils import parent_paths
from .cancel import CancellationToken
from .comparator import ActionKind, FileComparator, SyncPlan
from .ignore import IgnoreMatcher
from .operations import TransferExecutor
from .policy import SyncPolicy
from .progress import ProgressEventCallback, SyncProgressTracker
from .scanner import DirectoryScanner, ScanResult
from .session import (
    ActionStatus,
    SessionSnapshot,
    SessionState,
    SyncReport,
    SyncSession,
)

logger = logging.getLogger(__name__)

LEFT_IN_PLACE = "Directory not empty, left in place"


class SyncEngine:
    """Owns one sync session from scanning to the final report.

    The session moves through ``IDLE -> SCANNING -> PLANNING -> APPLYING``
    and ends in ``COMPLETED``, ``CANCELLED`` or ``FAILED``. An engine runs a
    single session; create a new engine (and rescan) to sync again.

    Examples:
        >>> engine = SyncEngine(Path("/data/src"), Path("/backup/src"))
        >>> plan = engine.plan()
        >>> for action in plan:
        ...     print(action)
        >>> report = engine.apply()
        >>> print(f"Created {report.created}, failed {len(report.failed)}")

        >>> # One call, with deletions of target-only files
        >>> policy = SyncPolicy(allow_delete_extra=True, prune_empty_dirs=True)
        >>> report = SyncEngine(src, dst, policy).run()
    """

    def __init__(
        self,
        source: Path,
        target: Path,
        policy: Optional[SyncPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressEventCallback] = None,
        tracker: Optional[SyncProgressTracker] = None,
    ):
        """Initialize sync engine.

        Args:
            source: Source directory (never modified)
            target: Target directory to reconcile with the source
            policy: Sync policy (defaults to SyncPolicy())
            cancel_token: Shared cancellation flag (a new one if omitted)
            progress_callback: Called with every progress event, in order
            tracker: Event stream to publish to (overrides progress_callback).
                Without either, events are buffered on a new tracker for
                polling through ``engine.tracker``.
        """
        self.source = Path(source)
        self.target = Path(target)
        self.policy = policy or SyncPolicy()
        self.tracker = tracker or SyncProgressTracker(
            callback=progress_callback, buffer_events=progress_callback is None
        )
        self._session = SyncSession(cancel_token=cancel_token or CancellationToken())
        self._lock = threading.RLock()
        self._target_existed = False
        self.executor = TransferExecutor(
            self.source, self.target, self.policy, self._session.cancel_token
        )

    @property
    def cancel_token(self) -> CancellationToken:
        """The session's cancellation flag."""
        return self._session.cancel_token

    @property
    def state(self) -> SessionState:
        """Current session state."""
        with self._lock:
            return self._session.state

    def cancel(self) -> None:
        """Request cooperative cancellation of the session."""
        logger.info("Cancellation requested")
        self._session.cancel_token.cancel()

    def snapshot(self) -> SessionSnapshot:
        """Return an immutable view of the session."""
        with self._lock:
            return self._session.snapshot()

    def report(self) -> SyncReport:
        """Return the report for the session in its current state."""
        with self._lock:
            return self._session.build_report()

    def run(self) -> SyncReport:
        """Scan, plan and apply in one call.

        Session-level errors and cancellation are reported through the
        returned report rather than raised.

        Returns:
            Final SyncReport
        """
        try:
            self.plan()
        except DirSyncError as e:
            logger.debug(f"Sync stopped while planning: {e}")
            return self.report()
        if self.state == SessionState.PLANNING:
            return self.apply()
        return self.report()

    # ------------------------------------------------------------------
    # Scanning and planning
    # ------------------------------------------------------------------

    def plan(self) -> SyncPlan:
        """Scan both trees and classify the differences.

        An empty plan completes the session immediately.

        Returns:
            The SyncPlan, also kept on the session for apply()

        Raises:
            SyncStateError: If the session is not idle
            ScanError: If a root cannot be scanned (session becomes FAILED)
            ClassifyError: If the inventories are malformed (session becomes FAILED)
            CancellationRequested: If cancelled while scanning
        """
        self._transition(SessionState.SCANNING)
        start = time.time()
        try:
            self._check_roots()
            source_result, target_result = self._scan_both()
        except CancellationRequested:
            self._transition(SessionState.CANCELLED)
            raise
        except DirSyncError as e:
            self._fail(str(e))
            raise
        logger.debug(f"Scanning took {time.time() - start:.2f}s")
        self._target_existed = target_result.root_exists

        self._transition(SessionState.PLANNING)
        try:
            plan = FileComparator(self.policy).classify(source_result, target_result)
        except DirSyncError as e:
            self._fail(str(e))
            raise

        with self._lock:
            self._session.set_plan(plan)
        if plan.is_empty:
            self._complete_without_changes()
        return plan

    def _check_roots(self) -> None:
        """Refuse to sync a tree into itself."""
        source = self.source.resolve()
        target = self.target.resolve()
        if source == target or source in target.parents or target in source.parents:
            raise SyncConfigError(
                f"Source and target must not overlap: {self.source} <-> {self.target}"
            )

    def _scan_both(self) -> tuple[ScanResult, ScanResult]:
        """Scan source and target concurrently."""
        scanner = DirectoryScanner(
            ignore=IgnoreMatcher(self.policy.ignore_patterns),
            follow_symlinks=self.policy.follow_symlinks,
            cancel_token=self._session.cancel_token,
        )
        with ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="pydirsync-scan"
        ) as pool:
            source_future = pool.submit(scanner.scan, self.source)
            target_future = pool.submit(scanner.scan, self.target, True)
            source_result = source_future.result()
            target_result = target_future.result()

        for label, result in (("source", source_result), ("target", target_result)):
            for error in result.errors:
                logger.warning(f"Partial {label} scan, skipped {error.path}: {error}")
        logger.debug(
            "Found %d source and %d target entries",
            len(source_result.entries),
            len(target_result.entries),
        )
        return source_result, target_result

    def _complete_without_changes(self) -> None:
        with self._lock:
            records = list(self._session.records)
        for record in records:
            self._finish(record.index, ActionStatus.DONE)
        self._transition(SessionState.COMPLETED)
        logger.debug("No changes needed - everything is in sync")

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def apply(self, exclude: Optional[Iterable[str]] = None) -> SyncReport:
        """Execute the planned actions.

        Args:
            exclude: Relative paths to deselect before applying (actions
                beneath an excluded path are deselected too)

        Returns:
            Final SyncReport

        Raises:
            SyncStateError: If no plan is waiting to be applied
        """
        with self._lock:
            session = self._session
            if session.state != SessionState.PLANNING or session.plan is None:
                raise SyncStateError(
                    f"Nothing to apply in state {session.state.value}"
                )
            plan = session.plan
            if exclude:
                plan = plan.without(exclude)
                session.set_plan(plan)

        if plan.is_empty:
            self._complete_without_changes()
            return self.report()

        self._transition(SessionState.APPLYING)
        start = time.time()
        try:
            final_state = self._run_actions(plan)
        except Exception as e:
            self._fail(f"Unexpected error while applying: {e}")
            raise
        self._transition(final_state)
        logger.debug(f"Applying {len(plan)} action(s) took {time.time() - start:.2f}s")
        return self.report()

    def _run_actions(self, plan: SyncPlan) -> SessionState:
        """Dispatch actions to the worker pool respecting dependencies.

        Returns:
            The terminal state for the session
        """
        if not self._prepare_target():
            return SessionState.FAILED

        deps = self._build_dependencies(plan)
        remaining = [len(d) for d in deps]
        dependents: list[list[int]] = [[] for _ in deps]
        for index, parents in enumerate(deps):
            for parent in parents:
                dependents[parent].append(index)
        nonempty_deletes = self._nonempty_dir_deletes(plan)

        ready = [i for i, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        running: dict[Future, int] = {}
        token = self._session.cancel_token
        max_workers = self.policy.max_workers
        halted = False

        def release(index: int) -> None:
            for child in dependents[index]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, child)

        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pydirsync-apply"
        ) as pool:
            while ready or running:
                if ready and not halted and not self._roots_available():
                    halted = True
                if token.cancelled or halted:
                    ready.clear()

                while ready and len(running) < max_workers:
                    index = heapq.heappop(ready)
                    blocker = self._failed_dependency(index, deps[index])
                    if blocker is not None:
                        self._finish(
                            index,
                            ActionStatus.FAILED,
                            error=f"Blocked by failed action on {blocker}",
                        )
                        release(index)
                        continue
                    if index in nonempty_deletes and not self.policy.prune_empty_dirs:
                        self._finish(index, ActionStatus.DONE, note=LEFT_IN_PLACE)
                        release(index)
                        continue
                    self._start(index)
                    running[pool.submit(self._execute_action, index)] = index

                if not running:
                    continue

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    index = running.pop(future)
                    status = future.result()
                    if status == ActionStatus.DONE and index in nonempty_deletes:
                        self._record_pruned(index)
                    if status == ActionStatus.FAILED and not self._roots_available():
                        halted = True
                    release(index)

        if halted:
            with self._lock:
                self._session.error = "Source or target root became inaccessible"
            logger.error(self._session.error)
            return SessionState.FAILED

        if token.cancelled and self._has_unfinished():
            logger.info("Sync cancelled")
            return SessionState.CANCELLED

        return SessionState.COMPLETED

    def _prepare_target(self) -> bool:
        """Create a target root that did not exist when it was scanned."""
        if self.target.is_dir():
            return True
        if self._target_existed:
            with self._lock:
                self._session.error = f"Target root disappeared: {self.target}"
            logger.error(self._session.error)
            return False
        try:
            self.target.mkdir(parents=True)
        except OSError as e:
            with self._lock:
                self._session.error = f"Cannot create target root {self.target}: {e}"
            logger.error(self._session.error)
            return False
        logger.info(f"Created target root {self.target}")
        return True

    def _record_pruned(self, index: int) -> None:
        with self._lock:
            record = self._session.records[index]
            if record.note is None:
                self._session.pruned.append(record.action.relative_path)

    @staticmethod
    def _build_dependencies(plan: SyncPlan) -> list[set[int]]:
        """Compute which earlier actions each action must wait for.

        - an action waits for the creation of its nearest created ancestor
        - actions on the same path run in plan order
        - a directory deletion waits for all deletions beneath it
        """
        deps: list[set[int]] = [set() for _ in range(len(plan))]
        created_dirs: dict[str, int] = {}
        last_on_path: dict[str, int] = {}
        child_deletes: dict[str, list[int]] = defaultdict(list)

        for index, action in enumerate(plan):
            path = action.relative_path
            ancestors = parent_paths(path)

            if path in last_on_path:
                deps[index].add(last_on_path[path])
            for ancestor in ancestors:
                if ancestor in created_dirs:
                    deps[index].add(created_dirs[ancestor])
                    break

            if action.kind == ActionKind.DELETE:
                if action.is_dir:
                    deps[index].update(child_deletes.pop(path, []))
                for ancestor in ancestors:
                    child_deletes[ancestor].append(index)
            elif action.is_dir and action.kind in (ActionKind.CREATE, ActionKind.REPLACE):
                created_dirs[path] = index

            last_on_path[path] = index
        return deps

    @staticmethod
    def _nonempty_dir_deletes(plan: SyncPlan) -> set[int]:
        """Find directory deletions with file deletions beneath them.

        Such a directory only becomes removable once its files are gone,
        which is what ``prune_empty_dirs`` allows. Deletions at or beneath a
        path that the plan recreates with another type are not included,
        they always run.
        """
        recreated = {
            action.relative_path
            for action in plan
            if action.kind in (ActionKind.CREATE, ActionKind.REPLACE)
        }
        parents_of_deletes: set[str] = set()
        for action in plan:
            if action.kind == ActionKind.DELETE and not action.is_dir:
                parents_of_deletes.update(parent_paths(action.relative_path))
        return {
            index
            for index, action in enumerate(plan)
            if action.kind == ActionKind.DELETE
            and action.is_dir
            and action.relative_path in parents_of_deletes
            and action.relative_path not in recreated
            and not recreated.intersection(parent_paths(action.relative_path))
        }

    def _execute_action(self, index: int) -> ActionStatus:
        """Run one action on a worker thread and record its outcome."""
        with self._lock:
            action = self._session.records[index].action
        path = action.relative_path
        start = time.time()

        def on_progress(bytes_done: int, bytes_total: int) -> None:
            with self._lock:
                previous = self._session.records[index].bytes_done
                self._session.bytes_done += bytes_done - previous
                self._session.update_record(index, bytes_done=bytes_done)
            self.tracker.emit(index, path, bytes_done, bytes_total, ActionStatus.IN_PROGRESS)

        try:
            changed = self.executor.execute(
                action, on_progress if action.transfers_bytes else None
            )
        except CancellationRequested:
            logger.debug(f"Rolled back {path} after cancellation")
            return self._finish(index, ActionStatus.CANCELLED)
        except TransferError as e:
            cause = str(e.cause) if e.cause is not None else str(e)
            logger.warning(f"Failed to sync {path}: {cause}")
            return self._finish(index, ActionStatus.FAILED, error=cause)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {path}")
            return self._finish(index, ActionStatus.FAILED, error=str(e))

        logger.debug(f"{action} took {time.time() - start:.2f}s")
        return self._finish(
            index, ActionStatus.DONE, note=None if changed else LEFT_IN_PLACE
        )

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, state: SessionState) -> None:
        with self._lock:
            self._session.transition(state)
        logger.debug(f"Session state: {state.value}")

    def _fail(self, message: str) -> None:
        logger.error(f"Sync failed: {message}")
        with self._lock:
            self._session.error = message
            self._session.transition(SessionState.FAILED)

    def _start(self, index: int) -> None:
        with self._lock:
            self._session.update_record(index, status=ActionStatus.IN_PROGRESS)

    def _finish(
        self,
        index: int,
        status: ActionStatus,
        error: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ActionStatus:
        """Record the terminal status of an action and publish it."""
        with self._lock:
            if status == ActionStatus.CANCELLED:
                # The partial copy was removed, so its bytes no longer count
                self._session.bytes_done -= self._session.records[index].bytes_done
            record = self._session.update_record(
                index, status=status, error=error, note=note
            )
        action = record.action
        self.tracker.emit(
            index,
            action.relative_path,
            record.bytes_done,
            action.size if action.transfers_bytes else 0,
            status,
            error,
        )
        return status

    def _failed_dependency(self, index: int, parents: set[int]) -> Optional[str]:
        with self._lock:
            for parent in sorted(parents):
                record = self._session.records[parent]
                if record.status in (ActionStatus.FAILED, ActionStatus.CANCELLED):
                    return record.action.relative_path
        return None

    def _has_unfinished(self) -> bool:
        with self._lock:
            return any(
                record.status in (ActionStatus.PENDING, ActionStatus.CANCELLED)
                for record in self._session.records
            )

    def _roots_available(self) -> bool:
        """Check that both roots can still be reached."""
        return self.source.is_dir() and self.target.is_dir()
