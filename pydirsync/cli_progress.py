"""CLI progress display for sync operations.

This module provides a Rich-based progress display driven by the
ProgressEvent stream of the sync engine, and a helper that runs engine
calls in the background so Ctrl-C can request cooperative cancellation.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Optional, TypeVar

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from .sync.comparator import SyncPlan
from .sync.engine import SyncEngine
from .sync.progress import ProgressEvent
from .sync.session import ActionStatus
from .utils import format_size

T = TypeVar("T")


class SyncProgressDisplay:
    """Rich-based progress display for applying a sync plan.

    The bar tracks copied bytes when the plan transfers data and finished
    actions otherwise. Events arrive on worker threads; Rich serializes
    the updates internally.

    Examples:
        >>> display = SyncProgressDisplay()
        >>> engine = SyncEngine(src, dst, progress_callback=display.handle_event)
        >>> plan = engine.plan()
        >>> with display.for_plan(plan):
        ...     report = engine.apply()
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        """Initialize the progress display."""
        self.console = console
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._lock = threading.Lock()
        self._total_actions = 0
        self._total_bytes = 0
        self._bytes_by_action: dict[int, int] = {}
        self._finished = 0
        self._failed = 0

    @property
    def by_bytes(self) -> bool:
        return self._total_bytes > 0

    def for_plan(self, plan: SyncPlan) -> "SyncProgressDisplay":
        """Prepare the display for a plan (use as a context manager)."""
        self._total_actions = len(plan)
        self._total_bytes = plan.total_bytes
        self._bytes_by_action = {}
        self._finished = 0
        self._failed = 0
        return self

    def _format_actions(self) -> str:
        text = f"{self._finished}/{self._total_actions} actions"
        if self._failed:
            text += f", {self._failed} failed"
        if self.by_bytes:
            copied = sum(self._bytes_by_action.values())
            text += f", {format_size(copied)}/{format_size(self._total_bytes)}"
        return text

    def handle_event(self, event: ProgressEvent) -> None:
        """Handle a progress event from the engine.

        Args:
            event: Progress event
        """
        with self._lock:
            previous = self._bytes_by_action.get(event.action_index, 0)
            self._bytes_by_action[event.action_index] = event.bytes_done
            if event.is_terminal:
                self._finished += 1
                if event.status == ActionStatus.FAILED:
                    self._failed += 1
            info = self._format_actions()
            finished = self._finished
            copied = sum(self._bytes_by_action.values())

        if self._progress is None or self._task is None:
            return

        if event.status == ActionStatus.IN_PROGRESS and event.bytes_done > previous:
            description = f"Copying: {event.path}"
        else:
            description = "Syncing"
        self._progress.update(
            self._task,
            description=description,
            completed=copied if self.by_bytes else finished,
            actions_info=info,
        )

    def __enter__(self) -> "SyncProgressDisplay":
        """Enter context manager - start progress display."""
        columns = [
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("[cyan]{task.fields[actions_info]}"),
        ]
        if self.by_bytes:
            columns.append(TransferSpeedColumn())
        columns.append(TimeElapsedColumn())

        self._progress = Progress(*columns, console=self.console, refresh_per_second=4)
        self._progress.__enter__()
        self._task = self._progress.add_task(
            "Syncing",
            total=self._total_bytes if self.by_bytes else self._total_actions,
            actions_info=self._format_actions(),
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            if self._task is not None:
                self._progress.update(self._task, description="Sync finished")
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None


def run_interruptible(
    engine: SyncEngine, func: Callable[..., T], *args, poll_interval: float = 0.2
) -> tuple[T, bool]:
    """Run an engine call in the background, turning Ctrl-C into cancellation.

    The first KeyboardInterrupt requests cancellation; the call then winds
    down cooperatively and its result is returned as usual.

    Args:
        engine: Engine to cancel on Ctrl-C
        func: Engine method to run (e.g. engine.plan or engine.apply)
        *args: Arguments for func
        poll_interval: Seconds between checks for completion

    Returns:
        Tuple of (result of func, whether the user interrupted)
    """
    interrupted = False
    with ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="pydirsync-session"
    ) as pool:
        future = pool.submit(func, *args)
        while True:
            try:
                return future.result(timeout=poll_interval), interrupted
            except FuturesTimeoutError:
                continue
            except KeyboardInterrupt:
                interrupted = True
                engine.cancel()
