"""Progress events for sync operations.

Workers report through a SyncProgressTracker, which stamps each event with
a sequence number under a lock, so consumers see a single ordered stream.
Consumers either pass a callback (called on the worker thread, must return
quickly) or poll the buffered queue from their own thread.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .session import ActionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Progress or status change of one action."""

    sequence: int
    """Position of the event in the stream, starting at 1"""

    action_index: int
    """Index of the action in the plan"""

    path: str
    """Relative path of the action"""

    bytes_done: int
    """Bytes copied so far (non-decreasing for one action)"""

    bytes_total: int
    """Bytes to copy for this action (0 for directories and deletions)"""

    status: ActionStatus
    """IN_PROGRESS for progress updates, else the terminal status"""

    error: Optional[str] = None
    """Failure cause for FAILED events"""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


ProgressEventCallback = Callable[[ProgressEvent], None]


class SyncProgressTracker:
    """Serializes progress events from worker threads into one stream."""

    def __init__(
        self,
        callback: Optional[ProgressEventCallback] = None,
        buffer_events: bool = True,
    ):
        """Initialize the tracker.

        Args:
            callback: Called with every event, in order
            buffer_events: Keep events in a queue for polling consumers
        """
        self.callback = callback
        self._lock = threading.Lock()
        self._sequence = 0
        self._queue: Optional[queue.Queue[ProgressEvent]] = (
            queue.Queue() if buffer_events else None
        )

    def emit(
        self,
        action_index: int,
        path: str,
        bytes_done: int,
        bytes_total: int,
        status: ActionStatus,
        error: Optional[str] = None,
    ) -> ProgressEvent:
        """Publish an event to the stream.

        Returns:
            The published event
        """
        with self._lock:
            self._sequence += 1
            event = ProgressEvent(
                sequence=self._sequence,
                action_index=action_index,
                path=path,
                bytes_done=bytes_done,
                bytes_total=bytes_total,
                status=status,
                error=error,
            )
            if self._queue is not None:
                self._queue.put(event)
            if self.callback is not None:
                try:
                    self.callback(event)
                except Exception:
                    logger.exception("Progress callback failed")
        return event

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Wait for the next buffered event.

        Returns:
            The next event, or None if none arrived within ``timeout``
        """
        if self._queue is None:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        """Return all buffered events without blocking."""
        events: list[ProgressEvent] = []
        if self._queue is None:
            return events
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events
