"""Cooperative cancellation for sync sessions."""

import threading

from ..exceptions import CancellationRequested


class CancellationToken:
    """A flag set once by the caller and polled by the engine.

    The engine checks the token at well-defined points only: between
    directory visits while scanning, between actions, and between chunks of
    a large transfer. An in-flight system call is never interrupted.

    Examples:
        >>> token = CancellationToken()
        >>> token.cancelled
        False
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Calling it again has no effect."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise CancellationRequested if the token has been set."""
        if self._event.is_set():
            raise CancellationRequested("Sync cancelled")

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds waiting for cancellation."""
        return self._event.wait(timeout)
