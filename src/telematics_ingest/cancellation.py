# telematics_ingest/cancellation.py
"""
Cooperative cancellation for long-running jobs.

A CancellationToken is handed to every engine run by the worker that owns
it. Engines check it at their iteration boundaries (one page, one hour) and
route every blocking wait through `token.sleep()`, which wakes early when the
token is cancelled so shutdown never waits out a 120s circuit-breaker cooldown.

Two reasons are distinguished because they lead to different durable
outcomes:

- USER: an operator cancelled the job. The job ends in a terminal
  `cancelled` state.
- SHUTDOWN: the worker process is stopping. The job keeps its checkpoint and
  is returned to the queue, so the next worker resumes it.
"""

import threading
from enum import Enum

__all__: list[str] = ['CancelReason', 'CancellationToken', 'JobInterrupted']


class CancelReason(str, Enum):
    """Why a token was cancelled."""

    USER = 'user'
    SHUTDOWN = 'shutdown'


class JobInterrupted(Exception):  # noqa: N818
    """
    Raised by an engine that stopped at a checkpoint because of shutdown.

    The worker catches this and requeues the job without consuming an attempt.

    Attributes:
        reason: The cancellation reason that triggered the stop.
    """

    def __init__(self, message: str, reason: CancelReason = CancelReason.SHUTDOWN) -> None:
        super().__init__(message)
        self.reason: CancelReason = reason


class CancellationToken:
    """
    Thread-safe, one-shot cancellation signal.

    The first cancel() wins; later calls do not change the reason.

    Example:
        >>> token = CancellationToken()
        >>> token.sleep(3.0)   # returns early if cancelled meanwhile
        False
        >>> token.cancel(CancelReason.USER)
        >>> token.is_cancelled
        True
    """

    def __init__(self) -> None:
        self._event: threading.Event = threading.Event()
        self._reason: CancelReason | None = None
        self._lock: threading.Lock = threading.Lock()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        """Signal cancellation; wakes any thread blocked in sleep()."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        """Reason given to the first cancel(), or None while active."""
        return self._reason

    def sleep(self, seconds: float) -> bool:
        """
        Block for up to `seconds`, returning early on cancellation.

        Returns:
            True if the token was cancelled before or during the wait.
        """
        if seconds <= 0:
            return self.is_cancelled
        return self._event.wait(timeout=seconds)

    def raise_if_shutdown(self) -> None:
        """
        Raise JobInterrupted when cancelled for shutdown.

        User cancellation is not raised here; engines translate it into their
        own terminal state.
        """
        if self.is_cancelled and self._reason is CancelReason.SHUTDOWN:
            raise JobInterrupted('Worker shutting down', CancelReason.SHUTDOWN)
