# telematics_ingest/resilience/pacing.py
"""
Pacing governor for the MiX event feeds.

The API's usage contract ties the permitted request rate to the feed state:

- While `HasMoreItems` is true, calls must be at least 3 seconds apart
  (roughly 20 requests per minute).
- Once a call returns `HasMoreItems` false, the next call must wait 30 seconds.
- After an error, the wait grows exponentially: `min(2**n * base, 60s)`
  where n counts consecutive errors (incremented before computing), and never
  less than the 3 second spacing.

The governor measures from the start of the previous request, so time spent
processing a page counts toward the required gap and nothing oversleeps.
It is the single source of inter-request spacing; callers do not add fixed
delays of their own. Retries of a failed request pass through it as well,
after their own backoff wait.

Instances hold per-consumer state and are injected, one per logical API
consumer (the ingestion loop and the backfill engine each own one).
"""

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from telematics_ingest.config import PacingConfig

__all__: list[str] = ['PacingGovernor', 'PacingStats']

logger: logging.Logger = logging.getLogger(__name__)


class PacingStats(BaseModel):
    """Snapshot of governor state for monitoring."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    consecutive_errors: int
    seconds_since_last_request: float | None


class PacingGovernor:
    """
    Enforces minimum spacing between requests.

    Args:
        config: Interval and backoff settings.
        clock: Monotonic clock in seconds.
        sleep: Default blocking sleep when a call does not supply one.

    Example:
        >>> governor = PacingGovernor(PacingConfig())
        >>> governor.wait_before_next(has_more_items=True, had_error=False)
        0.0
    """

    def __init__(
        self,
        config: PacingConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        self._config: PacingConfig = config
        self._clock: Callable[[], float] = clock
        self._sleep: Callable[[float], object] = sleep
        self._consecutive_errors: int = 0
        self._last_request_time: float | None = None

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    def required_interval(self, has_more_items: bool, had_error: bool) -> float:
        """
        Minimum gap in seconds for the given outcome, updating the error count.

        This is the stateful half of wait_before_next and is exposed so the
        rule can be verified without sleeping.
        """
        if had_error:
            self._consecutive_errors += 1
            backoff: float = (
                2**self._consecutive_errors
            ) * self._config.error_base_delay_seconds
            # A retry is still a call: never closer than the 3s contract spacing.
            return max(
                min(backoff, self._config.error_max_delay_seconds),
                self._config.more_items_interval_seconds,
            )

        self._consecutive_errors = 0
        if has_more_items:
            return self._config.more_items_interval_seconds
        return self._config.drained_interval_seconds

    def wait_before_next(
        self,
        has_more_items: bool,
        had_error: bool,
        sleep: Callable[[float], object] | None = None,
    ) -> float:
        """
        Sleep until the next request is allowed, then mark it as started.

        Args:
            has_more_items: HasMoreItems flag of the previous response.
            had_error: Whether the previous request failed.
            sleep: Overrides the constructor sleep for this call, e.g. the
                current job's CancellationToken.sleep.

        Returns:
            Seconds actually slept (0.0 when enough time already passed or
            this is the first request).
        """
        required: float = self.required_interval(has_more_items, had_error)

        slept: float = 0.0
        if self._last_request_time is not None:
            elapsed: float = self._clock() - self._last_request_time
            remaining: float = required - elapsed
            if remaining > 0:
                logger.debug(
                    'Pacing: waiting %.2fs (has_more=%s, error=%s, consecutive_errors=%d)',
                    remaining,
                    has_more_items,
                    had_error,
                    self._consecutive_errors,
                )
                (sleep or self._sleep)(remaining)
                slept = remaining

        self._last_request_time = self._clock()
        return slept

    def reset(self) -> None:
        """Forget error history and the last request time."""
        self._consecutive_errors = 0
        self._last_request_time = None

    def stats(self) -> PacingStats:
        seconds_since: float | None = (
            None
            if self._last_request_time is None
            else self._clock() - self._last_request_time
        )
        return PacingStats(
            consecutive_errors=self._consecutive_errors,
            seconds_since_last_request=seconds_since,
        )
