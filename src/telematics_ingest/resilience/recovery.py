# telematics_ingest/resilience/recovery.py
"""
Failure recorder and circuit breaker for since-token ingestion.

Tracks consecutive failures against the MiX API and stops hammering it when
something is persistently wrong:

    CLOSED --(consecutive failures >= 5)--> OPEN --(120s cooldown)--> CLOSED
       ^                                     |
       +-------------(any success)-----------+

The breaker never blocks permanently. While open, callers are held until the
cooldown has elapsed and then allowed through with a reset failure count, so
an outage surfaces as latency rather than as failed runs.

The recorder also keeps a bounded, in-process table of tokens that failed
(diagnostics only, lost on restart) and derives the next cursor token when
the current one cannot be used.

State is per instance. Each worker gets its own recorder through dependency
injection; nothing here is shared between processes.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from pydantic import BaseModel, ConfigDict

from telematics_ingest.common import utc_now
from telematics_ingest.config import RecoveryConfig
from telematics_ingest.models import NEW_TOKEN, SinceToken, SinceTokenParseError

__all__: list[str] = [
    'CircuitBreakerState',
    'FailureRecord',
    'FailureRecorder',
    'RecoveryStats',
]

logger: logging.Logger = logging.getLogger(__name__)

TOKEN_ADVANCE_STEP: Final[timedelta] = timedelta(seconds=1)
MAX_ERROR_MESSAGE_LENGTH: Final[int] = 500

Sleep = Callable[[float], object]


# =============================================================================
# State Models
# =============================================================================


class FailureRecord(BaseModel):
    """
    Diagnostic record of a token that failed at least once.

    Attributes:
        token: Wire form of the since-token.
        attempts: Failed attempts observed for this token.
        last_error: Message of the most recent failure (truncated).
        observed_at: Wall-clock time of the most recent failure (UTC).
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    token: str
    attempts: int
    last_error: str
    observed_at: datetime


class CircuitBreakerState(BaseModel):
    """
    Snapshot of breaker state.

    Attributes:
        is_open: Whether callers are currently being held.
        opened_at: Wall-clock time the breaker opened, None while closed.
        consecutive_failures: Failures since the last success or reset.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    is_open: bool
    opened_at: datetime | None
    consecutive_failures: int


class RecoveryStats(BaseModel):
    """Breaker state plus a copy of the failure table."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    circuit_breaker: CircuitBreakerState
    failed_tokens: list[FailureRecord]

    @property
    def failed_tokens_count(self) -> int:
        return len(self.failed_tokens)


# =============================================================================
# Failure Recorder
# =============================================================================


class FailureRecorder:
    """
    Circuit breaker, retry backoff and failure bookkeeping for one worker.

    Args:
        config: Thresholds, timeouts, backoff limits and table bounds.
        clock: Monotonic clock used for breaker timing.
        wall_clock: UTC clock used for token age and record timestamps.
        sleep: Default blocking sleep. Every blocking method also accepts a
            per-call sleep so a job's cancellation token can interrupt it.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = time.sleep,
    ) -> None:
        self._config: RecoveryConfig = config
        self._clock: Callable[[], float] = clock
        self._wall_clock: Callable[[], datetime] = wall_clock
        self._sleep: Sleep = sleep

        self._consecutive_failures: int = 0
        self._is_open: bool = False
        self._opened_at_monotonic: float | None = None
        self._opened_at: datetime | None = None

        # Insertion order is kept in sync with observed_at (updates move to end),
        # so the first entry is always the oldest.
        self._failed_tokens: OrderedDict[str, FailureRecord] = OrderedDict()

    # -------------------------------------------------------------------------
    # Circuit Breaker
    # -------------------------------------------------------------------------

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_open(self) -> bool:
        return self._is_open

    def record_failed_token(
        self,
        token: str,
        error: BaseException | str,
        sleep: Sleep | None = None,
    ) -> None:
        """
        Record a failed attempt and open the breaker at the threshold.

        When this failure reaches max_consecutive_failures the breaker opens
        and the caller is blocked for the full cooldown before returning.

        Args:
            token: Wire form of the token whose fetch failed.
            error: The exception (or message) describing the failure.
            sleep: Per-call sleep override.
        """
        self._consecutive_failures += 1
        self._remember_failure(token, str(error))

        logger.warning(
            'Token %s failed (%d consecutive): %s',
            token,
            self._consecutive_failures,
            str(error)[:200],
        )

        if (
            not self._is_open
            and self._consecutive_failures >= self._config.max_consecutive_failures
        ):
            self._open()
            timeout: float = self._config.circuit_breaker_timeout_seconds
            logger.error(
                'Circuit breaker OPEN after %d consecutive failures; pausing %.0fs',
                self._consecutive_failures,
                timeout,
            )
            (sleep or self._sleep)(timeout)

    def check_circuit_breaker(self, sleep: Sleep | None = None) -> bool:
        """
        Hold the caller while the breaker is open; always returns True.

        If the cooldown has already elapsed the breaker closes immediately;
        otherwise the caller sleeps for the remainder and the breaker closes.
        """
        if not self._is_open or self._opened_at_monotonic is None:
            return True

        elapsed: float = self._clock() - self._opened_at_monotonic
        remaining: float = self._config.circuit_breaker_timeout_seconds - elapsed

        if remaining > 0:
            logger.warning(
                'Circuit breaker open; waiting %.1fs before resuming', remaining
            )
            (sleep or self._sleep)(remaining)

        self._close()
        logger.info('Circuit breaker CLOSED after cooldown; resuming')
        return True

    def record_success(self) -> None:
        """Reset the failure count and force-close the breaker."""
        if self._is_open:
            logger.info('Circuit breaker CLOSED by successful request')
        self._close()

    def _open(self) -> None:
        self._is_open = True
        self._opened_at_monotonic = self._clock()
        self._opened_at = self._wall_clock()

    def _close(self) -> None:
        self._is_open = False
        self._opened_at_monotonic = None
        self._opened_at = None
        self._consecutive_failures = 0

    # -------------------------------------------------------------------------
    # Retry Backoff
    # -------------------------------------------------------------------------

    def backoff_delay(self, attempt_number: int) -> float:
        """`min(base * 2**(attempt-1), max)` for a 1-based attempt number."""
        exponent: int = max(attempt_number - 1, 0)
        delay: float = self._config.retry_base_delay_seconds * (2**exponent)
        return min(delay, self._config.retry_max_delay_seconds)

    def wait_with_backoff(self, attempt_number: int, sleep: Sleep | None = None) -> float:
        """
        Sleep before retrying a single failed request.

        Returns:
            Seconds slept.
        """
        delay: float = self.backoff_delay(attempt_number)
        logger.debug('Backoff before retry %d: %.1fs', attempt_number + 1, delay)
        (sleep or self._sleep)(delay)
        return delay

    # -------------------------------------------------------------------------
    # Token Derivation
    # -------------------------------------------------------------------------

    def token_max_age(self) -> timedelta:
        return timedelta(days=self._config.token_max_age_days)

    def generate_next_token(self, current_token: str) -> str:
        """
        Derive the token to use when the current one cannot be advanced normally.

        Rules:
            - "NEW" is returned unchanged (a sentinel has no position).
            - A token older than the max age (6 days) becomes "NEW", since the
              API rejects tokens after 7 days.
            - Otherwise the token is advanced by exactly one second, keeping
              the fixed-width format.
            - Anything unparseable becomes "NEW".

        Example:
            >>> recorder.generate_next_token('20251001120000000')
            '20251001120001000'
        """
        if current_token == NEW_TOKEN:
            return NEW_TOKEN

        try:
            token: SinceToken = SinceToken.decode(current_token)
        except SinceTokenParseError as parse_error:
            logger.warning(
                'Unparseable token %r, resetting to NEW: %s', current_token, parse_error
            )
            return NEW_TOKEN

        if token.is_older_than(self.token_max_age(), self._wall_clock()):
            logger.warning(
                'Token %s is older than %.1f days; resetting to NEW',
                current_token,
                self._config.token_max_age_days,
            )
            return NEW_TOKEN

        return token.advanced(TOKEN_ADVANCE_STEP).encode()

    # -------------------------------------------------------------------------
    # Failure Table
    # -------------------------------------------------------------------------

    def _remember_failure(self, token: str, error_message: str) -> None:
        now: datetime = self._wall_clock()
        self.evict_expired(now)

        previous: FailureRecord | None = self._failed_tokens.pop(token, None)
        attempts: int = previous.attempts + 1 if previous else 1

        while len(self._failed_tokens) >= self._config.failed_token_capacity:
            evicted_token, _ = self._failed_tokens.popitem(last=False)
            logger.debug('Failure table full; evicted oldest token %s', evicted_token)

        self._failed_tokens[token] = FailureRecord(
            token=token,
            attempts=attempts,
            last_error=error_message[:MAX_ERROR_MESSAGE_LENGTH],
            observed_at=now,
        )

    def evict_expired(self, now: datetime | None = None) -> int:
        """
        Drop failure records older than the configured TTL.

        Args:
            now: Reference time; defaults to the wall clock.

        Returns:
            Number of records removed.
        """
        reference: datetime = now or self._wall_clock()
        cutoff: datetime = reference - timedelta(
            seconds=self._config.failed_token_ttl_seconds
        )

        removed: int = 0
        while self._failed_tokens:
            oldest: FailureRecord = next(iter(self._failed_tokens.values()))
            if oldest.observed_at >= cutoff:
                break
            self._failed_tokens.popitem(last=False)
            removed += 1

        if removed:
            logger.debug('Evicted %d expired failure records', removed)
        return removed

    def get_failure(self, token: str) -> FailureRecord | None:
        return self._failed_tokens.get(token)

    def clear_failed_tokens(self) -> None:
        self._failed_tokens.clear()

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def circuit_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            is_open=self._is_open,
            opened_at=self._opened_at,
            consecutive_failures=self._consecutive_failures,
        )

    def stats(self) -> RecoveryStats:
        return RecoveryStats(
            circuit_breaker=self.circuit_state(),
            failed_tokens=list(self._failed_tokens.values()),
        )
