"""
Tests for FailureRecorder.

Covers the circuit breaker state machine, retry backoff, next-token
derivation and the bounded failure table.
"""

from datetime import timedelta

import pytest

from telematics_ingest.config import RecoveryConfig
from telematics_ingest.models import SinceToken
from telematics_ingest.resilience import FailureRecorder

from tests.doubles import FIXED_NOW, FakeClock


@pytest.fixture
def recorder(recovery_config: RecoveryConfig, clock: FakeClock) -> FailureRecorder:
    """Provide a recorder whose sleeps only record, without advancing time."""
    return FailureRecorder(
        recovery_config,
        clock=clock.monotonic,
        wall_clock=clock.utc,
        sleep=clock.sleeps.append,
    )


def _fresh_token(age: timedelta = timedelta(hours=1)) -> str:
    return SinceToken.from_datetime(FIXED_NOW - age).encode()


class TestCircuitBreaker:
    """Tests for opening, holding and closing the breaker."""

    def test_opens_at_threshold_and_pauses(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should open on the 5th consecutive failure and sleep the cooldown."""
        for attempt in range(4):
            recorder.record_failed_token(_fresh_token(), f'error {attempt}')
        assert not recorder.is_open
        assert clock.sleeps == []

        recorder.record_failed_token(_fresh_token(), 'error 5')

        assert recorder.is_open
        assert recorder.consecutive_failures == 5  # noqa: PLR2004
        assert clock.sleeps == [120.0]
        assert recorder.circuit_state().opened_at == FIXED_NOW

    def test_interleaved_success_resets_count(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should restart the count after a success so 4 + 4 failures never open."""
        for _ in range(4):
            recorder.record_failed_token(_fresh_token(), 'boom')

        recorder.record_success()
        assert recorder.consecutive_failures == 0

        for _ in range(4):
            recorder.record_failed_token(_fresh_token(), 'boom')

        assert not recorder.is_open
        assert recorder.consecutive_failures == 4  # noqa: PLR2004
        assert clock.sleeps == []

    def test_does_not_reopen_while_open(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should not pause again for failures after the breaker opened."""
        for _ in range(7):
            recorder.record_failed_token(_fresh_token(), 'boom')

        assert clock.sleeps == [120.0]
        assert recorder.consecutive_failures == 7  # noqa: PLR2004

    def test_check_waits_remaining_cooldown_then_closes(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should hold the caller for the rest of the cooldown and reset the count."""
        for _ in range(5):
            recorder.record_failed_token(_fresh_token(), 'boom')
        clock.advance(20.0)

        held: list[float] = []
        assert recorder.check_circuit_breaker(sleep=held.append) is True

        assert held == [pytest.approx(100.0)]
        assert not recorder.is_open
        assert recorder.consecutive_failures == 0

    def test_check_closes_immediately_after_cooldown(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should not sleep when the cooldown already elapsed."""
        for _ in range(5):
            recorder.record_failed_token(_fresh_token(), 'boom')
        clock.advance(121.0)
        clock.sleeps.clear()

        recorder.check_circuit_breaker()

        assert clock.sleeps == []
        assert not recorder.is_open

    def test_check_is_noop_while_closed(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should return immediately when the breaker is closed."""
        recorder.record_failed_token(_fresh_token(), 'boom')

        assert recorder.check_circuit_breaker() is True
        assert clock.sleeps == []
        assert recorder.consecutive_failures == 1

    def test_success_force_closes(self, recorder: FailureRecorder) -> None:
        """Should reset the count and close an open breaker."""
        for _ in range(5):
            recorder.record_failed_token(_fresh_token(), 'boom')

        recorder.record_success()

        assert not recorder.is_open
        assert recorder.consecutive_failures == 0
        assert recorder.circuit_state().opened_at is None

    def test_custom_threshold(self, clock: FakeClock) -> None:
        """Should honour a configured failure threshold and timeout."""
        recorder = FailureRecorder(
            RecoveryConfig(max_consecutive_failures=2, circuit_breaker_timeout_seconds=5),
            clock=clock.monotonic,
            wall_clock=clock.utc,
            sleep=clock.sleeps.append,
        )

        recorder.record_failed_token('NEW', 'boom')
        recorder.record_failed_token('NEW', 'boom')

        assert recorder.is_open
        assert clock.sleeps == [5.0]


class TestBackoff:
    """Tests for per-request retry backoff."""

    def test_backoff_delay_sequence(self, recorder: FailureRecorder) -> None:
        """Should double from 1s and cap at 30s."""
        delays = [recorder.backoff_delay(attempt) for attempt in range(1, 8)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_wait_with_backoff_uses_per_call_sleep(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should sleep through the supplied callable and return the delay."""
        held: list[float] = []

        assert recorder.wait_with_backoff(3, sleep=held.append) == 4.0  # noqa: PLR2004
        assert held == [4.0]
        assert clock.sleeps == []


class TestGenerateNextToken:
    """Tests for deriving a replacement token."""

    def test_new_stays_new(self, recorder: FailureRecorder) -> None:
        """Should return the sentinel unchanged."""
        assert recorder.generate_next_token('NEW') == 'NEW'

    def test_fresh_token_advances_one_second(self, recorder: FailureRecorder) -> None:
        """Should add exactly one second and keep the fixed width."""
        token = SinceToken.from_datetime(FIXED_NOW - timedelta(hours=2))

        next_token = recorder.generate_next_token(token.encode())

        assert next_token == token.advanced(timedelta(seconds=1)).encode()
        assert len(next_token) == 17  # noqa: PLR2004

    def test_old_token_resets_to_new(self, recorder: FailureRecorder) -> None:
        """Should reset tokens older than six days."""
        stale = _fresh_token(age=timedelta(days=6, minutes=1))

        assert recorder.generate_next_token(stale) == 'NEW'

    def test_token_just_inside_max_age_advances(self, recorder: FailureRecorder) -> None:
        """Should still advance a token slightly younger than six days."""
        token = _fresh_token(age=timedelta(days=5, hours=23))

        assert recorder.generate_next_token(token) != 'NEW'

    @pytest.mark.parametrize('raw_token', ['garbage', '20251301000000000', ''])
    def test_unparseable_token_resets_to_new(
        self, recorder: FailureRecorder, raw_token: str
    ) -> None:
        """Should reset anything that is not a valid token."""
        assert recorder.generate_next_token(raw_token) == 'NEW'


class TestFailureTable:
    """Tests for the bounded failure table."""

    def test_repeated_failures_increment_attempts(
        self, recorder: FailureRecorder
    ) -> None:
        """Should keep one record per token with an attempt count."""
        token = _fresh_token()
        recorder.record_failed_token(token, 'first')
        recorder.record_failed_token(token, RuntimeError('second'))

        record = recorder.get_failure(token)

        assert record is not None
        assert record.attempts == 2  # noqa: PLR2004
        assert record.last_error == 'second'
        assert recorder.stats().failed_tokens_count == 1

    def test_capacity_evicts_oldest(self, clock: FakeClock) -> None:
        """Should drop the oldest entry when the table is full."""
        recorder = FailureRecorder(
            RecoveryConfig(failed_token_capacity=2, max_consecutive_failures=10),
            clock=clock.monotonic,
            wall_clock=clock.utc,
            sleep=clock.sleeps.append,
        )

        for token in ('20251001100000000', '20251001100001000', '20251001100002000'):
            recorder.record_failed_token(token, 'boom')
            clock.advance(1.0)

        assert recorder.get_failure('20251001100000000') is None
        assert recorder.get_failure('20251001100002000') is not None
        assert recorder.stats().failed_tokens_count == 2  # noqa: PLR2004

    def test_ttl_evicts_expired_records(
        self, recorder: FailureRecorder, clock: FakeClock
    ) -> None:
        """Should drop records older than the TTL."""
        recorder.record_failed_token('20251001100000000', 'boom')
        clock.advance(3600.0)
        recorder.record_failed_token('20251001100001000', 'boom')

        removed = recorder.evict_expired(clock.utc() + timedelta(hours=23, minutes=30))

        assert removed == 1
        assert recorder.get_failure('20251001100000000') is None
        assert recorder.get_failure('20251001100001000') is not None

    def test_error_message_is_truncated(self, recorder: FailureRecorder) -> None:
        """Should cap stored error messages."""
        recorder.record_failed_token('NEW', 'x' * 2000)

        record = recorder.get_failure('NEW')

        assert record is not None
        assert len(record.last_error) == 500  # noqa: PLR2004

    def test_clear_failed_tokens(self, recorder: FailureRecorder) -> None:
        """Should empty the table without touching the breaker."""
        recorder.record_failed_token('NEW', 'boom')

        recorder.clear_failed_tokens()

        assert recorder.stats().failed_tokens_count == 0
        assert recorder.consecutive_failures == 1
