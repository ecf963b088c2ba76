"""
Tests for the database-backed JobQueue.

A FakeClock drives created_at/available_at/locked_until so ordering, retry
backoff and lock expiry are deterministic.
"""

from datetime import timedelta

import pytest

from telematics_ingest.orchestration.queue import (
    QUEUE_EVENT_INGESTION,
    QUEUE_MASTER_DATA_SYNC,
    JobOptions,
    JobQueue,
    QueueError,
)
from telematics_ingest.storage import Database, QueueJobState

from tests.doubles import FakeClock

WORKER: str = 'worker-1'


@pytest.fixture
def queue(database: Database, clock: FakeClock) -> JobQueue:
    """Provide a queue with three attempts and a 5s backoff base."""
    return JobQueue(
        database,
        QUEUE_MASTER_DATA_SYNC,
        default_attempts=3,
        default_backoff_delay_seconds=5.0,
        clock=clock.utc,
    )


class TestEnqueue:
    """Tests for the producer side."""

    def test_enqueue_creates_waiting_job(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should store the job as waiting with queue defaults."""
        job = queue.enqueue('sync-all-master-data', {'origin': 'test'})

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.WAITING
        assert stored.payload == {'origin': 'test'}
        assert stored.max_attempts == 3  # noqa: PLR2004
        assert stored.available_at == clock.now
        assert job.id.startswith('master-data-sync-')

    def test_fixed_id_deduplicates(self, queue: JobQueue) -> None:
        """Should return the existing job when the id is already taken."""
        first = queue.enqueue('sync', {'n': 1}, JobOptions(job_id='sync-on-demand'))
        second = queue.enqueue('sync', {'n': 2}, JobOptions(job_id='sync-on-demand'))

        assert second.id == first.id
        assert second.payload == {'n': 1}
        assert queue.counts()['waiting'] == 1

    def test_id_used_by_other_queue_raises(
        self, queue: JobQueue, database: Database, clock: FakeClock
    ) -> None:
        """Should refuse an id that belongs to a different queue."""
        other = JobQueue(database, QUEUE_EVENT_INGESTION, clock=clock.utc)
        other.enqueue('ingest', options=JobOptions(job_id='shared-id'))

        with pytest.raises(QueueError) as exc_info:
            queue.enqueue('sync', options=JobOptions(job_id='shared-id'))

        assert exc_info.value.job_id == 'shared-id'

    def test_delay_defers_claim(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should not hand out a delayed job before its delay elapses."""
        queue.enqueue('sync', options=JobOptions(delay_seconds=10))

        assert queue.claim(WORKER, 60) is None
        clock.advance(10)
        assert queue.claim(WORKER, 60) is not None

    def test_remove_skips_active_jobs(self, queue: JobQueue) -> None:
        """Should delete waiting jobs but leave active ones alone."""
        waiting = queue.enqueue('sync', options=JobOptions(job_id='a'))
        queue.enqueue('sync', options=JobOptions(job_id='b'))
        active = queue.claim(WORKER, 60)
        assert active is not None
        assert active.id == waiting.id

        assert queue.remove('a') is False
        assert queue.remove('b') is True
        assert queue.remove('missing') is False


class TestClaim:
    """Tests for claiming."""

    def test_claims_oldest_first(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should claim in creation order and lock the job."""
        queue.enqueue('sync', options=JobOptions(job_id='first'))
        clock.advance(1)
        queue.enqueue('sync', options=JobOptions(job_id='second'))

        claimed = queue.claim(WORKER, 60)

        assert claimed is not None
        assert claimed.id == 'first'
        assert claimed.state == QueueJobState.ACTIVE
        assert claimed.worker_id == WORKER
        assert claimed.started_at == clock.now
        assert claimed.locked_until is not None

    def test_nothing_to_claim(self, queue: JobQueue) -> None:
        """Should return None on an empty queue."""
        assert queue.claim(WORKER, 60) is None

    def test_claimed_job_not_claimed_twice(self, queue: JobQueue) -> None:
        """Should not give an active job to a second worker."""
        queue.enqueue('sync')

        assert queue.claim(WORKER, 60) is not None
        assert queue.claim('worker-2', 60) is None


class TestOutcomes:
    """Tests for complete, fail, requeue and lock extension."""

    def test_complete_stores_result(self, queue: JobQueue) -> None:
        """Should mark the job completed and keep its result."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)

        assert queue.complete(job.id, WORKER, {'drivers': 3}) is True

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.COMPLETED
        assert stored.result == {'drivers': 3}
        assert stored.worker_id is None

    def test_complete_removes_when_configured(self, queue: JobQueue) -> None:
        """Should delete the row when remove_on_complete is set."""
        job = queue.enqueue('sync', options=JobOptions(remove_on_complete=True))
        queue.claim(WORKER, 60)

        queue.complete(job.id, WORKER)

        assert queue.get_job(job.id) is None

    def test_complete_requires_ownership(self, queue: JobQueue) -> None:
        """Should refuse transitions from a worker that does not own the job."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)

        assert queue.complete(job.id, 'intruder') is False
        assert queue.fail(job.id, 'intruder', 'boom') is None
        assert queue.extend_lock(job.id, 'intruder', 60) is False

    def test_fail_retries_with_exponential_backoff(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        """Should delay retries by base * 2**(attempt-1)."""
        job = queue.enqueue('sync')

        queue.claim(WORKER, 60)
        assert queue.fail(job.id, WORKER, 'first') == QueueJobState.WAITING
        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.available_at == clock.now + timedelta(seconds=5)

        clock.advance(5)
        queue.claim(WORKER, 60)
        assert queue.fail(job.id, WORKER, 'second') == QueueJobState.WAITING
        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.available_at == clock.now + timedelta(seconds=10)
        assert stored.attempts_made == 2  # noqa: PLR2004

    def test_fail_after_last_attempt_is_terminal(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        """Should mark the job failed once attempts are exhausted."""
        job = queue.enqueue('sync', options=JobOptions(attempts=1))
        queue.claim(WORKER, 60)

        assert queue.fail(job.id, WORKER, 'fatal') == QueueJobState.FAILED

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.FAILED
        assert stored.failed_reason == 'fatal'
        assert stored.finished_at == clock.now

    def test_fail_removes_when_configured(self, queue: JobQueue) -> None:
        """Should delete a terminally failed job when remove_on_fail is set."""
        job = queue.enqueue('sync', options=JobOptions(attempts=1, remove_on_fail=True))
        queue.claim(WORKER, 60)

        assert queue.fail(job.id, WORKER, 'fatal') == QueueJobState.FAILED
        assert queue.get_job(job.id) is None

    def test_requeue_does_not_consume_attempt(self, queue: JobQueue) -> None:
        """Should return the job to waiting with attempts unchanged."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)

        assert queue.requeue(job.id, WORKER) is True

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.WAITING
        assert stored.attempts_made == 0
        assert queue.claim(WORKER, 60) is not None

    def test_extend_lock(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should push locked_until forward for the owner."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)
        clock.advance(30)

        assert queue.extend_lock(job.id, WORKER, 60) is True

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.locked_until == clock.now + timedelta(seconds=60)


class TestStalledJobs:
    """Tests for lock-expiry recovery."""

    def test_stalled_job_returns_to_waiting(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        """Should recover a job whose lock expired."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)
        clock.advance(61)

        assert queue.check_stalled(max_stalled_count=1) == [job.id]

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.WAITING
        assert stored.stalled_count == 1
        assert stored.worker_id is None

    def test_live_lock_is_not_stalled(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should leave jobs with unexpired locks alone."""
        queue.enqueue('sync')
        queue.claim(WORKER, 60)
        clock.advance(30)

        assert queue.check_stalled(max_stalled_count=1) == []

    def test_fails_after_exceeding_stall_limit(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        """Should fail the job once stalled_count exceeds the limit."""
        job = queue.enqueue('sync')
        for _ in range(2):
            queue.claim(WORKER, 60)
            clock.advance(61)
            queue.check_stalled(max_stalled_count=1)

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.FAILED
        assert stored.stalled_count == 2  # noqa: PLR2004
        assert stored.failed_reason == 'job stalled more than allowable limit'

    def test_stalled_owner_cannot_complete(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        """Should reject completion from a worker whose job was recovered."""
        job = queue.enqueue('sync')
        queue.claim(WORKER, 60)
        clock.advance(61)
        queue.check_stalled(max_stalled_count=1)

        assert queue.complete(job.id, WORKER) is False


class TestInspection:
    """Tests for listing, counting and trimming."""

    def test_counts_include_every_state(self, queue: JobQueue) -> None:
        """Should report zero for states with no jobs."""
        queue.enqueue('sync')

        assert queue.counts() == {
            'waiting': 1,
            'active': 0,
            'completed': 0,
            'failed': 0,
        }

    def test_get_jobs_newest_first(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should list jobs by creation time, newest first."""
        for job_id in ('a', 'b', 'c'):
            queue.enqueue('sync', options=JobOptions(job_id=job_id))
            clock.advance(1)

        assert [job.id for job in queue.get_waiting()] == ['c', 'b', 'a']
        assert [job.id for job in queue.get_jobs([QueueJobState.WAITING], limit=1)] == [
            'c'
        ]

    def test_trim_finished_keeps_newest(self, queue: JobQueue, clock: FakeClock) -> None:
        """Should delete finished jobs beyond the retention count only."""
        for job_id in ('a', 'b', 'c'):
            queue.enqueue('sync', options=JobOptions(job_id=job_id))
            clock.advance(1)
            queue.claim(WORKER, 60)
            queue.complete(job_id, WORKER)
        queue.enqueue('sync', options=JobOptions(job_id='pending'))

        assert queue.trim_finished(keep=1) == 2  # noqa: PLR2004

        assert [job.id for job in queue.get_completed()] == ['c']
        assert queue.get_job('pending') is not None

    def test_has_pending(self, queue: JobQueue) -> None:
        """Should be true while a job is waiting or active."""
        assert not queue.has_pending()

        job = queue.enqueue('sync')
        assert queue.has_pending()

        queue.claim(WORKER, 60)
        assert queue.has_pending()

        queue.complete(job.id, WORKER)
        assert not queue.has_pending()
