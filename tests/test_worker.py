"""
Tests for QueueWorker.

These run real threads against a file-backed SQLite database with a short
poll interval; `_wait_for` polls the queue until the expected state appears.
"""

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from telematics_ingest.cancellation import CancelReason
from telematics_ingest.config import QueueConfig
from telematics_ingest.orchestration import (
    JobContext,
    JobQueue,
    QueueWorker,
    WorkerOptions,
)
from telematics_ingest.storage import Database, QueueJobState

FAST: WorkerOptions = WorkerOptions(
    lock_duration_seconds=5.0,
    stalled_interval_seconds=1.0,
    poll_interval_seconds=0.01,
)


def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def queue(file_database: Database) -> JobQueue:
    return JobQueue(file_database, 'test-queue')


@pytest.fixture
def workers() -> Iterator[list[QueueWorker]]:
    """Collect started workers and close any the test left running."""
    started: list[QueueWorker] = []
    yield started
    for worker in started:
        if worker.is_running:
            worker.close(timeout=2.0)


def _start(
    workers: list[QueueWorker],
    queue: JobQueue,
    processor: Callable[[JobContext], dict[str, Any] | None],
) -> QueueWorker:
    worker = QueueWorker(queue, processor, FAST, worker_id='worker-test')
    worker.start()
    workers.append(worker)
    return worker


def _state(queue: JobQueue, job_id: str) -> str | None:
    job = queue.get_job(job_id)
    return job.state if job is not None else None


class TestQueueWorker:
    """Tests for job processing on worker threads."""

    def test_completes_job_with_result(
        self, queue: JobQueue, workers: list[QueueWorker]
    ) -> None:
        """Should store the processor's return value on completion."""
        job = queue.enqueue('echo', {'value': 7})

        _start(workers, queue, lambda context: {'echo': context.payload['value']})

        assert _wait_for(lambda: _state(queue, job.id) == QueueJobState.COMPLETED)
        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.result == {'echo': 7}

    def test_processor_error_fails_job(
        self, queue: JobQueue, workers: list[QueueWorker]
    ) -> None:
        """Should record the exception message as the failure reason."""
        job = queue.enqueue('boom')

        def _processor(_context: JobContext) -> None:
            raise RuntimeError('processor exploded')

        _start(workers, queue, _processor)

        assert _wait_for(lambda: _state(queue, job.id) == QueueJobState.FAILED)
        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.failed_reason == 'processor exploded'
        assert stored.attempts_made == 1

    def test_close_requeues_interrupted_job(
        self, queue: JobQueue, workers: list[QueueWorker]
    ) -> None:
        """Should return a job interrupted by shutdown to waiting without using an attempt."""
        job = queue.enqueue('long-running')
        running = threading.Event()

        def _processor(context: JobContext) -> None:
            running.set()
            while not context.cancel_token.sleep(0.01):
                pass
            context.cancel_token.raise_if_shutdown()

        worker = _start(workers, queue, _processor)
        assert running.wait(5.0)

        assert worker.close(timeout=5.0) is True

        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.state == QueueJobState.WAITING
        assert stored.attempts_made == 0
        assert stored.worker_id is None

    def test_cancel_job_signals_processor(
        self, queue: JobQueue, workers: list[QueueWorker]
    ) -> None:
        """Should cancel the in-flight token with reason USER."""
        job = queue.enqueue('cancellable')
        running = threading.Event()

        def _processor(context: JobContext) -> dict[str, Any]:
            running.set()
            while not context.cancel_token.sleep(0.01):
                pass
            reason = context.cancel_token.reason
            return {'reason': reason.value if reason else None}

        worker = _start(workers, queue, _processor)
        assert running.wait(5.0)

        assert worker.cancel_job(job.id) is True
        assert worker.cancel_job('not-running') is False

        assert _wait_for(lambda: _state(queue, job.id) == QueueJobState.COMPLETED)
        stored = queue.get_job(job.id)
        assert stored is not None
        assert stored.result == {'reason': CancelReason.USER.value}

    def test_paused_worker_does_not_claim(
        self, queue: JobQueue, workers: list[QueueWorker]
    ) -> None:
        """Should leave jobs waiting while paused and pick them up after resume."""
        worker = QueueWorker(queue, lambda _context: None, FAST, worker_id='worker-test')
        worker.pause()
        worker.start()
        workers.append(worker)
        job = queue.enqueue('later')

        time.sleep(0.1)
        assert _state(queue, job.id) == QueueJobState.WAITING

        worker.resume()
        assert _wait_for(lambda: _state(queue, job.id) == QueueJobState.COMPLETED)

    def test_start_twice_raises(self, queue: JobQueue, workers: list[QueueWorker]) -> None:
        """Should refuse to start an already started worker."""
        worker = _start(workers, queue, lambda _context: None)

        with pytest.raises(RuntimeError, match='already started'):
            worker.start()

    def test_close_when_idle(self, queue: JobQueue, workers: list[QueueWorker]) -> None:
        """Should close cleanly with nothing in flight."""
        worker = _start(workers, queue, lambda _context: None)

        assert worker.close(timeout=2.0) is True
        assert not worker.is_running


class TestWorkerOptions:
    """Tests for WorkerOptions."""

    def test_from_config(self) -> None:
        """Should copy the queue's worker settings."""
        config = QueueConfig(
            concurrency=2,
            lock_duration_seconds=120.0,
            stalled_interval_seconds=15.0,
            max_stalled_count=3,
            poll_interval_seconds=0.5,
        )

        options = WorkerOptions.from_config(config)

        assert options.concurrency == 2  # noqa: PLR2004
        assert options.lock_duration_seconds == 120.0  # noqa: PLR2004
        assert options.max_stalled_count == 3  # noqa: PLR2004
