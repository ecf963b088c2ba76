# telematics_ingest/orchestration/worker.py
"""
Thread-based worker for one JobQueue.

A worker runs three kinds of threads:

- slot threads (one per unit of concurrency) that claim and process jobs,
- a heartbeat that renews the lock of every in-flight job at half the lock
  duration,
- a stall checker that requeues (or fails) jobs whose lock expired, which is
  how a crashed worker's jobs are recovered.

Every processed job gets its own CancellationToken. `close()` cancels in-flight
tokens with reason SHUTDOWN; engines stop at their next checkpoint and raise
JobInterrupted, which the worker turns into a requeue that does not consume an
attempt. Python threads cannot be killed, so threads still busy after the close
timeout are abandoned (they are daemons) and their jobs are recovered by the
stall checker once their lock lapses.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from telematics_ingest.cancellation import CancellationToken, CancelReason, JobInterrupted
from telematics_ingest.config import QueueConfig
from telematics_ingest.orchestration.queue import JobQueue
from telematics_ingest.storage import QueueJob

__all__: list[str] = ['JobContext', 'Processor', 'QueueWorker', 'WorkerOptions']

logger: logging.Logger = logging.getLogger(__name__)


class WorkerOptions(BaseModel):
    """Threading and lock options for a QueueWorker."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    concurrency: int = Field(default=1, ge=1)
    lock_duration_seconds: float = Field(default=60.0, gt=0.0)
    stalled_interval_seconds: float = Field(default=30.0, gt=0.0)
    max_stalled_count: int = Field(default=1, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)

    @classmethod
    def from_config(cls, config: QueueConfig) -> 'WorkerOptions':
        return cls(
            concurrency=config.concurrency,
            lock_duration_seconds=config.lock_duration_seconds,
            stalled_interval_seconds=config.stalled_interval_seconds,
            max_stalled_count=config.max_stalled_count,
            poll_interval_seconds=config.poll_interval_seconds,
        )


class JobContext(BaseModel):
    """What a processor receives for one job."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    job: QueueJob
    cancel_token: CancellationToken

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload or {}


Processor = Callable[[JobContext], dict[str, Any] | None]


class QueueWorker:
    """
    Processes jobs from one queue on background threads.

    Args:
        queue: Queue to consume.
        processor: Called once per claimed job; its return value is stored
            as the job result. Raising marks the attempt failed.
        options: Concurrency, lock and stall settings.
        worker_id: Stable identifier; defaults to a random one.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        options: WorkerOptions,
        worker_id: str | None = None,
    ) -> None:
        self.queue: JobQueue = queue
        self._processor: Processor = processor
        self._options: WorkerOptions = options
        self.worker_id: str = worker_id or f'{queue.name}-{uuid.uuid4().hex[:8]}'

        self._stop_event: threading.Event = threading.Event()
        self._heartbeat_stop: threading.Event = threading.Event()
        self._paused: threading.Event = threading.Event()

        self._in_flight: dict[str, CancellationToken] = {}
        self._in_flight_lock: threading.Condition = threading.Condition()

        self._slot_threads: list[threading.Thread] = []
        self._service_threads: list[threading.Thread] = []
        self._started: bool = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def options(self) -> WorkerOptions:
        return self._options

    @property
    def is_running(self) -> bool:
        return self._started and not self._stop_event.is_set()

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    def start(self) -> None:
        """Spawn slot, heartbeat and stall-checker threads."""
        if self._started:
            raise RuntimeError(f'Worker {self.worker_id} already started')
        self._started = True

        for slot in range(self._options.concurrency):
            thread = threading.Thread(
                target=self._slot_loop,
                name=f'{self.worker_id}-slot-{slot}',
                daemon=True,
            )
            self._slot_threads.append(thread)

        self._service_threads = [
            threading.Thread(
                target=self._heartbeat_loop, name=f'{self.worker_id}-heartbeat', daemon=True
            ),
            threading.Thread(
                target=self._stall_loop, name=f'{self.worker_id}-stalls', daemon=True
            ),
        ]
        for thread in (*self._slot_threads, *self._service_threads):
            thread.start()

        logger.info(
            'Worker %s started on %s (concurrency=%d, lock=%.0fs)',
            self.worker_id,
            self.queue.name,
            self._options.concurrency,
            self._options.lock_duration_seconds,
        )

    def pause(self) -> None:
        """Stop claiming new jobs; in-flight jobs continue."""
        self._paused.set()
        logger.info('Worker %s paused', self.worker_id)

    def resume(self) -> None:
        self._paused.clear()
        logger.info('Worker %s resumed', self.worker_id)

    def cancel_job(self, job_id: str, reason: CancelReason = CancelReason.USER) -> bool:
        """Cancel an in-flight job's token. False if the job is not running here."""
        with self._in_flight_lock:
            token: CancellationToken | None = self._in_flight.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info('Worker %s cancelled job %s (%s)', self.worker_id, job_id, reason.value)
        return True

    def cancel_all(self, reason: CancelReason = CancelReason.SHUTDOWN) -> int:
        with self._in_flight_lock:
            tokens: list[CancellationToken] = list(self._in_flight.values())
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    def in_flight_job_ids(self) -> list[str]:
        with self._in_flight_lock:
            return list(self._in_flight)

    def wait_until_idle(self, timeout: float) -> bool:
        """Block until no job is in flight or the timeout passes."""
        with self._in_flight_lock:
            return self._in_flight_lock.wait_for(lambda: not self._in_flight, timeout)

    def close(self, timeout: float) -> bool:
        """
        Stop the worker.

        Claims stop immediately, in-flight tokens are cancelled with reason
        SHUTDOWN, and threads are joined for up to `timeout` seconds in total.

        Returns:
            True if every slot thread finished in time.
        """
        self._stop_event.set()
        self._paused.set()
        cancelled: int = self.cancel_all(CancelReason.SHUTDOWN)
        if cancelled:
            logger.info(
                'Worker %s signalled %d in-flight job(s) to stop', self.worker_id, cancelled
            )

        finished: bool = self.wait_until_idle(timeout)
        for thread in self._slot_threads:
            thread.join(timeout=0.1 if not finished else timeout)

        self._heartbeat_stop.set()
        for thread in self._service_threads:
            thread.join(timeout=self._options.poll_interval_seconds)

        still_alive: list[str] = [
            thread.name for thread in self._slot_threads if thread.is_alive()
        ]
        if still_alive:
            logger.warning(
                'Worker %s force-closed with busy threads: %s', self.worker_id, still_alive
            )
            return False

        logger.info('Worker %s closed', self.worker_id)
        return True

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    def _slot_loop(self) -> None:
        poll: float = self._options.poll_interval_seconds
        while not self._stop_event.is_set():
            if self._paused.is_set():
                self._stop_event.wait(poll)
                continue

            try:
                job: QueueJob | None = self.queue.claim(
                    self.worker_id, self._options.lock_duration_seconds
                )
            except Exception:
                logger.exception(
                    'Worker %s failed to claim from %s', self.worker_id, self.queue.name
                )
                self._stop_event.wait(poll)
                continue

            if job is None:
                self._stop_event.wait(poll)
                continue

            try:
                self._process(job)
            except Exception:
                # Outcome could not be recorded; the stall checker recovers the job.
                logger.exception(
                    'Worker %s could not record the outcome of job %s', self.worker_id, job.id
                )

    def _process(self, job: QueueJob) -> None:
        token = CancellationToken()
        with self._in_flight_lock:
            self._in_flight[job.id] = token

        if self._stop_event.is_set():
            token.cancel(CancelReason.SHUTDOWN)

        logger.info('Processing %s job %s on %s', job.name, job.id, self.queue.name)
        try:
            result: dict[str, Any] | None = self._processor(
                JobContext(job=job, cancel_token=token)
            )
        except JobInterrupted as interrupted:
            logger.warning(
                'Job %s interrupted (%s); requeueing', job.id, interrupted.reason.value
            )
            self.queue.requeue(job.id, self.worker_id)
        except Exception as processing_error:
            logger.exception('Job %s failed on %s', job.id, self.queue.name)
            self.queue.fail(
                job.id,
                self.worker_id,
                str(processing_error) or type(processing_error).__name__,
            )
        else:
            self.queue.complete(job.id, self.worker_id, result)
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(job.id, None)
                self._in_flight_lock.notify_all()

    def _heartbeat_loop(self) -> None:
        interval: float = self._options.lock_duration_seconds / 2
        while not self._heartbeat_stop.wait(interval):
            for job_id in self.in_flight_job_ids():
                try:
                    renewed: bool = self.queue.extend_lock(
                        job_id, self.worker_id, self._options.lock_duration_seconds
                    )
                except Exception:
                    logger.exception('Lock renewal failed for job %s', job_id)
                    continue
                if not renewed:
                    logger.warning(
                        'Worker %s no longer owns job %s; lock not renewed',
                        self.worker_id,
                        job_id,
                    )

    def _stall_loop(self) -> None:
        interval: float = self._options.stalled_interval_seconds
        while not self._stop_event.wait(interval):
            try:
                self.queue.check_stalled(self._options.max_stalled_count)
            except Exception:
                logger.exception('Stall check failed on %s', self.queue.name)
