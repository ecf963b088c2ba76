# telematics_ingest/orchestration/queue.py
"""
Durable, database-backed job queue.

Each named queue is a view over the shared `queue_jobs` table filtered by
`queue_name`. Jobs move through four states:

    waiting --claim--> active --complete--> completed (or removed)
       ^                 |
       |                 +--fail, attempts left--> waiting (after backoff)
       |                 +--fail, no attempts----> failed (or removed)
       +----requeue------+   (interruption; does not consume an attempt)
       +--stall check----+   (lock expired; stalled_count += 1)

Design Decisions:
-----------------
- Claiming is optimistic: pick the oldest eligible waiting job, then flip it to
  active with an UPDATE guarded on `state = 'waiting'`. If another worker won
  the race the UPDATE matches no rows and the next candidate is tried. This
  works the same on PostgreSQL and SQLite without row locks.

- Worker-side transitions (extend_lock, complete, fail, requeue) are guarded on
  `worker_id` and `state = 'active'`, so a worker whose job was reclaimed after
  a stall cannot overwrite the new owner's state.

- A job id given in JobOptions deduplicates: enqueueing an id that already
  exists returns the existing job untouched. Scheduled and on-demand jobs use
  fixed ids for exactly this reason.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from telematics_ingest.common import utc_now
from telematics_ingest.config import QueueConfig
from telematics_ingest.storage import Database, QueueJob, QueueJobState

__all__: list[str] = [
    'QUEUE_EVENT_INGESTION',
    'QUEUE_HISTORICAL_DATA_LOAD',
    'QUEUE_MASTER_DATA_SYNC',
    'JobOptions',
    'JobQueue',
    'QueueError',
]

logger: logging.Logger = logging.getLogger(__name__)

QUEUE_MASTER_DATA_SYNC: Final[str] = 'master-data-sync'
QUEUE_EVENT_INGESTION: Final[str] = 'event-ingestion'
QUEUE_HISTORICAL_DATA_LOAD: Final[str] = 'historical-data-load'

STALLED_FAILURE_REASON: Final[str] = 'job stalled more than allowable limit'
MAX_CLAIM_CANDIDATES: Final[int] = 5
MAX_REASON_LENGTH: Final[int] = 2000


class QueueError(Exception):
    """
    Raised for invalid queue operations.

    Attributes:
        queue_name: Queue the operation targeted.
        job_id: Job involved, if any.
    """

    def __init__(self, message: str, queue_name: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.queue_name: str = queue_name
        self.job_id: str | None = job_id


class JobOptions(BaseModel):
    """
    Per-job enqueue options.

    Attributes:
        job_id: Fixed id; an existing job with this id is returned instead.
        remove_on_complete: Delete the row when the job completes.
        remove_on_fail: Delete the row when the job fails terminally.
        attempts: Total attempts before failing; None uses the queue default.
        backoff_delay_seconds: Base of exponential retry backoff; None uses
            the queue default.
        delay_seconds: Delay before the first attempt becomes claimable.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    job_id: str | None = Field(default=None, min_length=1, max_length=128)
    remove_on_complete: bool = False
    remove_on_fail: bool = False
    attempts: int | None = Field(default=None, ge=1)
    backoff_delay_seconds: float | None = Field(default=None, ge=0.0)
    delay_seconds: float = Field(default=0.0, ge=0.0)


class JobQueue:
    """
    One named queue.

    Args:
        database: Database holding queue_jobs.
        name: Queue name (e.g. "event-ingestion").
        default_attempts: Attempts for jobs that do not set their own.
        default_backoff_delay_seconds: Backoff base for jobs that do not set it.
        clock: UTC clock.
    """

    def __init__(
        self,
        database: Database,
        name: str,
        default_attempts: int = 1,
        default_backoff_delay_seconds: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database: Database = database
        self.name: str = name
        self._default_attempts: int = default_attempts
        self._default_backoff: float = default_backoff_delay_seconds
        self._clock: Callable[[], datetime] = clock

    @classmethod
    def from_config(
        cls,
        database: Database,
        name: str,
        config: QueueConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> 'JobQueue':
        return cls(
            database,
            name,
            default_attempts=config.attempts,
            default_backoff_delay_seconds=config.backoff_delay_seconds,
            clock=clock,
        )

    # =========================================================================
    # Producer Side
    # =========================================================================

    def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> QueueJob:
        """
        Add a job, or return the existing one when its id is already taken.

        Args:
            job_name: Logical job name, e.g. "sync-all-master-data".
            payload: JSON-serialisable job data.
            options: Id, retention and retry options.

        Returns:
            The stored job.
        """
        opts: JobOptions = options or JobOptions()
        job_id: str = opts.job_id or f'{self.name}-{uuid.uuid4().hex}'

        existing: QueueJob | None = self.get_job(job_id)
        if existing is not None:
            logger.debug(
                'Job %s already exists on %s (state=%s); not enqueued again',
                job_id,
                self.name,
                existing.state,
            )
            return existing

        now: datetime = self._clock()
        job = QueueJob(
            id=job_id,
            queue_name=self.name,
            name=job_name,
            payload=payload or {},
            state=QueueJobState.WAITING,
            attempts_made=0,
            max_attempts=opts.attempts or self._default_attempts,
            backoff_delay_seconds=(
                self._default_backoff
                if opts.backoff_delay_seconds is None
                else opts.backoff_delay_seconds
            ),
            available_at=now + timedelta(seconds=opts.delay_seconds),
            stalled_count=0,
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
            created_at=now,
        )
        try:
            with self._database.session_scope() as session:
                session.add(job)
        except IntegrityError as integrity_error:
            # Lost a race with another producer using the same id.
            raced: QueueJob | None = self.get_job(job_id)
            if raced is None:
                raise QueueError(
                    f'Job id {job_id!r} is already used by another queue',
                    queue_name=self.name,
                    job_id=job_id,
                ) from integrity_error
            return raced

        logger.info('Enqueued %s job %s on %s', job_name, job_id, self.name)
        return job

    def get_job(self, job_id: str) -> QueueJob | None:
        with self._database.session_scope() as session:
            return session.scalar(
                select(QueueJob).where(
                    QueueJob.id == job_id, QueueJob.queue_name == self.name
                )
            )

    def remove(self, job_id: str) -> bool:
        """
        Delete a job that is not currently being processed.

        Returns:
            True if a row was deleted; False if absent or active.
        """
        with self._database.session_scope() as session:
            result = session.execute(
                delete(QueueJob).where(
                    QueueJob.id == job_id,
                    QueueJob.queue_name == self.name,
                    QueueJob.state != QueueJobState.ACTIVE,
                )
            )
            removed: bool = result.rowcount > 0  # type: ignore[attr-defined]

        if removed:
            logger.info('Removed job %s from %s', job_id, self.name)
        else:
            logger.debug('Job %s not removed from %s (absent or active)', job_id, self.name)
        return removed

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get_jobs(
        self, states: Sequence[QueueJobState], limit: int | None = None
    ) -> list[QueueJob]:
        """Jobs in the given states, newest first."""
        statement = (
            select(QueueJob)
            .where(QueueJob.queue_name == self.name, QueueJob.state.in_(list(states)))
            .order_by(QueueJob.created_at.desc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._database.session_scope() as session:
            return list(session.scalars(statement))

    def get_active(self) -> list[QueueJob]:
        return self.get_jobs([QueueJobState.ACTIVE])

    def get_waiting(self) -> list[QueueJob]:
        return self.get_jobs([QueueJobState.WAITING])

    def get_failed(self, limit: int | None = None) -> list[QueueJob]:
        return self.get_jobs([QueueJobState.FAILED], limit)

    def get_completed(self, limit: int | None = None) -> list[QueueJob]:
        return self.get_jobs([QueueJobState.COMPLETED], limit)

    def counts(self) -> dict[str, int]:
        """Job count per state; every state is present."""
        with self._database.session_scope() as session:
            rows = session.execute(
                select(QueueJob.state, func.count(QueueJob.id))
                .where(QueueJob.queue_name == self.name)
                .group_by(QueueJob.state)
            ).all()
        counts: dict[str, int] = {state.value: 0 for state in QueueJobState}
        for state, count in rows:
            counts[str(state)] = count
        return counts

    def trim_finished(self, keep: int) -> int:
        """
        Delete completed and failed jobs beyond the newest `keep`.

        Returns:
            Number of rows deleted.
        """
        finished_states: list[QueueJobState] = [
            QueueJobState.COMPLETED,
            QueueJobState.FAILED,
        ]
        with self._database.session_scope() as session:
            stale_ids: list[str] = list(
                session.scalars(
                    select(QueueJob.id)
                    .where(
                        QueueJob.queue_name == self.name,
                        QueueJob.state.in_(finished_states),
                    )
                    .order_by(QueueJob.created_at.desc())
                    .offset(keep)
                )
            )
            if not stale_ids:
                return 0
            session.execute(delete(QueueJob).where(QueueJob.id.in_(stale_ids)))

        logger.debug('Trimmed %d finished jobs from %s', len(stale_ids), self.name)
        return len(stale_ids)

    def has_pending(self) -> bool:
        """True while any job is waiting or active."""
        with self._database.session_scope() as session:
            found: str | None = session.scalar(
                select(QueueJob.id)
                .where(
                    QueueJob.queue_name == self.name,
                    QueueJob.state.in_([QueueJobState.WAITING, QueueJobState.ACTIVE]),
                )
                .limit(1)
            )
        return found is not None

    # =========================================================================
    # Worker Side
    # =========================================================================

    def claim(self, worker_id: str, lock_duration_seconds: float) -> QueueJob | None:
        """
        Take the oldest claimable job and lock it for this worker.

        Returns:
            The claimed job (state active), or None when nothing is claimable.
        """
        now: datetime = self._clock()
        locked_until: datetime = now + timedelta(seconds=lock_duration_seconds)

        with self._database.session_scope() as session:
            candidate_ids: list[str] = list(
                session.scalars(
                    select(QueueJob.id)
                    .where(
                        QueueJob.queue_name == self.name,
                        QueueJob.state == QueueJobState.WAITING,
                        QueueJob.available_at <= now,
                    )
                    .order_by(QueueJob.available_at, QueueJob.created_at)
                    .limit(MAX_CLAIM_CANDIDATES)
                )
            )

            for candidate_id in candidate_ids:
                result = session.execute(
                    update(QueueJob)
                    .where(
                        QueueJob.id == candidate_id,
                        QueueJob.state == QueueJobState.WAITING,
                    )
                    .values(
                        state=QueueJobState.ACTIVE,
                        worker_id=worker_id,
                        locked_until=locked_until,
                        started_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:  # type: ignore[attr-defined]
                    claimed: QueueJob | None = session.get(
                        QueueJob, candidate_id, populate_existing=True
                    )
                    logger.debug('Worker %s claimed job %s', worker_id, candidate_id)
                    return claimed

        return None

    def extend_lock(
        self, job_id: str, worker_id: str, lock_duration_seconds: float
    ) -> bool:
        """Push the lock expiry forward. False if the worker no longer owns it."""
        locked_until: datetime = self._clock() + timedelta(seconds=lock_duration_seconds)
        with self._database.session_scope() as session:
            result = session.execute(
                self._owned(job_id, worker_id).values(locked_until=locked_until)
            )
            return result.rowcount == 1  # type: ignore[attr-defined]

    def complete(
        self, job_id: str, worker_id: str, result: dict[str, Any] | None = None
    ) -> bool:
        """Mark an owned job completed, or delete it if remove_on_complete."""
        with self._database.session_scope() as session:
            job: QueueJob | None = self._load_owned(session, job_id, worker_id)
            if job is None:
                logger.warning(
                    'Worker %s lost ownership of job %s before completing', worker_id, job_id
                )
                return False

            if job.remove_on_complete:
                session.delete(job)
            else:
                job.state = QueueJobState.COMPLETED
                job.result = result
                job.finished_at = self._clock()
                job.locked_until = None
                job.worker_id = None

        logger.info('Job %s completed on %s', job_id, self.name)
        return True

    def fail(self, job_id: str, worker_id: str, error: str) -> QueueJobState | None:
        """
        Record a failed attempt.

        Retries with exponential backoff while attempts remain; otherwise the
        job is failed (or deleted if remove_on_fail).

        Returns:
            The job's new state (WAITING for a retry, FAILED when terminal,
            including removal), or None if the worker no longer owns it.
        """
        now: datetime = self._clock()
        with self._database.session_scope() as session:
            job: QueueJob | None = self._load_owned(session, job_id, worker_id)
            if job is None:
                logger.warning(
                    'Worker %s lost ownership of job %s before failing it', worker_id, job_id
                )
                return None

            job.attempts_made += 1
            job.failed_reason = error[:MAX_REASON_LENGTH]
            job.locked_until = None
            job.worker_id = None

            if job.attempts_made < job.max_attempts:
                delay: float = job.backoff_delay_seconds * (2 ** (job.attempts_made - 1))
                job.state = QueueJobState.WAITING
                job.available_at = now + timedelta(seconds=delay)
                logger.warning(
                    'Job %s failed attempt %d/%d; retrying in %.1fs: %s',
                    job_id,
                    job.attempts_made,
                    job.max_attempts,
                    delay,
                    error,
                )
                return QueueJobState.WAITING

            self._finish_failed(session, job, now)
            logger.error(
                'Job %s failed after %d attempt(s): %s', job_id, job.attempts_made, error
            )
            return QueueJobState.FAILED

    def requeue(self, job_id: str, worker_id: str) -> bool:
        """Return an interrupted job to waiting without consuming an attempt."""
        with self._database.session_scope() as session:
            result = session.execute(
                self._owned(job_id, worker_id).values(
                    state=QueueJobState.WAITING,
                    worker_id=None,
                    locked_until=None,
                    available_at=self._clock(),
                )
            )
            requeued: bool = result.rowcount == 1  # type: ignore[attr-defined]
        if requeued:
            logger.info('Job %s returned to %s for a later worker', job_id, self.name)
        return requeued

    def check_stalled(self, max_stalled_count: int) -> list[str]:
        """
        Recover active jobs whose lock expired.

        Each is moved back to waiting with stalled_count incremented; once the
        count exceeds max_stalled_count the job is failed instead.

        Returns:
            Ids of the jobs that were recovered or failed.
        """
        now: datetime = self._clock()
        handled: list[str] = []
        with self._database.session_scope() as session:
            stalled_jobs: list[QueueJob] = list(
                session.scalars(
                    select(QueueJob).where(
                        QueueJob.queue_name == self.name,
                        QueueJob.state == QueueJobState.ACTIVE,
                        QueueJob.locked_until < now,
                    )
                )
            )
            for job in stalled_jobs:
                job.stalled_count += 1
                handled.append(job.id)
                job.locked_until = None
                job.worker_id = None

                if job.stalled_count > max_stalled_count:
                    job.failed_reason = STALLED_FAILURE_REASON
                    self._finish_failed(session, job, now)
                    logger.error('Job %s on %s: %s', job.id, self.name, STALLED_FAILURE_REASON)
                else:
                    job.state = QueueJobState.WAITING
                    job.available_at = now
                    logger.warning(
                        'Job %s on %s stalled (%d/%d); moved back to waiting',
                        job.id,
                        self.name,
                        job.stalled_count,
                        max_stalled_count,
                    )
        return handled

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _owned(self, job_id: str, worker_id: str) -> Any:
        return (
            update(QueueJob)
            .where(
                QueueJob.id == job_id,
                QueueJob.queue_name == self.name,
                QueueJob.state == QueueJobState.ACTIVE,
                QueueJob.worker_id == worker_id,
            )
            .execution_options(synchronize_session=False)
        )

    def _load_owned(self, session: Session, job_id: str, worker_id: str) -> QueueJob | None:
        return session.scalar(
            select(QueueJob).where(
                QueueJob.id == job_id,
                QueueJob.queue_name == self.name,
                QueueJob.state == QueueJobState.ACTIVE,
                QueueJob.worker_id == worker_id,
            )
        )

    @staticmethod
    def _finish_failed(session: Session, job: QueueJob, now: datetime) -> None:
        if job.remove_on_fail:
            session.delete(job)
            return
        job.state = QueueJobState.FAILED
        job.finished_at = now
