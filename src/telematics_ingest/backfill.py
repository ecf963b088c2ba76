# telematics_ingest/backfill.py
"""
Historical backfill: on-demand loading of past date ranges.

Two halves:

- HistoricalLoadService is the control surface. It validates a requested
  range, records a control row and enqueues one unit on the
  `historical-data-load` queue. It also reports status and cancels loads.

- HistoricalBackfillEngine is the processor for that queue. It walks the range
  one hour at a time from the stored checkpoint, fetches each hour through the
  time-window endpoint, writes new events and advances the checkpoint in the
  same transaction.

Design Decisions:
-----------------
- Only one load may be pending or running at a time. The queue runs with
  concurrency 1 as well, so two loads never compete for the API budget.

- Cancellation is checked at every hour boundary, both through the in-process
  CancellationToken and by re-reading the row's status. The row check covers a
  cancel issued from another process (for example the CLI).

- Worker shutdown is not a cancellation. The engine raises JobInterrupted, the
  row stays `running` with its checkpoint, and the queue returns the unit to
  waiting so the next worker resumes where this one stopped.

- A unit the stall checker gives up on is failed by the queue alone. The
  service reconciles such rows against their queue unit before the
  exclusivity check and on every status read, so a dead load never blocks
  the next one.

- An hour that fails every retry fails the whole load. `skip_failed_hours`
  records the failure and moves past the hour instead, accepting a gap.

Usage:
------
    service = HistoricalLoadService(database, historical_queue, config.backfill)
    job_id = service.start(datetime(2025, 9, 1, tzinfo=UTC), datetime(2025, 9, 2, tzinfo=UTC))
    print(service.get_status(job_id).progress_percent)
"""

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Final

from pydantic import BaseModel, ConfigDict

from telematics_ingest.adapter import MixApiAdapter
from telematics_ingest.cancellation import CancellationToken, CancelReason, JobInterrupted
from telematics_ingest.client import APIError
from telematics_ingest.common import as_utc, utc_now
from telematics_ingest.config import BackfillConfig
from telematics_ingest.messages import (
    MasterDataSyncRequested,
    MessageSink,
    log_only_sink,
)
from telematics_ingest.models import MixEvent
from telematics_ingest.orchestration.queue import JobOptions, JobQueue
from telematics_ingest.resilience import FailureRecorder, PacingGovernor
from telematics_ingest.storage import (
    Database,
    HistoricalLoadJob,
    HistoricalLoadRepository,
    LoadJobStatus,
    QueueJob,
    QueueJobState,
    TelemetryEventWriter,
    WriteResult,
)

__all__: list[str] = [
    'BackfillError',
    'BackfillNotFoundError',
    'BackfillStateError',
    'BackfillValidationError',
    'HistoricalBackfillEngine',
    'HistoricalLoadService',
    'HistoricalLoadStatus',
]

logger: logging.Logger = logging.getLogger(__name__)

HOUR: Final[timedelta] = timedelta(hours=1)
HISTORICAL_JOB_NAME: Final[str] = 'load-historical-data'
PROGRESS_LOG_EVERY_HOURS: Final[int] = 10

# Signals a user cancel to a unit already running in this process.
CancelSignal = Callable[[str], bool]


# =============================================================================
# Exceptions
# =============================================================================


class BackfillError(Exception):
    """
    Base class for backfill errors.

    Attributes:
        job_id: Load the error relates to, if any.
    """

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id: str | None = job_id


class BackfillValidationError(BackfillError):
    """The requested range is invalid or another load is already active."""


class BackfillNotFoundError(BackfillError):
    """No load exists with the given job id."""


class BackfillStateError(BackfillError):
    """The load is in a state that does not allow the operation."""

    def __init__(self, message: str, job_id: str, status: str) -> None:
        super().__init__(message, job_id)
        self.status: str = status


# =============================================================================
# Status View
# =============================================================================


class HistoricalLoadStatus(BaseModel):
    """Read-only snapshot of a historical load."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    job_id: str
    status: LoadJobStatus
    start_date: datetime
    end_date: datetime
    current_checkpoint: datetime | None
    total_hours: int
    hours_processed: int
    events_processed: int
    progress_percent: float
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: HistoricalLoadJob) -> 'HistoricalLoadStatus':
        progress: float = 0.0
        if row.total_hours > 0:
            progress = round(min(row.hours_processed / row.total_hours, 1.0) * 100, 2)
        return cls(
            job_id=row.job_id,
            status=LoadJobStatus(row.status),
            start_date=row.start_date,
            end_date=row.end_date,
            current_checkpoint=row.current_checkpoint,
            total_hours=row.total_hours,
            hours_processed=row.hours_processed,
            events_processed=row.events_processed,
            progress_percent=progress,
            started_at=row.started_at,
            completed_at=row.completed_at,
            error_message=row.error_message,
            created_at=row.created_at,
        )


# =============================================================================
# Control Surface
# =============================================================================


class HistoricalLoadService:
    """
    Start, inspect and cancel historical loads.

    Args:
        database: Database holding historical_load_control.
        queue: The historical-data-load queue.
        config: Range limit.
        cancel_signal: Callback that cancels an in-process running unit by job
            id (the orchestrator wires its worker here). Optional; the engine
            also notices cancellation through the row status.
        clock: UTC clock.
    """

    def __init__(
        self,
        database: Database,
        queue: JobQueue,
        config: BackfillConfig,
        cancel_signal: CancelSignal | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database: Database = database
        self._queue: JobQueue = queue
        self._config: BackfillConfig = config
        self._cancel_signal: CancelSignal | None = cancel_signal
        self._clock: Callable[[], datetime] = clock

    def start(self, start_date: datetime, end_date: datetime) -> str:
        """
        Validate the range, record the load and enqueue it.

        Args:
            start_date: Range start; naive values are taken as UTC.
            end_date: Range end (exclusive); naive values are taken as UTC.

        Returns:
            The new job id, "historical-<epoch ms>".

        Raises:
            BackfillValidationError: If start >= end, the span exceeds
                max_range_days, or another load is pending or running.
        """
        start: datetime = as_utc(start_date)
        end: datetime = as_utc(end_date)

        if start >= end:
            raise BackfillValidationError('start_date must be before end_date')

        span: timedelta = end - start
        if span > timedelta(days=self._config.max_range_days):
            raise BackfillValidationError(
                f'Range exceeds the maximum of {self._config.max_range_days} days'
            )

        total_hours: int = math.ceil(span / HOUR)
        job_id: str = f'historical-{int(self._clock().timestamp() * 1000)}'

        self._reconcile_active()
        with self._database.session_scope() as session:
            repository = HistoricalLoadRepository(session)
            active: HistoricalLoadJob | None = repository.find_active()
            if active is not None:
                raise BackfillValidationError(
                    f'Historical load {active.job_id} is already {active.status}',
                    job_id=active.job_id,
                )
            repository.create(job_id, start, end, total_hours)

        try:
            self._queue.enqueue(
                HISTORICAL_JOB_NAME,
                {
                    'job_id': job_id,
                    'start_date': start.isoformat(),
                    'end_date': end.isoformat(),
                },
                JobOptions(job_id=job_id, remove_on_complete=False, remove_on_fail=False),
            )
        except Exception as enqueue_error:
            self._mark_failed(job_id, f'Failed to enqueue: {enqueue_error}')
            raise

        logger.info(
            'Historical load %s started: %s -> %s (%d hours)',
            job_id,
            start.isoformat(),
            end.isoformat(),
            total_hours,
        )
        return job_id

    def get_status(self, job_id: str) -> HistoricalLoadStatus:
        """
        Raises:
            BackfillNotFoundError: If the job does not exist.
        """
        self._reconcile_with_queue(job_id)
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            return HistoricalLoadStatus.from_row(row)

    def list_recent(self, limit: int = 10) -> list[HistoricalLoadStatus]:
        self._reconcile_active()
        with self._database.session_scope() as session:
            rows = HistoricalLoadRepository(session).list_recent(limit)
            return [HistoricalLoadStatus.from_row(row) for row in rows]

    def get_active(self) -> HistoricalLoadStatus | None:
        self._reconcile_active()
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).find_active()
            return HistoricalLoadStatus.from_row(row) if row else None

    def cancel(self, job_id: str) -> HistoricalLoadStatus:
        """
        Cancel a pending or running load.

        The still-queued unit is removed, the row is marked cancelled, and a
        unit already running in this process is signalled to stop at its next
        hour boundary.

        Raises:
            BackfillNotFoundError: If the job does not exist.
            BackfillStateError: If the load already completed, failed or was
                cancelled.
        """
        self._reconcile_with_queue(job_id)
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            if LoadJobStatus(row.status).is_terminal:
                raise BackfillStateError(
                    f'Historical load {job_id} is already {row.status}',
                    job_id,
                    row.status,
                )

        self._queue.remove(job_id)

        with self._database.session_scope() as session:
            row = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            row.status = LoadJobStatus.CANCELLED
            row.completed_at = self._clock()
            status: HistoricalLoadStatus = HistoricalLoadStatus.from_row(row)

        if self._cancel_signal is not None:
            self._cancel_signal(job_id)

        logger.info('Historical load %s cancelled', job_id)
        return status

    def _reconcile_active(self) -> None:
        with self._database.session_scope() as session:
            active: HistoricalLoadJob | None = HistoricalLoadRepository(session).find_active()
            active_id: str | None = active.job_id if active else None
        if active_id is not None:
            self._reconcile_with_queue(active_id)

    def _reconcile_with_queue(self, job_id: str) -> None:
        """
        Fail a pending or running load whose queue unit already failed.

        The queue fails a unit by itself when the stall checker gives up on
        it; the engine never reaches its own failure path in that case.
        """
        unit: QueueJob | None = self._queue.get_job(job_id)
        if unit is None or unit.state != QueueJobState.FAILED:
            return
        reason: str = unit.failed_reason or 'queue unit failed'
        if self._mark_failed(job_id, reason):
            logger.warning('Historical load %s marked failed: %s', job_id, reason)

    def _mark_failed(self, job_id: str, error_message: str) -> bool:
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None or LoadJobStatus(row.status).is_terminal:
                return False
            row.status = LoadJobStatus.FAILED
            row.error_message = error_message
            row.completed_at = self._clock()
            return True


# =============================================================================
# Processing Engine
# =============================================================================


class HistoricalBackfillEngine:
    """
    Processes one historical load, hour by hour.

    Args:
        database: Target database.
        adapter: MiX API adapter.
        governor: Pacing governor owned by this engine.
        recorder: Failure recorder / circuit breaker owned by this engine.
        config: Hour retry count and skip policy.
        message_sink: Receives MasterDataSyncRequested on completion.
        writer: Event writer shared with the ingestion loop.
        wall_clock: UTC clock.
    """

    def __init__(
        self,
        database: Database,
        adapter: MixApiAdapter,
        governor: PacingGovernor,
        recorder: FailureRecorder,
        config: BackfillConfig,
        message_sink: MessageSink = log_only_sink,
        writer: TelemetryEventWriter | None = None,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._database: Database = database
        self._adapter: MixApiAdapter = adapter
        self._governor: PacingGovernor = governor
        self._recorder: FailureRecorder = recorder
        self._config: BackfillConfig = config
        self._message_sink: MessageSink = message_sink
        self._writer: TelemetryEventWriter = writer or TelemetryEventWriter()
        self._wall_clock: Callable[[], datetime] = wall_clock

    def run(
        self, job_id: str, cancel_token: CancellationToken | None = None
    ) -> HistoricalLoadStatus:
        """
        Process the load from its checkpoint to its end date.

        Returns:
            Final status (completed or cancelled).

        Raises:
            BackfillNotFoundError: If the job row does not exist.
            BackfillStateError: If the load already completed or failed.
            JobInterrupted: On worker shutdown; the checkpoint is kept.
            BackfillError: When an hour exhausts its retries.
        """
        token: CancellationToken = cancel_token or CancellationToken()
        hour_start, end = self._mark_running(job_id)
        if hour_start is None:
            return self._status(job_id)

        last_attempt_failed: bool = False
        try:
            while hour_start < end:
                if self._should_stop(job_id, token):
                    return self._status(job_id)

                hour_end: datetime = min(hour_start + HOUR, end)

                self._recorder.check_circuit_breaker(sleep=token.sleep)
                self._governor.wait_before_next(
                    has_more_items=True,
                    had_error=last_attempt_failed,
                    sleep=token.sleep,
                )
                if token.is_cancelled:
                    continue

                events: list[MixEvent] | None = self._fetch_hour(hour_start, hour_end, token)
                if events is None:
                    if token.is_cancelled:
                        continue
                    last_attempt_failed = True
                    if not self._config.skip_failed_hours:
                        raise BackfillError(
                            f'Hour {hour_start.isoformat()} failed after '
                            f'{self._config.hour_retry_attempts} attempts',
                            job_id,
                        )
                    logger.error(
                        'Skipping hour %s of load %s after repeated failures',
                        hour_start.isoformat(),
                        job_id,
                    )
                    self._advance_checkpoint(job_id, hour_end, [])
                    hour_start = hour_end
                    continue

                last_attempt_failed = False
                hours_processed: int = self._advance_checkpoint(job_id, hour_end, events)
                self._recorder.record_success()
                hour_start = hour_end

                if hours_processed % PROGRESS_LOG_EVERY_HOURS == 0:
                    logger.info(
                        'Historical load %s: %d hours processed', job_id, hours_processed
                    )

        except JobInterrupted:
            logger.warning(
                'Historical load %s interrupted by shutdown at %s; will resume',
                job_id,
                hour_start.isoformat(),
            )
            raise
        except Exception as run_error:
            logger.exception('Historical load %s failed', job_id)
            self._mark_failed(job_id, str(run_error))
            raise

        return self._complete(job_id)

    # -------------------------------------------------------------------------
    # State Transitions
    # -------------------------------------------------------------------------

    def _mark_running(self, job_id: str) -> tuple[datetime | None, datetime]:
        """
        Move the row to running and return the resume point.

        Returns:
            (resume point, end date); the resume point is None when the load
            was cancelled before it started.
        """
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)

            status = LoadJobStatus(row.status)
            if status is LoadJobStatus.CANCELLED:
                logger.info('Historical load %s was cancelled before it started', job_id)
                return None, row.end_date
            if status in (LoadJobStatus.COMPLETED, LoadJobStatus.FAILED):
                raise BackfillStateError(
                    f'Historical load {job_id} is already {row.status}', job_id, row.status
                )

            row.status = LoadJobStatus.RUNNING
            if row.started_at is None:
                row.started_at = self._wall_clock()
            resume_from: datetime = row.current_checkpoint or row.start_date

            logger.info(
                'Historical load %s running from %s to %s (%d/%d hours done)',
                job_id,
                resume_from.isoformat(),
                row.end_date.isoformat(),
                row.hours_processed,
                row.total_hours,
            )
            return resume_from, row.end_date

    def _should_stop(self, job_id: str, token: CancellationToken) -> bool:
        if token.is_cancelled:
            token.raise_if_shutdown()
            if token.reason is CancelReason.USER:
                self._mark_cancelled(job_id)
                logger.info('Historical load %s stopped by user cancellation', job_id)
                return True

        with self._database.session_scope() as session:
            current: str | None = HistoricalLoadRepository(session).current_status(job_id)
        if current == LoadJobStatus.CANCELLED:
            logger.info('Historical load %s was cancelled; stopping', job_id)
            return True
        return False

    def _advance_checkpoint(
        self, job_id: str, hour_end: datetime, events: list[MixEvent]
    ) -> int:
        """Write events and move the checkpoint in one transaction."""
        with self._database.session_scope() as session:
            result: WriteResult = self._writer.write(session, events)
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            row.current_checkpoint = hour_end
            row.hours_processed += 1
            row.events_processed += result.inserted
            return row.hours_processed

    def _complete(self, job_id: str) -> HistoricalLoadStatus:
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            if LoadJobStatus(row.status).is_terminal:
                # Cancelled from another process during the final hour.
                logger.info(
                    'Historical load %s finished its range but is already %s',
                    job_id,
                    row.status,
                )
                return HistoricalLoadStatus.from_row(row)
            row.status = LoadJobStatus.COMPLETED
            row.completed_at = self._wall_clock()
            row.current_checkpoint = row.end_date
            status: HistoricalLoadStatus = HistoricalLoadStatus.from_row(row)

        logger.info(
            'Historical load %s completed: %d hours, %d events',
            job_id,
            status.hours_processed,
            status.events_processed,
        )
        self._message_sink(
            MasterDataSyncRequested(
                origin='historical', reason=f'historical load {job_id} completed'
            )
        )
        return status

    def _mark_cancelled(self, job_id: str) -> None:
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is not None and not LoadJobStatus(row.status).is_terminal:
                row.status = LoadJobStatus.CANCELLED
                row.completed_at = self._wall_clock()

    def _mark_failed(self, job_id: str, error_message: str) -> None:
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is not None and not LoadJobStatus(row.status).is_terminal:
                row.status = LoadJobStatus.FAILED
                row.error_message = error_message
                row.completed_at = self._wall_clock()

    def _status(self, job_id: str) -> HistoricalLoadStatus:
        with self._database.session_scope() as session:
            row: HistoricalLoadJob | None = HistoricalLoadRepository(session).get(job_id)
            if row is None:
                raise BackfillNotFoundError(f'Historical load {job_id} not found', job_id)
            return HistoricalLoadStatus.from_row(row)

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    def _fetch_hour(
        self, hour_start: datetime, hour_end: datetime, token: CancellationToken
    ) -> list[MixEvent] | None:
        attempts: int = self._config.hour_retry_attempts
        window_label: str = hour_start.isoformat()
        for attempt in range(1, attempts + 1):
            try:
                return self._adapter.get_events_between(hour_start, hour_end)
            except APIError as api_error:
                logger.warning(
                    'Hour %s attempt %d/%d failed: %s',
                    window_label,
                    attempt,
                    attempts,
                    api_error,
                )
                self._recorder.record_failed_token(window_label, api_error, sleep=token.sleep)
                if attempt >= attempts or token.is_cancelled:
                    break
                self._recorder.wait_with_backoff(attempt, sleep=token.sleep)
                self._governor.wait_before_next(
                    has_more_items=True, had_error=True, sleep=token.sleep
                )
                if token.is_cancelled:
                    break
        return None
