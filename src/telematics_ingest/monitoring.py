# telematics_ingest/monitoring.py
"""
Read-only views of ingestion health for operators and the CLI.

Three views are offered:

    get_status()    current state, cursor freshness, token expiry, queue counts
    get_metrics()   hourly / daily event volumes and top-10 breakdowns
    get_history()   recent finished ingestion runs from the queue table

Status Rules:
-------------
- "running" while an event-ingestion job is active.
- "error" if the newest finished ingestion job failed, or if the stored token
  is older than the recovery token age limit (the next run will reset it).
- "idle" otherwise.

Design Decisions:
-----------------
- Metrics pull the narrow (created_at, driver, vehicle, event type) projection
  for the window into a pandas DataFrame and aggregate there. The same code
  then works on SQLite and PostgreSQL without dialect-specific date_trunc.

- Empty buckets are not filled in. An hour with no events is absent from the
  hourly series rather than reported as zero.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, Final, Literal

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from telematics_ingest.common import utc_now
from telematics_ingest.config import IngestionConfig, RecoveryConfig
from telematics_ingest.models import SinceToken, SinceTokenParseError
from telematics_ingest.orchestration.queue import QUEUE_EVENT_INGESTION, JobQueue
from telematics_ingest.storage import (
    CursorRepository,
    Database,
    QueueJob,
    QueueJobState,
    TelemetryEvent,
    TelemetryEventRepository,
)

__all__: list[str] = [
    'CountBucket',
    'IngestionHistoryEntry',
    'IngestionMetrics',
    'IngestionMonitor',
    'IngestionStatus',
    'TokenInfo',
    'TopEntry',
]

logger: logging.Logger = logging.getLogger(__name__)

# The API rejects tokens older than this.
TOKEN_API_LIFETIME_DAYS: Final[float] = 7.0
# Tokens older than this are reported as expiring soon.
TOKEN_EXPIRY_WARNING_DAYS: Final[float] = 5.0
TOP_N: Final[int] = 10
HOURLY_WINDOW: Final[timedelta] = timedelta(hours=24)

_METRIC_COLUMNS: Final[list[str]] = [
    'created_at',
    'driver_external_id',
    'vehicle_external_id',
    'event_type_external_id',
]

IngestionState = Literal['running', 'idle', 'error']


# =============================================================================
# Result Models
# =============================================================================


class TokenInfo(BaseModel):
    """
    Freshness of the stored since-token.

    Attributes:
        token: Raw stored value.
        is_valid: False when the stored value cannot be decoded.
        age_hours: Hours since the instant the token encodes; None for NEW or
            invalid tokens.
        days_until_expiry: Days left before the API rejects the token,
            floored at zero; None when age_hours is None.
        is_expiring_soon: Age is past the warning threshold.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    token: str
    is_valid: bool
    age_hours: float | None = None
    days_until_expiry: float | None = None
    is_expiring_soon: bool = False


class IngestionStatus(BaseModel):
    """Point-in-time summary of the ingestion process."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    state: IngestionState
    process_name: str
    last_run_at: datetime | None
    minutes_since_last_run: float | None
    events_today: int
    events_total: int
    token: TokenInfo
    queues: dict[str, dict[str, int]]
    generated_at: datetime


class CountBucket(BaseModel):
    """Events created in one hour or day, keyed by the bucket start (UTC)."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    period_start: datetime
    events: int = Field(ge=0)


class TopEntry(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    external_id: int
    events: int = Field(ge=0)


class IngestionMetrics(BaseModel):
    """
    Event volume breakdowns.

    Attributes:
        window_days: Length of the daily and top-N window.
        hourly: Last 24 hours bucketed by hour, oldest first.
        daily: Last `window_days` bucketed by UTC day, oldest first.
        top_event_types: Most frequent event types in the window.
        top_drivers: Most frequent drivers in the window.
        top_vehicles: Most frequent vehicles in the window.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    window_days: int
    total_events: int
    hourly: list[CountBucket]
    daily: list[CountBucket]
    top_event_types: list[TopEntry]
    top_drivers: list[TopEntry]
    top_vehicles: list[TopEntry]
    generated_at: datetime


class IngestionHistoryEntry(BaseModel):
    """One finished ingestion job as recorded by the queue."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    job_id: str
    state: str
    attempts_made: int
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    failed_reason: str | None
    result: dict[str, Any] | None

    @classmethod
    def from_job(cls, job: QueueJob) -> 'IngestionHistoryEntry':
        duration: float | None = None
        if job.started_at is not None and job.finished_at is not None:
            duration = (job.finished_at - job.started_at).total_seconds()
        return cls(
            job_id=job.id,
            state=str(job.state),
            attempts_made=job.attempts_made,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_seconds=duration,
            failed_reason=job.failed_reason,
            result=job.result,
        )


# =============================================================================
# Monitor
# =============================================================================


class IngestionMonitor:
    """
    Builds status, metrics and history views.

    Args:
        database: Database holding the cursor, event and queue tables.
        queues: Named queues to report counts for; must include
            "event-ingestion".
        ingestion_config: Supplies the cursor's process name.
        recovery_config: Supplies the token age limit.
        clock: UTC clock.
    """

    def __init__(
        self,
        database: Database,
        queues: Mapping[str, JobQueue],
        ingestion_config: IngestionConfig | None = None,
        recovery_config: RecoveryConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if QUEUE_EVENT_INGESTION not in queues:
            raise ValueError(f'queues must include {QUEUE_EVENT_INGESTION!r}')
        self._database: Database = database
        self._queues: dict[str, JobQueue] = dict(queues)
        self._ingestion_config: IngestionConfig = ingestion_config or IngestionConfig()
        self._recovery_config: RecoveryConfig = recovery_config or RecoveryConfig()
        self._clock: Callable[[], datetime] = clock

    @property
    def ingestion_queue(self) -> JobQueue:
        return self._queues[QUEUE_EVENT_INGESTION]

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> IngestionStatus:
        now: datetime = self._clock()
        midnight: datetime = now.replace(hour=0, minute=0, second=0, microsecond=0)
        process_name: str = self._ingestion_config.process_name

        with self._database.session_scope() as session:
            cursor = CursorRepository(session).get(process_name)
            raw_token: str = cursor.last_successful_since_token if cursor else 'NEW'
            last_run_at: datetime | None = cursor.last_run_timestamp if cursor else None
            events = TelemetryEventRepository(session)
            events_today: int = events.count_created_since(midnight)
            events_total: int = events.count_all()

        token_info: TokenInfo = self._token_info(raw_token, now)
        minutes_since: float | None = None
        if last_run_at is not None:
            minutes_since = round((now - last_run_at).total_seconds() / 60.0, 1)

        return IngestionStatus(
            state=self._derive_state(token_info),
            process_name=process_name,
            last_run_at=last_run_at,
            minutes_since_last_run=minutes_since,
            events_today=events_today,
            events_total=events_total,
            token=token_info,
            queues={name: queue.counts() for name, queue in self._queues.items()},
            generated_at=now,
        )

    def _derive_state(self, token_info: TokenInfo) -> IngestionState:
        queue: JobQueue = self.ingestion_queue
        if queue.get_active():
            return 'running'

        latest: list[QueueJob] = queue.get_jobs(
            [QueueJobState.COMPLETED, QueueJobState.FAILED], limit=1
        )
        if latest and latest[0].state == QueueJobState.FAILED:
            return 'error'

        max_age_hours: float = self._recovery_config.token_max_age_days * 24.0
        if token_info.age_hours is not None and token_info.age_hours > max_age_hours:
            return 'error'
        return 'idle'

    @staticmethod
    def _token_info(raw_token: str, now: datetime) -> TokenInfo:
        try:
            token: SinceToken = SinceToken.decode(raw_token)
        except SinceTokenParseError:
            logger.warning('Stored since-token %r is not valid', raw_token)
            return TokenInfo(token=raw_token, is_valid=False)

        age: timedelta | None = token.age(now)
        if age is None:
            return TokenInfo(token=raw_token, is_valid=True)

        age_days: float = age.total_seconds() / 86_400.0
        return TokenInfo(
            token=raw_token,
            is_valid=True,
            age_hours=round(age.total_seconds() / 3600.0, 2),
            days_until_expiry=round(max(TOKEN_API_LIFETIME_DAYS - age_days, 0.0), 2),
            is_expiring_soon=age_days > TOKEN_EXPIRY_WARNING_DAYS,
        )

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def get_metrics(self, days: int = 7) -> IngestionMetrics:
        """
        Aggregate event volumes by creation time.

        Args:
            days: Window for the daily series and the top-N breakdowns.

        Raises:
            ValueError: If days is not positive.
        """
        if days < 1:
            raise ValueError(f'days must be >= 1, got {days}')

        now: datetime = self._clock()
        window_start: datetime = now - timedelta(days=days)
        hourly_start: datetime = now - HOURLY_WINDOW
        frame: pd.DataFrame = self._load_event_frame(min(window_start, hourly_start))

        in_window: pd.DataFrame = frame[frame['created_at'] >= window_start]
        last_day: pd.DataFrame = frame[frame['created_at'] >= hourly_start]

        return IngestionMetrics(
            window_days=days,
            total_events=len(in_window),
            hourly=_bucket_counts(last_day['created_at'], 'h'),
            daily=_bucket_counts(in_window['created_at'], 'D'),
            top_event_types=_top_counts(in_window['event_type_external_id']),
            top_drivers=_top_counts(in_window['driver_external_id']),
            top_vehicles=_top_counts(in_window['vehicle_external_id']),
            generated_at=now,
        )

    def _load_event_frame(self, since: datetime) -> pd.DataFrame:
        statement = select(
            TelemetryEvent.created_at,
            TelemetryEvent.driver_external_id,
            TelemetryEvent.vehicle_external_id,
            TelemetryEvent.event_type_external_id,
        ).where(TelemetryEvent.created_at >= since)

        with self._database.session_scope() as session:
            rows: list[tuple[Any, ...]] = [tuple(row) for row in session.execute(statement)]

        frame = pd.DataFrame.from_records(rows, columns=_METRIC_COLUMNS)
        frame['created_at'] = pd.to_datetime(frame['created_at'], utc=True)
        logger.debug('Loaded %d events since %s for metrics', len(frame), since)
        return frame

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def get_history(self, limit: int = 20) -> list[IngestionHistoryEntry]:
        """Most recent completed or failed ingestion jobs, newest finish first."""
        jobs: list[QueueJob] = self.ingestion_queue.get_jobs(
            [QueueJobState.COMPLETED, QueueJobState.FAILED], limit=limit
        )
        entries = [IngestionHistoryEntry.from_job(job) for job in jobs]
        entries.sort(
            key=lambda entry: entry.finished_at or entry.created_at, reverse=True
        )
        return entries


# =============================================================================
# Aggregation Helpers
# =============================================================================


def _bucket_counts(timestamps: pd.Series, freq: str) -> list[CountBucket]:
    """Count timestamps per floor(freq) bucket, oldest first."""
    if timestamps.empty:
        return []
    counts: pd.Series = timestamps.dt.floor(freq).value_counts().sort_index()
    return [
        CountBucket(period_start=period.to_pydatetime(), events=int(count))
        for period, count in counts.items()
    ]


def _top_counts(ids: pd.Series, top_n: int = TOP_N) -> list[TopEntry]:
    """Most frequent non-null ids; ties keep ascending id order."""
    present: pd.Series = ids.dropna().astype('int64')
    if present.empty:
        return []
    counts: pd.DataFrame = (
        present.value_counts()
        .rename_axis('external_id')
        .reset_index(name='events')
        .sort_values(['events', 'external_id'], ascending=[False, True])
        .head(top_n)
    )
    return [
        TopEntry(external_id=int(row.external_id), events=int(row.events))
        for row in counts.itertuples(index=False)
    ]
