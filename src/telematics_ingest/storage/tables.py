# telematics_ingest/storage/tables.py
"""
SQLAlchemy ORM tables for the ingestion pipeline.

Tables:
    etl_control              One cursor row per ingestion process.
    historical_load_control  Backfill jobs and their hour checkpoints.
    telemetry_events         Append-only event rows, unique on external_id.
    drivers / vehicles / event_types
                             Reference data upserted by master-data sync.
    queue_jobs               Durable job queue shared by all workers.

Design Decisions:
-----------------
- Timestamps use UtcDateTime, which stores timezone-aware values and hands back
  aware UTC datetimes even on SQLite (where the driver returns naive ones).
- JSON payload columns become JSONB on PostgreSQL and plain JSON elsewhere.
- Status columns are short strings backed by StrEnum classes rather than native
  database enums, so adding a state never needs a type migration.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from telematics_ingest.common import as_utc, utc_now

__all__: list[str] = [
    'Base',
    'Cursor',
    'Driver',
    'EventType',
    'HistoricalLoadJob',
    'LoadJobStatus',
    'QueueJob',
    'QueueJobState',
    'TelemetryEvent',
    'UtcDateTime',
    'Vehicle',
]


# =============================================================================
# Column Types
# =============================================================================


class UtcDateTime(TypeDecorator[datetime]):
    """DateTime column that always round-trips timezone-aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)


JsonPayload = JSON().with_variant(JSONB(), 'postgresql')


class Base(DeclarativeBase):
    """Declarative base for all pipeline tables."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )


# =============================================================================
# Status Enums
# =============================================================================


class LoadJobStatus(StrEnum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in {
            LoadJobStatus.COMPLETED,
            LoadJobStatus.FAILED,
            LoadJobStatus.CANCELLED,
        }


class QueueJobState(StrEnum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'


# =============================================================================
# Cursor & Backfill Control
# =============================================================================


class Cursor(TimestampMixin, Base):
    """Durable since-token cursor, one row per logical ingestion process."""

    __tablename__ = 'etl_control'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    process_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    last_successful_since_token: Mapped[str] = mapped_column(
        String(17), nullable=False, default='NEW'
    )
    last_run_timestamp: Mapped[datetime | None] = mapped_column(
        UtcDateTime(), nullable=True
    )


class HistoricalLoadJob(TimestampMixin, Base):
    """One backfill request and its hour-level checkpoint."""

    __tablename__ = 'historical_load_control'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    start_date: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    end_date: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LoadJobStatus.PENDING, index=True
    )
    current_checkpoint: Mapped[datetime | None] = mapped_column(
        UtcDateTime(), nullable=True
    )
    total_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hours_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


# =============================================================================
# Telemetry & Reference Data
# =============================================================================


class TelemetryEvent(Base):
    """A single telematics event. Rows are inserted once and never updated."""

    __tablename__ = 'telemetry_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    driver_external_id: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    vehicle_external_id: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    event_type_external_id: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    occurred_at: Mapped[datetime | None] = mapped_column(
        UtcDateTime(), nullable=True, index=True
    )
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed_limit_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    odometer_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime(), default=utc_now, nullable=False, index=True
    )


class Driver(TimestampMixin, Base):
    __tablename__ = 'drivers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_system_driver: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)


class Vehicle(TimestampMixin, Base):
    __tablename__ = 'vehicles'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    registration_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fleet_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    make: Mapped[str | None] = mapped_column(String(100), nullable=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    year: Mapped[str | None] = mapped_column(String(10), nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)


class EventType(TimestampMixin, Base):
    __tablename__ = 'event_types'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    display_units: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)


# =============================================================================
# Job Queue
# =============================================================================


class QueueJob(Base):
    """A unit of work on one of the named queues."""

    __tablename__ = 'queue_jobs'

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonPayload, nullable=False, default=dict)

    state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=QueueJobState.WAITING, index=True
    )
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    backoff_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    available_at: Mapped[datetime] = mapped_column(
        UtcDateTime(), nullable=False, default=utc_now
    )
    locked_until: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime(), nullable=False, default=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
