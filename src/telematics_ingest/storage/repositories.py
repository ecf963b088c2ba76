# telematics_ingest/storage/repositories.py
"""
Session-scoped data access for the pipeline tables.

Each repository wraps a Session supplied by the caller, so one transaction can
span several repositories. The ingestion loop relies on this to write a page
of events and advance the cursor atomically.

Repositories flush but never commit; committing is the job of
`Database.session_scope()`.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Final

from sqlalchemy import Select, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from telematics_ingest.common import utc_now
from telematics_ingest.models import NEW_TOKEN, MixDriver, MixEventType, MixVehicle
from telematics_ingest.storage.tables import (
    Cursor,
    Driver,
    EventType,
    HistoricalLoadJob,
    LoadJobStatus,
    TelemetryEvent,
    Vehicle,
)

__all__: list[str] = [
    'CursorRepository',
    'HistoricalLoadRepository',
    'ReferenceDataRepository',
    'TelemetryEventRepository',
]

logger: logging.Logger = logging.getLogger(__name__)

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
ID_LOOKUP_CHUNK_SIZE: Final[int] = 500

ReferenceTable = type[Driver] | type[Vehicle] | type[EventType]


def _chunked[T](items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


# =============================================================================
# Cursor
# =============================================================================


class CursorRepository:
    """Read and advance the since-token cursor for a process."""

    def __init__(self, session: Session) -> None:
        self._session: Session = session

    def get(self, process_name: str) -> Cursor | None:
        return self._session.scalar(
            select(Cursor).where(Cursor.process_name == process_name)
        )

    def get_or_create(self, process_name: str) -> Cursor:
        """Return the cursor row, creating it at "NEW" if absent."""
        cursor: Cursor | None = self.get(process_name)
        if cursor is None:
            cursor = Cursor(
                process_name=process_name,
                last_successful_since_token=NEW_TOKEN,
                last_run_timestamp=None,
            )
            self._session.add(cursor)
            self._session.flush()
            logger.info('Created cursor for process %r at NEW', process_name)
        return cursor

    def save_token(
        self,
        process_name: str,
        token: str,
        run_at: datetime | None = None,
    ) -> Cursor:
        """
        Store a new token and last-run time for the process.

        Args:
            process_name: Cursor key.
            token: Wire form of the token ("NEW" or 17 digits).
            run_at: Last-run time; defaults to now.

        Returns:
            The updated cursor row.
        """
        cursor: Cursor = self.get_or_create(process_name)
        cursor.last_successful_since_token = token
        cursor.last_run_timestamp = run_at or utc_now()
        self._session.flush()
        return cursor


# =============================================================================
# Historical Load Jobs
# =============================================================================

ACTIVE_LOAD_STATUSES: Final[tuple[str, ...]] = (
    LoadJobStatus.PENDING,
    LoadJobStatus.RUNNING,
)


class HistoricalLoadRepository:
    """CRUD for backfill control rows."""

    def __init__(self, session: Session) -> None:
        self._session: Session = session

    def create(
        self,
        job_id: str,
        start_date: datetime,
        end_date: datetime,
        total_hours: int,
    ) -> HistoricalLoadJob:
        job = HistoricalLoadJob(
            job_id=job_id,
            start_date=start_date,
            end_date=end_date,
            status=LoadJobStatus.PENDING,
            total_hours=total_hours,
            hours_processed=0,
            events_processed=0,
        )
        self._session.add(job)
        self._session.flush()
        return job

    def get(self, job_id: str) -> HistoricalLoadJob | None:
        return self._session.scalar(
            select(HistoricalLoadJob).where(HistoricalLoadJob.job_id == job_id)
        )

    def find_active(self) -> HistoricalLoadJob | None:
        """Return the pending or running job, if any."""
        return self._session.scalar(
            select(HistoricalLoadJob)
            .where(HistoricalLoadJob.status.in_(ACTIVE_LOAD_STATUSES))
            .order_by(HistoricalLoadJob.created_at.desc())
            .limit(1)
        )

    def list_recent(self, limit: int = 10) -> list[HistoricalLoadJob]:
        statement: Select[tuple[HistoricalLoadJob]] = (
            select(HistoricalLoadJob)
            .order_by(HistoricalLoadJob.created_at.desc(), HistoricalLoadJob.id.desc())
            .limit(limit)
        )
        return list(self._session.scalars(statement))

    def current_status(self, job_id: str) -> str | None:
        """Fresh status read, bypassing any ORM identity-map copy."""
        return self._session.execute(
            select(HistoricalLoadJob.status).where(HistoricalLoadJob.job_id == job_id)
        ).scalar_one_or_none()


# =============================================================================
# Telemetry Events
# =============================================================================


class TelemetryEventRepository:
    """Bulk insert and lookups for telemetry_events."""

    def __init__(self, session: Session) -> None:
        self._session: Session = session

    def find_existing_external_ids(self, external_ids: Iterable[int]) -> set[int]:
        """Return the subset of ids already stored."""
        unique_ids: list[int] = sorted(set(external_ids))
        existing: set[int] = set()
        for chunk in _chunked(unique_ids, ID_LOOKUP_CHUNK_SIZE):
            existing.update(
                self._session.scalars(
                    select(TelemetryEvent.external_id).where(
                        TelemetryEvent.external_id.in_(chunk)
                    )
                )
            )
        return existing

    def insert_many(self, rows: Sequence[dict[str, Any]]) -> int:
        """
        Insert rows, ignoring conflicts on external_id where the dialect allows.

        Callers filter duplicates beforehand; the conflict clause only covers
        the window between that check and this insert.

        Returns:
            Number of rows the database reports as inserted.
        """
        if not rows:
            return 0

        dialect_name: str = self._session.get_bind().dialect.name
        statement: Any
        if dialect_name == 'postgresql':
            statement = postgresql.insert(TelemetryEvent).values(list(rows))
            statement = statement.on_conflict_do_nothing(index_elements=['external_id'])
        elif dialect_name == 'sqlite':
            statement = sqlite.insert(TelemetryEvent).values(list(rows))
            statement = statement.on_conflict_do_nothing(index_elements=['external_id'])
        else:
            statement = insert(TelemetryEvent).values(list(rows))

        result = self._session.execute(statement)
        rowcount: int = result.rowcount  # type: ignore[attr-defined]
        return rowcount if rowcount >= 0 else len(rows)

    def count_all(self) -> int:
        return self._session.scalar(select(func.count(TelemetryEvent.id))) or 0

    def count_created_since(self, moment: datetime) -> int:
        return (
            self._session.scalar(
                select(func.count(TelemetryEvent.id)).where(
                    TelemetryEvent.created_at >= moment
                )
            )
            or 0
        )


# =============================================================================
# Reference Data
# =============================================================================


class ReferenceDataRepository:
    """Upserts and existence checks for drivers, vehicles and event types."""

    def __init__(self, session: Session) -> None:
        self._session: Session = session

    def _load_existing[RowT: (Driver, Vehicle, EventType)](
        self, table: type[RowT], external_ids: Sequence[int]
    ) -> dict[int, RowT]:
        rows: dict[int, RowT] = {}
        for chunk in _chunked(sorted(set(external_ids)), ID_LOOKUP_CHUNK_SIZE):
            for row in self._session.scalars(
                select(table).where(table.external_id.in_(chunk))
            ):
                rows[row.external_id] = row
        return rows

    def upsert_drivers(self, drivers: Sequence[MixDriver]) -> int:
        existing: dict[int, Driver] = self._load_existing(
            Driver, [driver.driver_id for driver in drivers]
        )
        for driver in drivers:
            row: Driver | None = existing.get(driver.driver_id)
            if row is None:
                row = Driver(external_id=driver.driver_id)
                self._session.add(row)
                existing[driver.driver_id] = row
            row.name = driver.name
            row.employee_number = driver.employee_number
            row.is_system_driver = driver.is_system_driver
            row.raw_data = driver.raw_data
        self._session.flush()
        return len(drivers)

    def upsert_vehicles(self, vehicles: Sequence[MixVehicle]) -> int:
        existing: dict[int, Vehicle] = self._load_existing(
            Vehicle, [vehicle.asset_id for vehicle in vehicles]
        )
        for vehicle in vehicles:
            row: Vehicle | None = existing.get(vehicle.asset_id)
            if row is None:
                row = Vehicle(external_id=vehicle.asset_id)
                self._session.add(row)
                existing[vehicle.asset_id] = row
            row.description = vehicle.description
            row.registration_number = vehicle.registration_number
            row.fleet_number = vehicle.fleet_number
            row.make = vehicle.make
            row.model = vehicle.model
            row.year = vehicle.year
            row.raw_data = vehicle.raw_data
        self._session.flush()
        return len(vehicles)

    def upsert_event_types(self, event_types: Sequence[MixEventType]) -> int:
        existing: dict[int, EventType] = self._load_existing(
            EventType, [event_type.event_type_id for event_type in event_types]
        )
        for event_type in event_types:
            row: EventType | None = existing.get(event_type.event_type_id)
            if row is None:
                row = EventType(external_id=event_type.event_type_id)
                self._session.add(row)
                existing[event_type.event_type_id] = row
            row.description = event_type.description
            row.event_type = event_type.event_type
            row.display_units = event_type.display_units
            row.raw_data = event_type.raw_data
        self._session.flush()
        return len(event_types)

    def find_missing_ids(
        self, table: ReferenceTable, external_ids: Iterable[int]
    ) -> set[int]:
        """Return the ids that have no row in the given reference table."""
        wanted: list[int] = sorted(set(external_ids))
        if not wanted:
            return set()
        present: set[int] = set()
        for chunk in _chunked(wanted, ID_LOOKUP_CHUNK_SIZE):
            present.update(
                self._session.scalars(
                    select(table.external_id).where(table.external_id.in_(chunk))
                )
            )
        return set(wanted) - present

    def count(self, table: ReferenceTable) -> int:
        return self._session.scalar(select(func.count(table.id))) or 0
