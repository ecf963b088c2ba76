# telematics_ingest/storage/__init__.py
"""Relational persistence: ORM tables, engine/session, repositories, writer."""

from telematics_ingest.storage.database import Database
from telematics_ingest.storage.event_writer import (
    TelemetryEventWriter,
    WriteResult,
    event_to_row,
)
from telematics_ingest.storage.repositories import (
    CursorRepository,
    HistoricalLoadRepository,
    ReferenceDataRepository,
    TelemetryEventRepository,
)
from telematics_ingest.storage.tables import (
    Base,
    Cursor,
    Driver,
    EventType,
    HistoricalLoadJob,
    LoadJobStatus,
    QueueJob,
    QueueJobState,
    TelemetryEvent,
    Vehicle,
)

__all__: list[str] = [
    'Base',
    'Cursor',
    'CursorRepository',
    'Database',
    'Driver',
    'EventType',
    'HistoricalLoadJob',
    'HistoricalLoadRepository',
    'LoadJobStatus',
    'QueueJob',
    'QueueJobState',
    'ReferenceDataRepository',
    'TelemetryEvent',
    'TelemetryEventRepository',
    'TelemetryEventWriter',
    'Vehicle',
    'WriteResult',
    'event_to_row',
]
