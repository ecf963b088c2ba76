# telematics_ingest/storage/event_writer.py
"""
Deduplicating bulk writer for telemetry events.

Both the continuous ingestion loop and the historical backfill land events
through this writer, so duplicate handling is identical for both paths:

1. Dedupe within the batch by EventId; the last occurrence wins.
2. Drop events whose EventId is already stored.
3. Insert the remainder in fixed-size chunks with ON CONFLICT DO NOTHING.

The writer operates on a caller-owned Session and never commits, so the caller
can advance its cursor or checkpoint in the same transaction.
"""

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from telematics_ingest.models import MixEvent
from telematics_ingest.storage.repositories import TelemetryEventRepository

__all__: list[str] = ['TelemetryEventWriter', 'WriteResult', 'event_to_row']

logger: logging.Logger = logging.getLogger(__name__)


class WriteResult(BaseModel):
    """
    Counts from one write call.

    Attributes:
        received: Events handed to the writer.
        unique_in_batch: Events left after in-batch dedupe.
        already_stored: Events skipped because their EventId was stored.
        inserted: Rows the database reports as inserted.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    received: int = 0
    unique_in_batch: int = 0
    already_stored: int = 0
    inserted: int = 0

    @property
    def duplicates(self) -> int:
        return self.received - self.inserted


def event_to_row(event: MixEvent) -> dict[str, Any]:
    """Map an API event onto telemetry_events column values."""
    position = event.start_position
    return {
        'external_id': event.event_id,
        'driver_external_id': event.driver_id,
        'vehicle_external_id': event.asset_id,
        'event_type_external_id': event.event_type_id,
        'occurred_at': event.start_date_time,
        'latitude': position.latitude if position else None,
        'longitude': position.longitude if position else None,
        'speed_kmh': position.speed_kmh if position else None,
        'speed_limit_kmh': event.speed_limit_kmh,
        'odometer_km': event.start_odometer_km,
        'value': event.value,
        'location_description': position.formatted_address if position else None,
        'raw_data': event.raw_data,
    }


class TelemetryEventWriter:
    """
    Writes MixEvent batches exactly once.

    Args:
        chunk_size: Rows per INSERT statement.
    """

    def __init__(self, chunk_size: int = 200) -> None:
        if chunk_size < 1:
            raise ValueError(f'chunk_size must be positive, got {chunk_size}')
        self._chunk_size: int = chunk_size

    @staticmethod
    def dedupe_batch(events: Sequence[MixEvent]) -> list[MixEvent]:
        """Collapse repeated EventIds, keeping the last occurrence."""
        by_id: dict[int, MixEvent] = {}
        for event in events:
            by_id.pop(event.event_id, None)
            by_id[event.event_id] = event
        return list(by_id.values())

    def write(self, session: Session, events: Sequence[MixEvent]) -> WriteResult:
        """
        Insert the new subset of events.

        Args:
            session: Open session; the caller commits.
            events: Events in API order.

        Returns:
            WriteResult with per-stage counts.
        """
        if not events:
            return WriteResult()

        repository = TelemetryEventRepository(session)
        unique_events: list[MixEvent] = self.dedupe_batch(events)
        existing_ids: set[int] = repository.find_existing_external_ids(
            event.event_id for event in unique_events
        )
        new_events: list[MixEvent] = [
            event for event in unique_events if event.event_id not in existing_ids
        ]

        inserted: int = 0
        for start in range(0, len(new_events), self._chunk_size):
            chunk: list[MixEvent] = new_events[start : start + self._chunk_size]
            inserted += repository.insert_many([event_to_row(event) for event in chunk])

        result = WriteResult(
            received=len(events),
            unique_in_batch=len(unique_events),
            already_stored=len(existing_ids),
            inserted=inserted,
        )
        logger.debug(
            'Event write: received=%d unique=%d already_stored=%d inserted=%d',
            result.received,
            result.unique_in_batch,
            result.already_stored,
            result.inserted,
        )
        return result
