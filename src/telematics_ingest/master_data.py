# telematics_ingest/master_data.py
"""
Master-data synchronisation for drivers, vehicles and event types.

Events reference drivers, vehicles and event types by their MiX ids. This
module keeps local copies of those collections so events can be joined to
readable names, and detects when incoming events reference ids that have not
been synced yet.

Each collection syncs in its own transaction. A failure in one collection is
logged and the others still run; the sync as a whole fails only when every
collection failed.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Final

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telematics_ingest.adapter import MixApiAdapter
from telematics_ingest.client import APIError
from telematics_ingest.models import MixEvent
from telematics_ingest.storage import (
    Database,
    Driver,
    EventType,
    ReferenceDataRepository,
    Vehicle,
)

__all__: list[str] = [
    'MasterDataSync',
    'MasterDataSyncError',
    'MasterDataSyncResult',
    'MissingReferences',
    'find_missing_references',
]

logger: logging.Logger = logging.getLogger(__name__)

COLLECTION_DRIVERS: Final[str] = 'drivers'
COLLECTION_VEHICLES: Final[str] = 'vehicles'
COLLECTION_EVENT_TYPES: Final[str] = 'event_types'


class MasterDataSyncError(Exception):
    """
    Raised when every collection failed to sync.

    Attributes:
        failures: Collection name mapped to its error message.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures: dict[str, str] = failures
        summary: str = '; '.join(f'{name}: {error}' for name, error in failures.items())
        super().__init__(f'Master data sync failed for all collections ({summary})')


class MasterDataSyncResult(BaseModel):
    """Rows processed per collection, plus the collections that failed."""

    model_config = ConfigDict(extra='forbid')

    drivers: int = 0
    vehicles: int = 0
    event_types: int = 0
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class MissingReferences(BaseModel):
    """Reference ids seen in events that have no local row."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    driver_ids: frozenset[int] = Field(default_factory=frozenset)
    vehicle_ids: frozenset[int] = Field(default_factory=frozenset)
    event_type_ids: frozenset[int] = Field(default_factory=frozenset)

    @property
    def has_missing(self) -> bool:
        return bool(self.driver_ids or self.vehicle_ids or self.event_type_ids)


def find_missing_references(
    session: Session, events: Iterable[MixEvent]
) -> MissingReferences:
    """
    Report driver, vehicle and event-type ids that are not stored.

    Events with no id for a given reference (None) are ignored for that
    reference.
    """
    driver_ids: set[int] = set()
    vehicle_ids: set[int] = set()
    event_type_ids: set[int] = set()
    for event in events:
        if event.driver_id is not None:
            driver_ids.add(event.driver_id)
        if event.asset_id is not None:
            vehicle_ids.add(event.asset_id)
        if event.event_type_id is not None:
            event_type_ids.add(event.event_type_id)

    repository = ReferenceDataRepository(session)
    return MissingReferences(
        driver_ids=frozenset(repository.find_missing_ids(Driver, driver_ids)),
        vehicle_ids=frozenset(repository.find_missing_ids(Vehicle, vehicle_ids)),
        event_type_ids=frozenset(
            repository.find_missing_ids(EventType, event_type_ids)
        ),
    )


class MasterDataSync:
    """
    Fetch full reference collections from the API and upsert them.

    Args:
        database: Target database.
        adapter: API adapter used for the three collection endpoints.
    """

    def __init__(self, database: Database, adapter: MixApiAdapter) -> None:
        self._database: Database = database
        self._adapter: MixApiAdapter = adapter

    def run(self) -> MasterDataSyncResult:
        """
        Sync drivers, vehicles and event types.

        Returns:
            Per-collection counts; failed collections are listed in `failures`.

        Raises:
            MasterDataSyncError: If all three collections failed.
        """
        logger.info('Starting master data sync')
        result = MasterDataSyncResult()

        steps: Sequence[tuple[str, Callable[[], int]]] = (
            (COLLECTION_DRIVERS, self._sync_drivers),
            (COLLECTION_VEHICLES, self._sync_vehicles),
            (COLLECTION_EVENT_TYPES, self._sync_event_types),
        )
        for collection, sync_step in steps:
            try:
                count: int = sync_step()
            except (APIError, SQLAlchemyError) as sync_error:
                logger.exception('Master data sync failed for %s', collection)
                result.failures[collection] = str(sync_error)
                continue
            setattr(result, collection, count)

        if len(result.failures) == len(steps):
            raise MasterDataSyncError(result.failures)

        logger.info(
            'Master data sync finished: drivers=%d vehicles=%d event_types=%d failed=%s',
            result.drivers,
            result.vehicles,
            result.event_types,
            sorted(result.failures) or 'none',
        )
        return result

    def _sync_drivers(self) -> int:
        drivers = self._adapter.get_all_drivers()
        if not drivers:
            logger.warning('API returned no drivers to sync')
            return 0
        with self._database.session_scope() as session:
            return ReferenceDataRepository(session).upsert_drivers(drivers)

    def _sync_vehicles(self) -> int:
        vehicles = self._adapter.get_all_vehicles()
        if not vehicles:
            logger.warning('API returned no vehicles to sync')
            return 0
        with self._database.session_scope() as session:
            return ReferenceDataRepository(session).upsert_vehicles(vehicles)

    def _sync_event_types(self) -> int:
        event_types = self._adapter.get_all_event_types()
        if not event_types:
            logger.warning('API returned no event types to sync')
            return 0
        with self._database.session_scope() as session:
            return ReferenceDataRepository(session).upsert_event_types(event_types)
