"""
Shared pytest fixtures for telematics_ingest tests.

This module provides reusable fixtures for common test scenarios across
all test modules. Fixtures are automatically discovered by pytest.
"""

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from telematics_ingest.config import (
    ApiConfig,
    BackfillConfig,
    DatabaseConfig,
    IngestConfig,
    IngestionConfig,
    PacingConfig,
    RecoveryConfig,
    SchedulerConfig,
)
from telematics_ingest.models import (
    EventsPage,
    MixDriver,
    MixEvent,
    MixEventType,
    MixVehicle,
    SinceToken,
)
from telematics_ingest.storage import Database

from tests.doubles import FakeAdapter, FakeClock, RecordingToken, build_event_payload


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def api_config() -> ApiConfig:
    """Provide ApiConfig with dummy credentials."""
    return ApiConfig(
        base_url='https://integrate.example.com',
        identity_url='https://identity.example.com',
        organisation_id=1234567890,
        username='integration.user',
        password='secret-password',  # pyright: ignore[reportArgumentType]
        basic_auth_token='Y2xpZW50OnNlY3JldA==',  # pyright: ignore[reportArgumentType]
        request_timeout=(5, 30),
        max_retries=3,
        retry_backoff_factor=1.0,
    )


@pytest.fixture
def pacing_config() -> PacingConfig:
    return PacingConfig()


@pytest.fixture
def recovery_config() -> RecoveryConfig:
    return RecoveryConfig()


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    return IngestionConfig(retry_attempts=3, insert_chunk_size=2)


@pytest.fixture
def backfill_config() -> BackfillConfig:
    return BackfillConfig(max_range_days=30, hour_retry_attempts=2)


@pytest.fixture
def ingest_config(api_config: ApiConfig) -> IngestConfig:
    """Full configuration with the scheduler disabled and an in-memory database."""
    return IngestConfig(
        api=api_config,
        database=DatabaseConfig(url='sqlite://'),
        scheduler=SchedulerConfig(enabled=False),
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def database() -> Iterator[Database]:
    """
    Provide an in-memory SQLite database with all tables created.

    Suitable for single-threaded tests.
    """
    db = Database(DatabaseConfig(url='sqlite://'))
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def file_database(tmp_path: Path) -> Iterator[Database]:
    """
    Provide a file-backed SQLite database.

    Used by tests that run worker threads, where each thread gets its own
    connection from the pool.
    """
    db = Database(DatabaseConfig(url=f'sqlite:///{tmp_path / "ingest.db"}'))
    db.create_all()
    yield db
    db.dispose()


# =============================================================================
# Doubles
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cancel_token(clock: FakeClock) -> RecordingToken:
    return RecordingToken(clock)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def make_event() -> Callable[..., MixEvent]:
    """Provide a factory for MixEvent instances."""

    def _make(event_id: int, **overrides: Any) -> MixEvent:
        return MixEvent.model_validate(build_event_payload(event_id, **overrides))

    return _make


@pytest.fixture
def make_page(
    make_event: Callable[..., MixEvent],
) -> Callable[..., EventsPage]:
    """Provide a factory for EventsPage instances."""

    def _make(
        event_ids: list[int],
        next_token_at: datetime,
        has_more_items: bool,
    ) -> EventsPage:
        return EventsPage(
            events=[make_event(event_id) for event_id in event_ids],
            next_since_token=SinceToken.from_datetime(next_token_at),
            has_more_items=has_more_items,
        )

    return _make


@pytest.fixture
def sample_drivers() -> list[MixDriver]:
    return [
        MixDriver.model_validate({'DriverId': 501, 'Name': 'Thandi Mokoena'}),
        MixDriver.model_validate(
            {'DriverId': 502, 'Name': 'Pieter Botha', 'EmployeeNumber': 'E-17'}
        ),
    ]


@pytest.fixture
def sample_vehicles() -> list[MixVehicle]:
    return [
        MixVehicle.model_validate(
            {
                'AssetId': 601,
                'Description': 'Truck 1',
                'RegistrationNumber': 'CA 123-456',
                'Year': 2021,
            }
        ),
    ]


@pytest.fixture
def sample_event_types() -> list[MixEventType]:
    return [
        MixEventType.model_validate(
            {'EventTypeId': 701, 'Description': 'Harsh braking', 'DisplayUnits': 'g'}
        ),
    ]
