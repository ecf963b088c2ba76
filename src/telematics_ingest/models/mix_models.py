# telematics_ingest/models/mix_models.py
"""
Pydantic response models for MiX Integrate API data structures.

MiX uses PascalCase field names (mapped to snake_case via aliases) and returns
collections as bare JSON arrays. Event feeds paginate through response
headers rather than the body, which is why EventsPage is assembled by the
adapter instead of being parsed from a single JSON document.

Raw Payloads:
-------------
Every entity keeps the untouched source object in `raw_data`. It is stored
verbatim in JSON columns so fields not modelled here remain queryable.
"""
# pyright: reportUnknownVariableType=false

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from telematics_ingest.models.since_token import SinceToken

__all__: list[str] = [
    'EventsPage',
    'MixDriver',
    'MixEvent',
    'MixEventType',
    'MixModelBase',
    'MixPosition',
    'MixVehicle',
]

logger: logging.Logger = logging.getLogger(__name__)


# =============================================================================
# Base Configuration
# =============================================================================


class MixModelBase(BaseModel):
    """
    Base class for all MiX response models.

    Configuration:
        - extra='ignore': Silently ignore unknown fields from API.
        - populate_by_name=True: Allow both alias (PascalCase) and field name.
        - str_strip_whitespace=True: Trim whitespace from strings.
    """

    model_config = ConfigDict(
        extra='ignore',
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class RawPayloadModel(MixModelBase):
    """Mixin that captures the source object before validation."""

    raw_data: dict[str, Any] = Field(default_factory=dict, repr=False)

    @model_validator(mode='before')
    @classmethod
    def capture_raw_payload(cls, data: Any) -> Any:
        """Copy the incoming mapping into raw_data unless already provided."""
        if isinstance(data, dict) and 'raw_data' not in data:
            return {**data, 'raw_data': dict(data)}
        return data


def _zero_id_to_none(value: Any) -> Any:
    """MiX reports a missing driver or asset as 0 or null."""
    if value in (0, '0', ''):
        return None
    return value


# =============================================================================
# Events
# =============================================================================


class MixPosition(MixModelBase):
    """
    GPS fix attached to an event.

    Attributes:
        latitude: Decimal degrees, WGS84.
        longitude: Decimal degrees, WGS84.
        speed_kmh: Speed at the fix in km/h.
        formatted_address: Reverse-geocoded address, if any.
    """

    latitude: float | None = Field(default=None, alias='Latitude')
    longitude: float | None = Field(default=None, alias='Longitude')
    speed_kmh: float | None = Field(default=None, alias='SpeedKilometresPerHour')
    formatted_address: str | None = Field(default=None, alias='FormattedAddress')


class MixEvent(RawPayloadModel):
    """
    A single telematics event.

    Attributes:
        event_id: Globally unique event id; the dedupe key.
        driver_id: Driver id, None if no driver was identified.
        asset_id: Vehicle (asset) id.
        event_type_id: Library event type id.
        start_date_time: When the event occurred (UTC).
        start_position: GPS fix at the event start.
        speed_limit_kmh: Posted speed limit, when reported.
        start_odometer_km: Odometer at the event start.
        value: Event-specific measured value (e.g. peak speed, g-force).
    """

    event_id: int = Field(alias='EventId')
    driver_id: int | None = Field(default=None, alias='DriverId')
    asset_id: int | None = Field(default=None, alias='AssetId')
    event_type_id: int | None = Field(default=None, alias='EventTypeId')
    start_date_time: datetime = Field(alias='StartDateTime')
    start_position: MixPosition | None = Field(default=None, alias='StartPosition')
    speed_limit_kmh: float | None = Field(
        default=None, alias='SpeedLimitKilometresPerHour'
    )
    start_odometer_km: float | None = Field(
        default=None, alias='StartOdometerKilometres'
    )
    value: float | None = Field(default=None, alias='Value')

    @field_validator('driver_id', 'asset_id', 'event_type_id', mode='before')
    @classmethod
    def normalize_missing_ids(cls, value: Any) -> Any:
        """Map 0/empty ids to None."""
        return _zero_id_to_none(value)

    @field_validator('start_date_time')
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        """MiX timestamps are UTC; attach tzinfo when the API omits the offset."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class EventsPage(BaseModel):
    """
    One page of the created-since event feed.

    Attributes:
        events: Events in the page, in API order.
        next_since_token: Value of the GetSinceToken response header.
        has_more_items: Value of the HasMoreItems response header.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    events: list[MixEvent] = Field(default_factory=list)
    next_since_token: SinceToken
    has_more_items: bool

    @property
    def event_count(self) -> int:
        """Number of events on this page."""
        return len(self.events)


# =============================================================================
# Reference Data
# =============================================================================


class MixDriver(RawPayloadModel):
    """Driver master record."""

    driver_id: int = Field(alias='DriverId')
    name: str | None = Field(default=None, alias='Name')
    employee_number: str | None = Field(default=None, alias='EmployeeNumber')
    is_system_driver: bool = Field(default=False, alias='IsSystemDriver')


class MixVehicle(RawPayloadModel):
    """Vehicle (asset) master record."""

    asset_id: int = Field(alias='AssetId')
    description: str | None = Field(default=None, alias='Description')
    registration_number: str | None = Field(default=None, alias='RegistrationNumber')
    fleet_number: str | None = Field(default=None, alias='FleetNumber')
    make: str | None = Field(default=None, alias='Make')
    model: str | None = Field(default=None, alias='Model')
    year: str | None = Field(default=None, alias='Year')

    @field_validator('year', mode='before')
    @classmethod
    def coerce_year_to_string(cls, value: Any) -> Any:
        """Year arrives as a number for some assets and a string for others."""
        if isinstance(value, int):
            return str(value)
        return value


class MixEventType(RawPayloadModel):
    """Library event type definition."""

    event_type_id: int = Field(alias='EventTypeId')
    description: str | None = Field(default=None, alias='Description')
    event_type: str | None = Field(default=None, alias='EventType')
    display_units: str | None = Field(default=None, alias='DisplayUnits')
