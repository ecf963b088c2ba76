# telematics_ingest/common/time_utils.py
"""Timezone helpers shared by storage, engines and monitoring."""

from datetime import UTC, datetime

__all__: list[str] = ['as_utc', 'utc_now']


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values read back
    from it are naive. Every naive datetime in this package is UTC by
    convention, so the tzinfo is attached rather than converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
