# telematics_ingest/models/since_token.py
"""
Structured representation of the MiX since-token cursor.

On the wire a since-token is either the sentinel string "NEW" (start a fresh
feed window) or a 17-digit fixed-width UTC timestamp `YYYYMMDDHHMMSSmmm`.
Inside the package it is always a SinceToken: arithmetic and age checks work
on a datetime, and the fixed-width string only exists at the API and storage
boundaries via encode()/decode().

Token Validity:
---------------
The API expires tokens 7 days after the instant they encode. Callers compare
age against a smaller threshold (6 days by default) to leave a safety margin.
"""

import re
from datetime import UTC, datetime, timedelta
from typing import ClassVar, Final, Self

from pydantic import BaseModel, ConfigDict

__all__: list[str] = [
    'NEW_TOKEN',
    'TOKEN_LENGTH',
    'SinceToken',
    'SinceTokenParseError',
]

NEW_TOKEN: Final[str] = 'NEW'
TOKEN_LENGTH: Final[int] = 17

_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r'^\d{17}$')
_SECONDS_FORMAT: Final[str] = '%Y%m%d%H%M%S'


class SinceTokenParseError(ValueError):
    """
    Raised when a string is neither "NEW" nor a valid fixed-width timestamp.

    Attributes:
        raw_token: The offending input, kept for logs and failure records.
    """

    def __init__(self, raw_token: object, reason: str) -> None:
        super().__init__(f'Invalid since-token {raw_token!r}: {reason}')
        self.raw_token: object = raw_token


class SinceToken(BaseModel):
    """
    Immutable since-token value.

    Attributes:
        timestamp: UTC instant encoded by the token, truncated to milliseconds.
            None for the NEW sentinel.

    Example:
        >>> token = SinceToken.decode('20251001120000000')
        >>> token.advanced(timedelta(seconds=1)).encode()
        '20251001120001000'
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    NEW: ClassVar['SinceToken']

    timestamp: datetime | None = None

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_datetime(cls, moment: datetime) -> Self:
        """
        Build a token for an instant, truncating to millisecond precision.

        Naive datetimes are interpreted as UTC.
        """
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        moment = moment.astimezone(UTC)
        truncated: datetime = moment.replace(
            microsecond=(moment.microsecond // 1000) * 1000
        )
        return cls(timestamp=truncated)

    @classmethod
    def decode(cls, raw_token: str) -> 'SinceToken':
        """
        Parse the wire format.

        Args:
            raw_token: "NEW" or a 17-digit `YYYYMMDDHHMMSSmmm` string.

        Returns:
            SinceToken.NEW or a timestamp token.

        Raises:
            SinceTokenParseError: For any other input, including impossible
                calendar dates such as month 13.
        """
        if not isinstance(raw_token, str):
            raise SinceTokenParseError(raw_token, 'expected a string')

        if raw_token == NEW_TOKEN:
            return cls.NEW

        if not _TOKEN_PATTERN.match(raw_token):
            raise SinceTokenParseError(
                raw_token, f'expected "{NEW_TOKEN}" or {TOKEN_LENGTH} digits'
            )

        try:
            whole_seconds: datetime = datetime.strptime(  # noqa: DTZ007
                raw_token[:14], _SECONDS_FORMAT
            )
        except ValueError as parse_error:
            raise SinceTokenParseError(raw_token, str(parse_error)) from parse_error

        milliseconds: int = int(raw_token[14:])
        moment: datetime = whole_seconds.replace(
            microsecond=milliseconds * 1000, tzinfo=UTC
        )
        return cls(timestamp=moment)

    # -------------------------------------------------------------------------
    # Wire Format
    # -------------------------------------------------------------------------

    def encode(self) -> str:
        """Return the exact wire representation."""
        if self.timestamp is None:
            return NEW_TOKEN
        milliseconds: int = self.timestamp.microsecond // 1000
        return f'{self.timestamp.strftime(_SECONDS_FORMAT)}{milliseconds:03d}'

    def __str__(self) -> str:
        return self.encode()

    # -------------------------------------------------------------------------
    # Arithmetic and Age
    # -------------------------------------------------------------------------

    @property
    def is_new(self) -> bool:
        """True for the NEW sentinel."""
        return self.timestamp is None

    def advanced(self, delta: timedelta) -> 'SinceToken':
        """
        Return a token moved forward by `delta`.

        The sentinel has no position to move from and is returned unchanged.
        """
        if self.timestamp is None:
            return self
        return SinceToken(timestamp=self.timestamp + delta)

    def age(self, now: datetime) -> timedelta | None:
        """Elapsed time between the encoded instant and `now`; None for NEW."""
        if self.timestamp is None:
            return None
        return now - self.timestamp

    def is_older_than(self, max_age: timedelta, now: datetime) -> bool:
        """True if the encoded instant is more than `max_age` before `now`."""
        token_age: timedelta | None = self.age(now)
        return token_age is not None and token_age > max_age


SinceToken.NEW = SinceToken(timestamp=None)
