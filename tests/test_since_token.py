"""
Tests for the SinceToken value type.

Covers the fixed-width wire format, the NEW sentinel, arithmetic and the
age check used for the 7-day validity window.
"""

from datetime import UTC, datetime, timedelta

import pytest

from telematics_ingest.models import NEW_TOKEN, SinceToken, SinceTokenParseError


class TestDecode:
    """Tests for parsing the wire format."""

    def test_decodes_seventeen_digit_token(self) -> None:
        """Should parse YYYYMMDDHHMMSSmmm as a UTC instant with milliseconds."""
        token = SinceToken.decode('20251001120000123')

        assert token.timestamp == datetime(2025, 10, 1, 12, 0, 0, 123_000, tzinfo=UTC)
        assert not token.is_new

    def test_decodes_new_sentinel(self) -> None:
        """Should return the shared NEW instance for the sentinel."""
        token = SinceToken.decode(NEW_TOKEN)

        assert token is SinceToken.NEW
        assert token.is_new
        assert token.timestamp is None

    @pytest.mark.parametrize(
        'raw_token',
        [
            '',
            'new',
            '2025100112000012',
            '202510011200001234',
            '2025-10-01T12:00',
            '20251301120000000',
            '20250230120000000',
        ],
    )
    def test_rejects_malformed_tokens(self, raw_token: str) -> None:
        """Should raise SinceTokenParseError for anything but NEW or a valid date."""
        with pytest.raises(SinceTokenParseError) as exc_info:
            SinceToken.decode(raw_token)

        assert exc_info.value.raw_token == raw_token

    def test_parse_error_is_value_error(self) -> None:
        """Should be catchable as ValueError."""
        with pytest.raises(ValueError, match='Invalid since-token'):
            SinceToken.decode('garbage')


class TestEncode:
    """Tests for producing the wire format."""

    def test_encode_is_fixed_width(self) -> None:
        """Should zero-pad every component to 17 characters."""
        token = SinceToken.from_datetime(datetime(2025, 1, 2, 3, 4, 5, 6_000, tzinfo=UTC))

        assert token.encode() == '20250102030405006'
        assert str(token) == '20250102030405006'

    def test_new_encodes_as_sentinel(self) -> None:
        """Should encode the sentinel as NEW."""
        assert SinceToken.NEW.encode() == 'NEW'

    def test_from_datetime_truncates_to_milliseconds(self) -> None:
        """Should drop sub-millisecond precision."""
        token = SinceToken.from_datetime(
            datetime(2025, 10, 1, 12, 0, 0, 123_987, tzinfo=UTC)
        )

        assert token.encode() == '20251001120000123'

    def test_from_datetime_treats_naive_as_utc(self) -> None:
        """Should interpret a naive datetime as UTC."""
        token = SinceToken.from_datetime(datetime(2025, 10, 1, 12, 0, 0))  # noqa: DTZ001

        assert token.timestamp is not None
        assert token.timestamp.tzinfo is UTC


class TestArithmetic:
    """Tests for advancing tokens and age checks."""

    def test_advanced_by_one_second(self) -> None:
        """Should move the encoded instant forward, crossing day boundaries."""
        token = SinceToken.decode('20251231235959500')

        assert token.advanced(timedelta(seconds=1)).encode() == '20260101000000500'

    def test_new_is_not_advanced(self) -> None:
        """Should return the sentinel unchanged."""
        assert SinceToken.NEW.advanced(timedelta(seconds=1)) is SinceToken.NEW

    def test_age_and_max_age(self) -> None:
        """Should compare age strictly against the limit."""
        now = datetime(2025, 10, 7, 12, 0, tzinfo=UTC)
        token = SinceToken.from_datetime(now - timedelta(days=6))

        assert token.age(now) == timedelta(days=6)
        assert not token.is_older_than(timedelta(days=6), now)
        assert token.is_older_than(timedelta(days=5), now)

    def test_new_has_no_age(self) -> None:
        """Should never treat the sentinel as expired."""
        now = datetime(2025, 10, 7, tzinfo=UTC)

        assert SinceToken.NEW.age(now) is None
        assert not SinceToken.NEW.is_older_than(timedelta(0), now)

    def test_tokens_compare_by_value(self) -> None:
        """Should be equal when the encoded instant is equal."""
        assert SinceToken.decode('20251001120000000') == SinceToken.from_datetime(
            datetime(2025, 10, 1, 12, tzinfo=UTC)
        )
