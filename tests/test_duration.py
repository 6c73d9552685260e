"""Tests for duration parsing."""

import pytest

from querysync import parse_duration
from querysync.duration import parse_optional_duration


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        """Test parsing milliseconds."""
        assert parse_duration("100ms") == 100
        assert parse_duration("0ms") == 0

    def test_seconds_and_minutes(self) -> None:
        """Test parsing seconds and minutes."""
        assert parse_duration("30s") == 30_000
        assert parse_duration("5m") == 300_000

    def test_hours_and_days(self) -> None:
        """Test parsing hours and days."""
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("1d") == 86_400_000

    def test_integer_passthrough(self) -> None:
        """Test integers are returned as is."""
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0

    def test_invalid_format(self) -> None:
        """Test that invalid formats raise ValueError."""
        for value in ("invalid", "10x", "s10", "", "10"):
            with pytest.raises(ValueError, match="Invalid duration"):
                parse_duration(value)

    def test_negative_integer_rejected(self) -> None:
        """Test negative integers raise ValueError."""
        with pytest.raises(ValueError, match="negative"):
            parse_duration(-1)

    def test_bool_rejected(self) -> None:
        """Test booleans are not accepted as integers."""
        with pytest.raises(TypeError):
            parse_duration(True)


class TestParseOptionalDuration:
    def test_none_and_never_mean_unbounded(self) -> None:
        """Test None and "never" parse to no limit."""
        assert parse_optional_duration(None) is None
        assert parse_optional_duration("never") is None

    def test_delegates_to_parse_duration(self) -> None:
        """Test other values parse like parse_duration."""
        assert parse_optional_duration("1m") == 60_000
