"""
UTC timestamp parsing
"""
from datetime import datetime

import pytest

from FinalRound.utils.time import isoformat_utc, parse_timestamp


@pytest.mark.parametrize("text, expected", [
    ("2026-01-10T12:00:00Z", datetime(2026, 1, 10, 12, 0, 0)),
    ("2026-01-10T12:00:00.92Z", datetime(2026, 1, 10, 12, 0, 0, 920000)),
    ("2026-01-10T12:00:00.1234567Z", datetime(2026, 1, 10, 12, 0, 0, 123456)),
    ("2026-01-10T14:00:00.5+02:00", datetime(2026, 1, 10, 12, 0, 0, 500000)),
    ("2026-01-10T12:00:00.123", datetime(2026, 1, 10, 12, 0, 0, 123000)),
])
def test_parse_timestamp_fraction_digits(text, expected):
    assert parse_timestamp(text) == expected


@pytest.mark.parametrize("value", [None, "", "   ", "not a date"])
def test_parse_timestamp_blank_or_garbage(value):
    assert parse_timestamp(value) is None


def test_isoformat_utc_is_parseable():
    value = datetime(2026, 1, 10, 12, 0, 0, 920000)
    assert parse_timestamp(isoformat_utc(value)) == value
