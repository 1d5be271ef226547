from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.verifactu_client.utils import fmt_amount, fmt_date, parse_flag, to_decimal


@pytest.mark.parametrize(
    "value,expected",
    [
        (100, "100.00"),
        ("100", "100.00"),
        ("12.345", "12.35"),
        (12.345, "12.35"),
        (Decimal("-12.345"), "-12.35"),
        ("0.005", "0.01"),
        ("1.234,565", "1234.57"),
        ("-0.001", "0.00"),
        (10 ** 30, "1" + "0" * 30 + ".00"),
        ("123456789012345678901234567890.125", "123456789012345678901234567890.13"),
    ],
)
def test_fmt_amount_two_decimals_half_away_from_zero(value, expected):
    assert fmt_amount(value) == expected


@pytest.mark.parametrize("value", [None, "", "abc", "1e3", True, "12,5,3x"])
def test_to_decimal_rejects_non_numeric(value):
    assert to_decimal(value) is None


def test_fmt_amount_raises_on_non_numeric():
    with pytest.raises(ValueError):
        fmt_amount("n/a")


@pytest.mark.parametrize(
    "value",
    ["2025-01-31", "31-01-2025", date(2025, 1, 31), datetime(2025, 1, 31, 23, 59)],
)
def test_fmt_date_day_month_year(value):
    assert fmt_date(value) == "31-01-2025"


@pytest.mark.parametrize("value", ["2025-02-30", "2025/01/31", "31-13-2025"])
def test_fmt_date_rejects_impossible_dates(value):
    with pytest.raises(ValueError):
        fmt_date(value)


@pytest.mark.parametrize(
    "value,expected",
    [(True, True), ("S", True), ("n", False), ("false", False), (1, True), ("quizás", None), (7, None)],
)
def test_parse_flag(value, expected):
    assert parse_flag(value) is expected
