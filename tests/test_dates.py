from __future__ import annotations

from datetime import date, datetime

import pytest

from formmap.mapping.dates import parse_spoken_date
from formmap.utils.errors import FormatError

# Wednesday
REFERENCE = date(2024, 5, 15)


@pytest.mark.parametrize(
    "text",
    [
        "15/08/1990",
        "15-8-90",
        "1990-08-15",
        "15.08.1990",
        "15 August 1990",
        "15th of Aug 1990",
        "August 15, 1990",
        "fifteenth august nineteen ninety",
        "born on the 15th of August 1990",
    ],
)
def test_parse_spoken_date_absolute_forms(text: str) -> None:
    assert parse_spoken_date(text) == "1990-08-15"


def test_parse_spoken_date_month_abbreviations() -> None:
    assert parse_spoken_date("5 sept 1990") == "1990-09-05"
    assert parse_spoken_date("Dec 25 2001") == "2001-12-25"


def test_two_digit_year_pivot() -> None:
    assert parse_spoken_date("01/02/05") == "2005-02-01"
    assert parse_spoken_date("01/02/45") == "1945-02-01"
    assert parse_spoken_date("01/02/45", two_digit_year_pivot=50) == "2045-02-01"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("today", "2024-05-15"),
        ("yesterday", "2024-05-14"),
        ("tomorrow", "2024-05-16"),
        ("day before yesterday", "2024-05-13"),
        ("last Monday", "2024-05-13"),
        ("next Friday", "2024-05-17"),
        ("this Sunday", "2024-05-19"),
        ("three days ago", "2024-05-12"),
        ("in two weeks", "2024-05-29"),
        ("2 months ago", "2024-03-15"),
        ("last mon", "2024-05-13"),
        ("next fri", "2024-05-17"),
    ],
)
def test_parse_spoken_date_relative_forms(text: str, expected: str) -> None:
    assert parse_spoken_date(text, reference=REFERENCE) == expected


def test_relative_date_accepts_datetime_reference() -> None:
    assert parse_spoken_date("yesterday", reference=datetime(2024, 5, 15, 23, 59)) == "2024-05-14"


def test_relative_date_without_reference_raises() -> None:
    with pytest.raises(FormatError, match="reference"):
        parse_spoken_date("yesterday")


@pytest.mark.parametrize("text", ["31/02/2000", "someday", "", "15 august"])
def test_parse_spoken_date_rejects_invalid(text: str) -> None:
    with pytest.raises(FormatError) as exc_info:
        parse_spoken_date(text)

    assert exc_info.value.code == "FORMAT_ERROR"
    assert exc_info.value.value_type == "date"
