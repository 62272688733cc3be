"""Spoken-style date parsing to ISO year-month-day."""

from __future__ import annotations

import re
from datetime import date, datetime

from dateutil.parser import parserinfo
from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta, weekday

from formmap.mapping.spoken import parse_cardinal, tokenize
from formmap.utils.errors import FormatError

# month and weekday names ("aug", "sept", "monday") come from dateutil's own tables
_NAMES = parserinfo()
_WEEKDAY_ANCHORS = (MO, TU, WE, TH, FR, SA, SU)

_UNIT_DELTAS = {
    "day": "days",
    "days": "days",
    "week": "weeks",
    "weeks": "weeks",
    "month": "months",
    "months": "months",
    "year": "years",
    "years": "years",
}

_ISO_RE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})$")
_DMY_RE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2}|\d{4})$")
_FILLER = {"the", "of", "on", "born", "dated"}


def parse_spoken_date(
    text: str,
    *,
    reference: datetime | date | None = None,
    two_digit_year_pivot: int = 30,
) -> str:
    """Parse a spoken or written date and return ``YYYY-MM-DD``.

    Rules:
    - Numeric forms are day-first (``15/08/1990``) unless they start with a
      four-digit year (``1990-08-15``).
    - Word forms accept day-month-year and month-day-year order with spoken or
      digit numbers.
    - Relative forms need ``reference``; without it they fail like any other
      unsupported pattern.

    Raises:
        FormatError: when no supported pattern matches or the date does not exist.
    """

    cleaned = " ".join(text.strip().lower().replace(",", " ").split())
    if not cleaned:
        raise FormatError("empty date", value_type="date", raw=text)

    compact = cleaned.replace(" ", "")
    iso_match = _ISO_RE.match(compact)
    if iso_match:
        year, month, day = (int(part) for part in iso_match.groups())
        return _build_date(year, month, day, text)

    dmy_match = _DMY_RE.match(compact)
    if dmy_match:
        day, month = int(dmy_match.group(1)), int(dmy_match.group(2))
        year = _expand_year(dmy_match.group(3), two_digit_year_pivot)
        return _build_date(year, month, day, text)

    relative = _parse_relative(cleaned, reference)
    if relative is not None:
        return relative.isoformat()

    worded = _parse_word_form(cleaned, two_digit_year_pivot)
    if worded is not None:
        year, month, day = worded
        return _build_date(year, month, day, text)

    raise FormatError(f"unsupported date format: {text!r}", value_type="date", raw=text)


def _build_date(year: int, month: int, day: int, raw: str) -> str:
    try:
        return date(year, month, day).isoformat()
    except ValueError as exc:
        raise FormatError(f"invalid calendar date: {raw!r}", value_type="date", raw=raw) from exc


def _expand_year(token: str, pivot: int) -> int:
    year = int(token)
    if len(token) == 2:
        return 2000 + year if year < pivot else 1900 + year
    return year


def _parse_relative(cleaned: str, reference: datetime | date | None) -> date | None:
    tokens = tokenize(cleaned)
    if not tokens or not _looks_relative(tokens):
        return None
    if reference is None:
        raise FormatError(
            "relative date needs a reference timestamp", value_type="date", raw=cleaned
        )

    base = reference.date() if isinstance(reference, datetime) else reference
    if tokens == ["today"]:
        return base
    if tokens == ["yesterday"]:
        return base - relativedelta(days=1)
    if tokens == ["tomorrow"]:
        return base + relativedelta(days=1)
    if tokens[:3] == ["day", "before", "yesterday"]:
        return base - relativedelta(days=2)
    if tokens[:3] == ["day", "after", "tomorrow"]:
        return base + relativedelta(days=2)

    anchor = _weekday(tokens[1]) if len(tokens) == 2 else None
    if anchor is not None:
        if tokens[0] == "last":
            return base - relativedelta(days=1) + relativedelta(weekday=anchor(-1))
        if tokens[0] == "next":
            return base + relativedelta(days=1) + relativedelta(weekday=anchor(+1))
        if tokens[0] == "this":
            return base + relativedelta(weekday=anchor(+1))

    if tokens[-1] == "ago" and len(tokens) >= 3 and tokens[-2] in _UNIT_DELTAS:
        amount = parse_cardinal(" ".join(tokens[:-2]))
        if amount is not None:
            return base - relativedelta(**{_UNIT_DELTAS[tokens[-2]]: amount})
    if tokens[0] == "in" and len(tokens) >= 3 and tokens[-1] in _UNIT_DELTAS:
        amount = parse_cardinal(" ".join(tokens[1:-1]))
        if amount is not None:
            return base + relativedelta(**{_UNIT_DELTAS[tokens[-1]]: amount})

    raise FormatError(f"unsupported relative date: {cleaned!r}", value_type="date", raw=cleaned)


def _weekday(token: str) -> weekday | None:
    index = _NAMES.weekday(token)
    return None if index is None else _WEEKDAY_ANCHORS[index]


def _looks_relative(tokens: list[str]) -> bool:
    if tokens[0] in {"today", "yesterday", "tomorrow"}:
        return True
    if tokens[0] in {"last", "next", "this"} and len(tokens) == 2:
        return _weekday(tokens[1]) is not None
    if tokens[0] == "in" and tokens[-1] in _UNIT_DELTAS:
        return True
    if tokens[:2] == ["day", "before"] or tokens[:2] == ["day", "after"]:
        return True
    return tokens[-1] == "ago"


def _parse_word_form(cleaned: str, pivot: int) -> tuple[int, int, int] | None:
    tokens = [token for token in tokenize(cleaned) if token not in _FILLER]
    month_positions = [index for index, token in enumerate(tokens) if _NAMES.month(token)]
    if len(month_positions) != 1:
        return None

    position = month_positions[0]
    month = _NAMES.month(tokens[position])
    before = tokens[:position]
    after = tokens[position + 1 :]

    if before:
        day = parse_cardinal(" ".join(before))
        year = _parse_year_tokens(after, pivot)
    else:
        day, year = _split_day_and_year(after, pivot)

    if day is None or year is None:
        return None
    return year, month, day


def _parse_year_tokens(tokens: list[str], pivot: int) -> int | None:
    if not tokens:
        return None
    if len(tokens) == 1 and tokens[0].isdigit():
        return _expand_year(tokens[0], pivot) if len(tokens[0]) in {2, 4} else None
    year = parse_cardinal(" ".join(tokens))
    if year is None or year < 100:
        return None
    return year


def _split_day_and_year(tokens: list[str], pivot: int) -> tuple[int | None, int | None]:
    """Split month-first remainder ("15 1990", "fifteenth nineteen ninety")."""

    for cut in range(1, len(tokens)):
        day = parse_cardinal(" ".join(tokens[:cut]))
        year = _parse_year_tokens(tokens[cut:], pivot)
        if day is not None and 1 <= day <= 31 and year is not None:
            return day, year
    return None, None
