"""Spoken-number helpers for transcribed answers.

Handles digit-by-digit dictation ("nine eight seven", "double five", "oh"),
cardinals ("thirty two", "nineteen ninety", "two thousand five") and
ordinals ("fifteenth", "21st").
"""

from __future__ import annotations

import re

_DIGIT_WORDS = {
    "zero": "0",
    "oh": "0",
    "o": "0",
    "one": "1",
    "two": "2",
    "three": "3",
    "four": "4",
    "five": "5",
    "six": "6",
    "seven": "7",
    "eight": "8",
    "nine": "9",
}

_REPEATERS = {"double": 2, "triple": 3}

_UNITS = {
    "zero": 0,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "thirteen": 13,
    "fourteen": 14,
    "fifteen": 15,
    "sixteen": 16,
    "seventeen": 17,
    "eighteen": 18,
    "nineteen": 19,
}

_TENS = {
    "twenty": 20,
    "thirty": 30,
    "forty": 40,
    "fifty": 50,
    "sixty": 60,
    "seventy": 70,
    "eighty": 80,
    "ninety": 90,
}

_MULTIPLIERS = {"thousand": 1000, "lakh": 100_000}

_ORDINALS = {
    "first": "one",
    "second": "two",
    "third": "three",
    "fourth": "four",
    "fifth": "five",
    "sixth": "six",
    "seventh": "seven",
    "eighth": "eight",
    "ninth": "nine",
    "tenth": "ten",
    "eleventh": "eleven",
    "twelfth": "twelve",
    "thirteenth": "thirteen",
    "fourteenth": "fourteen",
    "fifteenth": "fifteen",
    "sixteenth": "sixteen",
    "seventeenth": "seventeen",
    "eighteenth": "eighteen",
    "nineteenth": "nineteen",
    "twentieth": "twenty",
    "thirtieth": "thirty",
}

_ORDINAL_SUFFIX_RE = re.compile(r"^(\d+)(st|nd|rd|th)$")
_TOKEN_RE = re.compile(r"\d+(?:st|nd|rd|th)?|[a-z]+")
_FILLER = {"and", "a"}


def tokenize(text: str) -> list[str]:
    """Split text into lowercase word/digit tokens, dropping hyphens and punctuation."""

    return _TOKEN_RE.findall(text.lower().replace("-", " "))


def spoken_digits(text: str) -> str | None:
    """Convert digit-by-digit dictation to a digit string.

    Digits may be mixed with words ("98 double seven 6"). Returns None when any
    token is not a digit, digit word or repeater.
    """

    tokens = tokenize(text)
    if not tokens:
        return None

    digits: list[str] = []
    repeat = 1
    for token in tokens:
        if token in _REPEATERS:
            repeat = _REPEATERS[token]
            continue
        if token.isdigit():
            digits.append(token[0] * repeat + token[1:])
        elif token in _DIGIT_WORDS:
            digits.append(_DIGIT_WORDS[token] * repeat)
        else:
            return None
        repeat = 1

    if repeat != 1:
        return None
    return "".join(digits)


def parse_cardinal(text: str) -> int | None:
    """Parse a spoken cardinal or ordinal number.

    Supports "thirty two", "one hundred and five", "two thousand five",
    "nineteen ninety" (year style pairs) and ordinal forms. Returns None when
    the text is not a number, including digit-by-digit dictation ("one two
    three") whose words follow each other without a place-value multiplier.
    """

    stripped = text.strip().lower()
    if stripped.isdigit():
        return int(stripped)
    suffix_match = _ORDINAL_SUFFIX_RE.match(stripped)
    if suffix_match:
        return int(suffix_match.group(1))

    tokens = [_ORDINALS.get(token, token) for token in tokenize(stripped) if token not in _FILLER]
    if not tokens:
        return None

    year_style = _parse_year_pairs(tokens)
    if year_style is not None:
        return year_style

    total = 0
    current = 0
    previous: str | None = None
    for token in tokens:
        if token in _UNITS:
            value = _UNITS[token]
            if previous == "tens" and not 0 < value < 10:
                return None
            if previous in {"unit", "teen"}:
                return None
            current += value
            previous = "unit" if value < 10 else "teen"
        elif token in _TENS:
            if previous in {"unit", "teen", "tens"}:
                return None
            current += _TENS[token]
            previous = "tens"
        elif token == "hundred":
            if previous in {"tens", "hundred"}:
                return None
            current = max(current, 1) * 100
            previous = "hundred"
        elif token in _MULTIPLIERS:
            if previous == "multiplier":
                return None
            total += max(current, 1) * _MULTIPLIERS[token]
            current = 0
            previous = "multiplier"
        else:
            return None
    return total + current


def _parse_year_pairs(tokens: list[str]) -> int | None:
    """Parse "nineteen ninety" / "twenty twenty one" / "nineteen oh five" years."""

    if len(tokens) < 2 or len(tokens) > 3:
        return None

    head = tokens[0]
    if head in _UNITS and _UNITS[head] >= 10:
        century = _UNITS[head]
    elif head in _TENS:
        century = _TENS[head]
    else:
        return None

    rest = tokens[1:]
    if rest[0] in {"oh", "o"}:
        if len(rest) == 2 and rest[1] in _UNITS and 0 < _UNITS[rest[1]] < 10:
            return century * 100 + _UNITS[rest[1]]
        return None
    if rest[0] in _UNITS and _UNITS[rest[0]] >= 10 and len(rest) == 1:
        return century * 100 + _UNITS[rest[0]]
    if rest[0] in _TENS:
        value = _TENS[rest[0]]
        if len(rest) == 2:
            if rest[1] not in _UNITS or not 0 < _UNITS[rest[1]] < 10:
                return None
            value += _UNITS[rest[1]]
        return century * 100 + value
    return None
