from __future__ import annotations

import pytest

from formmap.mapping.spoken import parse_cardinal, spoken_digits, tokenize


def test_tokenize_keeps_ordinal_suffix_and_drops_punctuation() -> None:
    assert tokenize("15th of Aug, 1990") == ["15th", "of", "aug", "1990"]
    assert tokenize("twenty-one") == ["twenty", "one"]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("nine eight seven six five four three two one zero", "9876543210"),
        ("double nine eight seven", "9987"),
        ("triple five oh one", "555" + "01"),
        ("98 double seven 6", "98776"),
    ],
)
def test_spoken_digits_handles_dictation(text: str, expected: str) -> None:
    assert spoken_digits(text) == expected


def test_spoken_digits_rejects_non_digit_words() -> None:
    assert spoken_digits("call me maybe") is None
    assert spoken_digits("nine double") is None
    assert spoken_digits("") is None


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("32", 32),
        ("thirty two", 32),
        ("twenty one", 21),
        ("one hundred and five", 105),
        ("two thousand five", 2005),
        ("nineteen ninety", 1990),
        ("nineteen oh five", 1905),
        ("twenty twenty one", 2021),
        ("fifteenth", 15),
        ("21st", 21),
        ("two lakh", 200_000),
    ],
)
def test_parse_cardinal(text: str, expected: int) -> None:
    assert parse_cardinal(text) == expected


def test_parse_cardinal_returns_none_for_words() -> None:
    assert parse_cardinal("hello") is None
    assert parse_cardinal("") is None


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("two thousand five hundred", 2500),
        ("nineteen hundred", 1900),
        ("one lakh twenty thousand", 120_000),
        ("ninety nine", 99),
    ],
)
def test_parse_cardinal_place_value_groups(text: str, expected: int) -> None:
    assert parse_cardinal(text) == expected


@pytest.mark.parametrize(
    "text",
    ["one two three", "two five", "twenty thirty five", "twenty fifteen five", "five fifteen"],
)
def test_parse_cardinal_rejects_words_without_place_value(text: str) -> None:
    assert parse_cardinal(text) is None
