"""Per-type validation rules and the field-side format contract."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Sequence

from formmap.mapping.models import FormatSpec
from formmap.mapping.spoken import parse_cardinal, spoken_digits
from formmap.utils.errors import FormatError, RangeError

_PHONE_SEPARATORS_RE = re.compile(r"[\s\-().+/]")
_EMAIL_RE = re.compile(
    r"^[a-z0-9](?:[a-z0-9._%+-]{0,62}[a-z0-9])?"
    r"@[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*"
    r"\.[a-z]{2,24}$"
)
_SPOKEN_EMAIL_TOKENS = (
    (re.compile(r"\s+at the rate(?: of)?\s+|\s+at\s+"), "@"),
    (re.compile(r"\s+dot\s+"), "."),
    (re.compile(r"\s+underscore\s+"), "_"),
    (re.compile(r"\s+(?:dash|hyphen)\s+"), "-"),
)
_NUMBER_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
_SIGNED_INT_RE = re.compile(r"^[+-]?\d+$")
_AGE_UNIT_RE = re.compile(r"\b(?:years?|yrs?|old|aged?)\b")

# Verhoeff dihedral-group tables
_VERHOEFF_D = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 2, 3, 4, 0, 6, 7, 8, 9, 5),
    (2, 3, 4, 0, 1, 7, 8, 9, 5, 6),
    (3, 4, 0, 1, 2, 8, 9, 5, 6, 7),
    (4, 0, 1, 2, 3, 9, 5, 6, 7, 8),
    (5, 9, 8, 7, 6, 0, 4, 3, 2, 1),
    (6, 5, 9, 8, 7, 1, 0, 4, 3, 2),
    (7, 6, 5, 9, 8, 2, 1, 0, 4, 3),
    (8, 7, 6, 5, 9, 3, 2, 1, 0, 4),
    (9, 8, 7, 6, 5, 4, 3, 2, 1, 0),
)
_VERHOEFF_P = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 5, 7, 6, 2, 8, 3, 0, 9, 4),
    (5, 8, 0, 3, 7, 9, 6, 1, 4, 2),
    (8, 9, 1, 6, 0, 4, 3, 5, 2, 7),
    (9, 4, 5, 3, 1, 2, 6, 8, 7, 0),
    (4, 1, 3, 2, 8, 6, 5, 9, 0, 7),
    (2, 6, 8, 7, 9, 3, 0, 5, 1, 4),
    (7, 0, 4, 6, 9, 1, 3, 2, 5, 8),
)

_SCRIPT_RANGES: dict[str, tuple[tuple[int, int], ...]] = {
    "devanagari": ((0x0900, 0x097F), (0xA8E0, 0xA8FF)),
    "bengali": ((0x0980, 0x09FF),),
    "gurmukhi": ((0x0A00, 0x0A7F),),
    "gujarati": ((0x0A80, 0x0AFF),),
    "tamil": ((0x0B80, 0x0BFF),),
    "telugu": ((0x0C00, 0x0C7F),),
    "kannada": ((0x0C80, 0x0CFF),),
    "malayalam": ((0x0D00, 0x0D7F),),
}
_CHARSET_SCRIPTS: dict[str, tuple[str, ...]] = {
    "latin": ("latin",),
    "latin_or_devanagari": ("latin", "devanagari"),
}
_NEUTRAL_PUNCTUATION = set(" .,'-/&()#:")


def validate_phone(text: str, *, country_codes: Sequence[str] = ("91",)) -> str:
    """Return a 10-digit phone number or raise ``FormatError``."""

    digits = _PHONE_SEPARATORS_RE.sub("", text)
    if not digits.isdigit():
        spoken = spoken_digits(text)
        if spoken is None:
            raise FormatError(
                f"phone is not a digit sequence: {text!r}", value_type="phone", raw=text
            )
        digits = spoken

    digits = _strip_country_prefix(digits, country_codes)
    if len(digits) != 10:
        raise FormatError(
            f"phone must have exactly 10 digits, got {len(digits)}", value_type="phone", raw=text
        )
    return digits


def _strip_country_prefix(digits: str, country_codes: Sequence[str]) -> str:
    if len(digits) == 10:
        return digits
    for code in country_codes:
        for prefix in (f"00{code}", code):
            if digits.startswith(prefix) and len(digits) - len(prefix) == 10:
                return digits[len(prefix) :]
    if len(digits) == 11 and digits.startswith("0"):
        return digits[1:]
    return digits


def validate_email(text: str) -> str:
    """Return a lowercase email address or raise ``FormatError``.

    Spoken separators ("at", "dot", "underscore", "dash") are canonicalized
    before the pattern check.
    """

    candidate = f" {text.strip().lower()} "
    for pattern, replacement in _SPOKEN_EMAIL_TOKENS:
        candidate = pattern.sub(replacement, candidate)
    candidate = candidate.strip().replace(" ", "")
    if not _EMAIL_RE.match(candidate) or ".." in candidate:
        raise FormatError(f"invalid email address: {text!r}", value_type="email", raw=text)
    return candidate


def validate_age(text: str, *, minimum: int = 0, maximum: int = 130) -> str:
    """Return an integer age as text, raising ``FormatError``/``RangeError``."""

    stripped = _AGE_UNIT_RE.sub(" ", text.lower()).strip()
    if _SIGNED_INT_RE.match(stripped):
        value: int | None = int(stripped)
    else:
        value = parse_cardinal(stripped) if stripped else None
    if value is None:
        raise FormatError(f"age is not a whole number: {text!r}", value_type="age", raw=text)
    if not minimum <= value <= maximum:
        raise RangeError(
            f"age {value} outside [{minimum}, {maximum}]", value_type="age", raw=text
        )
    return str(value)


def validate_number(text: str) -> str:
    """Return a canonical integer/decimal string or raise ``FormatError``."""

    compact = text.strip().replace(",", "")
    if _NUMBER_RE.match(compact):
        return compact.lstrip("+")
    value = parse_cardinal(compact)
    if value is None:
        raise FormatError(f"not a number: {text!r}", value_type="number", raw=text)
    return str(value)


def validate_pincode(text: str) -> str:
    """Return a 6-digit postal index number or raise ``FormatError``."""

    digits = _digits_only(text, "pincode")
    if len(digits) != 6 or digits[0] == "0":
        raise FormatError(
            f"pincode must be 6 digits not starting with 0: {text!r}",
            value_type="pincode",
            raw=text,
        )
    return digits


def validate_aadhaar(text: str) -> str:
    """Return a 12-digit Aadhaar number with valid structure and checksum."""

    digits = _digits_only(text, "aadhaar")
    if len(digits) != 12:
        raise FormatError(
            f"aadhaar must have 12 digits, got {len(digits)}", value_type="aadhaar", raw=text
        )
    if digits[0] in "01":
        raise FormatError("aadhaar cannot start with 0 or 1", value_type="aadhaar", raw=text)
    if not verhoeff_valid(digits):
        raise FormatError("aadhaar checksum mismatch", value_type="aadhaar", raw=text)
    return digits


def verhoeff_valid(digits: str) -> bool:
    """Check a digit string whose last digit is a Verhoeff check digit."""

    check = 0
    for index, char in enumerate(reversed(digits)):
        check = _VERHOEFF_D[check][_VERHOEFF_P[index % 8][int(char)]]
    return check == 0


def _digits_only(text: str, value_type: str) -> str:
    digits = _PHONE_SEPARATORS_RE.sub("", text)
    if digits.isdigit():
        return digits
    spoken = spoken_digits(text)
    if spoken is None:
        raise FormatError(
            f"{value_type} is not a digit sequence: {text!r}", value_type=value_type, raw=text
        )
    return spoken


def validate_charset(text: str, charset: str) -> None:
    """Check transliterated text against a character-class contract.

    Letters and combining marks must belong to the allowed scripts; digits,
    whitespace and common address punctuation are always allowed.
    """

    scripts = _CHARSET_SCRIPTS.get(charset, (charset,))
    for char in text:
        if char.isspace() or char.isdigit() or char in _NEUTRAL_PUNCTUATION:
            continue
        if not any(_char_in_script(char, script) for script in scripts):
            raise FormatError(
                f"character {char!r} (U+{ord(char):04X}) not allowed for charset {charset}",
                value_type="charset",
                raw=text,
            )


def _char_in_script(char: str, script: str) -> bool:
    if script == "latin":
        if char.isascii():
            return char.isalpha()
        return unicodedata.category(char).startswith("L") and "LATIN" in unicodedata.name(char, "")
    codepoint = ord(char)
    return any(low <= codepoint <= high for low, high in _SCRIPT_RANGES.get(script, ()))


def validate_format_spec(value: str, spec: FormatSpec | None) -> None:
    """Validate a value against a field's format contract."""

    if spec is None:
        return
    if spec.max_length is not None and len(value) > spec.max_length:
        raise FormatError(
            f"value longer than {spec.max_length} characters", value_type="format_spec", raw=value
        )
    if spec.pattern is not None and re.fullmatch(spec.pattern, value) is None:
        raise FormatError(
            f"value does not match pattern {spec.pattern!r}", value_type="format_spec", raw=value
        )
    if spec.charset is not None:
        validate_charset(value, spec.charset)
