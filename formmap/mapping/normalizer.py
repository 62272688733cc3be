"""Normalizer converting raw extracted values into canonical typed values."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime

from formmap.mapping.dates import parse_spoken_date
from formmap.mapping.models import UNKNOWN_TYPE, Entity, NormalizationOutcome
from formmap.mapping.validators import (
    validate_aadhaar,
    validate_age,
    validate_email,
    validate_number,
    validate_phone,
    validate_pincode,
)
from formmap.policy.models import MappingPolicy
from formmap.utils.errors import FormatError, ValidationFailure

Reference = datetime | date | None
_Rule = Callable[[str, MappingPolicy, Reference], str]


def _collapse(text: str, _policy: MappingPolicy, _reference: Reference) -> str:
    collapsed = " ".join(text.split()).strip(" ,;")
    if not collapsed:
        raise FormatError("empty value", value_type="text", raw=text)
    return collapsed


def _date(text: str, policy: MappingPolicy, reference: Reference) -> str:
    return parse_spoken_date(
        text, reference=reference, two_digit_year_pivot=policy.two_digit_year_pivot
    )


def _phone(text: str, policy: MappingPolicy, _reference: Reference) -> str:
    return validate_phone(text, country_codes=policy.phone_country_codes)


def _age(text: str, policy: MappingPolicy, _reference: Reference) -> str:
    return validate_age(text, minimum=policy.age_min, maximum=policy.age_max)


_RULES: dict[str, _Rule] = {
    "date": _date,
    "phone": _phone,
    "email": lambda text, _p, _r: validate_email(text),
    "age": _age,
    "number": lambda text, _p, _r: validate_number(text),
    "pincode": lambda text, _p, _r: validate_pincode(text),
    "aadhaar": lambda text, _p, _r: validate_aadhaar(text),
    "address": _collapse,
    "name": _collapse,
    "text": _collapse,
}


def normalize_value(
    value_type: str,
    text: str,
    policy: MappingPolicy,
    *,
    reference: Reference = None,
) -> str:
    """Normalize ``text`` as ``value_type``.

    The most specific rule wins: the type itself first, then its ancestors in
    the policy's type hierarchy, then plain whitespace collapsing.

    Raises:
        FormatError: value fails the type's format rules.
        RangeError: numeric value outside its bounds.
    """

    for candidate in (value_type, *policy.ancestors(value_type)):
        rule = _RULES.get(candidate)
        if rule is not None:
            return rule(text, policy, reference)
    return _collapse(text, policy, reference)


def normalize(
    entity: Entity,
    policy: MappingPolicy,
    *,
    reference: Reference = None,
) -> NormalizationOutcome:
    """Return ``(normalized value, validation outcome)`` for one entity.

    An upstream ``normalized_value`` is tried when the raw text itself fails,
    so a pre-cleaned value is not rejected because of transcription noise.
    """

    if entity.type == UNKNOWN_TYPE:
        return NormalizationOutcome(value=_safe_collapse(entity.raw_text), validated=False)

    attempts = [entity.raw_text]
    if entity.normalized_value and entity.normalized_value != entity.raw_text:
        attempts.append(entity.normalized_value)

    first_error: ValidationFailure | None = None
    for text in attempts:
        try:
            value = normalize_value(entity.type, text, policy, reference=reference)
        except ValidationFailure as exc:
            first_error = first_error or exc
            continue
        return NormalizationOutcome(value=value, validated=True)

    if first_error is None:
        raise ValueError(f"No normalization attempt for entity {entity.id}")
    return NormalizationOutcome(
        value=entity.normalized_value or _safe_collapse(entity.raw_text),
        validated=False,
        error_code=first_error.code,
        error=str(first_error),
    )


def normalize_entity(
    entity: Entity,
    policy: MappingPolicy,
    *,
    reference: Reference = None,
) -> Entity:
    """Return a superseding entity carrying the normalization outcome."""

    outcome = normalize(entity, policy, reference=reference)
    return entity.model_copy(
        update={
            "normalized_value": outcome.value,
            "validated": outcome.validated,
            "error_code": outcome.error_code,
            "error": outcome.error,
        }
    )


def _safe_collapse(text: str) -> str:
    return " ".join(text.split())
