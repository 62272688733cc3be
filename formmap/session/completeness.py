"""Completeness evaluation over a session's fields and committed values."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from formmap.mapping.models import ClarificationRequest, FieldDescriptor, FilledField
from formmap.mapping.scorer import field_order_key
from formmap.session.models import Completeness

if TYPE_CHECKING:
    from formmap.session.state_machine import MappingSession


def evaluate_fields(
    fields: Sequence[FieldDescriptor],
    filled: Mapping[str, FilledField],
    clarifications: Iterable[ClarificationRequest],
    *,
    low_confidence_threshold: float,
) -> Completeness:
    """Compute completeness for ``fields`` given the committed values.

    A required field is unresolved when it has no value and no pending
    clarification names it. With no required fields the ratio is 1.0.
    """

    ordered = [
        descriptor
        for _, descriptor in sorted(
            enumerate(fields), key=lambda item: field_order_key(item[1], item[0])
        )
    ]
    named: set[str] = set()
    for request in clarifications:
        if request.subject_field_id is not None:
            named.add(request.subject_field_id)
        named.update(request.competing_field_ids)

    required = [descriptor for descriptor in ordered if descriptor.required]
    required_filled = sum(1 for descriptor in required if descriptor.id in filled)
    ratio = round(required_filled / len(required), 4) if required else 1.0

    return Completeness(
        completeness_ratio=ratio,
        required_total=len(required),
        required_filled=required_filled,
        unresolved_required=[
            descriptor.id
            for descriptor in required
            if descriptor.id not in filled and descriptor.id not in named
        ],
        low_confidence_fields=[
            descriptor.id
            for descriptor in ordered
            if descriptor.id in filled
            and filled[descriptor.id].confidence < low_confidence_threshold
        ],
        pending_clarification_fields=[
            descriptor.id for descriptor in ordered if descriptor.id in named
        ],
        invalid_fields=[
            descriptor.id
            for descriptor in ordered
            if descriptor.id in filled and not filled[descriptor.id].validated
        ],
    )


def evaluate(session: MappingSession) -> Completeness:
    """Completeness of one session under its own policy."""

    return evaluate_fields(
        session.fields,
        session.filled,
        session.clarifications,
        low_confidence_threshold=session.policy.low_confidence_threshold,
    )
