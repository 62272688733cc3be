"""Address decomposition: one address entity fanned out to component fields.

Component fields (``multiplicity="multi"`` with a ``component``) never take
part in generic scoring. They are filled here, after the resolver walk, from
the single free address entity compatible with their group.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import TYPE_CHECKING

from formmap.mapping.models import (
    AddressComponent,
    ClarificationRequest,
    Entity,
    FieldDescriptor,
    FilledField,
    FilledOrigin,
)
from formmap.mapping.scorer import entity_order_key, field_order_key, type_compatibility
from formmap.mapping.validators import validate_format_spec
from formmap.policy.models import MappingPolicy
from formmap.utils.errors import FormatError

if TYPE_CHECKING:
    from formmap.mapping.resolver import AssignmentState

_PINCODE_RE = re.compile(r"(?<!\d)[1-9]\d{5}(?!\d)")
_SPACED_PINCODE_RE = re.compile(r"(?<!\d)([1-9]\d{2})\s(\d{3})(?!\d)")

INDIAN_STATES = (
    "andaman and nicobar islands",
    "andhra pradesh",
    "arunachal pradesh",
    "assam",
    "bihar",
    "chandigarh",
    "chhattisgarh",
    "dadra and nagar haveli and daman and diu",
    "delhi",
    "goa",
    "gujarat",
    "haryana",
    "himachal pradesh",
    "jammu and kashmir",
    "jharkhand",
    "karnataka",
    "kerala",
    "ladakh",
    "lakshadweep",
    "madhya pradesh",
    "maharashtra",
    "manipur",
    "meghalaya",
    "mizoram",
    "nagaland",
    "odisha",
    "puducherry",
    "punjab",
    "rajasthan",
    "sikkim",
    "tamil nadu",
    "telangana",
    "tripura",
    "uttar pradesh",
    "uttarakhand",
    "west bengal",
)
# longest first so "west bengal" wins over a shorter overlapping name
_STATES_BY_LENGTH = sorted(INDIAN_STATES, key=len, reverse=True)


def decompose_address(text: str) -> dict[AddressComponent, str]:
    """Split a free-form Indian address into components.

    Comma-separated parts are read right to left: a 6-digit pincode, a known
    state name, then the city as the last remaining part. The first part is
    the street and anything in between is the locality. Components that
    cannot be found are absent from the result.
    """

    working = _SPACED_PINCODE_RE.sub(r"\1\2", " ".join(text.split()))
    components: dict[AddressComponent, str] = {}

    matches = list(_PINCODE_RE.finditer(working))
    if matches:
        last = matches[-1]
        components["pincode"] = last.group(0)
        working = working[: last.start()] + working[last.end() :]

    parts = [part.strip(" -") for part in working.split(",")]
    parts = [part for part in parts if part]

    if parts:
        state, remainder = _split_state(parts[-1])
        if state is not None:
            components["state"] = state
            if remainder:
                parts[-1] = remainder
            else:
                parts.pop()

    if len(parts) >= 2:
        components["city"] = parts.pop()
    if parts:
        components["street"] = parts[0]
    if len(parts) > 1:
        components["locality"] = ", ".join(parts[1:])
    return components


def _split_state(part: str) -> tuple[str | None, str]:
    lowered = part.lower()
    for name in _STATES_BY_LENGTH:
        if lowered == name:
            return part, ""
        if lowered.endswith(" " + name):
            cut = len(part) - len(name)
            return part[cut:], part[:cut].strip()
    return None, part


def component_groups(fields: Sequence[FieldDescriptor]) -> dict[str, list[FieldDescriptor]]:
    """Component fields keyed by group, each group in reading order."""

    groups: dict[str, list[tuple[tuple[int, int], FieldDescriptor]]] = {}
    for index, descriptor in enumerate(fields):
        if descriptor.is_component:
            groups.setdefault(descriptor.component_group, []).append(
                (field_order_key(descriptor, index), descriptor)
            )
    return {
        name: [descriptor for _, descriptor in sorted(members, key=lambda item: item[0])]
        for name, members in sorted(groups.items(), key=lambda item: min(m[0] for m in item[1]))
    }


def fill_components(
    entity: Entity,
    group_fields: Sequence[FieldDescriptor],
    *,
    origin: FilledOrigin = "decomposition",
    confidence: float | None = None,
) -> list[FilledField]:
    """Decompose ``entity`` into the open fields of one component group.

    Components that are missing from the address or that break a field's
    format contract are left unfilled.
    """

    value = entity.normalized_value or entity.raw_text
    components = decompose_address(value)
    filled: list[FilledField] = []
    for descriptor in group_fields:
        component = descriptor.component
        if component is None or component not in components:
            continue
        try:
            validate_format_spec(components[component], descriptor.format_spec)
        except FormatError:
            continue
        filled.append(
            FilledField(
                field_id=descriptor.id,
                value=components[component],
                confidence=entity.confidence if confidence is None else confidence,
                provenance=entity.id,
                validated=True,
                origin=origin,
                component=component,
            )
        )
    return filled


def assign_components(
    entities: Sequence[Entity],
    fields: Sequence[FieldDescriptor],
    policy: MappingPolicy,
    state: AssignmentState,
) -> tuple[list[FilledField], list[ClarificationRequest]]:
    """Fill component groups from free address entities.

    A group with exactly one candidate entity is filled from it. A group with
    several candidates yields one ``ambiguous_decomposition`` clarification
    whose subject is the group's first open field; the remaining open fields
    and the competing entities are named and held with it.
    """

    ordered_entities = [
        entity
        for _, entity in sorted(
            enumerate(entities), key=lambda item: entity_order_key(item[1], item[0])
        )
    ]
    filled: list[FilledField] = []
    clarifications: list[ClarificationRequest] = []

    for group_fields in component_groups(fields).values():
        open_fields = [
            descriptor
            for descriptor in group_fields
            if descriptor.id not in state.committed_fields
            and descriptor.id not in state.held_fields
        ]
        if not open_fields:
            continue
        group_type = group_fields[0].expected_type
        candidates = [
            entity
            for entity in ordered_entities
            if entity.validated
            and entity.confidence >= policy.minimum_consideration
            and entity.id not in state.used_entities
            and entity.id not in state.held_entities
            and type_compatibility(entity.type, group_type, policy) > 0
        ]
        if not candidates:
            continue
        if len(candidates) == 1:
            group_filled = fill_components(candidates[0], open_fields)
            if group_filled:
                filled.extend(group_filled)
                state.committed_fields.update(item.field_id for item in group_filled)
                state.used_entities.add(candidates[0].id)
            continue

        competing = [entity.id for entity in candidates]
        clarifications.append(
            ClarificationRequest.build(
                subject_field_id=open_fields[0].id,
                competing_field_ids=[descriptor.id for descriptor in open_fields[1:]],
                competing_entity_ids=competing,
                reason="ambiguous_decomposition",
            )
        )
        state.held_fields.update(descriptor.id for descriptor in open_fields)
        state.held_entities.update(competing)

    return filled, clarifications
