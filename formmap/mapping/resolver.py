"""Greedy, margin-aware assignment of scored candidates to form fields.

The resolver never maximizes total score; it commits a pair only when the
pair is confident and has no close competitor, and turns everything else in
the consideration band into a clarification request.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from formmap.mapping.decomposition import assign_components
from formmap.mapping.models import (
    UNKNOWN_TYPE,
    ClarificationReason,
    ClarificationRequest,
    Entity,
    FieldDescriptor,
    FilledField,
    MappingCandidate,
    ResolutionResult,
    UnmatchedEntity,
)
from formmap.mapping.scorer import entity_order_key, field_order_key
from formmap.policy.models import MappingPolicy

_EPSILON = 1e-9


@dataclass
class AssignmentState:
    """Mutable bookkeeping for one resolver pass."""

    committed_fields: set[str] = field(default_factory=set)
    used_entities: set[str] = field(default_factory=set)
    held_fields: set[str] = field(default_factory=set)
    held_entities: set[str] = field(default_factory=set)
    processed_entities: set[str] = field(default_factory=set)

    def entity_is_free(self, entity_id: str) -> bool:
        return (
            entity_id not in self.processed_entities
            and entity_id not in self.used_entities
            and entity_id not in self.held_entities
        )


def candidate_sort_key(
    candidate: MappingCandidate,
    fields_by_id: dict[str, tuple[int, FieldDescriptor]],
    entities_by_id: dict[str, tuple[int, Entity]],
) -> tuple[float, int, tuple[int, int], tuple[int, int, int], str, str]:
    """Score desc, required first, earlier reading order, earlier utterance order."""

    field_index, descriptor = fields_by_id[candidate.field_id]
    entity_index, entity = entities_by_id[candidate.entity_id]
    return (
        -candidate.score,
        0 if descriptor.required else 1,
        field_order_key(descriptor, field_index),
        entity_order_key(entity, entity_index),
        candidate.field_id,
        candidate.entity_id,
    )


def resolve(
    candidates: Sequence[MappingCandidate],
    entities: Sequence[Entity],
    fields: Sequence[FieldDescriptor],
    policy: MappingPolicy,
    *,
    pinned: Sequence[FilledField] = (),
) -> ResolutionResult:
    """Resolve scored candidates into filled fields and clarification requests.

    Args:
        candidates: Output of one scoring pass.
        entities: Normalized entities of the session.
        fields: Field descriptors of the session.
        policy: Thresholds and margins.
        pinned: Already accepted fields (manual edits) that must survive as-is.

    Returns:
        ResolutionResult with fields in reading order, clarifications in
        creation order, unmatched entities in utterance order and unresolved
        required field ids in reading order.
    """

    entities_by_id = {entity.id: (index, entity) for index, entity in enumerate(entities)}
    fields_by_id = {descriptor.id: (index, descriptor) for index, descriptor in enumerate(fields)}

    state = AssignmentState()
    filled: dict[str, FilledField] = {}
    for item in pinned:
        filled[item.field_id] = item
        state.committed_fields.add(item.field_id)
        if not item.is_manual:
            state.used_entities.add(item.provenance)

    by_entity: dict[str, list[MappingCandidate]] = {}
    by_field: dict[str, list[MappingCandidate]] = {}
    for candidate in candidates:
        by_entity.setdefault(candidate.entity_id, []).append(candidate)
        by_field.setdefault(candidate.field_id, []).append(candidate)

    ordered = sorted(
        candidates, key=lambda item: candidate_sort_key(item, fields_by_id, entities_by_id)
    )

    clarifications: list[ClarificationRequest] = []
    unmatched: dict[str, UnmatchedEntity] = {}

    for candidate in ordered:
        entity_id, field_id = candidate.entity_id, candidate.field_id
        if not state.entity_is_free(entity_id) or field_id in state.committed_fields:
            continue

        # first reachable pair is the entity's best available field
        state.processed_entities.add(entity_id)
        entity = entities_by_id[entity_id][1]
        if not entity.validated:
            unmatched[entity_id] = UnmatchedEntity(
                entity_id=entity_id,
                reason="invalid",
                error_code=entity.error_code,
                error=entity.error,
                candidate_field_ids=_open_fields_by_score(by_entity[entity_id], state),
            )
            continue
        if candidate.score < policy.minimum_consideration:
            unmatched[entity_id] = UnmatchedEntity(entity_id=entity_id, reason="below_threshold")
            continue

        entity_rivals = [
            other.field_id
            for other in by_entity[entity_id]
            if other.field_id != field_id
            and other.field_id not in state.committed_fields
            and candidate.score - other.score <= policy.ambiguity_margin + _EPSILON
        ]
        field_rivals = [
            other.entity_id
            for other in by_field[field_id]
            if other.entity_id != entity_id
            and state.entity_is_free(other.entity_id)
            and entities_by_id[other.entity_id][1].validated
            and other.score >= policy.minimum_consideration
            and candidate.score - other.score <= policy.ambiguity_margin + _EPSILON
        ]
        format_ok = "format_mismatch" not in candidate.reason_codes
        contested = field_id in state.held_fields
        confident = candidate.score >= policy.confident_threshold

        if confident and format_ok and not (entity_rivals or field_rivals or contested):
            filled[field_id] = FilledField(
                field_id=field_id,
                value=entity.normalized_value or entity.raw_text,
                confidence=candidate.score,
                provenance=entity_id,
                validated=True,
                origin="resolver",
            )
            state.committed_fields.add(field_id)
            state.used_entities.add(entity_id)
            continue

        if confident and format_ok and field_rivals and not (entity_rivals or contested):
            competing_entities = _in_utterance_order([entity_id, *field_rivals], entities_by_id)
            clarifications.append(
                ClarificationRequest.build(
                    subject_field_id=field_id,
                    competing_entity_ids=competing_entities,
                    reason="ambiguous_entities",
                )
            )
            state.held_fields.add(field_id)
            state.held_entities.update(competing_entities)
            continue

        reason: ClarificationReason
        if entity_rivals:
            reason = "ambiguous_fields"
        elif contested:
            reason = "contested_field"
        elif not format_ok:
            reason = "format_mismatch"
        else:
            reason = "low_confidence"
        competing_fields = _in_reading_order([field_id, *entity_rivals], fields_by_id)
        clarifications.append(
            ClarificationRequest.build(
                subject_entity_id=entity_id,
                competing_field_ids=competing_fields,
                reason=reason,
            )
        )
        state.held_entities.add(entity_id)
        state.held_fields.update(competing_fields)

    component_filled, component_clarifications = assign_components(
        entities, fields, policy, state
    )
    for item in component_filled:
        filled[item.field_id] = item
    clarifications.extend(component_clarifications)

    for entity_id in state.used_entities | state.held_entities:
        unmatched.pop(entity_id, None)
    for entity in entities:
        if entity.id in unmatched or not state.entity_is_free(entity.id):
            continue
        unmatched[entity.id] = _leftover(entity, by_entity.get(entity.id, []), state)

    ordered_filled = sorted(
        filled.values(), key=lambda item: _field_key(fields_by_id, item.field_id)
    )
    named_fields = {
        field_id
        for request in clarifications
        for field_id in (request.subject_field_id, *request.competing_field_ids)
        if field_id is not None
    }
    unresolved = [
        descriptor.id
        for _, descriptor in sorted(
            fields_by_id.values(), key=lambda item: field_order_key(item[1], item[0])
        )
        if descriptor.required
        and descriptor.id not in filled
        and descriptor.id not in named_fields
    ]
    return ResolutionResult(
        filled_fields=ordered_filled,
        clarifications=clarifications,
        unmatched=[
            unmatched[entity.id]
            for index, entity in sorted(
                enumerate(entities), key=lambda item: entity_order_key(item[1], item[0])
            )
            if entity.id in unmatched
        ],
        unresolved_required=unresolved,
    )


def _leftover(
    entity: Entity, candidates: list[MappingCandidate], state: AssignmentState
) -> UnmatchedEntity:
    if entity.type == UNKNOWN_TYPE:
        return UnmatchedEntity(entity_id=entity.id, reason="unknown_type")
    if not entity.validated:
        return UnmatchedEntity(
            entity_id=entity.id,
            reason="invalid",
            error_code=entity.error_code,
            error=entity.error,
            candidate_field_ids=_open_fields_by_score(candidates, state),
        )
    if not candidates:
        return UnmatchedEntity(entity_id=entity.id, reason="no_compatible_field")
    return UnmatchedEntity(entity_id=entity.id, reason="fields_taken")


def _open_fields_by_score(
    candidates: list[MappingCandidate], state: AssignmentState
) -> tuple[str, ...]:
    ranked = sorted(candidates, key=lambda item: (-item.score, item.field_id))
    return tuple(
        item.field_id for item in ranked if item.field_id not in state.committed_fields
    )


def _in_reading_order(
    field_ids: list[str], fields_by_id: dict[str, tuple[int, FieldDescriptor]]
) -> list[str]:
    return sorted(dict.fromkeys(field_ids), key=lambda item: _field_key(fields_by_id, item))


def _in_utterance_order(
    entity_ids: list[str], entities_by_id: dict[str, tuple[int, Entity]]
) -> list[str]:
    return sorted(dict.fromkeys(entity_ids), key=lambda item: _entity_key(entities_by_id, item))


def _field_key(
    fields_by_id: dict[str, tuple[int, FieldDescriptor]], field_id: str
) -> tuple[int, int]:
    index, descriptor = fields_by_id[field_id]
    return field_order_key(descriptor, index)


def _entity_key(
    entities_by_id: dict[str, tuple[int, Entity]], entity_id: str
) -> tuple[int, int, int]:
    index, entity = entities_by_id[entity_id]
    return entity_order_key(entity, index)
