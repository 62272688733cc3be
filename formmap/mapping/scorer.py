"""Candidate scorer computing compatibility for every (entity, field) pair."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from rapidfuzz import fuzz

from formmap.mapping.models import UNKNOWN_TYPE, Entity, FieldDescriptor, MappingCandidate
from formmap.mapping.validators import validate_format_spec
from formmap.policy.models import MappingPolicy
from formmap.utils.errors import FormatError

_WORD_RE = re.compile(r"[a-z0-9]+")
_SCORE_DIGITS = 4


@dataclass(frozen=True)
class LabelMatch:
    """Label similarity with the strongest kind of token match that produced it."""

    similarity: float
    kind: str  # "exact" | "synonym" | "fuzzy" | "none"


def entity_order_key(entity: Entity, index: int) -> tuple[int, int, int]:
    """Utterance order: utterance number, span start, then input position."""

    return (entity.source_span.utterance, entity.source_span.start, index)


def field_order_key(field: FieldDescriptor, index: int) -> tuple[int, int]:
    """Reading order: declared position when given, else input position."""

    return (field.reading_order if field.reading_order is not None else index, index)


def type_compatibility(entity_type: str, field_type: str, policy: MappingPolicy) -> float:
    """Return 1.0 for exact types, supertype credit for related types, else 0."""

    if entity_type == UNKNOWN_TYPE or field_type == UNKNOWN_TYPE:
        return 0.0
    if entity_type == field_type:
        return 1.0
    if entity_type in policy.ancestors(field_type) or field_type in policy.ancestors(entity_type):
        return policy.supertype_credit
    return 0.0


def label_tokens(words: Sequence[str], policy: MappingPolicy) -> list[str]:
    """Lowercase word tokens with stop words removed (kept when nothing else remains)."""

    tokens = [token for word in words for token in _WORD_RE.findall(word.lower())]
    stop_words = set(policy.stop_words)
    content = [token for token in tokens if token not in stop_words]
    return content or tokens


def label_similarity(
    hints: Sequence[str], labels: Sequence[str], policy: MappingPolicy
) -> LabelMatch:
    """Symmetric token-overlap similarity between entity hints and field label tokens.

    Each token on either side takes its best match on the other side (exact 1.0,
    synonym credit, fuzzy spelling credit); the two per-side means are averaged.
    """

    hint_tokens = label_tokens(hints, policy)
    field_tokens = label_tokens(labels, policy)
    if not hint_tokens or not field_tokens:
        return LabelMatch(0.0, "none")

    synonym_index = _synonym_index(policy)
    strongest = "none"
    rank = {"none": 0, "fuzzy": 1, "synonym": 2, "exact": 3}

    def best(token: str, others: list[str]) -> float:
        nonlocal strongest
        best_score = 0.0
        best_kind = "none"
        for other in others:
            score, kind = _token_match(token, other, synonym_index, policy)
            if score > best_score:
                best_score, best_kind = score, kind
        if rank[best_kind] > rank[strongest]:
            strongest = best_kind
        return best_score

    hint_side = sum(best(token, field_tokens) for token in hint_tokens) / len(hint_tokens)
    field_side = sum(best(token, hint_tokens) for token in field_tokens) / len(field_tokens)
    return LabelMatch((hint_side + field_side) / 2, strongest)


def _token_match(
    left: str,
    right: str,
    synonym_index: dict[str, set[int]],
    policy: MappingPolicy,
) -> tuple[float, str]:
    if left == right:
        return 1.0, "exact"
    if synonym_index.get(left, set()) & synonym_index.get(right, set()):
        return policy.synonym_credit, "synonym"
    if min(len(left), len(right)) >= 4 and fuzz.ratio(left, right) >= policy.fuzzy_min_ratio:
        return policy.fuzzy_credit, "fuzzy"
    return 0.0, "none"


def _synonym_index(policy: MappingPolicy) -> dict[str, set[int]]:
    index: dict[str, set[int]] = {}
    for group_id, group in enumerate(policy.synonyms):
        for word in group:
            index.setdefault(word, set()).add(group_id)
    return index


def score(
    entities: Sequence[Entity],
    fields: Sequence[FieldDescriptor],
    policy: MappingPolicy,
) -> list[MappingCandidate]:
    """Score every type-compatible (entity, field) pair.

    Rules:
    - Pairs with zero type compatibility are excluded, not scored low.
    - ``unknown`` entities and decomposition component fields are never scored.
    - Without entity label hints the label weight is dropped and the remaining
      weights are renormalized.
    - The weighted sum is clamped to [0, 1], scaled by the entity's extraction
      confidence and rounded, so repeated passes are byte-identical.
    - Output order is entity utterance order, then field reading order.
    """

    ordered_entities = sorted(
        enumerate(entities), key=lambda item: entity_order_key(item[1], item[0])
    )
    ordered_fields = sorted(
        ((index, field) for index, field in enumerate(fields) if not field.is_component),
        key=lambda item: field_order_key(item[1], item[0]),
    )

    compat: dict[tuple[str, str], float] = {}
    for _, entity in ordered_entities:
        for _, field in ordered_fields:
            value = type_compatibility(entity.type, field.expected_type, policy)
            if value > 0:
                compat[(entity.id, field.id)] = value

    entity_rank = _compatible_ranks(
        [entity.id for _, entity in ordered_entities],
        [field.id for _, field in ordered_fields],
        compat,
        by_first=True,
    )
    field_rank = _compatible_ranks(
        [field.id for _, field in ordered_fields],
        [entity.id for _, entity in ordered_entities],
        compat,
        by_first=False,
    )

    candidates: list[MappingCandidate] = []
    for _, entity in ordered_entities:
        for _, field in ordered_fields:
            type_score = compat.get((entity.id, field.id), 0.0)
            if type_score <= 0:
                continue

            reasons: list[str] = ["type_exact" if type_score >= 1.0 else "type_supertype"]
            context = _context_alignment(
                entity_rank.get((field.id, entity.id)), field_rank.get((entity.id, field.id))
            )
            reasons.append("order_aligned" if context >= 1.0 else "order_misaligned")

            weights = policy.weights
            if entity.label_hints:
                match = label_similarity(entity.label_hints, field.label_tokens, policy)
                reasons.append(f"label_{match.kind}" if match.kind != "none" else "label_mismatch")
                total_weight = weights.type + weights.label + weights.context
                combined = (
                    weights.type * type_score
                    + weights.label * match.similarity
                    + weights.context * context
                ) / total_weight
            else:
                reasons.append("label_absent")
                total_weight = weights.type + weights.context
                combined = (
                    (weights.type * type_score + weights.context * context) / total_weight
                    if total_weight > 0
                    else 0.0
                )

            combined = min(1.0, max(0.0, combined)) * entity.confidence

            if not entity.validated:
                reasons.append("entity_invalid")
            elif not _meets_format_spec(entity, field):
                reasons.append("format_mismatch")

            candidates.append(
                MappingCandidate(
                    entity_id=entity.id,
                    field_id=field.id,
                    score=round(combined, _SCORE_DIGITS),
                    reason_codes=tuple(reasons),
                )
            )
    return candidates


def _compatible_ranks(
    outer_ids: list[str],
    inner_ids: list[str],
    compat: dict[tuple[str, str], float],
    *,
    by_first: bool,
) -> dict[tuple[str, str], tuple[int, int]]:
    """Rank of each outer item among outer items compatible with one inner item.

    Returns ``{(inner_id, outer_id): (rank, group_size)}``.
    """

    ranks: dict[tuple[str, str], tuple[int, int]] = {}
    for inner in inner_ids:
        group = [
            outer
            for outer in outer_ids
            if (compat.get((outer, inner)) if by_first else compat.get((inner, outer)))
        ]
        for rank, outer in enumerate(group):
            ranks[(inner, outer)] = (rank, len(group))
    return ranks


def _context_alignment(
    entity_position: tuple[int, int] | None, field_position: tuple[int, int] | None
) -> float:
    """Monotonic order preference in [0, 1].

    Compares the entity's relative rank among entities compatible with the
    field to the field's relative rank among fields compatible with the
    entity. With fewer than two on either side there is no order evidence to
    contradict, so the alignment is full.
    """

    if entity_position is None or field_position is None:
        return 1.0
    entity_rank, entity_count = entity_position
    field_rank, field_count = field_position
    if entity_count < 2 or field_count < 2:
        return 1.0
    relative_entity = entity_rank / (entity_count - 1)
    relative_field = field_rank / (field_count - 1)
    return 1.0 - abs(relative_entity - relative_field)


def _meets_format_spec(entity: Entity, field: FieldDescriptor) -> bool:
    if field.format_spec is None or entity.normalized_value is None:
        return True
    try:
        validate_format_spec(entity.normalized_value, field.format_spec)
    except FormatError:
        return False
    return True
