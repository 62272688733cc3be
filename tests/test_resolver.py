from __future__ import annotations

from collections.abc import Sequence

import pytest

from formmap.mapping.models import (
    Entity,
    FieldDescriptor,
    FilledField,
    FormatSpec,
    ResolutionResult,
)
from formmap.mapping.normalizer import normalize_entity
from formmap.mapping.resolver import resolve
from formmap.mapping.scorer import score
from formmap.policy.loader import load_policy
from formmap.policy.models import MappingPolicy


def _entity(entity_id: str, entity_type: str, raw_text: str, **overrides: object) -> Entity:
    payload: dict[str, object] = {
        "id": entity_id,
        "type": entity_type,
        "raw_text": raw_text,
        "confidence": 1.0,
    }
    payload.update(overrides)
    return Entity.model_validate(payload)


def _field(field_id: str, expected_type: str, *labels: str, **overrides: object) -> FieldDescriptor:
    payload: dict[str, object] = {
        "id": field_id,
        "expected_type": expected_type,
        "label_tokens": list(labels),
    }
    payload.update(overrides)
    return FieldDescriptor.model_validate(payload)


def _run(
    entities: Sequence[Entity],
    fields: Sequence[FieldDescriptor],
    *,
    policy: MappingPolicy | None = None,
    pinned: Sequence[FilledField] = (),
) -> ResolutionResult:
    active = policy or load_policy()
    normalized = [normalize_entity(entity, active) for entity in entities]
    candidates = score(normalized, fields, active)
    return resolve(candidates, normalized, fields, active, pinned=pinned)


def test_resolve_spoken_phone_to_mobile_field() -> None:
    result = _run(
        [
            _entity(
                "e1",
                "phone",
                "nine eight seven six five four three two one zero",
                normalized_value="9876543210",
                confidence=0.92,
            )
        ],
        [_field("f1", "phone", "mobile", "number")],
    )

    assert len(result.filled_fields) == 1
    filled = result.filled_fields[0]
    assert filled.field_id == "f1"
    assert filled.value == "9876543210"
    assert filled.confidence == pytest.approx(0.92)
    assert filled.provenance == "e1"
    assert filled.origin == "resolver"
    assert result.clarifications == []
    assert result.unmatched == []


def test_tied_address_fields_produce_one_clarification() -> None:
    result = _run(
        [_entity("e1", "address", "12 MG Road, Bengaluru", confidence=0.95)],
        [
            _field("current_address", "address", "current", "address", required=True),
            _field("permanent_address", "address", "permanent", "address", required=True),
        ],
    )

    assert result.filled_fields == []
    assert len(result.clarifications) == 1
    request = result.clarifications[0]
    assert request.reason == "ambiguous_fields"
    assert request.subject_entity_id == "e1"
    assert request.competing_field_ids == ("current_address", "permanent_address")
    assert request.id.startswith("clr-")
    # pending clarification, not unresolved
    assert result.unresolved_required == []


def test_invalid_phone_is_kept_unmatched_with_error() -> None:
    result = _run(
        [_entity("e1", "phone", "12345")],
        [_field("f1", "phone", "mobile", required=True)],
    )

    assert result.filled_fields == []
    assert result.clarifications == []
    assert len(result.unmatched) == 1
    leftover = result.unmatched[0]
    assert leftover.entity_id == "e1"
    assert leftover.reason == "invalid"
    assert leftover.error_code == "FORMAT_ERROR"
    assert leftover.candidate_field_ids == ("f1",)
    assert result.unresolved_required == ["f1"]


def test_answers_in_form_order_are_committed() -> None:
    result = _run(
        [
            _entity("e1", "phone", "9876543210", source_span={"utterance": 0}),
            _entity("e2", "phone", "9123456780", source_span={"utterance": 1}),
        ],
        [_field("mobile", "phone"), _field("alternate", "phone")],
    )

    assert [(item.field_id, item.provenance) for item in result.filled_fields] == [
        ("mobile", "e1"),
        ("alternate", "e2"),
    ]
    assert result.clarifications == []


def test_two_confident_entities_for_one_field_ask_which_entity() -> None:
    result = _run(
        [
            _entity("e1", "phone", "9876543210", confidence=0.95),
            _entity("e2", "phone", "9123456780", confidence=0.93, source_span={"utterance": 1}),
        ],
        [_field("f1", "phone")],
    )

    assert result.filled_fields == []
    assert len(result.clarifications) == 1
    request = result.clarifications[0]
    assert request.reason == "ambiguous_entities"
    assert request.subject_field_id == "f1"
    assert request.competing_entity_ids == ("e1", "e2")
    assert result.unmatched == []


def test_low_confidence_pair_asks_for_confirmation() -> None:
    result = _run([_entity("e1", "phone", "9876543210", confidence=0.7)], [_field("f1", "phone")])

    assert result.filled_fields == []
    assert [(item.reason, item.subject_entity_id) for item in result.clarifications] == [
        ("low_confidence", "e1")
    ]
    assert result.clarifications[0].competing_field_ids == ("f1",)


def test_below_minimum_consideration_is_unmatched() -> None:
    result = _run([_entity("e1", "phone", "9876543210", confidence=0.3)], [_field("f1", "phone")])

    assert result.filled_fields == []
    assert result.clarifications == []
    assert [(item.entity_id, item.reason) for item in result.unmatched] == [
        ("e1", "below_threshold")
    ]


def test_unmatched_reasons_for_leftover_entities() -> None:
    result = _run(
        [
            _entity("e1", "phone", "9876543210"),
            _entity("e2", "phone", "9123456780", confidence=0.5, source_span={"utterance": 1}),
            _entity("e3", "email", "ravi@gmail.com", source_span={"utterance": 2}),
            _entity("e4", "unknown", "blue", source_span={"utterance": 3}),
        ],
        [_field("f1", "phone")],
    )

    assert [item.field_id for item in result.filled_fields] == ["f1"]
    assert [(item.entity_id, item.reason) for item in result.unmatched] == [
        ("e2", "fields_taken"),
        ("e3", "no_compatible_field"),
        ("e4", "unknown_type"),
    ]


def test_format_contract_mismatch_is_never_committed() -> None:
    result = _run(
        [_entity("e1", "phone", "9876543210")],
        [_field("f1", "phone", format_spec=FormatSpec(max_length=5))],
    )

    assert result.filled_fields == []
    assert [item.reason for item in result.clarifications] == ["format_mismatch"]


def test_pinned_manual_value_survives_and_blocks_field() -> None:
    manual = FilledField(
        field_id="f1",
        value="9000000000",
        confidence=1.0,
        provenance="manual",
        validated=True,
        origin="manual",
    )
    result = _run(
        [_entity("e1", "phone", "9876543210")],
        [_field("f1", "phone")],
        pinned=[manual],
    )

    assert result.filled_fields == [manual]
    assert [(item.entity_id, item.reason) for item in result.unmatched] == [
        ("e1", "fields_taken")
    ]


def test_thresholds_come_from_policy() -> None:
    policy = load_policy().model_copy(update={"confident_threshold": 0.6})
    result = _run(
        [_entity("e1", "phone", "9876543210", confidence=0.7)],
        [_field("f1", "phone")],
        policy=policy,
    )

    assert [item.field_id for item in result.filled_fields] == ["f1"]


def test_resolve_is_deterministic() -> None:
    entities = [
        _entity("e1", "address", "12 MG Road, Bengaluru"),
        _entity("e2", "address", "4 Park Street, Kolkata", source_span={"utterance": 1}),
        _entity("e3", "phone", "9876543210", confidence=0.75, source_span={"utterance": 2}),
    ]
    fields = [
        _field("current_address", "current_address", "current", "address", required=True),
        _field("permanent_address", "permanent_address", "permanent", "address"),
        _field("mobile", "phone", "mobile", required=True),
    ]

    first = _run(entities, fields)
    second = _run(entities, fields)
    assert first.model_dump() == second.model_dump()
