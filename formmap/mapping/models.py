"""Data models for entities, field descriptors, candidates and resolution output."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_TYPE = "unknown"
MANUAL_PROVENANCE = "manual"

Multiplicity = Literal["single", "multi"]
Charset = Literal[
    "latin",
    "devanagari",
    "bengali",
    "gurmukhi",
    "gujarati",
    "tamil",
    "telugu",
    "kannada",
    "malayalam",
    "latin_or_devanagari",
]
AddressComponent = Literal["street", "locality", "city", "state", "pincode"]
FilledOrigin = Literal["resolver", "manual", "clarification", "decomposition"]
ClarificationReason = Literal[
    "ambiguous_fields",
    "ambiguous_entities",
    "low_confidence",
    "contested_field",
    "format_mismatch",
    "ambiguous_decomposition",
]
UnmatchedReason = Literal[
    "below_threshold",
    "no_compatible_field",
    "unknown_type",
    "invalid",
    "released",
    "fields_taken",
]


class SourceSpan(BaseModel):
    """Location of an entity in the transcribed utterance sequence."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    utterance: int = Field(default=0, ge=0)
    start: int = Field(default=0, ge=0)
    end: int = Field(default=0, ge=0)


class Entity(BaseModel):
    """Typed, confidence-scored value extracted from user speech."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    type: str
    raw_text: str
    normalized_value: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    source_span: SourceSpan = SourceSpan()
    label_hints: tuple[str, ...] = ()
    validated: bool = False
    error_code: str | None = None
    error: str | None = None


class FormatSpec(BaseModel):
    """Field-side format contract handed over by form detection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    pattern: str | None = None
    max_length: int | None = Field(default=None, gt=0)
    charset: Charset | None = None


class FieldDescriptor(BaseModel):
    """Canonical slot in a target form."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    expected_type: str = Field(min_length=1)
    label_tokens: tuple[str, ...] = ()
    required: bool = False
    format_spec: FormatSpec | None = None
    multiplicity: Multiplicity = "single"
    component: AddressComponent | None = None
    group: str | None = None
    reading_order: int | None = None

    @property
    def is_component(self) -> bool:
        return self.component is not None and self.multiplicity == "multi"

    @property
    def component_group(self) -> str:
        return self.group or "address"


class MappingCandidate(BaseModel):
    """Scored (entity, field) pair produced by one scoring pass."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entity_id: str
    field_id: str
    score: float = Field(ge=0.0, le=1.0)
    reason_codes: tuple[str, ...] = ()


class FilledField(BaseModel):
    """Resolved value for one field."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field_id: str
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    provenance: str
    validated: bool
    origin: FilledOrigin
    component: AddressComponent | None = None

    @property
    def is_manual(self) -> bool:
        return self.provenance == MANUAL_PROVENANCE


class ClarificationRequest(BaseModel):
    """User-facing disambiguation request blocking one or more pairs."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    subject_entity_id: str | None = None
    subject_field_id: str | None = None
    competing_field_ids: tuple[str, ...] = ()
    competing_entity_ids: tuple[str, ...] = ()
    reason: ClarificationReason

    @classmethod
    def build(
        cls,
        *,
        reason: ClarificationReason,
        subject_entity_id: str | None = None,
        subject_field_id: str | None = None,
        competing_field_ids: Sequence[str] = (),
        competing_entity_ids: Sequence[str] = (),
    ) -> ClarificationRequest:
        """Build a request whose id is derived from its content."""

        payload = {
            "entity": subject_entity_id,
            "field": subject_field_id,
            "fields": list(competing_field_ids),
            "entities": list(competing_entity_ids),
        }
        digest = hashlib.sha256(
            json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).hexdigest()
        return cls(
            id=f"clr-{digest[:12]}",
            subject_entity_id=subject_entity_id,
            subject_field_id=subject_field_id,
            competing_field_ids=tuple(competing_field_ids),
            competing_entity_ids=tuple(competing_entity_ids),
            reason=reason,
        )

    def names_field(self, field_id: str) -> bool:
        return self.subject_field_id == field_id or field_id in self.competing_field_ids


class UnmatchedEntity(BaseModel):
    """Entity left over after resolution, surfaced as data rather than a question."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entity_id: str
    reason: UnmatchedReason
    error_code: str | None = None
    error: str | None = None
    candidate_field_ids: tuple[str, ...] = ()


class ResolutionResult(BaseModel):
    """Output of one resolver pass."""

    model_config = ConfigDict(extra="forbid")

    filled_fields: list[FilledField] = Field(default_factory=list)
    clarifications: list[ClarificationRequest] = Field(default_factory=list)
    unmatched: list[UnmatchedEntity] = Field(default_factory=list)
    unresolved_required: list[str] = Field(default_factory=list)


class NormalizationOutcome(BaseModel):
    """Normalized value plus validation outcome for one raw value."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    value: str | None
    validated: bool
    error_code: str | None = None
    error: str | None = None
