"""Session-level report models."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from formmap.mapping.models import (
    ClarificationRequest,
    Entity,
    FieldDescriptor,
    FilledField,
    UnmatchedEntity,
)

SessionState = Literal[
    "idle",
    "extracted",
    "mapped",
    "awaiting_confirmation",
    "confirmed",
    "finalized",
    "rejected",
]
BlockedReason = Literal["pending_clarifications", "unresolved_required", "not_mapped"]

TERMINAL_STATES: frozenset[str] = frozenset({"finalized", "rejected"})


class Completeness(BaseModel):
    """Advisory completeness summary; never blocks a transition by itself."""

    model_config = ConfigDict(extra="forbid")

    completeness_ratio: float
    required_total: int
    required_filled: int
    unresolved_required: list[str] = Field(default_factory=list)
    low_confidence_fields: list[str] = Field(default_factory=list)
    pending_clarification_fields: list[str] = Field(default_factory=list)
    invalid_fields: list[str] = Field(default_factory=list)


class Transition(BaseModel):
    """One audited state change."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    from_state: SessionState
    to_state: SessionState
    operation: str


class SessionSnapshot(BaseModel):
    """Read view of a session handed to the surrounding UI layer."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    state: SessionState
    filled_fields: list[FilledField] = Field(default_factory=list)
    clarifications: list[ClarificationRequest] = Field(default_factory=list)
    unmatched: list[UnmatchedEntity] = Field(default_factory=list)
    completeness: Completeness


class ConfirmResult(BaseModel):
    """Outcome of an explicit user confirmation."""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    state: SessionState
    blocked_reason: BlockedReason | None = None
    unresolved_required: list[str] = Field(default_factory=list)
    clarification_ids: list[str] = Field(default_factory=list)


class FilledForm(BaseModel):
    """Confirmed field values handed to the downstream renderer."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    filled_fields: list[FilledField] = Field(default_factory=list)
    empty_field_ids: list[str] = Field(default_factory=list)

    def values(self) -> dict[str, str]:
        return {item.field_id: item.value for item in self.filled_fields}


class FinalizeResult(BaseModel):
    """Outcome of a finalize attempt."""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    state: SessionState
    retryable: bool = False
    output: str | None = None
    error: str | None = None


class SessionRecord(BaseModel):
    """Opaque structured record handed to the storage layer."""

    model_config = ConfigDict(extra="forbid")

    session_id: str
    state: SessionState
    reference_time: datetime | date | None = None
    entities: list[Entity] = Field(default_factory=list)
    field_descriptors: list[FieldDescriptor] = Field(default_factory=list)
    filled_fields: list[FilledField] = Field(default_factory=list)
    clarifications: list[ClarificationRequest] = Field(default_factory=list)
    unmatched: list[UnmatchedEntity] = Field(default_factory=list)
    completeness: Completeness
    history: list[Transition] = Field(default_factory=list)


class ManualEdit(BaseModel):
    """Explicit ``(field_id, value)`` edit from the review UI."""

    model_config = ConfigDict(extra="forbid")

    field_id: str = Field(min_length=1)
    value: str


class ClarificationAnswer(BaseModel):
    """User's answer to one clarification; ``choice=None`` declines every option."""

    model_config = ConfigDict(extra="forbid")

    clarification_id: str = Field(min_length=1)
    choice: str | None = None
