"""Mapping session state machine with incremental edits.

States: idle -> extracted -> mapped -> awaiting_confirmation -> confirmed ->
finalized, plus the terminal side state rejected. Any non-terminal state
accepts edits, which re-enter mapped without re-running the resolver.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime

from formmap.mapping.decomposition import fill_components
from formmap.mapping.models import (
    MANUAL_PROVENANCE,
    ClarificationRequest,
    Entity,
    FieldDescriptor,
    FilledField,
    MappingCandidate,
    UnmatchedEntity,
)
from formmap.mapping.normalizer import normalize_entity, normalize_value
from formmap.mapping.resolver import resolve
from formmap.mapping.scorer import entity_order_key, field_order_key, score
from formmap.mapping.validators import validate_format_spec
from formmap.policy.models import MappingPolicy
from formmap.session.completeness import evaluate
from formmap.session.models import (
    TERMINAL_STATES,
    Completeness,
    ConfirmResult,
    FilledForm,
    FinalizeResult,
    SessionRecord,
    SessionSnapshot,
    SessionState,
    Transition,
)
from formmap.session.rendering import FormRenderer
from formmap.utils.errors import RenderError, SessionStateError, ValidationFailure


class MappingSession:
    """One form-filling session; not thread-safe, see ``SessionManager``."""

    def __init__(
        self,
        session_id: str,
        fields: Sequence[FieldDescriptor],
        policy: MappingPolicy,
        *,
        reference: datetime | date | None = None,
    ) -> None:
        self.id = session_id
        self.fields: tuple[FieldDescriptor, ...] = tuple(fields)
        self.policy = policy
        self.reference = reference
        self.state: SessionState = "idle"
        self.entities: tuple[Entity, ...] = ()
        self.candidates: list[MappingCandidate] = []
        self.filled: dict[str, FilledField] = {}
        self.clarifications: list[ClarificationRequest] = []
        self.unmatched: list[UnmatchedEntity] = []
        self.history: list[Transition] = []
        self._field_index = {descriptor.id: index for index, descriptor in enumerate(self.fields)}

    # ------------------------------------------------------------------ mapping

    def supply_entities(self, entities: Sequence[Entity]) -> None:
        """Accept a (possibly late or repeated) extraction and map it.

        A repeated extraction supersedes the previous entity set. Manual values
        and clarification answers whose entity is still present are pinned and
        everything else is resolved again.
        """

        self._require_open("supply_entities")
        self.entities = tuple(
            normalize_entity(entity, self.policy, reference=self.reference) for entity in entities
        )
        if self.state == "idle":
            self._transition("extracted", "supply_entities")
        self._map("supply_entities")

    def _map(self, operation: str) -> None:
        present = {entity.id for entity in self.entities}
        pinned = [
            item
            for item in self.filled.values()
            if item.is_manual or (item.origin == "clarification" and item.provenance in present)
        ]
        self.candidates = score(self.entities, self.fields, self.policy)
        result = resolve(self.candidates, self.entities, self.fields, self.policy, pinned=pinned)
        self.filled = {item.field_id: item for item in result.filled_fields}
        self.clarifications = list(result.clarifications)
        self.unmatched = list(result.unmatched)
        self._transition("mapped", operation)
        self._try_ready(operation)

    # -------------------------------------------------------------------- edits

    def apply_edit(self, field_id: str, value: str) -> None:
        """Commit a manual value for one field.

        Only the edited field and the clarifications naming it change; every
        other committed value is kept as-is.
        """

        self._require_open("apply_edit")
        descriptor = self._field(field_id)
        text = value.strip()
        if not text:
            raise ValueError(f"Edit value for field {field_id} must not be empty")

        normalized, validated = self._normalize_manual(descriptor, text)
        previous = self.filled.get(field_id)
        self.filled[field_id] = FilledField(
            field_id=field_id,
            value=normalized,
            confidence=1.0,
            provenance=MANUAL_PROVENANCE,
            validated=validated,
            origin="manual",
            component=descriptor.component,
        )

        removed = [request for request in self.clarifications if request.names_field(field_id)]
        self.clarifications = [
            request for request in self.clarifications if not request.names_field(field_id)
        ]
        released = [entity_id for request in removed for entity_id in _named_entities(request)]
        if previous is not None and not previous.is_manual:
            released.append(previous.provenance)
        self._release(released)

        if self.state in {"idle", "extracted"}:
            # the pending mapping pass runs now, with the edit pinned
            self._map("apply_edit")
            return
        self._transition("mapped", "apply_edit")
        self._try_ready("apply_edit")

    def _normalize_manual(self, descriptor: FieldDescriptor, text: str) -> tuple[str, bool]:
        try:
            value = normalize_value(
                descriptor.expected_type, text, self.policy, reference=self.reference
            )
            validate_format_spec(value, descriptor.format_spec)
        except ValidationFailure:
            return " ".join(text.split()), False
        return value, True

    def resolve_clarification(self, clarification_id: str, choice: str | None) -> None:
        """Apply the user's answer to one clarification.

        ``choice`` is a field id for entity-subject requests and an entity id
        for field-subject requests; ``None`` declines every option and
        releases the named entities.
        """

        self._require_open("resolve_clarification")
        request = self._clarification(clarification_id)

        chosen_fields: list[str] = []
        chosen_entities: list[str] = []
        if choice is not None:
            if request.subject_entity_id is not None:
                if choice not in request.competing_field_ids:
                    raise ValueError(
                        f"Field {choice} is not an option of clarification {clarification_id}"
                    )
                entity = self._entity(request.subject_entity_id)
                self.filled[choice] = self._fill_from(entity, self._field(choice))
                chosen_fields.append(choice)
            else:
                if choice not in request.competing_entity_ids:
                    raise ValueError(
                        f"Entity {choice} is not an option of clarification {clarification_id}"
                    )
                entity = self._entity(choice)
                if request.reason == "ambiguous_decomposition":
                    components = fill_components(
                        entity,
                        self._open_group_fields(request.subject_field_id),
                        origin="clarification",
                        confidence=1.0,
                    )
                    if not components:
                        raise ValueError(
                            f"Entity {choice} fills no open field of clarification "
                            f"{clarification_id}"
                        )
                    for item in components:
                        self.filled[item.field_id] = item
                        chosen_fields.append(item.field_id)
                else:
                    field_id = request.subject_field_id
                    if field_id is None:
                        raise ValueError(f"Clarification {clarification_id} names no field")
                    self.filled[field_id] = self._fill_from(entity, self._field(field_id))
                    chosen_fields.append(field_id)
            chosen_entities.append(entity.id)

        self.clarifications.remove(request)
        dropped = self._prune(chosen_fields, chosen_entities)
        self.unmatched = [item for item in self.unmatched if item.entity_id not in chosen_entities]
        self._release(
            entity_id
            for item in (request, *dropped)
            for entity_id in _named_entities(item)
            if entity_id not in chosen_entities
        )
        self._transition("mapped", "resolve_clarification")
        self._try_ready("resolve_clarification")

    def _fill_from(self, entity: Entity, descriptor: FieldDescriptor) -> FilledField:
        if descriptor.id in self.filled:
            raise ValueError(f"Field {descriptor.id} is already filled")
        value = entity.normalized_value or entity.raw_text
        validated = entity.validated
        if validated:
            try:
                validate_format_spec(value, descriptor.format_spec)
            except ValidationFailure:
                validated = False
        return FilledField(
            field_id=descriptor.id,
            value=value,
            confidence=1.0,
            provenance=entity.id,
            validated=validated,
            origin="clarification",
            component=descriptor.component,
        )

    def _open_group_fields(self, subject_field_id: str | None) -> list[FieldDescriptor]:
        group = self._field(subject_field_id or "").component_group
        return [
            descriptor
            for descriptor in self._fields_in_reading_order()
            if descriptor.is_component
            and descriptor.component_group == group
            and descriptor.id not in self.filled
        ]

    def _prune(
        self, chosen_fields: list[str], chosen_entities: list[str]
    ) -> list[ClarificationRequest]:
        """Drop the chosen field/entity from other requests; return the requests removed."""

        kept: list[ClarificationRequest] = []
        dropped: list[ClarificationRequest] = []
        for request in self.clarifications:
            if (
                request.subject_field_id in chosen_fields
                or request.subject_entity_id in chosen_entities
            ):
                dropped.append(request)
                continue
            fields_left = tuple(
                field_id
                for field_id in request.competing_field_ids
                if field_id not in chosen_fields
            )
            entities_left = tuple(
                entity_id
                for entity_id in request.competing_entity_ids
                if entity_id not in chosen_entities
            )
            if not fields_left and not entities_left:
                dropped.append(request)
                continue
            if (
                fields_left != request.competing_field_ids
                or entities_left != request.competing_entity_ids
            ):
                request = request.model_copy(
                    update={
                        "competing_field_ids": fields_left,
                        "competing_entity_ids": entities_left,
                    }
                )
            kept.append(request)
        self.clarifications = kept
        return dropped

    def _release(self, entity_ids: Iterable[str]) -> None:
        backing = {item.provenance for item in self.filled.values()}
        named = {
            entity_id for request in self.clarifications for entity_id in _named_entities(request)
        }
        listed = {item.entity_id for item in self.unmatched}
        known = {entity.id for entity in self.entities}
        for entity_id in dict.fromkeys(entity_ids):
            if entity_id in backing or entity_id in named or entity_id in listed:
                continue
            if entity_id not in known:
                continue
            self.unmatched.append(UnmatchedEntity(entity_id=entity_id, reason="released"))
            listed.add(entity_id)

        order = {
            entity.id: entity_order_key(entity, index) for index, entity in enumerate(self.entities)
        }
        self.unmatched.sort(key=lambda item: order[item.entity_id])

    # ------------------------------------------------------------- confirmation

    def confirm(self) -> ConfirmResult:
        """Explicit user confirmation; the only way into ``confirmed``."""

        self._require_open("confirm")
        if self.state == "awaiting_confirmation":
            self._transition("confirmed", "confirm")
        if self.state == "confirmed":
            return ConfirmResult(ok=True, state=self.state)
        if self.state in {"idle", "extracted"}:
            return ConfirmResult(ok=False, state=self.state, blocked_reason="not_mapped")

        completeness = self.completeness()
        return ConfirmResult(
            ok=False,
            state=self.state,
            blocked_reason=(
                "pending_clarifications" if self.clarifications else "unresolved_required"
            ),
            unresolved_required=completeness.unresolved_required,
            clarification_ids=[request.id for request in self.clarifications],
        )

    def finalize(self, renderer: FormRenderer) -> FinalizeResult:
        """Render the confirmed form; a renderer failure keeps ``confirmed``."""

        if self.state != "confirmed":
            raise SessionStateError(
                f"Cannot finalize a session in state {self.state}",
                state=self.state,
                operation="finalize",
            )
        try:
            output = renderer.render(self.filled_form())
        except RenderError as exc:
            return FinalizeResult(ok=False, state=self.state, retryable=True, error=str(exc))
        self._transition("finalized", "finalize")
        return FinalizeResult(ok=True, state=self.state, output=output)

    def cancel(self) -> None:
        """Move to ``rejected`` and drop candidates and clarifications."""

        if self.state == "finalized":
            raise SessionStateError(
                "Cannot cancel a finalized session", state=self.state, operation="cancel"
            )
        self.candidates = []
        self.clarifications = []
        self._transition("rejected", "cancel")

    # -------------------------------------------------------------------- views

    def completeness(self) -> Completeness:
        return evaluate(self)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.id,
            state=self.state,
            filled_fields=self._ordered_filled(),
            clarifications=list(self.clarifications),
            unmatched=list(self.unmatched),
            completeness=self.completeness(),
        )

    def filled_form(self) -> FilledForm:
        return FilledForm(
            session_id=self.id,
            filled_fields=self._ordered_filled(),
            empty_field_ids=[
                descriptor.id
                for descriptor in self._fields_in_reading_order()
                if descriptor.id not in self.filled
            ],
        )

    def export_record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self.id,
            state=self.state,
            reference_time=self.reference,
            entities=list(self.entities),
            field_descriptors=list(self.fields),
            filled_fields=self._ordered_filled(),
            clarifications=list(self.clarifications),
            unmatched=list(self.unmatched),
            completeness=self.completeness(),
            history=list(self.history),
        )

    # ------------------------------------------------------------------ helpers

    def _transition(self, target: SessionState, operation: str) -> None:
        if target == self.state:
            return
        self.history.append(Transition(from_state=self.state, to_state=target, operation=operation))
        self.state = target

    def _try_ready(self, operation: str) -> None:
        if self.state != "mapped" or self.clarifications:
            return
        if self.completeness().unresolved_required:
            return
        self._transition("awaiting_confirmation", operation)

    def _require_open(self, operation: str) -> None:
        if self.state in TERMINAL_STATES:
            raise SessionStateError(
                f"Cannot {operation} a session in state {self.state}",
                state=self.state,
                operation=operation,
            )

    def _field(self, field_id: str) -> FieldDescriptor:
        index = self._field_index.get(field_id)
        if index is None:
            raise ValueError(f"Unknown field: {field_id}")
        return self.fields[index]

    def _entity(self, entity_id: str) -> Entity:
        for entity in self.entities:
            if entity.id == entity_id:
                return entity
        raise ValueError(f"Unknown entity: {entity_id}")

    def _clarification(self, clarification_id: str) -> ClarificationRequest:
        for request in self.clarifications:
            if request.id == clarification_id:
                return request
        raise ValueError(f"Unknown clarification: {clarification_id}")

    def _fields_in_reading_order(self) -> list[FieldDescriptor]:
        return [
            descriptor
            for _, descriptor in sorted(
                enumerate(self.fields), key=lambda item: field_order_key(item[1], item[0])
            )
        ]

    def _ordered_filled(self) -> list[FilledField]:
        return [
            self.filled[descriptor.id]
            for descriptor in self._fields_in_reading_order()
            if descriptor.id in self.filled
        ]


def _named_entities(request: ClarificationRequest) -> list[str]:
    named = list(request.competing_entity_ids)
    if request.subject_entity_id is not None:
        named.insert(0, request.subject_entity_id)
    return named
