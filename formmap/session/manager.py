"""Collaborator-facing session operations with per-session serialization."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

from pydantic import ValidationError

from formmap.mapping.models import Entity, FieldDescriptor
from formmap.policy.loader import load_policy
from formmap.policy.models import MappingPolicy
from formmap.session.models import (
    ConfirmResult,
    FinalizeResult,
    SessionRecord,
    SessionSnapshot,
)
from formmap.session.rendering import FormRenderer, InMemoryRenderer
from formmap.session.state_machine import MappingSession
from formmap.utils.errors import SchemaError, SessionBusyError, SessionNotFoundError

logger = logging.getLogger("formmap.session")

EntityInput = Entity | Mapping[str, Any]
FieldInput = FieldDescriptor | Mapping[str, Any]


class _SessionSlot:
    def __init__(self, session: MappingSession) -> None:
        self.session = session
        self.lock = threading.Lock()
        self.closed = False


class SessionManager:
    """Owns sessions and applies every operation on one session in order.

    Operations on a busy session wait up to the policy's
    ``lock_timeout_seconds`` and then fail with ``SessionBusyError``; they
    are never interleaved. Different sessions share no mutable state.
    """

    def __init__(
        self,
        policy: MappingPolicy | None = None,
        *,
        renderer: FormRenderer | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.policy = policy or load_policy()
        self.renderer: FormRenderer = renderer or InMemoryRenderer()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._slots: dict[str, _SessionSlot] = {}
        self._registry_lock = threading.Lock()

    def start_session(
        self,
        entities: Sequence[EntityInput] | None,
        fields: Sequence[FieldInput],
        *,
        reference_time: datetime | date | None = None,
    ) -> str:
        """Create a session; ``entities=None`` leaves it idle until extraction arrives.

        Raises:
            SchemaError: malformed or duplicate fields/entities; no session is created.
        """

        parsed_fields = parse_fields(fields)
        parsed_entities = parse_entities(entities) if entities is not None else None

        session_id = self._id_factory()
        session = MappingSession(session_id, parsed_fields, self.policy, reference=reference_time)
        if parsed_entities is not None:
            session.supply_entities(parsed_entities)

        with self._registry_lock:
            if session_id in self._slots:
                raise SchemaError(f"Duplicate session id: {session_id}")
            self._slots[session_id] = _SessionSlot(session)

        _log_event(
            logging.INFO,
            "session_started",
            session_id,
            state=session.state,
            field_count=len(parsed_fields),
            entity_count=len(parsed_entities) if parsed_entities is not None else None,
        )
        return session_id

    def supply_entities(
        self, session_id: str, entities: Sequence[EntityInput]
    ) -> SessionSnapshot:
        parsed = parse_entities(entities)
        with self._locked(session_id, "supply_entities") as session:
            session.supply_entities(parsed)
            _log_mapping(session, "entities_supplied")
            return session.snapshot()

    def get_state(self, session_id: str) -> SessionSnapshot:
        with self._locked(session_id, "get_state") as session:
            return session.snapshot()

    def apply_edit(self, session_id: str, field_id: str, value: str) -> SessionSnapshot:
        with self._locked(session_id, "apply_edit") as session:
            session.apply_edit(field_id, value)
            _log_event(
                logging.INFO,
                "edit_applied",
                session_id,
                field_id=field_id,
                validated=session.filled[field_id].validated,
                state=session.state,
            )
            return session.snapshot()

    def resolve_clarification(
        self, session_id: str, clarification_id: str, choice: str | None
    ) -> SessionSnapshot:
        with self._locked(session_id, "resolve_clarification") as session:
            session.resolve_clarification(clarification_id, choice)
            _log_event(
                logging.INFO,
                "clarification_resolved",
                session_id,
                clarification_id=clarification_id,
                declined=choice is None,
                pending=len(session.clarifications),
                state=session.state,
            )
            return session.snapshot()

    def confirm(self, session_id: str) -> ConfirmResult:
        with self._locked(session_id, "confirm") as session:
            result = session.confirm()
            _log_event(
                logging.INFO if result.ok else logging.WARNING,
                "confirmed" if result.ok else "confirm_blocked",
                session_id,
                blocked_reason=result.blocked_reason,
                state=result.state,
            )
            return result

    def finalize(self, session_id: str, renderer: FormRenderer | None = None) -> FinalizeResult:
        with self._locked(session_id, "finalize") as session:
            result = session.finalize(renderer or self.renderer)
            _log_event(
                logging.INFO if result.ok else logging.ERROR,
                "finalized" if result.ok else "finalize_failed",
                session_id,
                retryable=result.retryable,
                error=result.error,
                state=result.state,
            )
            return result

    def cancel(self, session_id: str) -> SessionSnapshot:
        with self._locked(session_id, "cancel") as session:
            session.cancel()
            _log_event(logging.INFO, "cancelled", session_id, state=session.state)
            return session.snapshot()

    def export_record(self, session_id: str) -> SessionRecord:
        with self._locked(session_id, "export_record") as session:
            return session.export_record()

    def close_session(self, session_id: str) -> SessionRecord:
        """Drop a session from the manager and return its final audit record.

        Operations already waiting on the session fail with
        ``SessionNotFoundError`` once it is closed.
        """

        with self._locked(session_id, "close_session") as session:
            record = session.export_record()
            with self._registry_lock:
                slot = self._slots.pop(session_id)
            slot.closed = True
            _log_event(logging.INFO, "session_closed", session_id, state=session.state)
            return record

    def session_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._slots)

    @contextmanager
    def _locked(self, session_id: str, operation: str) -> Iterator[MappingSession]:
        with self._registry_lock:
            slot = self._slots.get(session_id)
        if slot is None:
            raise SessionNotFoundError(session_id)

        timeout = self.policy.lock_timeout_seconds
        acquired = slot.lock.acquire(timeout=timeout) if timeout > 0 else slot.lock.acquire(False)
        if not acquired:
            _log_event(
                logging.WARNING,
                "session_busy",
                session_id,
                operation=operation,
                waited_seconds=timeout,
            )
            raise SessionBusyError(session_id, waited_seconds=timeout)
        if slot.closed:
            slot.lock.release()
            raise SessionNotFoundError(session_id)
        try:
            yield slot.session
        finally:
            slot.lock.release()


def parse_fields(fields: Sequence[FieldInput]) -> list[FieldDescriptor]:
    """Validate field descriptors from the form-detection step."""

    if not fields:
        raise SchemaError("A session needs at least one field descriptor")

    parsed: list[FieldDescriptor] = []
    problems: list[dict[str, Any]] = []
    for index, item in enumerate(fields):
        try:
            parsed.append(
                item if isinstance(item, FieldDescriptor) else FieldDescriptor.model_validate(item)
            )
        except ValidationError as exc:
            problems.append({"index": index, "errors": _error_summaries(exc)})
    if problems:
        raise SchemaError("Invalid field descriptors", problems=problems)

    _reject_duplicates([descriptor.id for descriptor in parsed], "field")
    return parsed


def parse_entities(entities: Sequence[EntityInput]) -> list[Entity]:
    """Validate entities from the extraction step, assigning ``ent-NNN`` ids when absent."""

    parsed: list[Entity] = []
    problems: list[dict[str, Any]] = []
    for index, item in enumerate(entities):
        if isinstance(item, Entity):
            parsed.append(item)
            continue
        payload = dict(item)
        if not payload.get("id"):
            payload["id"] = f"ent-{index + 1:03d}"
        try:
            parsed.append(Entity.model_validate(payload))
        except ValidationError as exc:
            problems.append({"index": index, "errors": _error_summaries(exc)})
    if problems:
        raise SchemaError("Invalid entities", problems=problems)

    _reject_duplicates([entity.id for entity in parsed], "entity")
    return parsed


def _reject_duplicates(ids: list[str], kind: str) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for item_id in ids:
        if item_id in seen and item_id not in duplicates:
            duplicates.append(item_id)
        seen.add(item_id)
    if duplicates:
        raise SchemaError(
            f"Duplicate {kind} ids: {', '.join(duplicates)}",
            problems=[{"kind": kind, "duplicate_id": item_id} for item_id in duplicates],
        )


def _error_summaries(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]


def _log_mapping(session: MappingSession, event: str) -> None:
    _log_event(
        logging.INFO,
        event,
        session.id,
        state=session.state,
        filled=len(session.filled),
        clarifications=len(session.clarifications),
        unmatched=len(session.unmatched),
    )


def _log_event(level: int, event: str, session_id: str, **fields: Any) -> None:
    payload = {
        "event": event,
        "session_id": session_id,
        **fields,
    }
    logger.log(
        level, json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    )
