from __future__ import annotations

import json
import logging
import threading
from datetime import date
from typing import Any

import pytest

from formmap.policy.loader import load_policy
from formmap.session.manager import SessionManager, parse_entities, parse_fields
from formmap.session.models import FilledForm
from formmap.session.rendering import InMemoryRenderer, JsonFileRenderer
from formmap.utils.errors import SchemaError, SessionBusyError, SessionNotFoundError


class _BlockingRenderer:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def render(self, form: FilledForm) -> str:
        self.entered.set()
        self.release.wait(timeout=5)
        return f"blocked://{form.session_id}"


def _fields() -> list[dict[str, Any]]:
    return [
        {"id": "name", "expected_type": "name", "required": True},
        {"id": "mobile", "expected_type": "phone", "required": True},
        {"id": "dob", "expected_type": "date"},
    ]


def _entities() -> list[dict[str, Any]]:
    return [
        {"type": "name", "raw_text": "Asha Rao", "confidence": 0.96},
        {
            "type": "phone",
            "raw_text": "98765 43210",
            "confidence": 0.93,
            "source_span": {"utterance": 1},
        },
        {
            "type": "date",
            "raw_text": "yesterday",
            "confidence": 0.9,
            "source_span": {"utterance": 2},
        },
    ]


def _manager(**kwargs: Any) -> SessionManager:
    counter = iter(range(1, 1000))
    return SessionManager(load_policy(), id_factory=lambda: f"s{next(counter)}", **kwargs)


def _events(caplog: pytest.LogCaptureFixture) -> list[dict[str, Any]]:
    return [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "formmap.session"
    ]


def test_start_session_maps_entities_and_assigns_ids() -> None:
    manager = _manager()

    session_id = manager.start_session(
        _entities(), _fields(), reference_time=date(2024, 5, 15)
    )
    snapshot = manager.get_state(session_id)

    assert session_id == "s1"
    assert snapshot.state == "awaiting_confirmation"
    assert {item.field_id: (item.value, item.provenance) for item in snapshot.filled_fields} == {
        "name": ("Asha Rao", "ent-001"),
        "mobile": ("9876543210", "ent-002"),
        "dob": ("2024-05-14", "ent-003"),
    }


def test_full_flow_through_manager() -> None:
    renderer = InMemoryRenderer()
    manager = _manager(renderer=renderer)
    session_id = manager.start_session(None, _fields())
    assert manager.get_state(session_id).state == "idle"

    manager.supply_entities(session_id, _entities()[:2])
    snapshot = manager.apply_edit(session_id, "dob", "15 August 1990")
    assert snapshot.state == "awaiting_confirmation"

    assert manager.confirm(session_id).ok is True
    result = manager.finalize(session_id)

    assert result.ok is True
    assert renderer.forms[session_id].values() == {
        "name": "Asha Rao",
        "mobile": "9876543210",
        "dob": "1990-08-15",
    }
    assert manager.get_state(session_id).state == "finalized"


def test_finalize_can_use_a_json_file_renderer(tmp_path: Any) -> None:
    manager = _manager()
    session_id = manager.start_session(
        _entities(), _fields(), reference_time=date(2024, 5, 15)
    )
    manager.confirm(session_id)

    output = tmp_path / "forms" / "filled.json"
    result = manager.finalize(session_id, renderer=JsonFileRenderer(output))

    assert result.output == str(output)
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["session_id"] == session_id
    assert payload["values"]["mobile"] == "9876543210"
    assert payload["empty_field_ids"] == []


def test_clarification_round_trip_through_manager() -> None:
    manager = _manager()
    session_id = manager.start_session(
        [{"type": "address", "raw_text": "12 MG Road, Bengaluru", "confidence": 0.95}],
        [
            {"id": "current_address", "expected_type": "address", "required": True},
            {"id": "permanent_address", "expected_type": "address", "required": True},
        ],
    )
    snapshot = manager.get_state(session_id)
    assert len(snapshot.clarifications) == 1
    assert snapshot.completeness.pending_clarification_fields == [
        "current_address",
        "permanent_address",
    ]

    blocked = manager.confirm(session_id)
    assert blocked.blocked_reason == "pending_clarifications"

    snapshot = manager.resolve_clarification(
        session_id, snapshot.clarifications[0].id, "permanent_address"
    )
    assert [item.field_id for item in snapshot.filled_fields] == ["permanent_address"]
    assert snapshot.completeness.unresolved_required == ["current_address"]
    assert snapshot.state == "mapped"

    snapshot = manager.apply_edit(session_id, "current_address", "7 Residency Road, Bengaluru")
    assert snapshot.state == "awaiting_confirmation"


def test_cancel_and_export_record() -> None:
    manager = _manager()
    session_id = manager.start_session(_entities(), _fields())

    snapshot = manager.cancel(session_id)
    record = manager.export_record(session_id)

    assert snapshot.state == "rejected"
    assert record.state == "rejected"
    assert record.history[-1].operation == "cancel"


def test_close_session_returns_record_and_releases_it() -> None:
    manager = _manager()
    session_id = manager.start_session(_entities(), _fields())
    manager.cancel(session_id)

    record = manager.close_session(session_id)

    assert record.session_id == session_id
    assert record.state == "rejected"
    assert manager.session_ids() == []
    with pytest.raises(SessionNotFoundError):
        manager.get_state(session_id)
    with pytest.raises(SessionNotFoundError):
        manager.close_session(session_id)


def test_sessions_are_isolated() -> None:
    manager = _manager()
    first = manager.start_session(_entities(), _fields())
    second = manager.start_session(_entities(), _fields())

    manager.apply_edit(first, "name", "Someone Else")

    assert manager.session_ids() == [first, second]
    second_values = {item.field_id: item.value for item in manager.get_state(second).filled_fields}
    assert second_values["name"] == "Asha Rao"


def test_unknown_session_raises_not_found() -> None:
    manager = _manager()

    with pytest.raises(SessionNotFoundError, match="Unknown session: nope"):
        manager.get_state("nope")


def test_busy_session_rejects_concurrent_operation() -> None:
    manager = _manager()
    session_id = manager.start_session(_entities(), _fields(), reference_time=date(2024, 5, 15))
    manager.confirm(session_id)
    renderer = _BlockingRenderer()
    results: list[Any] = []

    worker = threading.Thread(
        target=lambda: results.append(manager.finalize(session_id, renderer=renderer))
    )
    worker.start()
    try:
        assert renderer.entered.wait(timeout=5)
        with pytest.raises(SessionBusyError) as exc_info:
            manager.apply_edit(session_id, "name", "Interleaved")
        assert exc_info.value.session_id == session_id
    finally:
        renderer.release.set()
        worker.join(timeout=5)

    assert results[0].ok is True
    snapshot = manager.get_state(session_id)
    assert snapshot.state == "finalized"
    assert {item.field_id: item.value for item in snapshot.filled_fields}["name"] == "Asha Rao"


def test_parse_fields_rejects_bad_input() -> None:
    with pytest.raises(SchemaError, match="at least one field"):
        parse_fields([])

    with pytest.raises(SchemaError) as exc_info:
        parse_fields([{"id": "name", "expected_type": "name"}, {"id": "x"}])
    assert exc_info.value.problems[0]["index"] == 1

    with pytest.raises(SchemaError, match="Duplicate field ids: name"):
        parse_fields(
            [
                {"id": "name", "expected_type": "name"},
                {"id": "name", "expected_type": "text"},
            ]
        )


def test_parse_entities_rejects_bad_input() -> None:
    with pytest.raises(SchemaError) as exc_info:
        parse_entities([{"type": "phone", "raw_text": "98765", "confidence": 1.5}])
    assert exc_info.value.problems[0]["index"] == 0

    with pytest.raises(SchemaError, match="Duplicate entity ids: e1"):
        parse_entities(
            [
                {"id": "e1", "type": "phone", "raw_text": "1", "confidence": 0.5},
                {"id": "e1", "type": "phone", "raw_text": "2", "confidence": 0.5},
            ]
        )


def test_start_session_with_bad_fields_creates_nothing() -> None:
    manager = _manager()

    with pytest.raises(SchemaError):
        manager.start_session(_entities(), [{"id": "name"}])

    assert manager.session_ids() == []


def test_manager_logs_structured_events(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="formmap.session")
    manager = _manager()

    session_id = manager.start_session(_entities(), _fields())
    manager.apply_edit(session_id, "mobile", "12345")
    manager.confirm(session_id)

    events = _events(caplog)
    assert [item["event"] for item in events] == ["session_started", "edit_applied", "confirmed"]
    assert events[0]["session_id"] == session_id
    assert events[0]["field_count"] == 3
    assert events[1]["validated"] is False
