from __future__ import annotations

from typing import Any

import httpx
import pytest

from apps.api.main import _api_error_from, app
from formmap.utils.errors import SessionBusyError

_PROFILE_FIELDS = [
    {"id": "name", "expected_type": "name", "required": True},
    {"id": "mobile", "expected_type": "phone", "label_tokens": ["mobile"], "required": True},
]
_PROFILE_ENTITIES = [
    {"type": "name", "raw_text": "Asha Rao", "confidence": 0.96},
    {
        "type": "phone",
        "raw_text": "98765 43210",
        "confidence": 0.93,
        "source_span": {"utterance": 1},
    },
]
_ADDRESS_FIELDS = [
    {"id": "current_address", "expected_type": "address", "required": True},
    {"id": "permanent_address", "expected_type": "address"},
]
_ADDRESS_ENTITIES = [{"type": "address", "raw_text": "12 MG Road, Bengaluru", "confidence": 0.95}]


def _client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


async def _start(client: httpx.AsyncClient, body: dict[str, Any]) -> dict[str, Any]:
    response = await client.post("/v1/sessions", json=body)
    assert response.status_code == 201
    return response.json()


@pytest.mark.anyio
async def test_api_session_happy_path() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _PROFILE_FIELDS, "entities": _PROFILE_ENTITIES})
        session_id = created["session_id"]
        assert created["state"] == "awaiting_confirmation"

        confirm = await client.post(f"/v1/sessions/{session_id}/confirm")
        finalize = await client.post(f"/v1/sessions/{session_id}/finalize")
        state = await client.get(f"/v1/sessions/{session_id}")

    assert confirm.status_code == 200
    assert confirm.json()["ok"] is True
    assert finalize.status_code == 200
    assert finalize.json()["output"] == f"memory://{session_id}"
    assert state.json()["state"] == "finalized"
    assert state.headers["X-Formmap-Request-Id"]


@pytest.mark.anyio
async def test_api_late_entities_and_edits() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _PROFILE_FIELDS})
        session_id = created["session_id"]
        assert created["state"] == "idle"

        mapped = await client.post(
            f"/v1/sessions/{session_id}/entities", json={"entities": _PROFILE_ENTITIES[:1]}
        )
        edited = await client.post(
            f"/v1/sessions/{session_id}/edits",
            json={"field_id": "mobile", "value": "+91 98765 43210"},
        )

    assert mapped.status_code == 200
    assert mapped.json()["state"] == "mapped"
    assert mapped.json()["completeness"]["unresolved_required"] == ["mobile"]
    assert edited.status_code == 200
    payload = edited.json()
    assert payload["state"] == "awaiting_confirmation"
    assert {item["field_id"]: item["value"] for item in payload["filled_fields"]} == {
        "name": "Asha Rao",
        "mobile": "9876543210",
    }


@pytest.mark.anyio
async def test_api_clarification_flow() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _ADDRESS_FIELDS, "entities": _ADDRESS_ENTITIES})
        session_id = created["session_id"]
        clarification = created["clarifications"][0]

        blocked = await client.post(f"/v1/sessions/{session_id}/confirm")
        wrong = await client.post(
            f"/v1/sessions/{session_id}/clarifications/{clarification['id']}",
            json={"choice": "email"},
        )
        answered = await client.post(
            f"/v1/sessions/{session_id}/clarifications/{clarification['id']}",
            json={"choice": "current_address"},
        )

    assert clarification["reason"] == "ambiguous_fields"
    assert blocked.status_code == 200
    assert blocked.json()["ok"] is False
    assert blocked.json()["blocked_reason"] == "pending_clarifications"
    assert wrong.status_code == 400
    assert wrong.json()["error_code"] == "INVALID_ARGUMENT"
    assert answered.status_code == 200
    assert answered.json()["state"] == "awaiting_confirmation"
    assert answered.json()["clarifications"] == []


@pytest.mark.anyio
async def test_api_unknown_session_returns_404() -> None:
    async with _client() as client:
        response = await client.get("/v1/sessions/missing")

    assert response.status_code == 404
    payload = response.json()
    assert payload["error_code"] == "SESSION_NOT_FOUND"
    assert payload["detail"]["session_id"] == "missing"
    assert payload["detail"]["request_id"] == response.headers["X-Formmap-Request-Id"]


@pytest.mark.anyio
async def test_api_finalize_before_confirm_returns_409() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _PROFILE_FIELDS, "entities": _PROFILE_ENTITIES})
        response = await client.post(f"/v1/sessions/{created['session_id']}/finalize")

    assert response.status_code == 409
    payload = response.json()
    assert payload["error_code"] == "INVALID_STATE"
    assert payload["detail"]["state"] == "awaiting_confirmation"
    assert payload["detail"]["operation"] == "finalize"


@pytest.mark.anyio
async def test_api_cancelled_session_rejects_edits() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _PROFILE_FIELDS, "entities": _PROFILE_ENTITIES})
        session_id = created["session_id"]
        cancelled = await client.post(f"/v1/sessions/{session_id}/cancel")
        edit = await client.post(
            f"/v1/sessions/{session_id}/edits", json={"field_id": "name", "value": "Late"}
        )
        record = await client.get(f"/v1/sessions/{session_id}/record")

    assert cancelled.json()["state"] == "rejected"
    assert edit.status_code == 409
    assert record.status_code == 200
    assert record.json()["history"][-1]["operation"] == "cancel"


@pytest.mark.anyio
async def test_api_delete_closes_the_session() -> None:
    async with _client() as client:
        created = await _start(client, {"fields": _PROFILE_FIELDS, "entities": _PROFILE_ENTITIES})
        session_id = created["session_id"]
        await client.post(f"/v1/sessions/{session_id}/cancel")
        closed = await client.delete(f"/v1/sessions/{session_id}")
        after = await client.get(f"/v1/sessions/{session_id}")

    assert closed.status_code == 200
    assert closed.json()["session_id"] == session_id
    assert closed.json()["state"] == "rejected"
    assert after.status_code == 404


@pytest.mark.anyio
async def test_api_schema_error_returns_422_with_problems() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/sessions",
            json={"fields": [{"id": "name"}], "entities": []},
        )

    assert response.status_code == 422
    payload = response.json()
    assert payload["error_code"] == "SCHEMA_ERROR"
    assert payload["detail"]["problems"][0]["index"] == 0


@pytest.mark.anyio
async def test_api_invalid_body_returns_422() -> None:
    async with _client() as client:
        response = await client.post("/v1/sessions", json={"entities": []})

    assert response.status_code == 422
    payload = response.json()
    assert payload["error_code"] == "INVALID_REQUEST"
    assert any(error["loc"] == "body.fields" for error in payload["detail"]["errors"])


def test_busy_session_maps_to_429_with_retry_after() -> None:
    error = _api_error_from(SessionBusyError("s1", waited_seconds=0.0), session_id="s1")

    assert error.status_code == 429
    assert error.error_code == "SESSION_BUSY"
    assert error.extra_headers == {"Retry-After": "1"}
