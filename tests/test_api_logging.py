from __future__ import annotations

import json
import logging

import httpx
import pytest

from apps.api.main import app


@pytest.mark.anyio
async def test_api_logs_request_id_for_success(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="formmap.api")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post(
            "/v1/sessions",
            json={
                "fields": [{"id": "mobile", "expected_type": "phone"}],
                "entities": [{"type": "phone", "raw_text": "9876543210", "confidence": 0.9}],
            },
        )

    assert response.status_code == 201
    request_id = response.headers["X-Formmap-Request-Id"]
    session_id = response.json()["session_id"]
    messages = [record.message for record in caplog.records if record.name == "formmap.api"]
    assert any('"event":"start"' in message and request_id in message for message in messages)
    done = [
        json.loads(message)
        for message in messages
        if '"event":"done"' in message and request_id in message
    ]
    assert done[0]["session_id"] == session_id
    assert done[0]["status_code"] == 201
    assert done[0]["operation"] == "start_session"


@pytest.mark.anyio
async def test_api_logs_request_id_and_error_code_for_failure(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="formmap.api")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/v1/sessions/unknown/confirm")

    assert response.status_code == 404
    request_id = response.headers["X-Formmap-Request-Id"]
    messages = [record.message for record in caplog.records if record.name == "formmap.api"]
    assert any(
        '"event":"error"' in message
        and request_id in message
        and '"error_code":"SESSION_NOT_FOUND"' in message
        and '"failure_stage":"confirm"' in message
        for message in messages
    )
