from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from apps.api.main import app

_DEFAULT_POLICY = Path(__file__).resolve().parents[1] / "formmap" / "policy" / "policy.yaml"


@pytest.mark.anyio
async def test_meta_returns_vocabulary_and_thresholds() -> None:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/v1/meta")

    assert response.status_code == 200
    assert response.headers["X-Formmap-Request-Id"]

    payload = response.json()
    assert payload["version"] == "0.1.0"
    assert payload["package_version"]
    assert "awaiting_confirmation" in payload["session_states"]
    assert "ambiguous_decomposition" in payload["clarification_reasons"]
    assert "latin_or_devanagari" in payload["supported_charsets"]
    assert payload["type_parents"]["current_address"] == "address"
    assert payload["thresholds"] == {
        "confident": 0.8,
        "ambiguity_margin": 0.1,
        "minimum_consideration": 0.4,
        "low_confidence": 0.8,
    }


@pytest.mark.anyio
async def test_meta_uses_policy_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    policy_path = tmp_path / "policy.yaml"
    policy_path.write_text(
        _DEFAULT_POLICY.read_text(encoding="utf-8").replace(
            "confident_threshold: 0.80", "confident_threshold: 0.90"
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("FORMMAP_POLICY_PATH", str(policy_path))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/v1/meta")

    assert response.status_code == 200
    assert response.json()["thresholds"]["confident"] == 0.9


@pytest.mark.anyio
async def test_meta_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FORMMAP_ENABLE_META", "0")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/v1/meta")

    assert response.status_code == 404
    payload = response.json()
    assert payload["error_code"] == "NOT_FOUND"
    assert payload["detail"]["request_id"] == response.headers["X-Formmap-Request-Id"]
