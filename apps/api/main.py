"""FastAPI wrapper for formmap mapping sessions."""

from __future__ import annotations

import importlib.metadata
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable
from datetime import date, datetime
from pathlib import Path
from typing import Any, get_args

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from formmap.mapping.models import Charset, ClarificationReason
from formmap.policy.loader import load_policy
from formmap.session.manager import SessionManager
from formmap.session.models import ManualEdit, SessionState
from formmap.utils.errors import (
    SchemaError,
    SessionBusyError,
    SessionNotFoundError,
    SessionStateError,
)

app = FastAPI(title="formmap API", version="0.1.0")
logger = logging.getLogger("formmap.api")

_REQUEST_ID_HEADER = "X-Formmap-Request-Id"
_DEFAULT_LOCK_TIMEOUT_SECONDS = 0.0


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fields: list[dict[str, Any]]
    entities: list[dict[str, Any]] | None = None
    reference_time: datetime | date | None = None


class SupplyEntitiesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entities: list[dict[str, Any]] = Field(default_factory=list)


class ClarificationChoiceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice: str | None = None


class ApiRequestError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        detail: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.detail = detail or {}
        self.extra_headers = extra_headers


_manager_lock = threading.Lock()
_manager_cache: SessionManager | None = None


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Ensure every response has a request id header."""

    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        _log_event(
            logging.ERROR,
            "error",
            request_id,
            error_code="INTERNAL_ERROR",
            status_code=500,
            failure_stage="middleware",
        )
        response = _error_response(
            status_code=500,
            error_code="INTERNAL_ERROR",
            message="internal server error",
            request_id=request_id,
            detail={"path": request.url.path},
        )
    response.headers.setdefault(_REQUEST_ID_HEADER, request_id)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _request_id_from_request(request)
    _log_event(
        logging.WARNING,
        "error",
        request_id,
        error_code="INVALID_REQUEST",
        status_code=422,
        failure_stage="parse_body",
    )
    return _error_response(
        status_code=422,
        error_code="INVALID_REQUEST",
        message="request body is invalid",
        request_id=request_id,
        detail={
            "errors": [
                {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
                for error in exc.errors()
            ]
        },
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness endpoint."""

    return {"status": "ok"}


@app.get("/v1/meta")
async def meta_v1(request: Request) -> JSONResponse:
    """Metadata endpoint for UI bootstrap clients."""

    request_id = _request_id_from_request(request)
    if not _meta_enabled():
        return _error_response(
            status_code=404,
            error_code="NOT_FOUND",
            message="meta endpoint is disabled",
            request_id=request_id,
            detail={"path": request.url.path},
        )

    policy = _get_manager().policy
    payload = {
        "session_states": list(get_args(SessionState)),
        "clarification_reasons": list(get_args(ClarificationReason)),
        "supported_charsets": list(get_args(Charset)),
        "type_parents": dict(sorted(policy.type_parents.items())),
        "thresholds": {
            "confident": policy.confident_threshold,
            "ambiguity_margin": policy.ambiguity_margin,
            "minimum_consideration": policy.minimum_consideration,
            "low_confidence": policy.low_confidence_threshold,
        },
        "version": app.version,
        "package_version": _package_version(),
    }
    return JSONResponse(status_code=200, headers={_REQUEST_ID_HEADER: request_id}, content=payload)


@app.post("/v1/sessions")
def start_session_v1(body: StartSessionRequest, request: Request) -> JSONResponse:
    """Create a session from detected fields and (optionally) extracted entities."""

    def operation(manager: SessionManager) -> tuple[int, dict[str, Any]]:
        session_id = manager.start_session(
            body.entities, body.fields, reference_time=body.reference_time
        )
        return 201, manager.get_state(session_id).model_dump(mode="json")

    return _run_operation(request, "start_session", None, operation)


@app.get("/v1/sessions/{session_id}")
def get_session_v1(session_id: str, request: Request) -> JSONResponse:
    return _run_operation(
        request,
        "get_state",
        session_id,
        lambda manager: (200, manager.get_state(session_id).model_dump(mode="json")),
    )


@app.post("/v1/sessions/{session_id}/entities")
def supply_entities_v1(
    session_id: str, body: SupplyEntitiesRequest, request: Request
) -> JSONResponse:
    return _run_operation(
        request,
        "supply_entities",
        session_id,
        lambda manager: (
            200,
            manager.supply_entities(session_id, body.entities).model_dump(mode="json"),
        ),
    )


@app.post("/v1/sessions/{session_id}/edits")
def apply_edit_v1(session_id: str, body: ManualEdit, request: Request) -> JSONResponse:
    return _run_operation(
        request,
        "apply_edit",
        session_id,
        lambda manager: (
            200,
            manager.apply_edit(session_id, body.field_id, body.value).model_dump(mode="json"),
        ),
    )


@app.post("/v1/sessions/{session_id}/clarifications/{clarification_id}")
def resolve_clarification_v1(
    session_id: str,
    clarification_id: str,
    body: ClarificationChoiceRequest,
    request: Request,
) -> JSONResponse:
    return _run_operation(
        request,
        "resolve_clarification",
        session_id,
        lambda manager: (
            200,
            manager.resolve_clarification(session_id, clarification_id, body.choice).model_dump(
                mode="json"
            ),
        ),
    )


@app.post("/v1/sessions/{session_id}/confirm")
def confirm_v1(session_id: str, request: Request) -> JSONResponse:
    """Explicit confirmation; a blocked confirmation is a 200 with ``ok=false``."""

    return _run_operation(
        request,
        "confirm",
        session_id,
        lambda manager: (200, manager.confirm(session_id).model_dump(mode="json")),
    )


@app.post("/v1/sessions/{session_id}/finalize")
def finalize_v1(session_id: str, request: Request) -> JSONResponse:
    """Render the confirmed form; a renderer failure is a 503 marked retryable."""

    def operation(manager: SessionManager) -> tuple[int, dict[str, Any]]:
        result = manager.finalize(session_id)
        return (200 if result.ok else 503), result.model_dump(mode="json")

    return _run_operation(request, "finalize", session_id, operation)


@app.post("/v1/sessions/{session_id}/cancel")
def cancel_v1(session_id: str, request: Request) -> JSONResponse:
    return _run_operation(
        request,
        "cancel",
        session_id,
        lambda manager: (200, manager.cancel(session_id).model_dump(mode="json")),
    )


@app.get("/v1/sessions/{session_id}/record")
def export_record_v1(session_id: str, request: Request) -> JSONResponse:
    return _run_operation(
        request,
        "export_record",
        session_id,
        lambda manager: (200, manager.export_record(session_id).model_dump(mode="json")),
    )


@app.delete("/v1/sessions/{session_id}")
def close_session_v1(session_id: str, request: Request) -> JSONResponse:
    """Release the session and return its final audit record."""

    return _run_operation(
        request,
        "close_session",
        session_id,
        lambda manager: (200, manager.close_session(session_id).model_dump(mode="json")),
    )


def _run_operation(
    request: Request,
    operation: str,
    session_id: str | None,
    call: Callable[[SessionManager], tuple[int, dict[str, Any]]],
) -> JSONResponse:
    request_id = _request_id_from_request(request)
    started = time.perf_counter()
    _log_event(logging.INFO, "start", request_id, operation=operation, session_id=session_id)
    try:
        try:
            status_code, payload = call(_get_manager())
        except Exception as exc:  # noqa: BLE001
            raise _api_error_from(exc, session_id=session_id) from exc
    except ApiRequestError as exc:
        _log_event(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "error",
            request_id,
            operation=operation,
            session_id=session_id,
            error_code=exc.error_code,
            status_code=exc.status_code,
            failure_stage=operation,
        )
        return _error_response(
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            request_id=request_id,
            detail=exc.detail,
            extra_headers=exc.extra_headers,
        )

    _log_event(
        logging.INFO,
        "done",
        request_id,
        operation=operation,
        session_id=session_id or payload.get("session_id"),
        status_code=status_code,
        state=payload.get("state"),
        elapsed_ms=_elapsed_ms(started),
    )
    return JSONResponse(
        status_code=status_code,
        headers={_REQUEST_ID_HEADER: request_id},
        content=payload,
    )


def _api_error_from(exc: Exception, *, session_id: str | None) -> ApiRequestError:
    if isinstance(exc, SchemaError):
        return ApiRequestError(
            status_code=422,
            error_code="SCHEMA_ERROR",
            message=str(exc),
            detail={"problems": exc.problems},
        )
    if isinstance(exc, SessionNotFoundError):
        return ApiRequestError(
            status_code=404,
            error_code="SESSION_NOT_FOUND",
            message=str(exc),
            detail={"session_id": exc.session_id},
        )
    if isinstance(exc, SessionStateError):
        return ApiRequestError(
            status_code=409,
            error_code="INVALID_STATE",
            message=str(exc),
            detail={"state": exc.state, "operation": exc.operation},
        )
    if isinstance(exc, SessionBusyError):
        return ApiRequestError(
            status_code=429,
            error_code="SESSION_BUSY",
            message=str(exc),
            detail={"session_id": exc.session_id, "waited_seconds": exc.waited_seconds},
            extra_headers={"Retry-After": "1"},
        )
    if isinstance(exc, ValueError):
        return ApiRequestError(
            status_code=400,
            error_code="INVALID_ARGUMENT",
            message=str(exc),
            detail={"session_id": session_id},
        )
    return ApiRequestError(
        status_code=500,
        error_code="INTERNAL_ERROR",
        message="internal server error",
        detail={"error_type": type(exc).__name__},
    )


def _get_manager() -> SessionManager:
    global _manager_cache

    with _manager_lock:
        if _manager_cache is None:
            policy = load_policy(_policy_path())
            lock_timeout = _lock_timeout_seconds()
            if lock_timeout is not None:
                policy = policy.model_copy(update={"lock_timeout_seconds": lock_timeout})
            _manager_cache = SessionManager(policy)
        return _manager_cache


def _reset_manager() -> None:
    global _manager_cache

    with _manager_lock:
        _manager_cache = None


def _policy_path() -> Path | None:
    raw = os.getenv("FORMMAP_POLICY_PATH")
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip())


def _lock_timeout_seconds() -> float | None:
    raw = os.getenv("FORMMAP_LOCK_TIMEOUT_SECONDS")
    if raw is None:
        return None
    try:
        parsed = float(raw)
    except ValueError:
        return _DEFAULT_LOCK_TIMEOUT_SECONDS
    return parsed if parsed >= 0 else _DEFAULT_LOCK_TIMEOUT_SECONDS


def _meta_enabled() -> bool:
    raw = os.getenv("FORMMAP_ENABLE_META", "1").strip().lower()
    return raw not in {"0", "false", "off", "no"}


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    generated = uuid.uuid4().hex
    request.state.request_id = generated
    return generated


def _package_version() -> str:
    try:
        return importlib.metadata.version("formmap")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _error_response(
    *,
    status_code: int,
    error_code: str,
    message: str,
    request_id: str,
    detail: dict[str, Any] | None = None,
    extra_headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload_detail = dict(detail or {})
    payload_detail["request_id"] = request_id

    headers = {_REQUEST_ID_HEADER: request_id}
    if extra_headers is not None:
        headers.update(extra_headers)

    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error_code": error_code,
            "message": message,
            "detail": payload_detail,
        },
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _log_event(level: int, event: str, request_id: str, **fields: Any) -> None:
    payload = {
        "event": event,
        "request_id": request_id,
        **fields,
    }
    logger.log(level, _dump_json(payload))
