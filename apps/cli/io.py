"""CLI I/O helpers for input loading and atomic output writing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from formmap.session.models import ClarificationAnswer, ManualEdit, SessionRecord
from formmap.utils.atomic import atomic_write_json
from formmap.utils.errors import SchemaError

_REVIEW_ITEMS = TypeAdapter(list[ManualEdit | ClarificationAnswer])


@dataclass(frozen=True)
class OutputPaths:
    """Fixed output artifact paths for a single run."""

    session: Path
    filled_form: Path


def build_output_paths(out_dir: Path) -> OutputPaths:
    """Build fixed output file paths under out_dir."""

    return OutputPaths(
        session=out_dir / "out.session.json",
        filled_form=out_dir / "out.filled_form.json",
    )


def existing_output_files(paths: OutputPaths) -> list[Path]:
    """Return existing output files among fixed artifact paths."""

    return [path for path in (paths.session, paths.filled_form) if path.exists()]


def load_json_list(path: Path, key: str) -> list[dict[str, Any]]:
    """Load a JSON list of objects, either bare or wrapped as ``{key: [...]}``."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Invalid JSON in {path.name}: {exc}") from exc
    if isinstance(raw, dict) and key in raw:
        raw = raw[key]
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise SchemaError(f"{path.name} must contain a list of objects under '{key}'")
    return raw


def load_review_items(path: Path) -> list[ManualEdit | ClarificationAnswer]:
    """Load manual edits and clarification answers, applied in file order."""

    raw = load_json_list(path, "edits")
    try:
        return _REVIEW_ITEMS.validate_python(raw)
    except ValidationError as exc:
        raise SchemaError(f"Invalid edits file: {path.name}") from exc


def write_session_record_atomic(paths: OutputPaths, record: SessionRecord) -> None:
    """Write the exported session record atomically."""

    atomic_write_json(paths.session, record.model_dump(mode="json"))


def write_error_record_atomic(
    paths: OutputPaths,
    *,
    error_type: str,
    error_message: str,
    stage: str,
    problems: list[dict[str, Any]] | None = None,
) -> None:
    """Write a session file carrying only the error metadata."""

    atomic_write_json(
        paths.session,
        {
            "error": {
                "error_type": error_type,
                "error_message": error_message,
                "stage": stage,
                "problems": problems or [],
            }
        },
    )
