"""Downstream renderers invoked by ``finalize``."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from formmap.session.models import FilledForm
from formmap.utils.atomic import atomic_write_json
from formmap.utils.errors import RenderError


class FormRenderer(Protocol):
    """Protocol for the rendering step that consumes a confirmed form."""

    def render(self, form: FilledForm) -> str:
        """Render the form and return a reference to the output.

        Raises:
            RenderError: rendering failed; the caller may retry.
        """


class InMemoryRenderer:
    """Keeps rendered forms in memory; the default when no renderer is injected."""

    def __init__(self) -> None:
        self.forms: dict[str, FilledForm] = {}

    def render(self, form: FilledForm) -> str:
        self.forms[form.session_id] = form
        return f"memory://{form.session_id}"


class JsonFileRenderer:
    """Writes the filled form as one JSON document."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def render(self, form: FilledForm) -> str:
        payload = {
            "session_id": form.session_id,
            "values": form.values(),
            "filled_fields": [item.model_dump(mode="json") for item in form.filled_fields],
            "empty_field_ids": form.empty_field_ids,
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as exc:
            raise RenderError(f"Failed to write filled form: {exc}") from exc
        return str(self.path)
