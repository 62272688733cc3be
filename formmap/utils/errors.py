"""Custom exceptions for core mapping logic."""

from __future__ import annotations

from typing import Any


class ValidationFailure(Exception):
    """Base class for recoverable value validation failures."""

    code = "VALIDATION_FAILED"

    def __init__(
        self, message: str, *, value_type: str | None = None, raw: str | None = None
    ) -> None:
        super().__init__(message)
        self.value_type = value_type
        self.raw = raw


class FormatError(ValidationFailure):
    """Raised when a value fails its type-specific format rules."""

    code = "FORMAT_ERROR"


class RangeError(ValidationFailure):
    """Raised when a numeric value is outside its allowed bounds."""

    code = "RANGE_ERROR"


class SchemaError(Exception):
    """Raised when upstream entities/fields violate the input contract."""

    def __init__(self, message: str, *, problems: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the manager."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Unknown session: {self.session_id}"


class SessionStateError(Exception):
    """Raised when an operation is not allowed in the session's current state."""

    def __init__(self, message: str, *, state: str, operation: str) -> None:
        super().__init__(message)
        self.state = state
        self.operation = operation


class SessionBusyError(Exception):
    """Raised when another operation already holds the session."""

    def __init__(self, session_id: str, *, waited_seconds: float) -> None:
        super().__init__(f"Session is busy: {session_id}")
        self.session_id = session_id
        self.waited_seconds = waited_seconds


class RenderError(Exception):
    """Raised by a form renderer when the downstream rendering step fails."""
