"""Error taxonomy shared by the store, the algorithms and the CLI."""

from __future__ import annotations


class WorkplanError(Exception):
    """Base class for all workplan errors."""


class ValidationError(WorkplanError):
    """Raised on a bad date triple, malformed id or bad field value.

    ``errors`` maps a field name to its messages when the failure is
    field-level.
    """

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(WorkplanError):
    """Raised when a work item, parent or project does not exist."""


class ConstraintViolation(WorkplanError):
    """Raised on ancestor cycles, depth overflow or id collisions."""


class ConcurrencyConflict(WorkplanError):
    """Raised when an id reservation races another caller.

    Callers should retry with a fresh read.
    """
