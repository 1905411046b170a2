"""Exceptions and warning categories raised by SQL DBA Tools."""
from __future__ import annotations


class SqlDbaToolsError(Exception):
    """Base class for errors raised by this package."""


class InvalidInputError(SqlDbaToolsError):
    """An input object cannot be processed (no URN, no Server ancestor, ...)."""

    def __init__(self, message: str, input_object=None) -> None:
        super().__init__(message)
        self.input_object = input_object


class ScriptGenerationError(SqlDbaToolsError):
    """Looking up or scripting a single object failed."""

    def __init__(self, message: str, urn: str | None = None) -> None:
        super().__init__(message)
        self.urn = urn


class CycleDetectedWarning(UserWarning):
    """An object reappeared among its own ancestors; the branch was truncated."""


class EmptyResultNotice(UserWarning):
    """Nothing was found beyond the root object."""
