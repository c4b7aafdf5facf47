"""Error types and helpers for the suggestion lifecycle engine."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from .validation import ValidationIssue


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationFailed(EngineError):
    """Proposed content has structural errors and was not written."""

    def __init__(self, message: str, issues: list[ValidationIssue]) -> None:
        super().__init__(message, {"errors": sum(1 for i in issues if i.is_error)})
        self.issues = issues

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.is_error]


class InvalidState(EngineError):
    """Raised when a status transition is not allowed from the observed state."""

    def __init__(self, message: str, from_status: str, to_status: str) -> None:
        super().__init__(message, {"from_status": from_status, "to_status": to_status})
        self.from_status = from_status
        self.to_status = to_status


class NotFound(EngineError):
    """A suggestion, version or file does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}", {"kind": kind, "key": key})
        self.kind = kind
        self.key = key


class HistoryBoundary(EngineError):
    """Base for reaching either end of a file's version history."""

    def __init__(self, message: str, file_id: str, version_number: int) -> None:
        super().__init__(message, {"file_id": file_id, "version_number": version_number})
        self.file_id = file_id
        self.version_number = version_number


class NoMoreUndo(HistoryBoundary):
    """There is no earlier version to step back to."""


class NoMoreRedo(HistoryBoundary):
    """There is no later version to step forward to."""


class DecodeError(EngineError):
    """Stored compressed content could not be decoded."""


class StorageFailure(EngineError):
    """The underlying store failed; fatal for the current operation."""


class VersionConflict(StorageFailure):
    """Another writer claimed the same (file, version number) first."""

    def __init__(self, file_id: str, version_number: int) -> None:
        super().__init__(
            f"Version {version_number} of file {file_id} was written concurrently",
            {"file_id": file_id, "version_number": version_number},
        )
        self.file_id = file_id
        self.version_number = version_number


class ContentConflict(EngineError):
    """The file changed since the suggestion was computed."""

    def __init__(self, message: str, path: str, current_content: str, suggested_content: str) -> None:
        super().__init__(message, {"path": path})
        self.path = path
        self.current_content = current_content
        self.suggested_content = suggested_content


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e)) or _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or create it directly with: `synapse init-db`",
    ]
    return "\n".join(lines)
