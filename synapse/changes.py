"""
Change classification and human-readable summaries for content transitions.

The line comparison is positional: line i of the old content is compared
with line i of the new content, and any surplus beyond the shorter side is
counted as purely added or removed. It is not a minimal edit diff; an
inserted line near the top counts every following line as modified.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

INITIAL_SUMMARY = "Initial version"
NO_CHANGES_SUMMARY = "No changes detected"


class ChangeType(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    RESTORE = "restore"


@dataclass(frozen=True)
class LineDelta:
    """Positional line counts between two contents."""

    modified: int = 0
    added: int = 0
    removed: int = 0

    @property
    def is_empty(self) -> bool:
        return self.modified == 0 and self.added == 0 and self.removed == 0


@dataclass(frozen=True)
class ChangeDetection:
    change_type: ChangeType
    summary: str
    delta: LineDelta


def split_lines(content: str) -> list[str]:
    """Split content into lines; the empty string has zero lines."""
    if not content:
        return []
    return content.split("\n")


def line_delta(old: str, new: str) -> LineDelta:
    old_lines = split_lines(old)
    new_lines = split_lines(new)
    shared = min(len(old_lines), len(new_lines))

    modified = sum(1 for i in range(shared) if old_lines[i] != new_lines[i])
    added = max(0, len(new_lines) - len(old_lines))
    removed = max(0, len(old_lines) - len(new_lines))
    return LineDelta(modified=modified, added=added, removed=removed)


def _plural(count: int, noun: str = "line") -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def summarize(delta: LineDelta) -> str:
    if delta.is_empty:
        return NO_CHANGES_SUMMARY

    parts: list[str] = []
    if delta.modified:
        parts.append(f"modified {_plural(delta.modified)}")
    if delta.added:
        parts.append(f"added {_plural(delta.added)}")
    if delta.removed:
        parts.append(f"removed {_plural(delta.removed)}")

    sentence = ", ".join(parts)
    return sentence[0].upper() + sentence[1:]


def detect_change(previous: str | None, new: str) -> ChangeDetection:
    """Classify a transition; `previous is None` means there was no prior version.

    `restore` is never inferred here, callers assign it explicitly.
    """
    if previous is None:
        return ChangeDetection(
            change_type=ChangeType.CREATE,
            summary=INITIAL_SUMMARY,
            delta=LineDelta(added=len(split_lines(new))),
        )

    delta = line_delta(previous, new)
    return ChangeDetection(change_type=ChangeType.EDIT, summary=summarize(delta), delta=delta)
