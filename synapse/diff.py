"""
Display-oriented unified diff.

Uses the same index-aligned comparison as `changes`, so the output is
advisory only and must not be fed to a patch tool.
"""

from __future__ import annotations

from dataclasses import dataclass

from .changes import split_lines


@dataclass(frozen=True)
class DiffResult:
    unified: str
    added: int
    removed: int

    def to_dict(self) -> dict:
        return {"unified": self.unified, "added": self.added, "removed": self.removed}


def generate_diff(old: str, new: str) -> DiffResult:
    old_lines = split_lines(old)
    new_lines = split_lines(new)

    out: list[str] = [f"@@ -1,{len(old_lines)} +1,{len(new_lines)} @@"]
    added = 0
    removed = 0

    for i in range(max(len(old_lines), len(new_lines))):
        old_line = old_lines[i] if i < len(old_lines) else None
        new_line = new_lines[i] if i < len(new_lines) else None

        if old_line is not None and old_line == new_line:
            out.append(f" {old_line}")
            continue
        if old_line is not None:
            out.append(f"-{old_line}")
            removed += 1
        if new_line is not None:
            out.append(f"+{new_line}")
            added += 1

    return DiffResult(unified="\n".join(out), added=added, removed=removed)
