"""
Pre-apply structural validation of proposed file contents.

Pure functions over the proposed content and the set of known file paths;
nothing here touches storage, so it is safe to run speculatively (previews)
as well as on the apply path.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class FileKind(str, Enum):
    TEMPLATING = "templating"
    JSON = "json"
    STYLE = "style"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def for_path(cls, path: str) -> FileKind:
        lowered = path.lower()
        if lowered.endswith(".liquid"):
            return cls.TEMPLATING
        if lowered.endswith(".json"):
            return cls.JSON
        if lowered.endswith((".css", ".scss")):
            return cls.STYLE
        return cls.UNRECOGNIZED


@dataclass(frozen=True)
class ValidationIssue:
    file: str
    message: str
    severity: Severity
    category: str

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, str]:
        return {
            "file": self.file,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category,
        }


@dataclass
class ValidationReport:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not any(issue.is_error for issue in self.issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.is_error]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if not i.is_error]

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": [i.to_dict() for i in self.issues]}


class ProposedContent(Protocol):
    file_name: str
    proposed_content: str


@dataclass(frozen=True)
class ProposedFile:
    file_name: str
    proposed_content: str


# =============================================================================
# Templating (Liquid) rules
# =============================================================================

BLOCK_TAGS = (
    "if",
    "unless",
    "for",
    "case",
    "capture",
    "form",
    "paginate",
    "tablerow",
    "comment",
    "raw",
    "schema",
    "style",
    "javascript",
    "stylesheet",
)

SNIPPETS_DIR = "snippets"
ASSETS_DIR = "assets"

_TAG_RE = re.compile(r"\{%-?\s*(end)?([a-z_]+)")
_SCHEMA_RE = re.compile(r"\{%-?\s*schema\s*-?%\}(.*?)\{%-?\s*endschema\s*-?%\}", re.DOTALL)
_SNIPPET_REF_RE = re.compile(r"\{%-?\s*(?:render|include)\s+['\"]([^'\"]+)['\"]")
_INCLUDE_RE = re.compile(r"\{%-?\s*include\s+['\"]")
_IMG_URL_RE = re.compile(r"\|\s*img_url\b")
_ASSET_REF_RE = re.compile(r"\{\{-?\s*['\"]([^'\"]+)['\"]\s*\|\s*asset(?:_img)?_url")
_SECTION_SETTING_RE = re.compile(r"section\.settings\.(\w+)")


def normalize_path(path: str) -> str:
    return path.replace("\\", "/").removeprefix("./").lstrip("/")


def resolve_snippet(name: str) -> str:
    """Map a render/include argument to a file path; bare names live under snippets/."""
    path = name if name.endswith(".liquid") else f"{name}.liquid"
    if "/" in path:
        return normalize_path(path)
    return f"{SNIPPETS_DIR}/{path}"


def _issue(path: str, message: str, severity: Severity, category: str) -> ValidationIssue:
    return ValidationIssue(file=path, message=message, severity=severity, category=category)


def check_tag_balance(path: str, content: str) -> list[ValidationIssue]:
    opens = dict.fromkeys(BLOCK_TAGS, 0)
    closes = dict.fromkeys(BLOCK_TAGS, 0)
    for match in _TAG_RE.finditer(content):
        tag = match.group(2)
        if tag not in opens:
            continue
        if match.group(1):
            closes[tag] += 1
        else:
            opens[tag] += 1

    return [
        _issue(
            path,
            f"Unbalanced {{% {tag} %}} tags: {opens[tag]} opening vs {closes[tag]} closing",
            Severity.ERROR,
            "tag_balance",
        )
        for tag in BLOCK_TAGS
        if opens[tag] != closes[tag]
    ]


def _parse_schema(content: str) -> tuple[object | None, str | None]:
    """Return (parsed schema or None, error detail or None)."""
    match = _SCHEMA_RE.search(content)
    if not match:
        return None, None
    body = match.group(1).strip()
    if not body:
        return None, ""
    try:
        return json.loads(body), None
    except json.JSONDecodeError as exc:
        return None, f"{exc.msg} (line {exc.lineno}, column {exc.colno})"


def _schema_setting_ids(schema: object) -> set[str]:
    ids: set[str] = set()
    if not isinstance(schema, dict):
        return ids

    def collect(settings: object) -> None:
        if isinstance(settings, list):
            for item in settings:
                if isinstance(item, dict) and isinstance(item.get("id"), str):
                    ids.add(item["id"])

    collect(schema.get("settings"))
    for block in schema.get("blocks") or []:
        if isinstance(block, dict):
            collect(block.get("settings"))
    return ids


def check_schema(path: str, content: str) -> list[ValidationIssue]:
    schema, error = _parse_schema(content)
    if error == "":
        return [_issue(path, "Empty {% schema %} block", Severity.WARNING, "schema")]
    if error is not None:
        return [_issue(path, f"Invalid JSON in {{% schema %}} block: {error}", Severity.ERROR, "schema")]
    if schema is None:
        return []

    valid_ids = _schema_setting_ids(schema)
    if not valid_ids:
        return []
    markup = _SCHEMA_RE.sub("", content)
    missing = sorted({m.group(1) for m in _SECTION_SETTING_RE.finditer(markup)} - valid_ids)
    return [
        _issue(
            path,
            f"section.settings.{setting} referenced but not defined in {{% schema %}}",
            Severity.WARNING,
            "schema_setting",
        )
        for setting in missing
    ]


def check_references(path: str, content: str, known_files: frozenset[str]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for match in _SNIPPET_REF_RE.finditer(content):
        snippet = resolve_snippet(match.group(1))
        if snippet not in known_files:
            issues.append(
                _issue(path, f'Snippet reference "{snippet}" not found in project', Severity.WARNING, "snippet_reference")
            )

    for match in _ASSET_REF_RE.finditer(content):
        name = match.group(1)
        asset = name if name.startswith(f"{ASSETS_DIR}/") else f"{ASSETS_DIR}/{name}"
        if asset not in known_files:
            issues.append(
                _issue(path, f'Asset "{asset}" referenced but not found in project', Severity.WARNING, "asset_reference")
            )
    return issues


def check_deprecated(path: str, content: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if _INCLUDE_RE.search(content):
        issues.append(
            _issue(path, "Deprecated tag {% include %}; prefer {% render %}", Severity.WARNING, "deprecated_liquid")
        )
    if _IMG_URL_RE.search(content):
        issues.append(
            _issue(path, "Deprecated filter img_url; prefer image_url", Severity.WARNING, "deprecated_liquid")
        )
    return issues


def _check_templating(path: str, content: str, known_files: frozenset[str]) -> list[ValidationIssue]:
    return [
        *check_tag_balance(path, content),
        *check_schema(path, content),
        *check_references(path, content, known_files),
        *check_deprecated(path, content),
    ]


# =============================================================================
# JSON and style rules
# =============================================================================


def _check_json(path: str, content: str, known_files: frozenset[str]) -> list[ValidationIssue]:
    try:
        json.loads(content)
    except json.JSONDecodeError as exc:
        return [
            _issue(
                path,
                f"Invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})",
                Severity.ERROR,
                "json",
            )
        ]
    return []


def _check_style(path: str, content: str, known_files: frozenset[str]) -> list[ValidationIssue]:
    opening = content.count("{")
    closing = content.count("}")
    if opening != closing:
        return [
            _issue(
                path,
                f"Unbalanced braces: {opening} '{{' vs {closing} '}}'",
                Severity.ERROR,
                "brace_balance",
            )
        ]
    return []


def _check_unrecognized(path: str, content: str, known_files: frozenset[str]) -> list[ValidationIssue]:
    return []


Checker = Callable[[str, str, frozenset[str]], list[ValidationIssue]]

CHECKS: dict[FileKind, Checker] = {
    FileKind.TEMPLATING: _check_templating,
    FileKind.JSON: _check_json,
    FileKind.STYLE: _check_style,
    FileKind.UNRECOGNIZED: _check_unrecognized,
}


def validate_file(path: str, content: str, known_files: Iterable[str] = ()) -> list[ValidationIssue]:
    normalized = normalize_path(path)
    known = frozenset(normalize_path(p) for p in known_files)
    return CHECKS[FileKind.for_path(normalized)](normalized, content, known)


def validate(changes: Iterable[ProposedContent], all_files: Iterable[str]) -> ValidationReport:
    """Validate proposed contents; files in the same change set count as existing."""
    changes = list(changes)
    known = frozenset(
        [normalize_path(p) for p in all_files] + [normalize_path(c.file_name) for c in changes]
    )

    report = ValidationReport()
    for change in changes:
        path = normalize_path(change.file_name)
        report.issues.extend(CHECKS[FileKind.for_path(path)](path, change.proposed_content, known))
    return report
