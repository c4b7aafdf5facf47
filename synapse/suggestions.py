"""
Suggestion Application Service - the orchestrator and state machine.

    pending -> applied -> edited
       |          |         |
       v          +----+----+
    rejected           v
                     undone

Every content mutation (agent suggestion or manual edit) goes through the
same path: take the per-file locks, validate the content that will actually
be written, append versions, then flip status with a compare-and-set, all
inside one transaction. Pattern learning runs afterwards as a tracked
background task and never affects the caller-visible result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .calibration import (
    CalibrationResult,
    ConfidenceCalibrator,
    ConfidenceLevel,
    Thresholds,
    clamp_confidence,
    get_confidence_label,
    get_confidence_level,
)
from .changes import ChangeType
from .config import Settings
from .errors import ContentConflict, InvalidState, NotFound, ValidationFailed, VersionConflict
from .locks import LockManager, build_lock_manager, file_key, suggestion_key
from .models import (
    AgentType,
    CodeChange,
    FeedbackEvent,
    FeedbackRating,
    FileVersion,
    ProjectFile,
    Suggestion,
    SuggestionScope,
    SuggestionSource,
    SuggestionStatus,
    utcnow,
)
from .patterns import PatternLearner
from .validation import ProposedFile, ValidationIssue, validate
from .versions import VersionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCEPTED = (SuggestionStatus.APPLIED.value, SuggestionStatus.EDITED.value)


@dataclass
class ApplicationResult:
    """Outcome of a successful apply or post-hoc edit."""

    suggestion: Suggestion
    warnings: list[ValidationIssue] = field(default_factory=list)
    versions: dict[str, int] = field(default_factory=dict)  # path -> version number

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestion_id": self.suggestion.id,
            "status": self.suggestion.status,
            "warnings": [w.to_dict() for w in self.warnings],
            "versions": dict(self.versions),
        }


@dataclass
class ReviewTier:
    level: ConfidenceLevel
    label: str
    thresholds: Thresholds


def infer_scope(file_paths: list[str], original_code: str, suggested_code: str) -> SuggestionScope:
    if len(file_paths) > 1:
        return SuggestionScope.MULTI_FILE
    if "\n" in original_code.strip("\n") or "\n" in suggested_code.strip("\n"):
        return SuggestionScope.MULTI_LINE
    return SuggestionScope.SINGLE_LINE


def replace_code(path: str, current: str | None, original_code: str, new_code: str) -> str:
    """Content of `path` after swapping the first `original_code` for `new_code`.

    Empty `original_code` replaces the whole file. A file with no history is
    taken to hold exactly `original_code`.
    """
    if not original_code:
        return new_code
    base = current if current is not None else original_code
    if original_code not in base:
        raise ContentConflict(
            f"{path} no longer contains the code this change was computed against",
            path=path,
            current_content=base,
            suggested_content=new_code,
        )
    return base.replace(original_code, new_code, 1)


class SuggestionApplicationService:
    """Owns suggestion state transitions and every write to file history."""

    def __init__(
        self,
        database: db.Database,
        version_store: VersionStore | None = None,
        locks: LockManager | None = None,
        calibrator: ConfidenceCalibrator | None = None,
        pattern_learner: PatternLearner | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.database = database
        self.versions = version_store or VersionStore.from_settings(self.settings)
        self.locks = locks or build_lock_manager(self.settings)
        self.calibrator = calibrator or ConfidenceCalibrator.from_settings(self.settings)
        self.patterns = pattern_learner or PatternLearner()
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> SuggestionApplicationService:
        return cls(db.Database.from_settings(settings), settings=settings)

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _with_retries(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Rerun a whole unit of work when another writer claimed a version number."""
        retries = self.settings.version_write_retries
        attempt = 0
        while True:
            try:
                return await operation()
            except VersionConflict as exc:
                attempt += 1
                if attempt > retries:
                    raise
                logger.warning(f"{exc.message}; retrying ({attempt}/{retries})")

    async def _load(self, suggestion_id: str) -> Suggestion:
        async with self.database.get_session() as session:
            suggestion = await db.get_suggestion(session, suggestion_id)
        if suggestion is None:
            raise NotFound("Suggestion", suggestion_id)
        return suggestion

    async def _load_for_update(self, session: AsyncSession, suggestion_id: str) -> Suggestion:
        suggestion = await db.get_suggestion(session, suggestion_id, refresh=True)
        if suggestion is None:
            raise NotFound("Suggestion", suggestion_id)
        return suggestion

    def _lock_keys(self, suggestion: Suggestion) -> list[str]:
        return [suggestion_key(suggestion.id)] + [
            file_key(suggestion.project_id, path) for path in suggestion.file_paths
        ]

    async def _validate(
        self, session: AsyncSession, project_id: str, planned: dict[str, str]
    ) -> list[ValidationIssue]:
        """Validate planned contents; raises ValidationFailed, returns warnings."""
        known = await db.list_file_paths(session, project_id)
        report = validate(
            [ProposedFile(path, content) for path, content in planned.items()], known
        )
        if not report.valid:
            files = sorted({issue.file for issue in report.errors})
            logger.info(f"Validation rejected {len(report.errors)} error(s) in {files}")
            raise ValidationFailed(
                f"Validation failed for {len(files)} file(s): {', '.join(files)}", report.issues
            )
        return report.warnings

    async def _write_versions(
        self,
        session: AsyncSession,
        project_id: str,
        planned: dict[str, str],
        change_type: ChangeType,
        author: str,
    ) -> dict[str, int]:
        written: dict[str, int] = {}
        for path, content in planned.items():
            file = await db.get_or_create_file(session, project_id, path)
            version = await self.versions.create_version(
                session, file.id, content, change_type, author
            )
            written[path] = version.version_number
        return written

    async def _current_contents(
        self, session: AsyncSession, project_id: str, paths: Iterable[str]
    ) -> dict[str, str | None]:
        contents: dict[str, str | None] = {}
        for path in paths:
            file = await db.get_file_by_path(session, project_id, path)
            contents[path] = (
                await self.versions.current_content(session, file.id) if file else None
            )
        return contents

    # =========================================================================
    # Creation and lookup
    # =========================================================================

    async def create_suggestion(
        self,
        user_id: str,
        project_id: str,
        file_paths: list[str],
        original_code: str,
        suggested_code: str,
        explanation: str = "",
        source: SuggestionSource | str = SuggestionSource.AI_MODEL,
        scope: SuggestionScope | str | None = None,
        confidence: object = None,
        agent_type: AgentType | str | None = None,
    ) -> Suggestion:
        if not file_paths:
            raise ValueError("A suggestion must affect at least one file")
        paths = list(dict.fromkeys(file_paths))
        resolved_scope = (
            SuggestionScope(scope) if scope else infer_scope(paths, original_code, suggested_code)
        )
        resolved_agent = AgentType(agent_type) if agent_type else AgentType.for_path(paths[0])

        now = utcnow()
        suggestion = Suggestion(
            user_id=user_id,
            project_id=project_id,
            source=SuggestionSource(source).value,
            scope=resolved_scope.value,
            status=SuggestionStatus.PENDING.value,
            file_paths=paths,
            original_code=original_code,
            suggested_code=suggested_code,
            explanation=explanation,
            confidence=clamp_confidence(confidence),
            agent_type=resolved_agent.value,
            applied_versions={},
            created_at=now,
            updated_at=now,
        )
        async with self.database.get_session() as session:
            session.add(suggestion)
            await session.flush()
        logger.info(f"Created {resolved_scope.value} suggestion {suggestion.id} for {paths}")
        return suggestion

    async def propose(
        self,
        user_id: str,
        project_id: str,
        change: CodeChange,
        source: SuggestionSource | str = SuggestionSource.AI_MODEL,
    ) -> Suggestion:
        """Record an agent's CodeChange; auto-apply high-tier changes when enabled."""
        suggestion = await self.create_suggestion(
            user_id=user_id,
            project_id=project_id,
            file_paths=[change.file_name],
            original_code=change.original_content,
            suggested_code=change.proposed_content,
            explanation=change.reasoning,
            source=source,
            confidence=change.confidence,
            agent_type=change.agent_type,
        )
        if not self.settings.auto_apply_enabled:
            return suggestion

        tier = await self.review_tier(suggestion)
        if tier.level != ConfidenceLevel.HIGH:
            return suggestion
        try:
            result = await self.apply_suggestion(suggestion.id)
        except (ValidationFailed, ContentConflict) as exc:
            logger.info(f"Auto-apply of {suggestion.id} skipped: {exc.message}")
            return suggestion
        return result.suggestion

    async def get_suggestion(self, suggestion_id: str) -> Suggestion | None:
        async with self.database.get_session() as session:
            return await db.get_suggestion(session, suggestion_id)

    async def list_suggestions(
        self,
        project_id: str,
        status: SuggestionStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Suggestion]:
        status_value = SuggestionStatus(status).value if status else None
        async with self.database.get_session() as session:
            return await db.list_suggestions(session, project_id, status_value, limit, offset)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def apply_suggestion(
        self, suggestion_id: str, edited_code: str | None = None
    ) -> ApplicationResult:
        """pending -> applied (or edited when the caller overrides the code)."""
        suggestion = await self._load(suggestion_id)
        async with self.locks.hold(*self._lock_keys(suggestion)):
            result = await self._with_retries(lambda: self._apply_once(suggestion_id, edited_code))
        logger.info(
            f"Applied suggestion {suggestion_id} as {result.suggestion.status} "
            f"({len(result.warnings)} warnings)"
        )
        self._schedule_learning(result.suggestion)
        return result

    async def _apply_once(self, suggestion_id: str, edited_code: str | None) -> ApplicationResult:
        target = SuggestionStatus.EDITED if edited_code is not None else SuggestionStatus.APPLIED
        async with self.database.get_session() as session:
            suggestion = await self._load_for_update(session, suggestion_id)
            if suggestion.status != SuggestionStatus.PENDING.value:
                raise InvalidState(
                    f"Cannot apply a suggestion that is {suggestion.status}",
                    suggestion.status,
                    target.value,
                )
            code = edited_code if edited_code is not None else suggestion.suggested_code

            current = await self._current_contents(
                session, suggestion.project_id, suggestion.file_paths
            )
            planned = {
                path: replace_code(path, current[path], suggestion.original_code, code)
                for path in suggestion.file_paths
            }
            warnings = await self._validate(session, suggestion.project_id, planned)
            written = await self._write_versions(
                session, suggestion.project_id, planned, ChangeType.EDIT, suggestion.user_id
            )

            swapped = await db.compare_and_set_status(
                session,
                suggestion_id,
                SuggestionStatus.PENDING.value,
                target.value,
                applied_code=code,
                applied_at=utcnow(),
                applied_versions={
                    path: {"applied": number, "latest": number} for path, number in written.items()
                },
            )
            if not swapped:
                raise InvalidState(
                    "Suggestion changed state during apply", SuggestionStatus.PENDING.value, target.value
                )
            suggestion = await self._load_for_update(session, suggestion_id)
        return ApplicationResult(suggestion=suggestion, warnings=warnings, versions=written)

    async def reject_suggestion(self, suggestion_id: str) -> Suggestion:
        """pending -> rejected. Never feeds pattern learning."""
        suggestion = await self._load(suggestion_id)
        async with self.locks.hold(suggestion_key(suggestion_id)):
            async with self.database.get_session() as session:
                swapped = await db.compare_and_set_status(
                    session,
                    suggestion_id,
                    SuggestionStatus.PENDING.value,
                    SuggestionStatus.REJECTED.value,
                    rejected_at=utcnow(),
                )
                suggestion = await self._load_for_update(session, suggestion_id)
                if not swapped:
                    raise InvalidState(
                        f"Cannot reject a suggestion that is {suggestion.status}",
                        suggestion.status,
                        SuggestionStatus.REJECTED.value,
                    )
        logger.info(f"Rejected suggestion {suggestion_id}")
        return suggestion

    async def edit_applied_suggestion(self, suggestion_id: str, code: str) -> ApplicationResult:
        """applied -> edited: the user reworks the applied content after the fact.

        The suggestion was already handed to pattern learning when it was applied.
        """
        suggestion = await self._load(suggestion_id)
        async with self.locks.hold(*self._lock_keys(suggestion)):
            result = await self._with_retries(lambda: self._edit_once(suggestion_id, code))
        logger.info(f"Edited applied suggestion {suggestion_id}")
        return result

    async def _edit_once(self, suggestion_id: str, code: str) -> ApplicationResult:
        async with self.database.get_session() as session:
            suggestion = await self._load_for_update(session, suggestion_id)
            if suggestion.status != SuggestionStatus.APPLIED.value:
                raise InvalidState(
                    f"Only applied suggestions can be edited, this one is {suggestion.status}",
                    suggestion.status,
                    SuggestionStatus.EDITED.value,
                )
            planned: dict[str, str] = {}
            for path in suggestion.file_paths:
                file = await db.get_file_by_path(session, suggestion.project_id, path)
                if file is None:
                    raise NotFound("File", path)
                planned[path] = await self._reworked_content(session, suggestion, file, path, code)
            warnings = await self._validate(session, suggestion.project_id, planned)
            written = await self._write_versions(
                session, suggestion.project_id, planned, ChangeType.EDIT, suggestion.user_id
            )
            swapped = await db.compare_and_set_status(
                session,
                suggestion_id,
                SuggestionStatus.APPLIED.value,
                SuggestionStatus.EDITED.value,
                applied_code=code,
                applied_versions={
                    path: {**suggestion.applied_versions.get(path, {}), "latest": number}
                    for path, number in written.items()
                },
            )
            if not swapped:
                raise InvalidState(
                    "Suggestion changed state during edit",
                    SuggestionStatus.APPLIED.value,
                    SuggestionStatus.EDITED.value,
                )
            suggestion = await self._load_for_update(session, suggestion_id)
        return ApplicationResult(suggestion=suggestion, warnings=warnings, versions=written)

    async def undo_suggestion(self, suggestion_id: str) -> Suggestion:
        """applied|edited -> undone, writing a forward `restore` version per file."""
        suggestion = await self._load(suggestion_id)
        async with self.locks.hold(*self._lock_keys(suggestion)):
            suggestion = await self._with_retries(lambda: self._undo_once(suggestion_id))
        logger.info(f"Undid suggestion {suggestion_id}")
        return suggestion

    async def _undo_once(self, suggestion_id: str) -> Suggestion:
        async with self.database.get_session() as session:
            suggestion = await self._load_for_update(session, suggestion_id)
            if suggestion.status not in ACCEPTED:
                raise InvalidState(
                    f"Cannot undo a suggestion that is {suggestion.status}",
                    suggestion.status,
                    SuggestionStatus.UNDONE.value,
                )

            planned: dict[str, str] = {}
            for path in suggestion.file_paths:
                file = await db.get_file_by_path(session, suggestion.project_id, path)
                if file is None:
                    raise NotFound("File", path)
                planned[path] = await self._pre_apply_content(session, suggestion, file, path)

            await self._write_versions(
                session, suggestion.project_id, planned, ChangeType.RESTORE, suggestion.user_id
            )
            swapped = await db.compare_and_set_status(
                session,
                suggestion_id,
                list(ACCEPTED),
                SuggestionStatus.UNDONE.value,
                applied_code=None,
                applied_at=None,
            )
            if not swapped:
                raise InvalidState(
                    "Suggestion changed state during undo",
                    suggestion.status,
                    SuggestionStatus.UNDONE.value,
                )
            return await self._load_for_update(session, suggestion_id)

    async def _untouched_base(
        self, session: AsyncSession, suggestion: Suggestion, file: ProjectFile, path: str
    ) -> tuple[str | None, str]:
        """(pre-apply content, current content).

        The pre-apply content is None once someone else has written to the file
        after this suggestion; a file with no history before the apply held
        exactly `original_code`.
        """
        latest = await self.versions.latest_version(session, file.id)
        current = latest.read_content() if latest else ""
        written = suggestion.applied_versions.get(path) or {}
        if latest is None or latest.version_number != written.get("latest"):
            return None, current
        previous = await self.versions.get_version_by_number(
            session, file.id, written["applied"] - 1
        )
        if previous is None:
            return suggestion.original_code, current
        return previous.read_content(), current

    def _applied_anchor(self, suggestion: Suggestion, path: str, current: str) -> str:
        """The applied code to locate in a file that moved on since the apply."""
        applied_code = suggestion.applied_code or ""
        if not applied_code or applied_code not in current:
            raise ContentConflict(
                f"{path} changed since the suggestion was applied",
                path=path,
                current_content=current,
                suggested_content=suggestion.original_code,
            )
        return applied_code

    async def _reworked_content(
        self, session: AsyncSession, suggestion: Suggestion, file: ProjectFile, path: str, code: str
    ) -> str:
        base, current = await self._untouched_base(session, suggestion, file, path)
        if base is not None:
            return replace_code(path, base, suggestion.original_code, code)
        if not suggestion.original_code:
            return code
        anchor = self._applied_anchor(suggestion, path, current)
        return current.replace(anchor, code, 1)

    async def _pre_apply_content(
        self, session: AsyncSession, suggestion: Suggestion, file: ProjectFile, path: str
    ) -> str:
        base, current = await self._untouched_base(session, suggestion, file, path)
        if base is not None:
            return base

        # The file moved on since the apply: reverse the replacement in place.
        if not suggestion.original_code:
            raise ContentConflict(
                f"{path} changed since the suggestion was applied",
                path=path,
                current_content=current,
                suggested_content=suggestion.original_code,
            )
        anchor = self._applied_anchor(suggestion, path, current)
        return current.replace(anchor, suggestion.original_code, 1)

    # =========================================================================
    # Manual edits and history navigation
    # =========================================================================

    async def record_edit(self, project_id: str, path: str, content: str, author: str) -> FileVersion:
        """Write a manual edit through the same validate-then-version path as suggestions."""
        async with self.locks.hold(file_key(project_id, path)):
            return await self._with_retries(
                lambda: self._record_edit_once(project_id, path, content, author)
            )

    async def _record_edit_once(
        self, project_id: str, path: str, content: str, author: str
    ) -> FileVersion:
        async with self.database.get_session() as session:
            await self._validate(session, project_id, {path: content})
            file = await db.get_or_create_file(session, project_id, path)
            return await self.versions.create_version(
                session, file.id, content, ChangeType.EDIT, author
            )

    async def undo_file(self, file_id: str, current_version: int, author: str) -> FileVersion:
        """Record version `current_version - 1` as a new restore version."""
        return await self._navigate(file_id, current_version, author, self.versions.undo)

    async def redo_file(self, file_id: str, current_version: int, author: str) -> FileVersion:
        """Record version `current_version + 1` as a new restore version."""
        return await self._navigate(file_id, current_version, author, self.versions.redo)

    async def _navigate(
        self,
        file_id: str,
        current_version: int,
        author: str,
        step: Callable[[AsyncSession, str, int], Awaitable[FileVersion]],
    ) -> FileVersion:
        async with self.database.get_session() as session:
            file = await db.get_file(session, file_id)
        if file is None:
            raise NotFound("File", file_id)

        async def once() -> FileVersion:
            async with self.database.get_session() as session:
                target = await step(session, file_id, current_version)
                return await self.versions.restore(session, file_id, target, author)

        async with self.locks.hold(file_key(file.project_id, file.path)):
            return await self._with_retries(once)

    async def can_undo(self, file_id: str, current_version: int) -> bool:
        async with self.database.get_session() as session:
            return await self.versions.can_undo(session, file_id, current_version)

    async def can_redo(self, file_id: str, current_version: int) -> bool:
        async with self.database.get_session() as session:
            return await self.versions.can_redo(session, file_id, current_version)

    async def get_version(self, version_id: str) -> FileVersion | None:
        async with self.database.get_session() as session:
            return await self.versions.get_version(session, version_id)

    async def get_version_chain(
        self, file_id: str, limit: int = 50, offset: int = 0
    ) -> list[FileVersion]:
        async with self.database.get_session() as session:
            return await self.versions.get_version_chain(session, file_id, limit, offset)

    # =========================================================================
    # Confidence
    # =========================================================================

    async def review_tier(self, suggestion: Suggestion) -> ReviewTier:
        async with self.database.get_session() as session:
            thresholds = await self.calibrator.get_calibrated_thresholds(
                session, suggestion.project_id
            )
        level = get_confidence_level(suggestion.confidence, thresholds)
        return ReviewTier(level=level, label=get_confidence_label(level), thresholds=thresholds)

    async def record_feedback(
        self,
        project_id: str,
        rating: FeedbackRating | str,
        confidence: object = None,
        content: str | None = None,
        suggestion_id: str | None = None,
    ) -> FeedbackEvent:
        async with self.database.get_session() as session:
            return await db.add_feedback(
                session,
                project_id,
                FeedbackRating(rating).value,
                confidence=clamp_confidence(confidence),
                content=content,
                suggestion_id=suggestion_id,
            )

    async def calibrate_project(self, project_id: str, save: bool = True) -> CalibrationResult:
        async with self.database.get_session() as session:
            result = await self.calibrator.calibrate(session, project_id)
            if save:
                await self.calibrator.save_calibration(session, result)
        return result

    # =========================================================================
    # Pattern learning
    # =========================================================================

    def _schedule_learning(self, suggestion: Suggestion) -> None:
        if suggestion.status not in ACCEPTED:
            return
        task = asyncio.create_task(self._learn(suggestion))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _learn(self, suggestion: Suggestion) -> None:
        try:
            source_file = suggestion.file_paths[0]
            change = CodeChange(
                file_name=source_file,
                original_content=suggestion.original_code,
                proposed_content=suggestion.applied_code or suggestion.suggested_code,
                reasoning=suggestion.explanation,
                agent_type=AgentType(suggestion.agent_type or AgentType.for_path(source_file)),
                confidence=suggestion.confidence,
            )
            pattern = self.patterns.extract_pattern(change)
            if pattern is None:
                logger.debug(f"No pattern extracted from suggestion {suggestion.id}")
                return
            async with self.database.get_session() as session:
                await self.patterns.store_pattern(
                    session, suggestion.user_id, pattern, source_file, suggestion.id
                )
        except Exception as exc:
            logger.exception(f"Pattern learning failed for suggestion {suggestion.id}: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight pattern learning; call before shutdown."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.database.dispose()
