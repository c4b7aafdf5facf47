import asyncio
import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from synapse import db
from synapse.calibration import CalibrationResult, ConfidenceLevel, Thresholds
from synapse.config import Settings
from synapse.db import Database
from synapse.errors import (
    ContentConflict,
    InvalidState,
    NoMoreUndo,
    NotFound,
    ValidationFailed,
    VersionConflict,
)
from synapse.models import AgentType, CodeChange, FileVersion, LearnedPattern, utcnow
from synapse.patterns import LearnedPatternProposal, PatternLearner
from synapse.suggestions import SuggestionApplicationService, infer_scope, replace_code
from synapse.versions import VersionStore

PROJECT = "project-1"
USER = "user-1"


class RecordingLearner(PatternLearner):
    """Records every change handed to extraction."""

    def __init__(self) -> None:
        self.seen: list[CodeChange] = []

    def extract_pattern(self, change: CodeChange) -> LearnedPatternProposal | None:
        self.seen.append(change)
        return super().extract_pattern(change)


class ExplodingLearner(PatternLearner):
    def extract_pattern(self, change: CodeChange) -> LearnedPatternProposal | None:
        raise RuntimeError("extractor crashed")


async def _version_count(database: Database) -> int:
    async with database.get_session() as session:
        result = await session.execute(select(func.count()).select_from(FileVersion))
        return int(result.scalar_one())


async def _file_id(database: Database, path: str) -> str:
    async with database.get_session() as session:
        file = await db.get_file_by_path(session, PROJECT, path)
    assert file is not None
    return file.id


def test_infer_scope() -> None:
    assert infer_scope(["a", "b"], "x", "y").value == "multi_file"
    assert infer_scope(["a"], "x\ny", "z").value == "multi_line"
    assert infer_scope(["a"], "x", "y\n").value == "single_line"


def test_replace_code() -> None:
    assert replace_code("f", "a\nb\nb", "b", "c") == "a\nc\nb"
    assert replace_code("f", "anything", "", "whole") == "whole"
    assert replace_code("f", None, "b", "c") == "c"
    with pytest.raises(ContentConflict):
        replace_code("f", "a\nx", "b", "c")


@pytest.mark.asyncio
async def test_end_to_end_apply_then_undo(
    service: SuggestionApplicationService, database: Database
) -> None:
    first = await service.record_edit(PROJECT, "notes.txt", "a\nb", USER)
    file_id = first.file_id
    chain = await service.get_version_chain(file_id)
    assert [(v.version_number, v.change_summary) for v in chain] == [(1, "Initial version")]

    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "b", "c")
    result = await service.apply_suggestion(suggestion.id)
    assert result.suggestion.status == "applied"
    assert result.suggestion.applied_code == "c"
    assert result.suggestion.applied_at is not None
    assert result.versions == {"notes.txt": 2}
    assert result.warnings == []

    latest = (await service.get_version_chain(file_id))[0]
    assert latest.version_number == 2
    assert latest.change_summary == "Modified 1 line"
    assert latest.read_content() == "a\nc"

    undone = await service.undo_suggestion(suggestion.id)
    assert undone.status == "undone"
    assert undone.applied_code is None
    assert undone.applied_at is None

    chain = await service.get_version_chain(file_id)
    assert chain[0].version_number == 3
    assert chain[0].change_type == "restore"
    assert chain[0].read_content() == "a\nb"
    assert await _version_count(database) == 3


@pytest.mark.asyncio
async def test_validation_failure_leaves_suggestion_pending(
    service: SuggestionApplicationService, database: Database
) -> None:
    suggestion = await service.create_suggestion(
        USER, PROJECT, ["sections/hero.liquid"], "", "{% if a %}{% if b %}{% endif %}"
    )

    with pytest.raises(ValidationFailed) as excinfo:
        await service.apply_suggestion(suggestion.id)

    errors = excinfo.value.errors
    assert len(errors) == 1
    assert errors[0].file == "sections/hero.liquid"
    reloaded = await service.get_suggestion(suggestion.id)
    assert reloaded is not None
    assert reloaded.status == "pending"
    assert reloaded.applied_code is None
    assert await _version_count(database) == 0


@pytest.mark.asyncio
async def test_multi_file_validation_is_all_or_nothing(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "assets/a.css", ".a { color: red; }", USER)
    suggestion = await service.create_suggestion(
        USER, PROJECT, ["assets/a.css", "assets/b.css"], "", ".x { color: blue; "
    )
    with pytest.raises(ValidationFailed) as excinfo:
        await service.apply_suggestion(suggestion.id)

    assert {e.file for e in excinfo.value.errors} == {"assets/a.css", "assets/b.css"}
    assert await _version_count(database) == 1


@pytest.mark.asyncio
async def test_warnings_do_not_block(service: SuggestionApplicationService) -> None:
    suggestion = await service.create_suggestion(
        USER, PROJECT, ["sections/main.liquid"], "", "{% render 'missing-snippet' %}"
    )
    result = await service.apply_suggestion(suggestion.id)
    assert result.suggestion.status == "applied"
    assert [w.category for w in result.warnings] == ["snippet_reference"]


@pytest.mark.asyncio
async def test_edited_override_is_validated_and_written(
    service: SuggestionApplicationService, database: Database
) -> None:
    suggestion = await service.create_suggestion(
        USER, PROJECT, ["assets/theme.css"], "", ".a { color: red; }"
    )

    with pytest.raises(ValidationFailed):
        await service.apply_suggestion(suggestion.id, edited_code=".a { color: blue; ")
    assert await _version_count(database) == 0

    result = await service.apply_suggestion(suggestion.id, edited_code=".a { color: blue; }")
    assert result.suggestion.status == "edited"
    assert result.suggestion.applied_code == ".a { color: blue; }"
    file_id = await _file_id(database, "assets/theme.css")
    latest = (await service.get_version_chain(file_id))[0]
    assert latest.read_content() == ".a { color: blue; }"


@pytest.mark.asyncio
async def test_state_machine_rejects_illegal_transitions(
    service: SuggestionApplicationService,
) -> None:
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "", "hello")

    with pytest.raises(InvalidState):
        await service.undo_suggestion(suggestion.id)

    rejected = await service.reject_suggestion(suggestion.id)
    assert rejected.status == "rejected"
    assert rejected.rejected_at is not None
    assert rejected.applied_at is None

    with pytest.raises(InvalidState):
        await service.apply_suggestion(suggestion.id)
    with pytest.raises(InvalidState):
        await service.reject_suggestion(suggestion.id)


@pytest.mark.asyncio
async def test_missing_suggestion(service: SuggestionApplicationService) -> None:
    assert await service.get_suggestion("missing") is None
    with pytest.raises(NotFound):
        await service.apply_suggestion("missing")


@pytest.mark.asyncio
async def test_conflict_when_file_moved_on(service: SuggestionApplicationService) -> None:
    await service.record_edit(PROJECT, "notes.txt", "alpha\nbeta", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "beta", "gamma")
    await service.record_edit(PROJECT, "notes.txt", "alpha\ndelta", USER)

    with pytest.raises(ContentConflict) as excinfo:
        await service.apply_suggestion(suggestion.id)
    assert excinfo.value.current_content == "alpha\ndelta"
    reloaded = await service.get_suggestion(suggestion.id)
    assert reloaded is not None and reloaded.status == "pending"


@pytest.mark.asyncio
async def test_undo_after_later_edit_reverses_in_place(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "one\ntwo\nthree", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "two", "TWO")
    await service.apply_suggestion(suggestion.id)
    await service.record_edit(PROJECT, "notes.txt", "one\nTWO\nthree\nfour", USER)

    await service.undo_suggestion(suggestion.id)
    file_id = await _file_id(database, "notes.txt")
    latest = (await service.get_version_chain(file_id))[0]
    assert latest.change_type == "restore"
    assert latest.read_content() == "one\ntwo\nthree\nfour"


@pytest.mark.asyncio
async def test_edit_applied_then_undo_restores_pre_suggestion_content(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "keep\nold", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "old", "new")
    await service.apply_suggestion(suggestion.id)

    edited = await service.edit_applied_suggestion(suggestion.id, "newer")
    assert edited.suggestion.status == "edited"
    assert edited.suggestion.applied_code == "newer"
    file_id = await _file_id(database, "notes.txt")
    assert (await service.get_version_chain(file_id))[0].read_content() == "keep\nnewer"

    with pytest.raises(InvalidState):
        await service.edit_applied_suggestion(suggestion.id, "again")

    await service.undo_suggestion(suggestion.id)
    assert (await service.get_version_chain(file_id))[0].read_content() == "keep\nold"


@pytest.mark.asyncio
async def test_undo_restores_original_code_for_file_without_history(
    service: SuggestionApplicationService, database: Database
) -> None:
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "b", "c")
    await service.apply_suggestion(suggestion.id)
    file_id = await _file_id(database, "notes.txt")
    assert (await service.get_version_chain(file_id))[0].read_content() == "c"

    await service.undo_suggestion(suggestion.id)
    latest = (await service.get_version_chain(file_id))[0]
    assert (latest.version_number, latest.change_type) == (2, "restore")
    assert latest.read_content() == "b"

    created = await service.create_suggestion(USER, PROJECT, ["fresh.txt"], "", "new file")
    await service.apply_suggestion(created.id)
    await service.undo_suggestion(created.id)
    fresh_id = await _file_id(database, "fresh.txt")
    assert (await service.get_version_chain(fresh_id))[0].read_content() == ""


@pytest.mark.asyncio
async def test_edit_after_deletion_keeps_surrounding_lines(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "a\nb\nc", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "b\n", "")
    await service.apply_suggestion(suggestion.id)
    file_id = await _file_id(database, "notes.txt")
    assert (await service.get_version_chain(file_id))[0].read_content() == "a\nc"

    edited = await service.edit_applied_suggestion(suggestion.id, "B\n")
    assert edited.suggestion.applied_code == "B\n"
    assert (await service.get_version_chain(file_id))[0].read_content() == "a\nB\nc"

    await service.undo_suggestion(suggestion.id)
    assert (await service.get_version_chain(file_id))[0].read_content() == "a\nb\nc"


@pytest.mark.asyncio
async def test_undo_deletion_restores_removed_lines_in_place(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "a\nb\nc", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "b\n", "")
    await service.apply_suggestion(suggestion.id)

    await service.undo_suggestion(suggestion.id)
    file_id = await _file_id(database, "notes.txt")
    assert (await service.get_version_chain(file_id))[0].read_content() == "a\nb\nc"


@pytest.mark.asyncio
async def test_deletion_cannot_be_located_after_file_moved_on(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "a\nb\nc", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "b\n", "")
    await service.apply_suggestion(suggestion.id)
    await service.record_edit(PROJECT, "notes.txt", "a\nc\nd", USER)

    with pytest.raises(ContentConflict):
        await service.edit_applied_suggestion(suggestion.id, "B\n")
    with pytest.raises(ContentConflict):
        await service.undo_suggestion(suggestion.id)

    file_id = await _file_id(database, "notes.txt")
    assert (await service.get_version_chain(file_id))[0].read_content() == "a\nc\nd"
    reloaded = await service.get_suggestion(suggestion.id)
    assert reloaded is not None and reloaded.status == "applied"


@pytest.mark.asyncio
async def test_pattern_learning_only_for_accepted_changes(
    database: Database, settings: Settings
) -> None:
    learner = RecordingLearner()
    service = SuggestionApplicationService(database, pattern_learner=learner, settings=settings)
    quoted = "const a = 'x';\nconst b = 'y';\nconst c = 'z';"

    rejected = await service.create_suggestion(USER, PROJECT, ["assets/r.js"], "", quoted)
    await service.reject_suggestion(rejected.id)

    applied = await service.create_suggestion(USER, PROJECT, ["assets/a.js"], "", quoted)
    await service.apply_suggestion(applied.id)
    await service.drain()
    await service.undo_suggestion(applied.id)
    await service.drain()

    assert [change.file_name for change in learner.seen] == ["assets/a.js"]
    assert learner.seen[0].agent_type == AgentType.JAVASCRIPT

    async with database.get_session() as session:
        rows = (await session.execute(select(LearnedPattern))).scalars().all()
    assert [(r.signature, r.suggestion_id) for r in rows] == [
        ("Use single quotes for strings", applied.id)
    ]


@pytest.mark.asyncio
async def test_post_hoc_edit_is_not_learned_twice(database: Database, settings: Settings) -> None:
    learner = RecordingLearner()
    service = SuggestionApplicationService(database, pattern_learner=learner, settings=settings)
    quoted = "const a = 'x';\nconst b = 'y';\nconst c = 'z';"

    suggestion = await service.create_suggestion(USER, PROJECT, ["assets/a.js"], "", quoted)
    await service.apply_suggestion(suggestion.id)
    await service.drain()
    await service.edit_applied_suggestion(suggestion.id, quoted + "\nconst d = 'w';")
    await service.drain()

    assert len(learner.seen) == 1
    async with database.get_session() as session:
        rows = (await session.execute(select(LearnedPattern))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_pattern_learning_failure_does_not_affect_apply(
    database: Database, settings: Settings
) -> None:
    service = SuggestionApplicationService(
        database, pattern_learner=ExplodingLearner(), settings=settings
    )
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "", "text")
    result = await service.apply_suggestion(suggestion.id)
    await service.drain()

    assert result.suggestion.status == "applied"
    reloaded = await service.get_suggestion(suggestion.id)
    assert reloaded is not None and reloaded.status == "applied"


@pytest.mark.asyncio
async def test_concurrent_edits_get_contiguous_versions(
    service: SuggestionApplicationService, database: Database
) -> None:
    await asyncio.gather(
        *(service.record_edit(PROJECT, "notes.txt", f"edit {i}", USER) for i in range(8))
    )

    file_id = await _file_id(database, "notes.txt")
    chain = await service.get_version_chain(file_id)
    assert sorted(v.version_number for v in chain) == list(range(1, 9))


@pytest.mark.asyncio
async def test_concurrent_double_apply_applies_once(
    service: SuggestionApplicationService,
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "x\ny", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "y", "z")

    outcomes = await asyncio.gather(
        service.apply_suggestion(suggestion.id),
        service.apply_suggestion(suggestion.id),
        return_exceptions=True,
    )
    assert sum(isinstance(o, InvalidState) for o in outcomes) == 1

    final = await service.get_suggestion(suggestion.id)
    assert final is not None and final.status == "applied"


@pytest.mark.asyncio
async def test_concurrent_apply_and_undo_serialize(
    service: SuggestionApplicationService, database: Database
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "x\ny", USER)
    suggestion = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "y", "z")

    applied, undone = await asyncio.gather(
        service.apply_suggestion(suggestion.id),
        service.undo_suggestion(suggestion.id),
        return_exceptions=True,
    )
    assert not isinstance(applied, Exception)

    final = await service.get_suggestion(suggestion.id)
    assert final is not None
    file_id = await _file_id(database, "notes.txt")
    chain = await service.get_version_chain(file_id)
    if isinstance(undone, InvalidState):
        assert final.status == "applied"
        assert [(v.version_number, v.read_content()) for v in chain] == [(2, "x\nz"), (1, "x\ny")]
    else:
        assert final.status == "undone"
        assert [(v.change_type, v.read_content()) for v in chain] == [
            ("restore", "x\ny"),
            ("edit", "x\nz"),
            ("create", "x\ny"),
        ]


@pytest.mark.asyncio
async def test_file_undo_and_redo_record_restore_versions(
    service: SuggestionApplicationService,
) -> None:
    v1 = await service.record_edit(PROJECT, "notes.txt", "first", USER)
    await service.record_edit(PROJECT, "notes.txt", "second", USER)

    assert not await service.can_undo(v1.file_id, 1)
    assert await service.can_undo(v1.file_id, 2)

    restored = await service.undo_file(v1.file_id, 2, USER)
    assert (restored.version_number, restored.change_type) == (3, "restore")
    assert restored.read_content() == "first"

    redone = await service.redo_file(v1.file_id, 1, USER)
    assert redone.version_number == 4
    assert redone.read_content() == "second"

    with pytest.raises(NoMoreUndo):
        await service.undo_file(v1.file_id, 1, USER)
    with pytest.raises(NotFound):
        await service.undo_file("missing", 2, USER)


@pytest.mark.asyncio
async def test_record_edit_rejects_invalid_content(
    service: SuggestionApplicationService, database: Database
) -> None:
    with pytest.raises(ValidationFailed):
        await service.record_edit(PROJECT, "config/settings.json", "{broken", USER)
    assert await _version_count(database) == 0


@pytest.mark.asyncio
async def test_review_tier_uses_calibrated_thresholds(
    service: SuggestionApplicationService, database: Database
) -> None:
    suggestion = await service.create_suggestion(
        USER, PROJECT, ["notes.txt"], "", "x", confidence=0.65
    )
    assert (await service.review_tier(suggestion)).level == ConfidenceLevel.MEDIUM

    async with database.get_session() as session:
        await service.calibrator.save_calibration(
            session,
            CalibrationResult(PROJECT, Thresholds(high=0.6, medium=0.4), 30, utcnow(), "test"),
        )
    assert (await service.review_tier(suggestion)).level == ConfidenceLevel.HIGH

    unscored = await service.create_suggestion(USER, PROJECT, ["notes.txt"], "", "x")
    tier = await service.review_tier(unscored)
    assert tier.level == ConfidenceLevel.UNKNOWN
    assert tier.label == ""


@pytest.mark.asyncio
async def test_propose_auto_applies_high_confidence_when_enabled(
    database: Database, settings: Settings
) -> None:
    settings = settings.model_copy(update={"auto_apply_enabled": True})
    service = SuggestionApplicationService(database, settings=settings)

    high = await service.propose(
        USER,
        PROJECT,
        CodeChange("assets/app.js", "", "let a = 1", "init", AgentType.JAVASCRIPT, 0.95),
    )
    low = await service.propose(
        USER, PROJECT, CodeChange("assets/other.js", "", "let b = 2", "init", confidence=0.3)
    )
    await service.drain()

    assert high.status == "applied"
    assert high.agent_type == "javascript"
    assert low.status == "pending"
    assert low.scope == "single_line"


@pytest.mark.asyncio
async def test_feedback_drives_calibration(service: SuggestionApplicationService) -> None:
    for _ in range(18):
        await service.record_feedback(PROJECT, "thumbs_up", confidence=0.7)
    for _ in range(2):
        await service.record_feedback(PROJECT, "thumbs_down", confidence=0.7)

    result = await service.calibrate_project(PROJECT)
    assert result.thresholds == Thresholds(high=0.8, medium=0.6)
    assert result.sample_size == 20

    listed = await service.list_suggestions(PROJECT)
    assert listed == []


class LaggingStore(VersionStore):
    """Allocates from the second-newest version on its first write."""

    def __init__(self) -> None:
        super().__init__()
        self.stale_reads = 1

    async def latest_version(self, session: AsyncSession, file_id: str) -> FileVersion | None:
        latest = await super().latest_version(session, file_id)
        if self.stale_reads and latest is not None and latest.version_number > 1:
            self.stale_reads -= 1
            return await self.get_version_by_number(session, file_id, latest.version_number - 1)
        return latest


@pytest.mark.asyncio
async def test_version_conflict_is_retried_without_gaps(
    service: SuggestionApplicationService,
    database: Database,
    settings: Settings,
    caplog: pytest.LogCaptureFixture,
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "one", USER)
    await service.record_edit(PROJECT, "notes.txt", "two", USER)

    store = LaggingStore()
    lagging = SuggestionApplicationService(database, version_store=store, settings=settings)
    with caplog.at_level(logging.WARNING, logger="synapse.suggestions"):
        version = await lagging.record_edit(PROJECT, "notes.txt", "three", USER)

    assert store.stale_reads == 0
    assert "retrying (1/3)" in caplog.text
    assert version.version_number == 3
    chain = await service.get_version_chain(version.file_id)
    assert [(v.version_number, v.read_content()) for v in chain] == [
        (3, "three"),
        (2, "two"),
        (1, "one"),
    ]


@pytest.mark.asyncio
async def test_version_conflict_surfaces_when_retries_run_out(
    service: SuggestionApplicationService, database: Database, settings: Settings
) -> None:
    await service.record_edit(PROJECT, "notes.txt", "one", USER)
    await service.record_edit(PROJECT, "notes.txt", "two", USER)

    lagging = SuggestionApplicationService(
        database,
        version_store=LaggingStore(),
        settings=settings.model_copy(update={"version_write_retries": 0}),
    )
    with pytest.raises(VersionConflict):
        await lagging.record_edit(PROJECT, "notes.txt", "three", USER)
    assert await _version_count(database) == 2
