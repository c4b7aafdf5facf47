"""
Append-only per-file version history.

Version numbers are allocated as max + 1 inside the caller's transaction.
The unique (file_id, version_number) constraint turns a lost race into
VersionConflict; callers serialize per file and retry the whole unit of work.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import codec
from .changes import ChangeType, detect_change
from .config import Settings
from .diff import generate_diff
from .errors import NoMoreRedo, NoMoreUndo, VersionConflict
from .models import FileVersion, utcnow

logger = logging.getLogger(__name__)

_DELETE_CHUNK = 500


class VersionStore:
    """Creates, navigates and prunes FileVersion rows."""

    def __init__(
        self,
        compression_threshold: int = 10_000,
        retention_days: int = 90,
        keep_latest: bool = True,
    ) -> None:
        self.compression_threshold = compression_threshold
        self.retention_days = retention_days
        self.keep_latest = keep_latest

    @classmethod
    def from_settings(cls, settings: Settings) -> VersionStore:
        return cls(
            compression_threshold=settings.compression_threshold,
            retention_days=settings.retention_days,
            keep_latest=settings.retention_keep_latest,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_version(
        self,
        session: AsyncSession,
        file_id: str,
        content: str,
        change_type: ChangeType | str,
        author: str,
    ) -> FileVersion:
        """Append the next version of a file. The only way versions are created."""
        previous = await self.latest_version(session, file_id)
        previous_content = previous.read_content() if previous else None
        next_number = previous.version_number + 1 if previous else 1

        detection = detect_change(previous_content, content)
        if ChangeType(change_type) == ChangeType.RESTORE:
            resolved_type = ChangeType.RESTORE
        else:
            resolved_type = detection.change_type
        diff = generate_diff(previous_content or "", content)

        compressed = len(content) > self.compression_threshold
        version = FileVersion(
            file_id=file_id,
            version_number=next_number,
            content=codec.compress(content) if compressed else content,
            is_compressed=compressed,
            change_type=resolved_type.value,
            change_summary=detection.summary,
            lines_added=diff.added,
            lines_removed=diff.removed,
            author=author,
            created_at=utcnow(),
        )
        session.add(version)
        try:
            await session.flush()
        except IntegrityError as exc:
            logger.warning(f"Version {next_number} of file {file_id} already exists")
            raise VersionConflict(file_id, next_number) from exc

        logger.info(
            f"Created version {next_number} of file {file_id} "
            f"({resolved_type.value}, compressed={compressed})"
        )
        return version

    async def restore(
        self, session: AsyncSession, file_id: str, target: FileVersion, author: str
    ) -> FileVersion:
        """Record an older version's content as a new forward `restore` version."""
        return await self.create_version(
            session, file_id, target.read_content(), ChangeType.RESTORE, author
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def latest_version(self, session: AsyncSession, file_id: str) -> FileVersion | None:
        result = await session.execute(
            select(FileVersion)
            .where(FileVersion.file_id == file_id)
            .order_by(FileVersion.version_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def current_content(self, session: AsyncSession, file_id: str) -> str | None:
        latest = await self.latest_version(session, file_id)
        return latest.read_content() if latest else None

    async def get_version(self, session: AsyncSession, version_id: str) -> FileVersion | None:
        result = await session.execute(select(FileVersion).where(FileVersion.id == version_id))
        return result.scalar_one_or_none()

    async def get_version_by_number(
        self, session: AsyncSession, file_id: str, version_number: int
    ) -> FileVersion | None:
        result = await session.execute(
            select(FileVersion).where(
                FileVersion.file_id == file_id, FileVersion.version_number == version_number
            )
        )
        return result.scalar_one_or_none()

    async def get_version_chain(
        self, session: AsyncSession, file_id: str, limit: int = 50, offset: int = 0
    ) -> list[FileVersion]:
        """Versions newest first; empty for a file with no history."""
        result = await session.execute(
            select(FileVersion)
            .where(FileVersion.file_id == file_id)
            .order_by(FileVersion.version_number.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    async def undo(self, session: AsyncSession, file_id: str, current_version: int) -> FileVersion:
        target = current_version - 1
        version = None
        if target >= 1:
            version = await self.get_version_by_number(session, file_id, target)
        if version is None:
            raise NoMoreUndo("Nothing left to undo", file_id, current_version)
        return version

    async def redo(self, session: AsyncSession, file_id: str, current_version: int) -> FileVersion:
        version = await self.get_version_by_number(session, file_id, current_version + 1)
        if version is None:
            raise NoMoreRedo("Nothing left to redo", file_id, current_version)
        return version

    async def can_undo(self, session: AsyncSession, file_id: str, current_version: int) -> bool:
        if current_version <= 1:
            return False
        return await self._exists(session, file_id, current_version - 1)

    async def can_redo(self, session: AsyncSession, file_id: str, current_version: int) -> bool:
        return await self._exists(session, file_id, current_version + 1)

    async def _exists(self, session: AsyncSession, file_id: str, version_number: int) -> bool:
        result = await session.execute(
            select(func.count())
            .select_from(FileVersion)
            .where(FileVersion.file_id == file_id, FileVersion.version_number == version_number)
        )
        return int(result.scalar_one()) > 0

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def prune(
        self,
        session: AsyncSession,
        older_than_days: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Delete versions older than the retention horizon. Returns the count deleted."""
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = (now or utcnow()) - timedelta(days=days)

        latest_numbers: dict[str, int] = {}
        if self.keep_latest:
            rows = await session.execute(
                select(FileVersion.file_id, func.max(FileVersion.version_number)).group_by(
                    FileVersion.file_id
                )
            )
            latest_numbers = {file_id: number for file_id, number in rows.all()}

        candidates = await session.execute(
            select(FileVersion.id, FileVersion.file_id, FileVersion.version_number).where(
                FileVersion.created_at < cutoff
            )
        )
        doomed = [
            version_id
            for version_id, file_id, number in candidates.all()
            if latest_numbers.get(file_id) != number
        ]

        for start in range(0, len(doomed), _DELETE_CHUNK):
            chunk = doomed[start : start + _DELETE_CHUNK]
            await session.execute(
                delete(FileVersion)
                .where(FileVersion.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )

        logger.info(f"Pruned {len(doomed)} file versions older than {days} days")
        return len(doomed)
