"""Async database connection and record operations for the engine."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .errors import (
    SchemaNotInitializedError,
    StorageFailure,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import Base, FeedbackEvent, ProjectFile, Suggestion, utcnow


class Database:
    """Owns the engine and session factory; one instance per process or test."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"timeout": 30}
        else:
            kwargs["pool_pre_ping"] = True
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        return cls(settings.async_database_url, echo=settings.db_echo)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for a session committed on clean exit."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    if is_schema_missing_error(exc):
                        raise SchemaNotInitializedError(
                            schema_not_initialized_message(exc)
                        ) from exc
                    raise StorageFailure(
                        "Storage operation failed", {"error": type(exc).__name__}
                    ) from exc
                raise


# =============================================================================
# File Registry Operations
# =============================================================================


async def get_file(session: AsyncSession, file_id: str) -> ProjectFile | None:
    result = await session.execute(select(ProjectFile).where(ProjectFile.id == file_id))
    return result.scalar_one_or_none()


async def get_file_by_path(session: AsyncSession, project_id: str, path: str) -> ProjectFile | None:
    result = await session.execute(
        select(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
    )
    return result.scalar_one_or_none()


async def get_or_create_file(session: AsyncSession, project_id: str, path: str) -> ProjectFile:
    """Get or register a file path within a project."""
    file = await get_file_by_path(session, project_id, path)
    if file is None:
        file = ProjectFile(project_id=project_id, path=path)
        session.add(file)
        await session.flush()
    return file


async def list_file_paths(session: AsyncSession, project_id: str) -> set[str]:
    """Paths known for a project; the validator's reference check runs against these."""
    result = await session.execute(
        select(ProjectFile.path).where(ProjectFile.project_id == project_id)
    )
    return set(result.scalars().all())


# =============================================================================
# Suggestion Operations
# =============================================================================


async def get_suggestion(
    session: AsyncSession, suggestion_id: str, *, refresh: bool = False
) -> Suggestion | None:
    query = select(Suggestion).where(Suggestion.id == suggestion_id)
    if refresh:
        query = query.execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_suggestions(
    session: AsyncSession,
    project_id: str,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Suggestion]:
    query = select(Suggestion).where(Suggestion.project_id == project_id)
    if status:
        query = query.where(Suggestion.status == status)
    query = query.order_by(Suggestion.created_at.desc()).limit(limit).offset(offset)

    result = await session.execute(query)
    return list(result.scalars().all())


async def compare_and_set_status(
    session: AsyncSession,
    suggestion_id: str,
    expected: str | Sequence[str],
    new_status: str,
    **values: Any,
) -> bool:
    """Flip status only if it still holds an expected value. Returns False on a lost race."""
    allowed = [expected] if isinstance(expected, str) else list(expected)
    result = await session.execute(
        update(Suggestion)
        .where(Suggestion.id == suggestion_id, Suggestion.status.in_(allowed))
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# =============================================================================
# Feedback Operations
# =============================================================================


async def add_feedback(
    session: AsyncSession,
    project_id: str,
    rating: str,
    confidence: float | None = None,
    content: str | None = None,
    suggestion_id: str | None = None,
) -> FeedbackEvent:
    event = FeedbackEvent(
        project_id=project_id,
        rating=rating,
        confidence=confidence,
        content=content,
        suggestion_id=suggestion_id,
    )
    session.add(event)
    await session.flush()
    return event


async def list_feedback(session: AsyncSession, project_id: str) -> list[FeedbackEvent]:
    result = await session.execute(
        select(FeedbackEvent)
        .where(FeedbackEvent.project_id == project_id)
        .order_by(FeedbackEvent.created_at)
    )
    return list(result.scalars().all())

