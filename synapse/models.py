"""SQLAlchemy models for the suggestion lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from . import codec

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
    }


# =============================================================================
# ENUMS
# =============================================================================


class SuggestionSource(str, Enum):
    AI_MODEL = "ai_model"
    STATIC_RULE = "static_rule"
    HYBRID = "hybrid"


class SuggestionScope(str, Enum):
    SINGLE_LINE = "single_line"
    MULTI_LINE = "multi_line"
    MULTI_FILE = "multi_file"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    EDITED = "edited"
    UNDONE = "undone"

    @property
    def is_accepted(self) -> bool:
        return self in (SuggestionStatus.APPLIED, SuggestionStatus.EDITED)


class AgentType(str, Enum):
    LIQUID = "liquid"
    JAVASCRIPT = "javascript"
    CSS = "css"
    REVIEW = "review"
    PROJECT_MANAGER = "project_manager"

    @classmethod
    def for_path(cls, path: str) -> AgentType:
        lowered = path.lower()
        if lowered.endswith(".liquid"):
            return cls.LIQUID
        if lowered.endswith((".js", ".mjs", ".ts")):
            return cls.JAVASCRIPT
        if lowered.endswith((".css", ".scss")):
            return cls.CSS
        return cls.PROJECT_MANAGER


class FeedbackRating(str, Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"


# =============================================================================
# INBOUND RECORDS
# =============================================================================


@dataclass
class CodeChange:
    """A change proposed by the agent-reasoning component."""

    file_name: str
    original_content: str
    proposed_content: str
    reasoning: str = ""
    agent_type: AgentType = AgentType.PROJECT_MANAGER
    confidence: float | None = None


# =============================================================================
# FILE HISTORY
# =============================================================================


class ProjectFile(Base):
    """Registry of file paths per project; versions hang off the file id."""

    __tablename__ = "project_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("project_id", "path"),)


class FileVersion(Base):
    """Immutable snapshot of a file's content."""

    __tablename__ = "file_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    file_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("project_files.id", ondelete="CASCADE"), nullable=False
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_compressed: Mapped[bool] = mapped_column(Boolean, default=False)
    change_type: Mapped[str] = mapped_column(String, nullable=False)  # 'create', 'edit', 'restore'
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    lines_added: Mapped[int] = mapped_column(Integer, default=0)
    lines_removed: Mapped[int] = mapped_column(Integer, default=0)
    author: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("file_id", "version_number"),
        Index("ix_file_versions_created_at", "created_at"),
    )

    def read_content(self) -> str:
        """Return the stored content, decompressing when needed."""
        if self.is_compressed:
            return codec.decompress(self.content)
        return self.content


# =============================================================================
# SUGGESTIONS
# =============================================================================


class Suggestion(Base):
    """A proposed code change and its disposition."""

    __tablename__ = "suggestions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    scope: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=SuggestionStatus.PENDING.value, index=True)
    file_paths: Mapped[list[str]] = mapped_column(JSONType, default=list)
    original_code: Mapped[str] = mapped_column(Text, nullable=False)
    suggested_code: Mapped[str] = mapped_column(Text, nullable=False)
    applied_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    agent_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # path -> {"applied": n, "latest": m}, the versions this suggestion wrote
    applied_versions: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


# =============================================================================
# LEARNING TABLES
# =============================================================================


class LearnedPattern(Base):
    """Edit pattern inferred from an approved change. Rows are never updated."""

    __tablename__ = "learned_patterns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    agent_type: Mapped[str] = mapped_column(String, nullable=False)
    file_type: Mapped[str | None] = mapped_column(String, nullable=True)
    signature: Mapped[str] = mapped_column(String, nullable=False)
    example: Mapped[str | None] = mapped_column(Text, nullable=True)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    source_file: Mapped[str | None] = mapped_column(String, nullable=True)
    suggestion_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("suggestions.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class FeedbackEvent(Base):
    """Thumbs up/down rating on an agent response, with the confidence it carried."""

    __tablename__ = "feedback_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    suggestion_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("suggestions.id", ondelete="SET NULL"), nullable=True
    )
    rating: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Calibration(Base):
    """Per-project confidence thresholds; one row per project, replaced in place."""

    __tablename__ = "calibrations"

    project_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    high: Mapped[float] = mapped_column(Float, nullable=False)
    medium: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, default=0)
    adjustment_reason: Mapped[str] = mapped_column(Text, default="")
    last_calibrated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
