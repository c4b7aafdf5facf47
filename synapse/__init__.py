"""
AI-Suggestion Lifecycle Engine

This package turns proposed code changes into validated, versioned and
undoable mutations of a project's file tree, with PostgreSQL-backed history,
confidence calibration from feedback, and pattern learning from approvals.
"""

__version__ = "0.1.0"

# Configuration
from synapse.config import Settings

# Confidence calibration
from synapse.calibration import (
    CalibrationResult,
    ConfidenceCalibrator,
    ConfidenceLevel,
    Thresholds,
    get_confidence_label,
    get_confidence_level,
)

# Change detection and diffs
from synapse.changes import ChangeType, detect_change
from synapse.diff import DiffResult, generate_diff

# Storage
from synapse.db import Database
from synapse.errors import (
    ContentConflict,
    DecodeError,
    EngineError,
    InvalidState,
    NoMoreRedo,
    NoMoreUndo,
    NotFound,
    StorageFailure,
    ValidationFailed,
    VersionConflict,
)
from synapse.locks import InProcessLockManager, LockManager, RedisLockManager

# Core models
from synapse.models import (
    AgentType,
    CodeChange,
    FileVersion,
    LearnedPattern,
    ProjectFile,
    Suggestion,
    SuggestionScope,
    SuggestionSource,
    SuggestionStatus,
)
from synapse.patterns import PatternLearner

# Orchestration
from synapse.suggestions import ApplicationResult, SuggestionApplicationService
from synapse.validation import ValidationIssue, ValidationReport, validate
from synapse.versions import VersionStore

__all__ = [
    # Version
    "__version__",
    # Models
    "Suggestion",
    "FileVersion",
    "ProjectFile",
    "LearnedPattern",
    "CodeChange",
    "AgentType",
    "SuggestionScope",
    "SuggestionSource",
    "SuggestionStatus",
    # Config
    "Settings",
    # Storage
    "Database",
    "VersionStore",
    "LockManager",
    "InProcessLockManager",
    "RedisLockManager",
    # Changes
    "ChangeType",
    "detect_change",
    "DiffResult",
    "generate_diff",
    # Validation
    "validate",
    "ValidationIssue",
    "ValidationReport",
    # Calibration
    "ConfidenceCalibrator",
    "CalibrationResult",
    "ConfidenceLevel",
    "Thresholds",
    "get_confidence_level",
    "get_confidence_label",
    # Patterns
    "PatternLearner",
    # Orchestration
    "SuggestionApplicationService",
    "ApplicationResult",
    # Errors
    "EngineError",
    "ValidationFailed",
    "InvalidState",
    "NotFound",
    "NoMoreUndo",
    "NoMoreRedo",
    "DecodeError",
    "StorageFailure",
    "VersionConflict",
    "ContentConflict",
]
