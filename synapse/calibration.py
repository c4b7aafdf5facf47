"""
Feedback-driven confidence calibration.

Ratings are grouped into confidence brackets per project; the `high`
threshold becomes the upper boundary of the lowest bracket whose positive
rate reaches the target, and `medium` sits a fixed offset below it.
Stored results expire after a fixed age, at which point every read falls
back to the defaults.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import Settings
from .models import Calibration, FeedbackEvent, FeedbackRating, as_utc, utcnow

logger = logging.getLogger(__name__)

BRACKET_BOUNDS = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)
HIGH_CLAMP = (0.6, 0.95)
MEDIUM_CLAMP = (0.4, 0.8)
MEDIUM_OFFSET = 0.2

LOW_CONFIDENCE_LABEL = "Review recommended"

_CONFIDENCE_RE = re.compile(r'"confidence"\s*:\s*(\d+(?:\.\d+)?)')


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Thresholds:
    high: float
    medium: float

    def to_dict(self) -> dict[str, float]:
        return {"high": self.high, "medium": self.medium}


DEFAULT_THRESHOLDS = Thresholds(high=0.8, medium=0.6)


@dataclass(frozen=True)
class CalibrationResult:
    project_id: str
    thresholds: Thresholds
    sample_size: int
    last_calibrated: datetime
    adjustment_reason: str

    def is_fresh(self, now: datetime, max_age_days: int) -> bool:
        return as_utc(now) - as_utc(self.last_calibrated) <= timedelta(days=max_age_days)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "thresholds": self.thresholds.to_dict(),
            "sample_size": self.sample_size,
            "last_calibrated": as_utc(self.last_calibrated).isoformat(),
            "adjustment_reason": self.adjustment_reason,
        }


@dataclass(frozen=True)
class BracketStat:
    boundary: float
    positive_rate: float
    total: int


# =============================================================================
# Score helpers
# =============================================================================


def clamp_confidence(value: object) -> float | None:
    """Normalize a raw confidence into [0, 1]; None when absent or not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0.0, min(1.0, float(value)))


def extract_confidence_from_content(content: str | None) -> float | None:
    """Largest `"confidence": x` value in [0, 1] found in a raw response."""
    if not content:
        return None
    values = [float(m.group(1)) for m in _CONFIDENCE_RE.finditer(content)]
    values = [v for v in values if 0.0 <= v <= 1.0]
    return max(values) if values else None


def get_confidence_level(
    confidence: object, thresholds: Thresholds = DEFAULT_THRESHOLDS
) -> ConfidenceLevel:
    score = clamp_confidence(confidence)
    if score is None:
        return ConfidenceLevel.UNKNOWN
    if score >= thresholds.high:
        return ConfidenceLevel.HIGH
    if score >= thresholds.medium:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def get_confidence_label(level: ConfidenceLevel) -> str:
    return LOW_CONFIDENCE_LABEL if level == ConfidenceLevel.LOW else ""


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


# =============================================================================
# Calibrator
# =============================================================================


class ConfidenceCalibrator:
    """Derives and persists per-project thresholds from feedback ratings."""

    def __init__(
        self,
        min_samples: int = 20,
        min_positive_rate: float = 0.7,
        max_age_days: int = 7,
        defaults: Thresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self.min_samples = min_samples
        self.min_positive_rate = min_positive_rate
        self.max_age_days = max_age_days
        self.defaults = defaults

    @classmethod
    def from_settings(cls, settings: Settings) -> ConfidenceCalibrator:
        return cls(
            min_samples=settings.calibration_min_samples,
            min_positive_rate=settings.calibration_min_positive_rate,
            max_age_days=settings.calibration_max_age_days,
            defaults=Thresholds(
                high=settings.default_high_threshold, medium=settings.default_medium_threshold
            ),
        )

    def bracket_stats(self, events: Iterable[tuple[float, bool]]) -> list[BracketStat]:
        events = list(events)
        stats: list[BracketStat] = []
        for low, high in zip(BRACKET_BOUNDS, BRACKET_BOUNDS[1:]):
            in_bracket = [
                positive
                for confidence, positive in events
                if confidence >= low and (confidence <= 1.0 if high >= 1.0 else confidence < high)
            ]
            if in_bracket:
                stats.append(
                    BracketStat(
                        boundary=high,
                        positive_rate=sum(in_bracket) / len(in_bracket),
                        total=len(in_bracket),
                    )
                )
        return sorted(stats, key=lambda s: s.boundary)

    def compute(self, events: Iterable[tuple[float, bool]]) -> tuple[Thresholds, int, str]:
        """Pure threshold derivation from (confidence, positive) pairs."""
        events = list(events)
        if len(events) < self.min_samples:
            return (
                self.defaults,
                len(events),
                f"Insufficient samples ({len(events)} < {self.min_samples})",
            )

        high = self.defaults.high
        for stat in self.bracket_stats(events):
            if stat.positive_rate >= self.min_positive_rate:
                high = stat.boundary
                break

        high = _clamp(high, HIGH_CLAMP)
        medium = round(_clamp(high - MEDIUM_OFFSET, MEDIUM_CLAMP), 4)
        return (
            Thresholds(high=high, medium=medium),
            len(events),
            f"Calibrated from {len(events)} feedback events",
        )

    @staticmethod
    def usable_events(feedback: Iterable[FeedbackEvent]) -> list[tuple[float, bool]]:
        events: list[tuple[float, bool]] = []
        for event in feedback:
            if event.rating not in (FeedbackRating.THUMBS_UP.value, FeedbackRating.THUMBS_DOWN.value):
                continue
            confidence = clamp_confidence(event.confidence)
            if confidence is None:
                confidence = extract_confidence_from_content(event.content)
            if confidence is None:
                continue
            events.append((confidence, event.rating == FeedbackRating.THUMBS_UP.value))
        return events

    async def calibrate(
        self, session: AsyncSession, project_id: str, now: datetime | None = None
    ) -> CalibrationResult:
        feedback = await db.list_feedback(session, project_id)
        thresholds, sample_size, reason = self.compute(self.usable_events(feedback))
        logger.info(f"Calibrated project {project_id}: {thresholds.to_dict()} ({reason})")
        return CalibrationResult(
            project_id=project_id,
            thresholds=thresholds,
            sample_size=sample_size,
            last_calibrated=now or utcnow(),
            adjustment_reason=reason,
        )

    async def save_calibration(self, session: AsyncSession, result: CalibrationResult) -> None:
        """Replace the project's stored calibration with `result`."""
        await session.merge(
            Calibration(
                project_id=result.project_id,
                high=result.thresholds.high,
                medium=result.thresholds.medium,
                sample_size=result.sample_size,
                adjustment_reason=result.adjustment_reason,
                last_calibrated=result.last_calibrated,
                updated_at=utcnow(),
            )
        )
        await session.flush()

    async def load_calibration(
        self, session: AsyncSession, project_id: str
    ) -> CalibrationResult | None:
        result = await session.execute(
            select(Calibration)
            .where(Calibration.project_id == project_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return CalibrationResult(
            project_id=row.project_id,
            thresholds=Thresholds(high=row.high, medium=row.medium),
            sample_size=row.sample_size,
            last_calibrated=as_utc(row.last_calibrated),
            adjustment_reason=row.adjustment_reason,
        )

    async def get_calibrated_thresholds(
        self, session: AsyncSession, project_id: str, now: datetime | None = None
    ) -> Thresholds:
        """Stored thresholds when fresh, defaults otherwise. Checked on every read."""
        stored = await self.load_calibration(session, project_id)
        if stored is None or not stored.is_fresh(now or utcnow(), self.max_age_days):
            return self.defaults
        return stored.thresholds
