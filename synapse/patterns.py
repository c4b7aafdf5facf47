"""
Pattern Learning Store - turn approved changes into reusable style hints.

Extraction is heuristic and first-match-wins:
- quote preference
- indentation style
- semicolon usage (javascript only)

A change that matches none of them yields no pattern, which is not an error.
Stored rows are immutable; repeated observations of the same signature are
counted at read time.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AgentType, CodeChange, LearnedPattern, as_utc, utcnow

logger = logging.getLogger(__name__)

QUOTE_MIN = 5
INDENT_MIN_LINES = 3
SEMICOLON_MIN_LINES = 5

_TWO_SPACE_RE = re.compile(r"\n {2}\S")
_FOUR_SPACE_RE = re.compile(r"\n {4}\S")
_TAB_RE = re.compile(r"\n\t\S")
_SEMICOLON_EOL_RE = re.compile(r";\s*$", re.MULTILINE)


@dataclass
class LearnedPatternProposal:
    """A pattern extracted from a change, not yet stored."""

    signature: str
    agent_type: AgentType
    file_type: str | None
    reasoning: str
    example: str | None = None


@dataclass
class PatternSummary:
    """Observations of one signature for a user, aggregated across stored rows."""

    signature: str
    agent_type: str
    file_type: str | None
    observation_count: int
    last_observed: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "agent_type": self.agent_type,
            "file_type": self.file_type,
            "observation_count": self.observation_count,
            "last_observed": self.last_observed.isoformat(),
        }


class PatternLearner:
    """Extracts, stores and retrieves per-user coding preferences."""

    def extract_pattern(self, change: CodeChange) -> LearnedPatternProposal | None:
        content = change.proposed_content
        agent_type = AgentType(change.agent_type)
        file_type = None if agent_type == AgentType.PROJECT_MANAGER else agent_type.value
        reasoning = f"Detected from approved change: {change.reasoning}"

        single_quotes = content.count("'")
        double_quotes = content.count('"')
        if single_quotes > QUOTE_MIN or double_quotes > QUOTE_MIN:
            prefers_single = single_quotes > double_quotes
            return LearnedPatternProposal(
                signature=(
                    "Use single quotes for strings"
                    if prefers_single
                    else "Use double quotes for strings"
                ),
                agent_type=agent_type,
                file_type=file_type,
                reasoning=reasoning,
                example="const x = 'value'" if prefers_single else 'const x = "value"',
            )

        two_space = len(_TWO_SPACE_RE.findall(content))
        four_space = len(_FOUR_SPACE_RE.findall(content))
        tabs = len(_TAB_RE.findall(content))
        if max(two_space, four_space, tabs) > INDENT_MIN_LINES:
            if tabs > two_space and tabs > four_space:
                style = "tabs"
            elif four_space > two_space:
                style = "4 spaces"
            else:
                style = "2 spaces"
            return LearnedPatternProposal(
                signature=f"Use {style} for indentation",
                agent_type=agent_type,
                file_type=file_type,
                reasoning=reasoning,
            )

        if agent_type == AgentType.JAVASCRIPT:
            statements = content.count("\n")
            if statements > SEMICOLON_MIN_LINES:
                with_semicolons = len(_SEMICOLON_EOL_RE.findall(content))
                uses_semicolons = with_semicolons / statements > 0.5
                return LearnedPatternProposal(
                    signature=(
                        "Use semicolons at end of statements"
                        if uses_semicolons
                        else "Omit semicolons (ASI style)"
                    ),
                    agent_type=agent_type,
                    file_type=AgentType.JAVASCRIPT.value,
                    reasoning=reasoning,
                )

        return None

    async def store_pattern(
        self,
        session: AsyncSession,
        user_id: str,
        pattern: LearnedPatternProposal,
        source_file: str | None = None,
        suggestion_id: str | None = None,
    ) -> LearnedPattern:
        now = utcnow()
        row = LearnedPattern(
            user_id=user_id,
            agent_type=pattern.agent_type.value,
            file_type=pattern.file_type,
            signature=pattern.signature,
            example=pattern.example,
            reasoning=pattern.reasoning,
            source_file=source_file,
            suggestion_id=suggestion_id,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        await session.flush()
        logger.info(f"Stored pattern '{pattern.signature}' for user {user_id}")
        return row

    async def get_patterns(
        self,
        session: AsyncSession,
        user_id: str,
        agent_type: AgentType | str | None = None,
        file_type: str | None = None,
    ) -> list[PatternSummary]:
        """Patterns for a user, most frequently observed first."""
        observations = func.count(LearnedPattern.id).label("observations")
        last_observed = func.max(LearnedPattern.created_at).label("last_observed")
        query = (
            select(
                LearnedPattern.signature,
                LearnedPattern.agent_type,
                LearnedPattern.file_type,
                observations,
                last_observed,
            )
            .where(LearnedPattern.user_id == user_id)
            .group_by(LearnedPattern.signature, LearnedPattern.agent_type, LearnedPattern.file_type)
            .order_by(observations.desc(), LearnedPattern.signature)
        )
        if agent_type:
            query = query.where(LearnedPattern.agent_type == AgentType(agent_type).value)
        if file_type:
            query = query.where(LearnedPattern.file_type == file_type)

        result = await session.execute(query)
        return [
            PatternSummary(
                signature=signature,
                agent_type=agent,
                file_type=ftype,
                observation_count=int(count),
                last_observed=as_utc(last),
            )
            for signature, agent, ftype, count, last in result.all()
        ]
