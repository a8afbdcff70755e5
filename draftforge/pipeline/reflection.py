"""Bounded critique-and-revise loop for a drafted section."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from draftforge.constants import (
    CRITIQUE_FALLBACK_SCORE,
    REFLECTION_PLATEAU_DELTA,
    REFLECTION_STOP_SCORE,
    SECTION_MAX_TOKENS,
)
from draftforge.errors import ContentQualityError
from draftforge.interfaces import LanguageModel
from draftforge.llm.task_types import TaskType
from draftforge.prompts import critique_messages, revision_messages
from draftforge.schemas import (
    Chunk,
    Critique,
    IssueSeverity,
    RevisionPriority,
    SectionSpec,
)

logger = logging.getLogger(__name__)


@dataclass
class ReflectionOutcome:
    content: str
    initial_score: float
    best_score: float
    cycles_run: int = 0
    revisions_made: int = 0
    stop_reason: str = ""
    log: list[str] = field(default_factory=list)


def revision_priority(critique: Critique) -> RevisionPriority:
    severities = [issue.severity for issue in critique.issues]
    if IssueSeverity.HIGH in severities or critique.score < 60:
        return RevisionPriority.HIGH
    if severities.count(IssueSeverity.MEDIUM) > 2 or critique.score < 75:
        return RevisionPriority.MEDIUM
    if critique.score < 85:
        return RevisionPriority.LOW
    return RevisionPriority.NONE


class ReflectionLoop:
    def __init__(
        self,
        llm: LanguageModel,
        stop_score: float = REFLECTION_STOP_SCORE,
        plateau_delta: float = REFLECTION_PLATEAU_DELTA,
    ) -> None:
        self.llm = llm
        self.stop_score = stop_score
        self.plateau_delta = plateau_delta

    async def critique(self, topic: str, section: SectionSpec, content: str) -> Critique:
        """Critique that never fails: model errors yield a neutral fallback score."""
        try:
            return await self._critique(topic, section, content)
        except Exception as e:
            logger.warning("section[%s]: critique failed, using fallback: %s", section.key, e)
            return Critique(score=CRITIQUE_FALLBACK_SCORE, suggestions=["Critique unavailable"])

    async def _critique(self, topic: str, section: SectionSpec, content: str) -> Critique:
        critique = await self.llm.generate_structured(
            critique_messages(topic, section, content), Critique, task_type=TaskType.CRITIQUE
        )
        return critique.model_copy(update={"score": max(0.0, min(100.0, critique.score))})

    async def run(
        self,
        topic: str,
        section: SectionSpec,
        content: str,
        chunks: Sequence[Chunk],
        max_cycles: int,
    ) -> ReflectionOutcome:
        critique = await self.critique(topic, section, content)
        outcome = ReflectionOutcome(
            content=content, initial_score=critique.score, best_score=critique.score
        )

        for cycle in range(1, max_cycles + 1):
            if outcome.best_score > self.stop_score:
                outcome.stop_reason = "score above target"
                break
            priority = revision_priority(critique)
            if priority is RevisionPriority.NONE:
                outcome.stop_reason = "no revision needed"
                break

            try:
                revised = await self.llm.generate_text(
                    revision_messages(topic, section, outcome.content, critique, chunks),
                    task_type=TaskType.REVISION,
                    max_tokens=SECTION_MAX_TOKENS,
                )
                if not revised.strip():
                    raise ContentQualityError("Revision returned insufficient content")
                revised_critique = await self._critique(topic, section, revised)
            except Exception as e:
                logger.warning(
                    "section[%s]: reflection cycle %d failed, keeping best draft: %s",
                    section.key,
                    cycle,
                    e,
                )
                outcome.stop_reason = "cycle failed"
                break

            outcome.cycles_run = cycle
            gain = revised_critique.score - outcome.best_score
            outcome.log.append(
                f"cycle {cycle}: priority={priority} score {outcome.best_score:.0f} -> "
                f"{revised_critique.score:.0f}"
            )
            if gain >= 0:
                outcome.content = revised.strip()
                outcome.best_score = revised_critique.score
                outcome.revisions_made += 1
                critique = revised_critique
            if gain < self.plateau_delta:
                outcome.stop_reason = "plateau"
                break
        else:
            outcome.stop_reason = outcome.stop_reason or "cycle budget exhausted"

        logger.info(
            "section[%s]: reflection %d cycle(s), score %.0f -> %.0f (%s)",
            section.key,
            outcome.cycles_run,
            outcome.initial_score,
            outcome.best_score,
            outcome.stop_reason,
        )
        return outcome
