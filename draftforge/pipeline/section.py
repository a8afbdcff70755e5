"""Per-section state machine: plan -> write -> reflect -> score.

Transitions are data: each has a name, source and target state, and a guard
over the section context. `next_transition` picks the first transition out of the
current state whose guard holds. Handlers do the work of each state.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from draftforge.citations import extract_citation_records
from draftforge.constants import (
    PLANNING_MIN_WORDS,
    PLANNING_QUALITY_FALLBACK,
    PLANNING_QUALITY_SKIPPED,
    PLANNING_QUALITY_VALID,
    REFLECTION_QUALITY_SKIPPED,
    SECTION_MAX_TOKENS,
    SECTION_OVERLAP_THRESHOLD,
)
from draftforge.errors import ContentQualityError, FatalGenerationError
from draftforge.interfaces import LanguageModel
from draftforge.llm.task_types import TaskType
from draftforge.metrics import MetricsEngine, embedding_relevance, with_scores
from draftforge.pipeline.planning import (
    PlanningOutcome,
    fallback_plan,
    scale_target_words,
    validate_plan,
)
from draftforge.pipeline.reflection import ReflectionLoop, ReflectionOutcome
from draftforge.policy import ReflectionDecision, ReflectionPolicy
from draftforge.prompts import overlap_rewrite_messages, planning_messages, writing_messages
from draftforge.schemas import (
    Chunk,
    QualityBreakdown,
    QualityMetrics,
    SectionDraft,
    SectionPlan,
    SectionSpec,
)
from draftforge.utils.text import ngram_overlap

logger = logging.getLogger(__name__)


class SectionState(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    WRITING = "writing"
    REFLECTING = "reflecting"
    SCORING = "scoring"
    DONE = "done"


@dataclass
class SectionContext:
    topic: str
    section: SectionSpec
    chunks: list[Chunk]
    available_source_ids: list[str]
    rolling_summary: str = ""
    prior_content: str = ""
    planning_min_words: int = PLANNING_MIN_WORDS
    target_words: int = 0
    state: SectionState = SectionState.PENDING
    history: list[str] = field(default_factory=list)
    planning: PlanningOutcome | None = None
    draft: SectionDraft | None = None
    initial_metrics: QualityMetrics | None = None
    decision: ReflectionDecision | None = None
    reflection: ReflectionOutcome | None = None
    quality: QualityBreakdown | None = None
    overlap_ratio: float = 0.0

    @property
    def reflection_used(self) -> bool:
        return self.reflection is not None


@dataclass(frozen=True)
class Transition:
    name: str
    source: SectionState
    target: SectionState
    guard: Callable[[SectionContext], bool] = lambda ctx: True


def _needs_planning(ctx: SectionContext) -> bool:
    return ctx.section.expected_words >= ctx.planning_min_words


def _needs_reflection(ctx: SectionContext) -> bool:
    return ctx.decision is not None and ctx.decision.use


TRANSITIONS: tuple[Transition, ...] = (
    Transition("plan", SectionState.PENDING, SectionState.PLANNING, _needs_planning),
    Transition(
        "skip_planning",
        SectionState.PENDING,
        SectionState.WRITING,
        lambda c: not _needs_planning(c),
    ),
    Transition("write", SectionState.PLANNING, SectionState.WRITING),
    Transition("reflect", SectionState.WRITING, SectionState.REFLECTING, _needs_reflection),
    Transition(
        "skip_reflection",
        SectionState.WRITING,
        SectionState.SCORING,
        lambda c: not _needs_reflection(c),
    ),
    Transition("score", SectionState.REFLECTING, SectionState.SCORING),
    Transition("finish", SectionState.SCORING, SectionState.DONE),
)


def next_transition(ctx: SectionContext) -> Transition:
    for transition in TRANSITIONS:
        if transition.source is ctx.state and transition.guard(ctx):
            return transition
    raise FatalGenerationError(f"No transition out of state {ctx.state} for {ctx.section.key}")


def next_state(ctx: SectionContext) -> SectionState:
    return next_transition(ctx).target


class SectionPipeline:
    def __init__(
        self,
        llm: LanguageModel,
        metrics: MetricsEngine | None = None,
        policy: ReflectionPolicy | None = None,
        reflection: ReflectionLoop | None = None,
        embedder: Any | None = None,
        planning_min_words: int = PLANNING_MIN_WORDS,
        overlap_threshold: float = SECTION_OVERLAP_THRESHOLD,
    ) -> None:
        self.llm = llm
        self.metrics = metrics or MetricsEngine()
        self.policy = policy or ReflectionPolicy()
        self.reflection = reflection or ReflectionLoop(llm)
        self.embedder = embedder
        self.planning_min_words = planning_min_words
        self.overlap_threshold = overlap_threshold
        self._handlers: dict[SectionState, Callable[[SectionContext], Awaitable[None]]] = {
            SectionState.PLANNING: self._on_planning,
            SectionState.WRITING: self._on_writing,
            SectionState.REFLECTING: self._on_reflecting,
            SectionState.SCORING: self._on_scoring,
        }

    async def run(
        self,
        topic: str,
        section: SectionSpec,
        chunks: Sequence[Chunk],
        available_source_ids: Sequence[str],
        rolling_summary: str = "",
        prior_content: str = "",
    ) -> SectionContext:
        ctx = SectionContext(
            topic=topic,
            section=section,
            chunks=list(chunks),
            available_source_ids=list(available_source_ids),
            rolling_summary=rolling_summary,
            prior_content=prior_content,
            planning_min_words=self.planning_min_words,
            target_words=scale_target_words(section.expected_words, len(chunks)),
        )
        start = time.perf_counter()
        while ctx.state is not SectionState.DONE:
            transition = next_transition(ctx)
            ctx.history.append(transition.name)
            ctx.state = transition.target
            handler = self._handlers.get(ctx.state)
            if handler is not None:
                await handler(ctx)

        logger.info(
            "section[%s]: %s completed in %.2fs (score=%d)",
            section.key,
            " -> ".join(ctx.history),
            time.perf_counter() - start,
            ctx.quality.overall if ctx.quality else 0,
        )
        return ctx

    async def _on_planning(self, ctx: SectionContext) -> None:
        try:
            plan = await self.llm.generate_structured(
                planning_messages(ctx.topic, ctx.section, ctx.target_words, ctx.chunks),
                SectionPlan,
                task_type=TaskType.PLANNING,
            )
        except Exception as e:
            logger.warning(
                "section[%s]: planning failed, using fallback plan: %s", ctx.section.key, e
            )
            ctx.planning = PlanningOutcome(
                plan=self._fallback_plan(ctx), is_valid=False, is_fallback=True, errors=[str(e)]
            )
            return

        errors = validate_plan(plan, ctx.available_source_ids)
        if errors:
            logger.warning(
                "section[%s]: plan invalid (%s), using fallback plan",
                ctx.section.key,
                "; ".join(errors),
            )
            ctx.planning = PlanningOutcome(
                plan=self._fallback_plan(ctx), is_valid=False, is_fallback=True, errors=errors
            )
            return
        ctx.planning = PlanningOutcome(plan=plan, is_valid=True)

    def _fallback_plan(self, ctx: SectionContext) -> SectionPlan:
        ranked_ids = list(dict.fromkeys(c.source_id for c in ctx.chunks))
        return fallback_plan(ctx.section.key, ctx.topic, ctx.target_words, ranked_ids)

    async def _on_writing(self, ctx: SectionContext) -> None:
        plan = ctx.planning.plan if ctx.planning else None
        content = await self.llm.generate_text(
            writing_messages(
                ctx.topic, ctx.section, ctx.target_words, plan, ctx.chunks, ctx.rolling_summary
            ),
            task_type=TaskType.WRITING,
            max_tokens=SECTION_MAX_TOKENS,
        )
        content = content.strip()
        if not content:
            raise ContentQualityError(f"Insufficient content drafted for section {ctx.section.key}")

        if ctx.prior_content:
            content = await self._reduce_overlap(ctx, content)

        ctx.draft = SectionDraft(
            section_key=ctx.section.key,
            title=ctx.section.title,
            content=content,
            citations=extract_citation_records(content, ctx.section.key),
        )
        ctx.initial_metrics = await self._measure(ctx, content)
        ctx.draft.metrics = ctx.initial_metrics
        ctx.decision = self.policy.decide(
            ctx.section.key, ctx.section.expected_words, ctx.initial_metrics
        )
        logger.info("section[%s]: reflection decision: %s", ctx.section.key, ctx.decision.reason)

    async def _reduce_overlap(self, ctx: SectionContext, content: str) -> str:
        overlap = ngram_overlap(content, ctx.prior_content)
        ctx.overlap_ratio = overlap
        if overlap <= self.overlap_threshold:
            return content

        logger.info(
            "section[%s]: %.0f%% 4-gram overlap with earlier sections, requesting rewrite",
            ctx.section.key,
            overlap * 100,
        )
        try:
            rewritten = await self.llm.generate_text(
                overlap_rewrite_messages(ctx.section, content, ctx.prior_content),
                task_type=TaskType.REVISION,
                max_tokens=SECTION_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("section[%s]: overlap rewrite failed: %s", ctx.section.key, e)
            return content

        rewritten = rewritten.strip()
        new_overlap = ngram_overlap(rewritten, ctx.prior_content) if rewritten else 1.0
        if new_overlap < overlap:
            ctx.overlap_ratio = new_overlap
            return rewritten
        return content

    async def _on_reflecting(self, ctx: SectionContext) -> None:
        draft = ctx.draft
        assert draft is not None and ctx.decision is not None
        try:
            outcome = await self.reflection.run(
                ctx.topic, ctx.section, draft.content, ctx.chunks, ctx.decision.max_cycles
            )
        except Exception as e:
            logger.warning("section[%s]: reflection failed, keeping draft: %s", ctx.section.key, e)
            return

        ctx.reflection = outcome
        if outcome.revisions_made and outcome.content != draft.content:
            draft.content = outcome.content
            draft.citations = extract_citation_records(outcome.content, ctx.section.key)
            draft.revision_count += outcome.revisions_made

    async def _on_scoring(self, ctx: SectionContext) -> None:
        draft = ctx.draft
        assert draft is not None and ctx.initial_metrics is not None
        final_metrics = (
            ctx.initial_metrics
            if draft.revision_count == 0
            else await self._measure(ctx, draft.content)
        )
        draft.metrics = final_metrics

        if ctx.planning is None:
            planning_quality = PLANNING_QUALITY_SKIPPED
        elif ctx.planning.is_valid:
            planning_quality = PLANNING_QUALITY_VALID
        else:
            planning_quality = PLANNING_QUALITY_FALLBACK

        reflection_quality = (
            min(round(ctx.reflection.best_score), 100)
            if ctx.reflection is not None
            else REFLECTION_QUALITY_SKIPPED
        )
        ctx.quality = QualityBreakdown(
            planning_quality=planning_quality,
            writing_quality=ctx.initial_metrics.composite_score,
            reflection_quality=reflection_quality,
            metrics_score=final_metrics.composite_score,
        )
        draft.freeze()

    async def _measure(self, ctx: SectionContext, content: str) -> QualityMetrics:
        metrics = self.metrics.compute(
            content,
            ctx.topic,
            ctx.available_source_ids,
            evidence=[c.content for c in ctx.chunks],
        )
        if self.embedder is None:
            return metrics
        try:
            relevance = await embedding_relevance(self.embedder, ctx.topic, content)
        except Exception as e:
            logger.warning("section[%s]: embedding relevance failed: %s", ctx.section.key, e)
            return metrics
        return with_scores(metrics.model_copy(update={"relevance_score": relevance}))
