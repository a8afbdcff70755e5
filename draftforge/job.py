"""Job driver: one generation request from topic to assembled, cited draft."""

import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from draftforge.citations import CitationCoordinator
from draftforge.collection.collector import CollectionResult, PaperCollector
from draftforge.constants import (
    MIN_TOPIC_LENGTH,
    PLANNING_QUALITY_SKIPPED,
    REFLECTION_QUALITY_SKIPPED,
    ROLLING_SUMMARY_MAX_CHARS,
    chunk_limit_for,
)
from draftforge.errors import (
    FatalGenerationError,
    GenerationFailedError,
    InvalidTopicError,
    NoRelevantContentError,
    classified_retrying,
    classify,
    technical_message,
    user_message_for,
)
from draftforge.evaluation.usage_tracker import UsageTracker, current_tracker_var
from draftforge.interfaces import (
    CorpusStore,
    DiscoveryBackend,
    IngestBackend,
    JobQueue,
    LanguageModel,
    OutlineProvider,
    PassageIndex,
    ReferenceLookup,
    StructuralProfileService,
)
from draftforge.pipeline.section import SectionContext, SectionPipeline
from draftforge.retrieval.cache import CacheArena, RetrievalCache
from draftforge.retrieval.chunk_retriever import ChunkRetriever, RetrievalResult
from draftforge.schemas import (
    GenerationRequest,
    GenerationResult,
    JobQualityReport,
    ProgressStage,
    ProgressUpdate,
    QualityBreakdown,
    SectionDraft,
    SectionSpec,
    SectionSummary,
    SourceDocument,
    StructuralProfile,
)
from draftforge.utils.text import count_words

logger = logging.getLogger(__name__)

R = TypeVar("R")

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]

# (start, end) percent per stage
STAGE_BANDS: dict[ProgressStage, tuple[int, int]] = {
    ProgressStage.SEARCHING: (0, 15),
    ProgressStage.ANALYZING: (15, 25),
    ProgressStage.WRITING: (25, 85),
    ProgressStage.CITATIONS: (85, 95),
    ProgressStage.COMPLETE: (100, 100),
}


class ProgressReporter:
    """Emits progress updates whose percent never decreases within a job.

    Non-terminal updates are capped at 99; `complete` is always 100 and
    `failed` keeps whatever percent the job had reached.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self.callback = callback
        self.updates: list[ProgressUpdate] = []
        self.percent = 0

    @staticmethod
    def band_percent(stage: ProgressStage, fraction: float = 0.0) -> int:
        start, end = STAGE_BANDS[stage]
        fraction = max(0.0, min(1.0, fraction))
        return round(start + (end - start) * fraction)

    async def stage(self, stage: ProgressStage, fraction: float = 0.0, message: str = "") -> None:
        await self.emit(stage, self.band_percent(stage, fraction), message)

    async def emit(self, stage: ProgressStage, percent: int, message: str = "") -> ProgressUpdate:
        if stage is ProgressStage.COMPLETE:
            percent = 100
        elif stage is ProgressStage.FAILED:
            percent = max(0, min(100, percent))
        else:
            percent = max(self.percent, min(99, max(0, percent)))
        if stage is not ProgressStage.FAILED:
            self.percent = percent

        update = ProgressUpdate(stage=stage, percent=percent, message=message)
        self.updates.append(update)
        logger.info("progress: [%s] %d%% %s", stage, percent, message)

        if self.callback is not None:
            try:
                result = self.callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("progress: callback failed: %s", e)
        return update


@dataclass
class GenerationJob:
    job_id: str
    topic: str
    request: GenerationRequest
    tracker: UsageTracker
    progress: ProgressReporter
    corpus: list[SourceDocument] = field(default_factory=list)
    collection: CollectionResult | None = None
    profile: StructuralProfile | None = None
    sections: list[SectionSpec] = field(default_factory=list)
    drafts: list[SectionDraft] = field(default_factory=list)
    contexts: dict[str, SectionContext] = field(default_factory=dict)
    coordinator: CitationCoordinator | None = None
    warnings: list[str] = field(default_factory=list)
    stage: ProgressStage = ProgressStage.SEARCHING
    attempt: int = 1

    @property
    def corpus_ids(self) -> list[str]:
        return [s.id for s in self.corpus]


class GenerationJobDriver:
    def __init__(
        self,
        store: CorpusStore,
        index: PassageIndex,
        queue: JobQueue,
        llm: LanguageModel,
        profiles: StructuralProfileService,
        outline: OutlineProvider | None = None,
        discovery: DiscoveryBackend | None = None,
        ingest: IngestBackend | None = None,
        reference_lookup: ReferenceLookup | None = None,
        pipeline: SectionPipeline | None = None,
        retrieval_cache: RetrievalCache | None = None,
        arena: CacheArena | None = None,
        collector_options: dict[str, Any] | None = None,
        retry_options: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.queue = queue
        self.llm = llm
        self.profiles = profiles
        self.outline = outline
        self.discovery = discovery
        self.ingest = ingest
        self.reference_lookup = reference_lookup
        self.pipeline = pipeline or SectionPipeline(llm)
        self.retrieval_cache = retrieval_cache or RetrievalCache()
        self.arena = arena or CacheArena()
        self.collector_options = collector_options or {}
        self.retry_options = retry_options or {}

    async def run(
        self, request: GenerationRequest, on_progress: ProgressCallback | None = None
    ) -> GenerationResult:
        job_id = request.job_id or uuid.uuid4().hex
        job = GenerationJob(
            job_id=job_id,
            topic=request.topic.strip(),
            request=request,
            tracker=UsageTracker(job_id=job_id),
            progress=ProgressReporter(on_progress),
        )
        token = current_tracker_var.set(job.tracker)
        retriever = ChunkRetriever(
            self.index, cache=self.retrieval_cache, job_cache=self.arena.scope(job_id)
        )
        start = time.perf_counter()
        logger.info("job[%s]: starting generation for '%s'", job_id, job.topic[:60])
        try:
            return await self._run(job, retriever)
        except Exception as e:
            category = classify(e)
            technical = technical_message(job.topic, e, job.attempt)
            logger.error(
                "job[%s]: failed in %s stage (%s): %s", job_id, job.stage, category, technical
            )
            await job.progress.emit(ProgressStage.FAILED, job.progress.percent, user_message_for(e))
            raise GenerationFailedError(category, user_message_for(e), technical) from e
        finally:
            self.arena.release(job_id)
            current_tracker_var.reset(token)
            logger.info("job[%s]: finished in %.2fs", job_id, time.perf_counter() - start)

    async def _run(self, job: GenerationJob, retriever: ChunkRetriever) -> GenerationResult:
        if len(job.topic) < MIN_TOPIC_LENGTH:
            raise InvalidTopicError(
                f"Invalid topic: must be at least {MIN_TOPIC_LENGTH} characters"
            )

        job.stage = ProgressStage.SEARCHING
        await job.progress.stage(ProgressStage.SEARCHING, 0.0, "Collecting sources")
        collector = PaperCollector(
            self.store,
            retriever,
            self.queue,
            discovery=self.discovery,
            ingest=self.ingest,
            **self.collector_options,
        )
        job.collection = await self._stage(
            job,
            "collection",
            collector.collect,
            job.topic,
            job.request.pinned_ids,
            job.request.constraints,
        )
        job.corpus = list(job.collection.sources)
        job.warnings.extend(job.collection.warnings)
        retriever.set_documents(job.corpus)
        await job.progress.stage(
            ProgressStage.SEARCHING, 1.0, f"Collected {len(job.corpus)} sources"
        )

        job.stage = ProgressStage.ANALYZING
        await job.progress.stage(ProgressStage.ANALYZING, 0.0, "Resolving document structure")
        job.profile, job.sections = await self._stage(job, "outline", self._resolve_outline, job)
        job.coordinator = CitationCoordinator(
            job.corpus, job.profile.coverage_floor, job.profile.coverage_fraction
        )
        await job.progress.stage(
            ProgressStage.ANALYZING, 1.0, f"Planned {len(job.sections)} sections"
        )

        job.stage = ProgressStage.WRITING
        await self._write_sections(job, retriever)

        job.stage = ProgressStage.CITATIONS
        await job.progress.stage(ProgressStage.CITATIONS, 0.0, "Checking citation coverage")
        await self._stage(job, "citations", self._finalize_citations, job, retriever)
        await job.progress.stage(ProgressStage.CITATIONS, 1.0, "Citations finalized")

        result = self._assemble(job)
        job.stage = ProgressStage.COMPLETE
        await job.progress.emit(
            ProgressStage.COMPLETE, 100, f"Generated {result.word_count} words"
        )
        return result

    async def _stage(
        self, job: GenerationJob, name: str, fn: Callable[..., Awaitable[R]], *args: Any
    ) -> R:
        start = time.perf_counter()
        try:
            async for attempt in classified_retrying(**self.retry_options):
                with attempt:
                    job.attempt = attempt.retry_state.attempt_number
                    result = await fn(*args)
        finally:
            job.tracker.record_stage_timing(name, (time.perf_counter() - start) * 1000)
        return result

    async def _resolve_outline(
        self, job: GenerationJob
    ) -> tuple[StructuralProfile, list[SectionSpec]]:
        profile = await self.profiles.get_profile(job.request.document_type)
        if self.outline is not None:
            sections = await self.outline.outline(job.topic, job.corpus, profile)
        else:
            sections = list(profile.section_specs)

        forbidden = {f.lower() for f in profile.forbidden_sections}
        kept = [
            s
            for s in sections
            if s.key.lower() not in forbidden and s.title.lower() not in forbidden
        ]
        if len(kept) < len(sections):
            logger.info(
                "job[%s]: dropped %d section(s) forbidden for %s",
                job.job_id,
                len(sections) - len(kept),
                profile.document_type,
            )
        if not kept:
            raise FatalGenerationError(
                f"Outline for {profile.document_type} has no sections to generate"
            )
        return profile, kept

    # =========================================================================
    # Sections
    # =========================================================================

    async def _write_sections(self, job: GenerationJob, retriever: ChunkRetriever) -> None:
        total = len(job.sections)
        rolling_summary = ""
        for position, section in enumerate(job.sections):
            await job.progress.stage(
                ProgressStage.WRITING,
                position / total,
                f"Writing section {position + 1}/{total}: {section.title}",
            )
            retrieval = await self._stage(
                job, f"retrieval:{section.key}", self._retrieve_for_section, job, retriever, section
            )
            job.warnings.extend(retrieval.warnings)

            prior_content = "\n\n".join(d.content for d in job.drafts)
            ctx = await self._stage(
                job,
                f"section:{section.key}",
                self.pipeline.run,
                job.topic,
                section,
                retrieval.chunks,
                job.corpus_ids,
                rolling_summary,
                prior_content,
            )
            draft = job.coordinator.cleanup(ctx.draft)
            newly_cited = job.coordinator.register(draft)
            job.drafts.append(draft)
            job.contexts[section.key] = ctx
            rolling_summary = update_rolling_summary(rolling_summary, draft)
            logger.info(
                "job[%s]: section %s done (%d words, %d new sources cited)",
                job.job_id,
                section.key,
                count_words(draft.content),
                newly_cited,
            )
        await job.progress.stage(ProgressStage.WRITING, 1.0, "All sections drafted")

    async def _retrieve_for_section(
        self, job: GenerationJob, retriever: ChunkRetriever, section: SectionSpec
    ) -> RetrievalResult:
        candidates = sorted(section.candidate_source_ids or job.corpus_ids)
        limit = chunk_limit_for(section.expected_words)
        try:
            return await retriever.retrieve(job.topic, candidates, limit)
        except NoRelevantContentError:
            corpus_ids = sorted(job.corpus_ids)
            if candidates == corpus_ids:
                raise
            logger.warning(
                "job[%s]: no content for %s candidates, retrying with whole corpus",
                job.job_id,
                section.key,
            )
            return await retriever.retrieve(job.topic, corpus_ids, limit)

    # =========================================================================
    # Citations and assembly
    # =========================================================================

    async def _finalize_citations(self, job: GenerationJob, retriever: ChunkRetriever) -> None:
        drafts, report = await job.coordinator.backfill(
            job.drafts, retriever, job.topic, self.reference_lookup
        )
        job.drafts = [job.coordinator.cleanup(d) for d in drafts]
        if not report.target_met:
            message = (
                f"Citation coverage {report.cited_after}/{report.target} sources after backfill"
            )
            job.warnings.append(message)
            logger.warning("job[%s]: %s", job.job_id, message)

    def _assemble(self, job: GenerationJob) -> GenerationResult:
        content = "\n\n".join(f"## {d.title}\n\n{d.content.strip()}" for d in job.drafts)
        summaries = [self._summarize(job, d) for d in job.drafts]
        section_scores = {s.key: s.overall_score for s in summaries}
        coordinator = job.coordinator
        cited = len(coordinator.cited_source_ids)

        quality = JobQualityReport(
            overall_score=(
                round(sum(section_scores.values()) / len(section_scores)) if section_scores else 0
            ),
            section_scores=section_scores,
            cited_sources=cited,
            coverage_target=coordinator.coverage_target,
            coverage_met=cited >= coordinator.coverage_target,
            corpus_coverage_ratio=job.collection.coverage_ratio if job.collection else 1.0,
            warnings=list(dict.fromkeys(job.warnings)),
        )
        return GenerationResult(
            job_id=job.job_id,
            content=content,
            citation_map=coordinator.citation_map(),
            word_count=sum(count_words(d.content) for d in job.drafts),
            section_structure=summaries,
            quality_metrics=quality,
            tool_call_analytics=job.tracker.summary(),
        )

    def _summarize(self, job: GenerationJob, draft: SectionDraft) -> SectionSummary:
        ctx = job.contexts.get(draft.section_key)
        if ctx is not None and ctx.quality is not None:
            quality = ctx.quality
        else:
            # Sections added by backfill never went through the pipeline.
            metrics = self.pipeline.metrics.compute(draft.content, job.topic, job.corpus_ids)
            quality = QualityBreakdown(
                planning_quality=PLANNING_QUALITY_SKIPPED,
                writing_quality=metrics.composite_score,
                reflection_quality=REFLECTION_QUALITY_SKIPPED,
                metrics_score=metrics.composite_score,
            )
        return SectionSummary(
            key=draft.section_key,
            title=draft.title,
            word_count=count_words(draft.content),
            citation_count=len(draft.citations),
            revision_count=draft.revision_count,
            reflection_used=ctx.reflection_used if ctx is not None else False,
            quality=quality,
            overall_score=quality.overall,
        )


def update_rolling_summary(
    summary: str, draft: SectionDraft, max_chars: int = ROLLING_SUMMARY_MAX_CHARS
) -> str:
    """Append the draft's opening to the summary, keeping the most recent text."""
    opening = " ".join(draft.content.split())[:300]
    entry = f"{draft.title}: {opening}"
    combined = f"{summary}\n{entry}".strip() if summary else entry
    if len(combined) <= max_chars:
        return combined
    return combined[-max_chars:]
