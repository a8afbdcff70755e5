"""Corpus assembly: pinned + discovered sources, ingestion, coverage gating."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from draftforge.collection.ingest import (
    CorpusSearchDiscovery,
    IngestPolicy,
    decide_ingest_policy,
    estimate_ingest_cost,
)
from draftforge.collection.relevance import OnTopicFilter, is_direct_fulltext_url
from draftforge.constants import (
    ACCEPT_UNSCORED_SOURCES,
    COVERAGE_GATE_RATIO,
    COVERAGE_MAX_WAIT_SECONDS,
    COVERAGE_MIN_WAIT_SECONDS,
    COVERAGE_POLL_INTERVAL_SECONDS,
    COVERAGE_TARGET_RATIO,
    COVERAGE_WAIT_PER_SOURCE_SECONDS,
    ENQUEUE_PRIORITY,
    INGEST_AUTO_THRESHOLD,
    INGEST_CONCURRENCY,
    MIN_FULLTEXT_CHUNKS,
)
from draftforge.errors import EmptyCorpusError
from draftforge.interfaces import (
    ChunkCounter,
    CorpusStore,
    DiscoveryBackend,
    IngestBackend,
    JobQueue,
)
from draftforge.schemas import CollectionConstraints, SearchFilters, SourceDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class IngestSummary:
    attempted: int = 0
    ingested_ids: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class CollectionResult:
    sources: list[SourceDocument]
    pinned_ids: list[str] = field(default_factory=list)
    discovered_ids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    coverage_ratio: float = 1.0
    queued_ids: list[str] = field(default_factory=list)
    timed_out: bool = False
    ingest_policy: IngestPolicy | None = None

    @property
    def source_ids(self) -> list[str]:
        return [s.id for s in self.sources]


def compute_max_wait(sources_needing_work: int) -> float:
    wait = sources_needing_work * COVERAGE_WAIT_PER_SOURCE_SECONDS
    return float(max(COVERAGE_MIN_WAIT_SECONDS, min(COVERAGE_MAX_WAIT_SECONDS, wait)))


class PaperCollector:
    def __init__(
        self,
        store: CorpusStore,
        chunk_counter: ChunkCounter,
        queue: JobQueue,
        discovery: DiscoveryBackend | None = None,
        ingest: IngestBackend | None = None,
        concurrency: int = INGEST_CONCURRENCY,
        chunk_floor: int = MIN_FULLTEXT_CHUNKS,
        poll_interval: float = COVERAGE_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.chunk_counter = chunk_counter
        self.queue = queue
        self.discovery = discovery or CorpusSearchDiscovery(store)
        self.ingest = ingest
        self.concurrency = concurrency
        self.chunk_floor = chunk_floor
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    async def collect(
        self,
        topic: str,
        pinned_ids: Sequence[str],
        constraints: CollectionConstraints | None = None,
    ) -> CollectionResult:
        constraints = constraints or CollectionConstraints()
        start = time.perf_counter()
        pinned_ids = list(dict.fromkeys(pinned_ids))
        result = CollectionResult(sources=[], pinned_ids=pinned_ids)

        pinned = await self.store.get(pinned_ids) if pinned_ids else []
        missing = set(pinned_ids) - {s.id for s in pinned}
        if missing:
            result.warnings.append(f"{len(missing)} pinned source(s) not found in corpus store")
            logger.warning("collector: pinned sources not found: %s", sorted(missing))

        remaining = max(0, constraints.target_total - len(pinned))
        discovered: list[SourceDocument] = []
        if constraints.discovery_enabled and remaining > 0:
            discovered = await self._discover(topic, pinned_ids, remaining, constraints, result)

        seen: set[str] = set()
        for source in [*pinned, *discovered]:
            if source.id not in seen:
                seen.add(source.id)
                result.sources.append(source)
        result.discovered_ids = [s.id for s in discovered if s.id not in set(pinned_ids)]

        if not result.sources:
            raise EmptyCorpusError(f"No sources found for topic '{topic[:60]}'")

        logger.info(
            "collector: corpus of %d sources (%d pinned, %d discovered) in %.2fs",
            len(result.sources),
            len(pinned),
            len(result.discovered_ids),
            time.perf_counter() - start,
        )

        if constraints.gate_coverage:
            await self._gate_coverage(result)
        return result

    async def _discover(
        self,
        topic: str,
        pinned_ids: list[str],
        remaining: int,
        constraints: CollectionConstraints,
        result: CollectionResult,
    ) -> list[SourceDocument]:
        filters = SearchFilters(
            limit=remaining, exclude_ids=pinned_ids, from_year=constraints.from_year
        )
        try:
            found = await self.discovery.discover(topic, filters)
        except Exception as e:
            logger.warning("collector: discovery failed, continuing with pinned sources: %s", e)
            result.warnings.append(f"Source discovery failed: {e}")
            return []

        on_topic = OnTopicFilter(
            topic,
            permissive=constraints.permissive_scoring,
            accept_unscored=(
                ACCEPT_UNSCORED_SOURCES
                if constraints.accept_unscored is None
                else constraints.accept_unscored
            ),
        )
        pinned = set(pinned_ids)
        candidates = [s for s in found if s.id not in pinned and on_topic.accepts(s)]
        candidates = candidates[:remaining]
        logger.info(
            "collector: %d/%d discovered sources passed on-topic filter",
            len(candidates),
            len(found),
        )

        result.ingest_policy = decide_ingest_policy(len(candidates))
        estimate = estimate_ingest_cost(len(candidates))
        if result.ingest_policy is IngestPolicy.CONFIRM and not constraints.allow_bulk_ingest:
            candidates = candidates[:INGEST_AUTO_THRESHOLD]
            result.warnings.append(
                f"Bulk ingestion not allowed, discovery capped at {INGEST_AUTO_THRESHOLD} sources"
            )
        elif estimate.exceeds_budget:
            result.warnings.append(f"Estimated ingest cost ${estimate.cost_usd:.2f} over budget")
            logger.warning("collector: ingest cost estimate $%.2f over budget", estimate.cost_usd)

        if self.ingest is None or not candidates:
            return candidates

        summary = await self._ingest_all(candidates)
        if summary.failed:
            result.warnings.append(
                f"{len(summary.failed)} of {summary.attempted} sources failed to ingest"
            )
        if not summary.ingested_ids:
            return []
        try:
            return await self.store.get(summary.ingested_ids)
        except Exception as e:
            logger.warning("collector: could not reload ingested sources: %s", e)
            result.warnings.append(f"Could not reload ingested sources: {e}")
            return []

    async def _ingest_all(self, sources: list[SourceDocument]) -> IngestSummary:
        summary = IngestSummary(attempted=len(sources))
        outcomes = await self._bounded(sources, self.ingest.ingest)  # type: ignore[union-attr]
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("collector: ingest failed for %s: %s", source.id, outcome)
                summary.failed[source.id] = str(outcome)
            else:
                summary.ingested_ids.append(outcome)
        logger.info(
            "collector: ingested %d/%d sources", len(summary.ingested_ids), summary.attempted
        )
        return summary

    # =========================================================================
    # Coverage gating
    # =========================================================================

    async def coverage(self, source_ids: Sequence[str]) -> float:
        """Fraction of sources meeting the chunk floor; vacuously 1.0 when empty."""
        ratio, _ = await self._coverage_snapshot(source_ids)
        return ratio

    async def _coverage_snapshot(
        self, source_ids: Sequence[str], known: Mapping[str, int] | None = None
    ) -> tuple[float, dict[str, int]]:
        if not source_ids:
            return 1.0, {}
        counts = await self._fetch_chunk_counts(source_ids, known or {})
        meeting = sum(1 for sid in source_ids if counts.get(sid, 0) >= self.chunk_floor)
        return meeting / len(source_ids), counts

    async def _fetch_chunk_counts(
        self, source_ids: Sequence[str], known: Mapping[str, int]
    ) -> dict[str, int]:
        """Counter results, never below a count already known for the source."""
        outcomes = await self._bounded(list(source_ids), self.chunk_counter.count_chunks)
        counts: dict[str, int] = {}
        for source_id, outcome in zip(source_ids, outcomes):
            floor = known.get(source_id, 0)
            if isinstance(outcome, Exception):
                logger.warning("collector: chunk count failed for %s: %s", source_id, outcome)
                if source_id in known:
                    counts[source_id] = floor
                continue
            counts[source_id] = max(floor, outcome)
        return counts

    async def _gate_coverage(self, result: CollectionResult) -> None:
        ids = result.source_ids
        known = {s.id: s.chunk_count for s in result.sources}
        ratio, counts = await self._coverage_snapshot(ids, known)
        result.sources = [
            s.with_chunk_count(counts.get(s.id, s.chunk_count)) for s in result.sources
        ]
        result.coverage_ratio = ratio

        needing = [
            s
            for s in result.sources
            if s.chunk_count < self.chunk_floor and is_direct_fulltext_url(s.fulltext_url)
        ]
        result.queued_ids = await self._enqueue(needing)

        if ratio >= COVERAGE_GATE_RATIO or not result.queued_ids:
            logger.info(
                "collector: coverage %.0f%%, %d queued, not waiting",
                ratio * 100,
                len(result.queued_ids),
            )
            return

        max_wait = compute_max_wait(len(result.queued_ids))
        logger.info(
            "collector: coverage %.0f%% below gate, waiting up to %.0fs for %d sources",
            ratio * 100,
            max_wait,
            len(result.queued_ids),
        )
        reached, ratio, counts = await self.wait_for_coverage(
            ids, COVERAGE_TARGET_RATIO, max_wait, known
        )
        result.sources = [
            s.with_chunk_count(counts.get(s.id, s.chunk_count)) for s in result.sources
        ]
        result.coverage_ratio = ratio
        if not reached:
            result.timed_out = True
            message = (
                f"Full-text coverage {ratio:.0%} after {max_wait:.0f}s, "
                "continuing with partial coverage"
            )
            result.warnings.append(message)
            logger.warning("collector: %s", message)

    async def _enqueue(self, sources: list[SourceDocument]) -> list[str]:
        async def _one(source: SourceDocument) -> str:
            await self.queue.enqueue(source.id, source.fulltext_url or "", ENQUEUE_PRIORITY)
            return source.id

        outcomes = await self._bounded(sources, _one)
        queued = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("collector: enqueue failed for %s: %s", source.id, outcome)
            else:
                queued.append(outcome)
        return queued

    async def wait_for_coverage(
        self,
        source_ids: Sequence[str],
        target_ratio: float,
        max_wait: float,
        known: Mapping[str, int] | None = None,
    ) -> tuple[bool, float, dict[str, int]]:
        deadline = self._clock() + max_wait
        while True:
            ratio, counts = await self._coverage_snapshot(source_ids, known)
            if ratio >= target_ratio:
                return True, ratio, counts
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False, ratio, counts
            await self._sleep(min(self.poll_interval, remaining))

    async def _bounded(
        self, items: Sequence[T], fn: Callable[[T], Awaitable[R]]
    ) -> list[R | BaseException]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(item: T) -> R:
            async with semaphore:
                return await fn(item)

        return await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)
