"""Adaptive multi-tier passage retrieval with per-source balancing."""

import hashlib
import logging
import math
import re
import time
from collections import Counter
from collections.abc import Hashable, MutableMapping, Sequence
from dataclasses import dataclass, field

from draftforge.constants import (
    ABSTRACT_FALLBACK_MAX_SOURCES,
    ABSTRACT_FALLBACK_SCORE,
    ABSTRACT_MIN_CHARS,
    ABSTRACT_SENTENCE_MIN_CHARS,
    ABSTRACT_SPLIT_THRESHOLD,
    ABSTRACT_TOP_UP_SCORE,
    CHUNK_MIN_CHARS,
    CHUNK_MIN_WORDS,
    MIN_AVERAGE_CHUNK_SCORE,
    MIN_BALANCED_CHUNKS,
    MIN_TOPIC_LENGTH,
    PER_SOURCE_CAP_FLOOR,
    RAW_FALLBACK_LIMIT,
    RETRIEVAL_TIERS,
    TIER_CANDIDATE_MULTIPLIER,
    TOP_UP_MIN_CHUNKS,
)
from draftforge.errors import (
    ContentQualityError,
    InvalidTopicError,
    NoRelevantContentError,
    TransientError,
)
from draftforge.evaluation.usage_tracker import record_index_query
from draftforge.interfaces import ChunkCounter, PassageIndex
from draftforge.retrieval.cache import RetrievalCache, retrieval_key
from draftforge.schemas import Chunk, PassageHit, SourceDocument

logger = logging.getLogger(__name__)

ABSTRACT_TIER = "abstract"

_NUMERIC_ONLY_RE = re.compile(r"^[\d\s.,\-]+$")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass
class RetrievalResult:
    chunks: list[Chunk]
    tier: str | None = None
    threshold: float | None = None
    used_raw_fallback: bool = False
    used_abstract_fallback: bool = False
    topped_up: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def average_score(self) -> float:
        if not self.chunks:
            return 0.0
        return sum(c.score for c in self.chunks) / len(self.chunks)

    @property
    def source_ids(self) -> list[str]:
        return list(dict.fromkeys(c.source_id for c in self.chunks))


def make_chunk_id(source_id: str, index: int, content: str) -> str:
    digest = hashlib.sha256(content[:100].encode()).hexdigest()[:8]
    return f"chunk-{source_id}-{index}-{digest}"


def passes_quality_filter(chunk: Chunk) -> bool:
    text = chunk.content.strip()
    if len(text) < CHUNK_MIN_CHARS:
        return False
    if len(text.split()) < CHUNK_MIN_WORDS:
        return False
    return not _NUMERIC_ONLY_RE.match(text)


def per_source_cap(limit: int, source_count: int) -> int:
    return max(PER_SOURCE_CAP_FLOOR, math.ceil(limit / max(1, source_count)))


def balance_chunks(chunks: Sequence[Chunk], limit: int, source_count: int) -> list[Chunk]:
    """Cap chunks per source, then fill remaining slots ignoring the cap.

    Both passes walk chunks in score order and skip duplicate content.
    """
    cap = per_source_cap(limit, source_count)
    ordered = sorted(chunks, key=lambda c: c.score, reverse=True)

    selected: list[Chunk] = []
    selected_ids: set[str] = set()
    seen_content: set[str] = set()
    per_source: Counter[str] = Counter()

    def _take(chunk: Chunk) -> None:
        selected.append(chunk)
        selected_ids.add(chunk.id)
        seen_content.add(_content_key(chunk.content))
        per_source[chunk.source_id] += 1

    for chunk in ordered:
        if len(selected) >= limit:
            break
        if per_source[chunk.source_id] >= cap or _content_key(chunk.content) in seen_content:
            continue
        _take(chunk)

    for chunk in ordered:
        if len(selected) >= limit:
            break
        if chunk.id in selected_ids or _content_key(chunk.content) in seen_content:
            continue
        _take(chunk)

    return selected


def check_score_floor(chunks: Sequence[Chunk], floor: float = MIN_AVERAGE_CHUNK_SCORE) -> None:
    if not chunks:
        return
    average = sum(c.score for c in chunks) / len(chunks)
    if average < floor:
        raise ContentQualityError(
            f"Average chunk relevance score {average:.3f} below floor {floor:.2f}"
        )


def _content_key(content: str) -> str:
    return " ".join(content.lower().split())


def _clamp_score(score: float) -> float:
    return max(0.0, min(1.0, score))


class ChunkRetriever:
    def __init__(
        self,
        index: PassageIndex,
        documents: Sequence[SourceDocument] = (),
        cache: RetrievalCache | None = None,
        job_cache: MutableMapping[Hashable, object] | None = None,
        tiers: Sequence[tuple[float, str]] = RETRIEVAL_TIERS,
    ) -> None:
        self.index = index
        self.cache = cache
        self.job_cache = job_cache
        self.tiers = tuple(tiers)
        self._documents: dict[str, SourceDocument] = {}
        self.set_documents(documents)

    def set_documents(self, documents: Sequence[SourceDocument]) -> None:
        self._documents = {doc.id: doc for doc in documents}

    async def retrieve(
        self, query: str, candidate_source_ids: Sequence[str], limit: int
    ) -> RetrievalResult:
        if len(query.strip()) < MIN_TOPIC_LENGTH:
            raise InvalidTopicError(
                f"Invalid topic: query must be at least {MIN_TOPIC_LENGTH} characters"
            )

        candidates = list(dict.fromkeys(candidate_source_ids))
        if self._documents:
            candidates = [sid for sid in candidates if sid in self._documents]
        if not candidates:
            raise NoRelevantContentError("No relevant content: no candidate sources for retrieval")
        if limit <= 0:
            return RetrievalResult(chunks=[])

        memo_key = ("retrieve", query, tuple(sorted(candidates)), limit)
        if self.job_cache is not None and memo_key in self.job_cache:
            return self.job_cache[memo_key]  # type: ignore[return-value]

        start = time.perf_counter()
        result = await self._retrieve_uncached(query, candidates, limit)
        logger.info(
            "retriever: %d chunks from %d sources (tier=%s, avg=%.3f) in %.2fs",
            len(result.chunks),
            len(result.source_ids),
            result.tier,
            result.average_score,
            time.perf_counter() - start,
        )

        if self.job_cache is not None:
            self.job_cache[memo_key] = result
        return result

    async def _retrieve_uncached(
        self, query: str, candidates: list[str], limit: int
    ) -> RetrievalResult:
        result = RetrievalResult(chunks=[])
        tier_errors: list[Exception] = []

        for threshold, label in self.tiers:
            try:
                hits = await self._query_tier(query, candidates, limit, threshold)
            except Exception as e:
                logger.warning("retriever: tier %s (%.2f) failed: %s", label, threshold, e)
                tier_errors.append(e)
                continue
            if hits:
                result.chunks = self._hits_to_chunks(hits, candidates, label)
                if result.chunks:
                    result.tier = label
                    result.threshold = threshold
                    break

        if result.chunks:
            filtered = [c for c in result.chunks if passes_quality_filter(c)]
            if not filtered:
                keep = min(RAW_FALLBACK_LIMIT, len(result.chunks))
                logger.warning(
                    "retriever: all %d chunks failed quality filter, keeping top %d raw",
                    len(result.chunks),
                    keep,
                )
                filtered = result.chunks[:keep]
                result.used_raw_fallback = True
            result.chunks = filtered
        else:
            result.chunks = self.abstract_chunks(
                candidates, ABSTRACT_FALLBACK_SCORE, max_sources=ABSTRACT_FALLBACK_MAX_SOURCES
            )
            if not result.chunks:
                if len(tier_errors) == len(self.tiers):
                    raise TransientError(
                        f"Passage index unavailable: {tier_errors[-1]}"
                    ) from tier_errors[-1]
                raise NoRelevantContentError(
                    f"No relevant content: no passages or abstracts across "
                    f"{len(candidates)} sources"
                )
            logger.info(
                "retriever: no passages at any tier, using %d abstract chunks",
                len(result.chunks),
            )
            result.tier = ABSTRACT_TIER
            result.used_abstract_fallback = True

        needs_top_up = len(result.chunks) < TOP_UP_MIN_CHUNKS
        try:
            check_score_floor(result.chunks)
        except ContentQualityError as e:
            logger.warning("retriever: %s, topping up with abstracts", e)
            result.warnings.append(str(e))
            needs_top_up = True

        if needs_top_up:
            represented = {c.source_id for c in result.chunks}
            extra = self.abstract_chunks(
                [sid for sid in candidates if sid not in represented], ABSTRACT_TOP_UP_SCORE
            )
            result.chunks.extend(extra)
            result.topped_up = len(extra)

        result.chunks = balance_chunks(result.chunks, limit, len(candidates))
        if len(result.chunks) < min(MIN_BALANCED_CHUNKS, limit):
            message = f"Insufficient content: only {len(result.chunks)} chunks after balancing"
            logger.warning("retriever: %s", message)
            result.warnings.append(message)
        return result

    async def _query_tier(
        self, query: str, candidates: list[str], limit: int, threshold: float
    ) -> list[PassageHit]:
        key = retrieval_key(query, candidates, limit, threshold)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        record_index_query()
        hits = await self.index.query(
            query,
            source_ids=candidates,
            min_score=threshold,
            limit=limit * TIER_CANDIDATE_MULTIPLIER,
        )
        hits = list(hits)
        if self.cache is not None:
            self.cache.set(key, hits)
        return hits

    def _hits_to_chunks(
        self, hits: Sequence[PassageHit], candidates: list[str], tier: str
    ) -> list[Chunk]:
        allowed = set(candidates)
        chunks: list[Chunk] = []
        for i, hit in enumerate(hits):
            if hit.source_id not in allowed:
                logger.debug("retriever: dropping hit for non-candidate source %s", hit.source_id)
                continue
            chunks.append(
                Chunk(
                    id=make_chunk_id(hit.source_id, i, hit.content),
                    source_id=hit.source_id,
                    content=hit.content,
                    score=_clamp_score(hit.score),
                    tier=tier,
                )
            )
        chunks.sort(key=lambda c: c.score, reverse=True)
        return chunks

    def abstract_chunks(
        self,
        source_ids: Sequence[str],
        score: float,
        max_sources: int | None = None,
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        used_sources = 0
        for source_id in source_ids:
            if max_sources is not None and used_sources >= max_sources:
                break
            doc = self._documents.get(source_id)
            if doc is None:
                continue
            pieces = split_abstract(doc)
            if not pieces:
                continue
            used_sources += 1
            for i, piece in enumerate(pieces):
                chunks.append(
                    Chunk(
                        id=make_chunk_id(source_id, i, piece),
                        source_id=source_id,
                        content=piece,
                        score=score,
                        tier=ABSTRACT_TIER,
                    )
                )
        return chunks

    async def best_chunk_per_source(
        self, query: str, source_ids: Sequence[str]
    ) -> dict[str, Chunk]:
        if not source_ids:
            return {}
        try:
            result = await self.retrieve(query, source_ids, limit=len(source_ids) * 3)
        except NoRelevantContentError:
            return {}

        best: dict[str, Chunk] = {}
        for chunk in result.chunks:
            current = best.get(chunk.source_id)
            if current is None or chunk.score > current.score:
                best[chunk.source_id] = chunk
        return best

    async def count_chunks(self, source_id: str) -> int:
        doc = self._documents.get(source_id)
        known = doc.chunk_count if doc else 0
        if isinstance(self.index, ChunkCounter):
            return max(known, await self.index.count_chunks(source_id))
        return known


def split_abstract(doc: SourceDocument) -> list[str]:
    abstract = doc.abstract.strip()
    if len(abstract) < ABSTRACT_MIN_CHARS:
        return []
    if len(abstract) > ABSTRACT_SPLIT_THRESHOLD:
        return [
            sentence.strip()
            for sentence in _SENTENCE_BOUNDARY_RE.split(abstract)
            if len(sentence.strip()) > ABSTRACT_SENTENCE_MIN_CHARS
        ]
    return [f"Title: {doc.title}\n\nAbstract: {abstract}"]
