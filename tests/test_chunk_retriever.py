import pytest

from draftforge.errors import InvalidTopicError, NoRelevantContentError, TransientError
from draftforge.retrieval.cache import RetrievalCache
from draftforge.retrieval.chunk_retriever import (
    ABSTRACT_TIER,
    ChunkRetriever,
    balance_chunks,
    passes_quality_filter,
    per_source_cap,
    split_abstract,
)
from draftforge.schemas import Chunk, PassageHit, SourceDocument

QUERY = "graph neural networks for drug discovery"


class _FakeIndex:
    def __init__(self, by_threshold=None, errors=None):
        self.by_threshold = by_threshold or {}
        self.errors = errors or {}
        self.calls = []

    async def query(self, text, source_ids=None, min_score=None, limit=20):
        self.calls.append(min_score)
        if min_score in self.errors:
            raise self.errors[min_score]
        return list(self.by_threshold.get(min_score, []))


class _CountingIndex(_FakeIndex):
    async def count_chunks(self, source_id):
        return 42


def _make_source(source_id: str, abstract: str = "", chunk_count: int = 0) -> SourceDocument:
    return SourceDocument(
        id=source_id,
        title=f"Study {source_id}",
        authors=["Doe, Jane"],
        abstract=abstract,
        year=2021,
        chunk_count=chunk_count,
    )


def _hit(source_id: str, i: int, score: float, content: str | None = None) -> PassageHit:
    return PassageHit(
        source_id=source_id,
        content=content or f"Passage {i} from {source_id} reports binding affinity results.",
        score=score,
    )


def _chunk(chunk_id: str, source_id: str, score: float, content: str | None = None) -> Chunk:
    return Chunk(
        id=chunk_id,
        source_id=source_id,
        content=content or f"Distinct passage {chunk_id} with enough words to count.",
        score=score,
        tier="balanced",
    )


def _retriever(index, sources, **kwargs) -> ChunkRetriever:
    return ChunkRetriever(index, documents=sources, **kwargs)


SOURCES = [_make_source(f"s{i}") for i in range(1, 5)]
IDS = [s.id for s in SOURCES]


class TestTiers:
    async def test_second_tier_wins_when_first_is_empty(self):
        hits = [_hit(sid, i, 0.4) for sid in IDS for i in range(3)]
        index = _FakeIndex({0.5: [], 0.3: hits, 0.2: [_hit("s1", 99, 0.25)]})

        result = await _retriever(index, SOURCES).retrieve(QUERY, IDS, limit=20)

        assert len(result.chunks) == 12
        assert result.tier == "balanced"
        assert result.threshold == 0.3
        assert {c.tier for c in result.chunks} == {"balanced"}
        assert index.calls == [0.5, 0.3]

    async def test_failing_tier_is_skipped(self):
        hits = [_hit("s1", i, 0.4) for i in range(3)]
        index = _FakeIndex({0.3: hits}, errors={0.5: RuntimeError("index hiccup")})

        result = await _retriever(index, SOURCES).retrieve(QUERY, IDS, limit=20)

        assert result.tier == "balanced"
        assert len(result.chunks) == 3

    async def test_all_tiers_failing_without_abstracts_is_transient(self):
        errors = {threshold: RuntimeError("down") for threshold in (0.5, 0.3, 0.2, 0.15)}
        index = _FakeIndex(errors=errors)

        with pytest.raises(TransientError):
            await _retriever(index, SOURCES).retrieve(QUERY, IDS, limit=20)


class TestQualityFilter:
    @pytest.mark.parametrize("n", [4, 15])
    async def test_all_filtered_keeps_top_raw(self, n):
        hits = [_hit("s1", i, 0.95 - i * 0.01, content=f"1.{i:02d}") for i in range(n)]
        index = _FakeIndex({0.5: hits})

        result = await _retriever(index, SOURCES[:2]).retrieve(QUERY, ["s1", "s2"], limit=20)

        assert result.used_raw_fallback
        assert len(result.chunks) == min(10, n)
        expected = sorted((h.score for h in hits), reverse=True)[: min(10, n)]
        assert sorted((c.score for c in result.chunks), reverse=True) == expected

    def test_passes_quality_filter(self):
        assert passes_quality_filter(_chunk("a", "s1", 0.5))
        assert not passes_quality_filter(_chunk("b", "s1", 0.5, content="too short"))
        assert not passes_quality_filter(_chunk("c", "s1", 0.5, content="12345 67890 " * 5))
        assert not passes_quality_filter(
            _chunk("d", "s1", 0.5, content="supercalifragilistic expialidocious")
        )


class TestBalancing:
    def test_per_source_cap(self):
        assert per_source_cap(12, 4) == 10
        assert per_source_cap(60, 3) == 20
        assert per_source_cap(5, 0) == 10

    def test_result_never_exceeds_limit(self):
        chunks = [_chunk(f"a{i}", "s1", 0.9) for i in range(40)]
        assert len(balance_chunks(chunks, limit=5, source_count=1)) == 5

    def test_cap_keeps_room_for_other_sources(self):
        dominant = [_chunk(f"a{i}", "s1", 0.9 - i * 0.001) for i in range(20)]
        minor = [_chunk(f"b{i}", "s2", 0.5) for i in range(5)]

        selected = balance_chunks(dominant + minor, limit=12, source_count=2)

        assert len(selected) == 12
        assert sum(1 for c in selected if c.source_id == "s1") == 10
        assert sum(1 for c in selected if c.source_id == "s2") == 2

    def test_fill_pass_exceeds_cap_to_reach_limit(self):
        dominant = [_chunk(f"a{i}", "s1", 0.9 - i * 0.001) for i in range(20)]
        minor = [_chunk(f"b{i}", "s2", 0.5) for i in range(5)]

        selected = balance_chunks(dominant + minor, limit=20, source_count=2)

        assert len(selected) == 20
        assert sum(1 for c in selected if c.source_id == "s2") == 5
        assert sum(1 for c in selected if c.source_id == "s1") == 15

    def test_duplicate_content_is_dropped(self):
        text = "Identical passage shared by two sources in the index."
        chunks = [_chunk("a", "s1", 0.9, text), _chunk("b", "s2", 0.8, text.upper())]
        assert [c.id for c in balance_chunks(chunks, limit=10, source_count=2)] == ["a"]

    async def test_retrieve_respects_limit(self):
        hits = [_hit(sid, i, 0.6) for sid in ("s1", "s2") for i in range(20)]
        index = _FakeIndex({0.5: hits})

        result = await _retriever(index, SOURCES).retrieve(QUERY, ["s1", "s2"], limit=5)

        assert len(result.chunks) <= 5


LONG_ABSTRACT = " ".join(
    f"Sentence number {i} explains a separate finding about molecular graphs in detail."
    for i in range(12)
)
SHORT_ABSTRACT = (
    "We study message passing networks for predicting protein ligand binding and report "
    "consistent gains over fingerprints."
)


class TestAbstractFallback:
    def test_split_abstract(self):
        assert len(LONG_ABSTRACT) > 800
        pieces = split_abstract(_make_source("long", LONG_ABSTRACT))
        assert len(pieces) == 12
        short = split_abstract(_make_source("short", SHORT_ABSTRACT))
        assert short == [f"Title: Study short\n\nAbstract: {SHORT_ABSTRACT}"]
        assert split_abstract(_make_source("none", "Too short.")) == []

    async def test_abstracts_used_when_no_tier_hits(self):
        sources = [_make_source("s1", SHORT_ABSTRACT), _make_source("s2", LONG_ABSTRACT)]

        result = await _retriever(_FakeIndex(), sources).retrieve(QUERY, ["s1", "s2"], limit=20)

        assert result.used_abstract_fallback
        assert result.tier == ABSTRACT_TIER
        assert len(result.chunks) == 13
        assert all(c.score == 0.5 for c in result.chunks)

    async def test_no_passages_and_no_abstracts(self):
        with pytest.raises(NoRelevantContentError):
            await _retriever(_FakeIndex(), SOURCES).retrieve(QUERY, IDS, limit=20)

    async def test_low_scores_are_topped_up(self):
        hits = [_hit("s1", i, 0.05) for i in range(3)]
        sources = [_make_source("s1"), _make_source("s2", SHORT_ABSTRACT)]

        result = await _retriever(_FakeIndex({0.5: hits}), sources).retrieve(
            QUERY, ["s1", "s2"], limit=20
        )

        assert result.topped_up == 1
        assert any("below floor" in w for w in result.warnings)
        assert "s2" in result.source_ids


class TestInputs:
    async def test_short_query_rejected(self):
        with pytest.raises(InvalidTopicError):
            await _retriever(_FakeIndex(), SOURCES).retrieve("graphs", IDS, limit=20)

    async def test_unknown_candidates(self):
        with pytest.raises(NoRelevantContentError):
            await _retriever(_FakeIndex(), SOURCES).retrieve(QUERY, ["missing"], limit=20)

    async def test_zero_limit(self):
        result = await _retriever(_FakeIndex(), SOURCES).retrieve(QUERY, IDS, limit=0)
        assert result.chunks == []


class TestCaching:
    async def test_job_cache_memoizes_by_sorted_candidates(self):
        index = _FakeIndex({0.5: [_hit("s1", 0, 0.8)]})
        retriever = _retriever(index, SOURCES, job_cache={})

        first = await retriever.retrieve(QUERY, ["s2", "s1"], limit=20)
        calls = len(index.calls)
        second = await retriever.retrieve(QUERY, ["s1", "s2"], limit=20)

        assert second is first
        assert len(index.calls) == calls

    async def test_shared_cache_spans_retrievers(self):
        cache = RetrievalCache()
        index = _FakeIndex({0.5: [_hit("s1", 0, 0.8)]})

        await _retriever(index, SOURCES, cache=cache).retrieve(QUERY, IDS, limit=20)
        await _retriever(index, SOURCES, cache=cache).retrieve(QUERY, IDS, limit=20)

        assert index.calls == [0.5]


class TestHelpers:
    async def test_best_chunk_per_source(self):
        hits = [_hit("s1", 0, 0.9), _hit("s1", 1, 0.6), _hit("s2", 0, 0.7)]
        retriever = _retriever(_FakeIndex({0.5: hits}), SOURCES)

        best = await retriever.best_chunk_per_source(QUERY, ["s1", "s2"])

        assert {sid: c.score for sid, c in best.items()} == {"s1": 0.9, "s2": 0.7}

    async def test_best_chunk_per_source_without_content(self):
        retriever = _retriever(_FakeIndex(), SOURCES)
        assert await retriever.best_chunk_per_source(QUERY, ["s1"]) == {}
        assert await retriever.best_chunk_per_source(QUERY, []) == {}

    async def test_count_chunks_delegates_to_counting_index(self):
        assert await _retriever(_CountingIndex(), SOURCES).count_chunks("s1") == 42

    async def test_count_chunks_falls_back_to_documents(self):
        sources = [_make_source("s1", chunk_count=7)]
        retriever = _retriever(_FakeIndex(), sources)
        assert await retriever.count_chunks("s1") == 7
        assert await retriever.count_chunks("unknown") == 0

    async def test_count_chunks_never_below_document_count(self):
        sources = [_make_source("s1", chunk_count=60)]
        assert await _retriever(_CountingIndex(), sources).count_chunks("s1") == 60
