import pytest

from draftforge.collection.collector import PaperCollector, compute_max_wait
from draftforge.collection.ingest import (
    CorpusSearchDiscovery,
    IngestPolicy,
    decide_ingest_policy,
    estimate_ingest_cost,
)
from draftforge.collection.relevance import (
    OnTopicFilter,
    is_direct_fulltext_url,
    is_score_acceptable,
)
from draftforge.errors import EmptyCorpusError
from draftforge.retrieval.chunk_retriever import ChunkRetriever
from draftforge.schemas import CollectionConstraints, SearchFilters, SourceDocument

TOPIC = "graph neural networks drug discovery"


def _make_source(source_id: str, title: str | None = None, **kwargs) -> SourceDocument:
    return SourceDocument(
        id=source_id,
        title=title or f"Graph neural networks for drug discovery, part {source_id}",
        **kwargs,
    )


class _FakeStore:
    def __init__(self, docs):
        self.docs = {d.id: d for d in docs}
        self.search_filters = []

    async def get(self, ids):
        return [self.docs[i] for i in ids if i in self.docs]

    async def search(self, topic, filters):
        self.search_filters.append(filters)
        return list(self.docs.values())


class _FakeCounter:
    def __init__(self, counts=None, failing=()):
        self.counts = dict(counts or {})
        self.failing = set(failing)

    async def count_chunks(self, source_id):
        if source_id in self.failing:
            raise ConnectionError("index unreachable")
        return self.counts.get(source_id, 0)


class _FakeQueue:
    def __init__(self):
        self.calls = []

    async def enqueue(self, source_id, url, priority):
        self.calls.append((source_id, url, priority))


class _QueryOnlyIndex:
    async def query(self, text, source_ids=None, min_score=None, limit=20):
        return []


class _FailingDiscovery:
    async def discover(self, topic, filters):
        raise TimeoutError("search backend timed out")


class _FakeIngest:
    def __init__(self, failing=()):
        self.failing = set(failing)

    async def ingest(self, source):
        if source.id in self.failing:
            raise ValueError("unparseable metadata")
        return source.id


class _Clock:
    def __init__(self, on_sleep=None):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = on_sleep

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep()


def _collector(store, counter=None, queue=None, clock=None, **kwargs) -> PaperCollector:
    clock = clock or _Clock()
    return PaperCollector(
        store,
        counter or _FakeCounter(),
        queue or _FakeQueue(),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


NO_GATE = CollectionConstraints(gate_coverage=False)


class TestCoverage:
    async def test_empty_is_vacuously_covered(self):
        assert await _collector(_FakeStore([])).coverage([]) == 1.0

    async def test_fraction_meeting_floor(self):
        counter = _FakeCounter({"s1": 12, "s2": 3, "s3": 10, "s4": 0})
        collector = _collector(_FakeStore([]), counter)
        assert await collector.coverage(["s1", "s2", "s3", "s4"]) == 0.5

    async def test_failed_count_lookup_is_uncovered(self):
        counter = _FakeCounter({"s1": 12, "s2": 40}, failing={"s2"})
        collector = _collector(_FakeStore([]), counter)
        assert await collector.coverage(["s1", "s2"]) == 0.5


class TestCollect:
    async def test_pinned_sources_kept_and_excluded_from_discovery(self):
        docs = [_make_source("p1"), *(_make_source(f"d{i}") for i in range(1, 4))]
        store = _FakeStore(docs)
        constraints = CollectionConstraints(target_total=3, gate_coverage=False)

        result = await _collector(store).collect(TOPIC, ["p1"], constraints)

        assert result.source_ids[0] == "p1"
        assert len(result.sources) == 3
        assert "p1" not in result.discovered_ids
        assert store.search_filters[0].limit == 2
        assert store.search_filters[0].exclude_ids == ["p1"]

    async def test_missing_pinned_source_warns(self):
        store = _FakeStore([_make_source("p1")])
        constraints = CollectionConstraints(discovery_enabled=False, gate_coverage=False)

        result = await _collector(store).collect(TOPIC, ["p1", "ghost"], constraints)

        assert result.source_ids == ["p1"]
        assert any("not found" in w for w in result.warnings)

    async def test_discovery_failure_falls_back_to_pinned(self):
        store = _FakeStore([_make_source("p1")])

        result = await _collector(store, discovery=_FailingDiscovery()).collect(
            TOPIC, ["p1"], NO_GATE
        )

        assert result.source_ids == ["p1"]
        assert any("discovery failed" in w for w in result.warnings)

    async def test_nothing_found_raises(self):
        with pytest.raises(EmptyCorpusError):
            await _collector(_FakeStore([])).collect(TOPIC, [], NO_GATE)

    async def test_off_topic_and_low_score_sources_filtered(self):
        docs = [
            _make_source("good", semantic_score=0.6),
            _make_source("poetry", title="Medieval poetry in Provence"),
            _make_source("weak", semantic_score=0.1),
        ]

        result = await _collector(_FakeStore(docs)).collect(TOPIC, [], NO_GATE)

        assert result.source_ids == ["good"]

    async def test_partial_ingest_failure_keeps_rest(self):
        docs = [_make_source(f"d{i}") for i in range(3)]
        collector = _collector(_FakeStore(docs), ingest=_FakeIngest(failing={"d1"}))

        result = await collector.collect(TOPIC, [], NO_GATE)

        assert result.source_ids == ["d0", "d2"]
        assert "1 of 3 sources failed to ingest" in result.warnings

    async def test_bulk_discovery_capped_without_permission(self):
        docs = [_make_source(f"d{i:02d}") for i in range(25)]

        result = await _collector(_FakeStore(docs)).collect(TOPIC, [], NO_GATE)

        assert result.ingest_policy is IngestPolicy.CONFIRM
        assert len(result.sources) == 20
        assert any("Bulk ingestion not allowed" in w for w in result.warnings)

    async def test_bulk_discovery_allowed(self):
        docs = [_make_source(f"d{i:02d}") for i in range(25)]
        constraints = CollectionConstraints(allow_bulk_ingest=True, gate_coverage=False)

        result = await _collector(_FakeStore(docs)).collect(TOPIC, [], constraints)

        assert len(result.sources) == 25


ARXIV_PDF = "https://arxiv.org/pdf/2101.00001"


def _gating_sources():
    return [
        _make_source("s1", pdf_url=ARXIV_PDF),
        _make_source("s2", url="https://doi.org/10.1000/xyz"),
        _make_source("s3"),
    ]


GATED = CollectionConstraints(discovery_enabled=False)


class TestCoverageGating:
    async def test_only_direct_fulltext_urls_enqueued(self):
        queue = _FakeQueue()
        counter = _FakeCounter({"s3": 12})

        result = await _collector(
            _FakeStore(_gating_sources()), counter, queue
        ).collect(TOPIC, ["s1", "s2", "s3"], GATED)

        assert queue.calls == [("s1", ARXIV_PDF, "high")]
        assert result.queued_ids == ["s1"]

    async def test_waits_until_target_reached(self):
        counter = _FakeCounter({"s3": 12})

        def _extraction_finished():
            counter.counts.update({"s1": 15, "s2": 11})

        clock = _Clock(on_sleep=_extraction_finished)
        result = await _collector(
            _FakeStore(_gating_sources()), counter, clock=clock
        ).collect(TOPIC, ["s1", "s2", "s3"], GATED)

        assert not result.timed_out
        assert result.coverage_ratio == 1.0
        assert len(clock.sleeps) == 1
        assert {s.id: s.chunk_count for s in result.sources} == {"s1": 15, "s2": 11, "s3": 12}

    async def test_timeout_warns_and_continues(self):
        clock = _Clock()
        result = await _collector(
            _FakeStore(_gating_sources()), _FakeCounter({"s3": 12}), clock=clock
        ).collect(TOPIC, ["s1", "s2", "s3"], GATED)

        assert result.timed_out
        assert clock.now == pytest.approx(compute_max_wait(1))
        assert any("partial coverage" in w for w in result.warnings)
        assert result.source_ids == ["s1", "s2", "s3"]

    async def test_no_wait_when_already_covered(self):
        clock = _Clock()
        counter = _FakeCounter({"s1": 10, "s2": 10, "s3": 10})

        result = await _collector(
            _FakeStore(_gating_sources()), counter, clock=clock
        ).collect(TOPIC, ["s1", "s2", "s3"], GATED)

        assert clock.sleeps == []
        assert result.queued_ids == []
        assert result.coverage_ratio == 1.0


@pytest.mark.parametrize("count,expected", [(1, 120.0), (3, 270.0), (10, 600.0), (0, 120.0)])
def test_compute_max_wait(count, expected):
    assert compute_max_wait(count) == expected


@pytest.mark.parametrize(
    "url,expected",
    [
        (ARXIV_PDF, True),
        ("https://example.org/files/paper.pdf?download=1", True),
        ("https://europepmc.org/articles/PMC123/file.pdf", True),
        ("https://doi.org/10.1000/xyz", False),
        ("https://link.springer.com/content/pdf/10.1007/x.pdf", False),
        ("https://example.org/paper.html", False),
        (None, False),
        ("", False),
    ],
)
def test_is_direct_fulltext_url(url, expected):
    assert is_direct_fulltext_url(url) is expected


class TestScoreAcceptance:
    def test_semantic_score_takes_precedence(self):
        assert is_score_acceptable(0.3, 0.0)
        assert not is_score_acceptable(0.2, 0.9)
        assert is_score_acceptable(0.2, None, permissive=True)

    def test_keyword_score(self):
        assert is_score_acceptable(None, 0.1)
        assert not is_score_acceptable(None, 0.07)
        assert is_score_acceptable(None, 0.07, permissive=True)

    def test_unscored(self):
        assert is_score_acceptable(None, None, accept_unscored=True)
        assert not is_score_acceptable(None, None, accept_unscored=False)


class TestOnTopicFilter:
    def test_exact_topic_phrase_matches(self):
        source = _make_source("a", title="Notes", abstract=f"A survey of {TOPIC} methods.")
        assert OnTopicFilter(TOPIC).match_ratio(source) == 1.0

    def test_partial_term_match(self):
        source = _make_source("a", title="Neural networks in vision")
        assert OnTopicFilter(TOPIC).match_ratio(source) == pytest.approx(2 / 5)
        assert not OnTopicFilter(TOPIC).accepts(source)

    def test_unscored_rejected_when_strict(self):
        source = _make_source("a")
        assert OnTopicFilter(TOPIC).accepts(source)
        assert not OnTopicFilter(TOPIC, accept_unscored=False).accepts(source)


class TestIngestPolicy:
    def test_threshold(self):
        assert decide_ingest_policy(19) is IngestPolicy.AUTO
        assert decide_ingest_policy(20) is IngestPolicy.CONFIRM

    def test_cost_estimate(self):
        estimate = estimate_ingest_cost(90)
        assert estimate.cost_usd == pytest.approx(0.0018)
        assert not estimate.exceeds_budget
        assert estimate_ingest_cost(300_000).exceeds_budget


class TestCorpusSearchDiscovery:
    async def test_applies_exclusions_year_and_limit(self):
        docs = [
            _make_source("old", year=2001),
            _make_source("pinned", year=2020),
            _make_source("undated"),
            _make_source("new", year=2022),
            _make_source("newer", year=2023),
        ]
        discovery = CorpusSearchDiscovery(_FakeStore(docs))
        filters = SearchFilters(limit=2, exclude_ids=["pinned"], from_year=2010)

        found = await discovery.discover(TOPIC, filters)

        assert [d.id for d in found] == ["undated", "new"]


class TestKnownChunkCounts:
    async def test_query_only_index_keeps_collected_counts(self):
        clock = _Clock()
        queue = _FakeQueue()
        indexed = _make_source("s1", pdf_url=ARXIV_PDF, chunk_count=25)

        result = await _collector(
            _FakeStore([indexed]), ChunkRetriever(_QueryOnlyIndex()), queue, clock=clock
        ).collect(TOPIC, ["s1"], GATED)

        assert result.coverage_ratio == 1.0
        assert queue.calls == []
        assert clock.sleeps == []
        assert not result.timed_out
        assert result.sources[0].chunk_count == 25

    async def test_counter_never_lowers_known_count(self):
        counter = _FakeCounter({"s1": 3, "s2": 30}, failing={"s3"})
        sources = [
            _make_source("s1", pdf_url=ARXIV_PDF, chunk_count=18),
            _make_source("s2", chunk_count=4),
            _make_source("s3", chunk_count=11),
        ]

        result = await _collector(_FakeStore(sources), counter).collect(
            TOPIC, ["s1", "s2", "s3"], GATED
        )

        assert {s.id: s.chunk_count for s in result.sources} == {"s1": 18, "s2": 30, "s3": 11}
        assert result.queued_ids == []
