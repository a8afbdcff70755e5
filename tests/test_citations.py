import pytest

from draftforge.citations import (
    CitationCoordinator,
    author_year,
    citation_token,
    clean_generation_artifacts,
    cleanup_content,
    coverage_target,
    evidence_sentence,
    extract_citation_ids,
    extract_citation_records,
    find_synthesis_section,
    normalize_whitespace,
    strip_unknown_citations,
    truncate_at_word_boundary,
)
from draftforge.schemas import Chunk, Reference, SectionDraft, SourceDocument


def _make_source(source_id: str, author: str = "Doe, Jane", year: int | None = 2021):
    return SourceDocument(id=source_id, title=f"Study {source_id}", authors=[author], year=year)


def _make_draft(key: str, title: str, content: str, frozen: bool = True) -> SectionDraft:
    draft = SectionDraft(
        section_key=key,
        title=title,
        content=content,
        citations=extract_citation_records(content, key),
    )
    if frozen:
        draft.freeze()
    return draft


def _evidence_chunk(source_id: str, score: float) -> Chunk:
    return Chunk(
        id=f"chunk-{source_id}",
        source_id=source_id,
        content=f"Source {source_id} shows a measurable improvement in docking accuracy.",
        score=score,
        tier="balanced",
    )


class _FakeRetriever:
    def __init__(self, best=None):
        self.best = best or {}
        self.requested = None

    async def best_chunk_per_source(self, topic, source_ids):
        self.requested = list(source_ids)
        return {sid: c for sid, c in self.best.items() if sid in source_ids}


class _FakeReferenceLookup:
    def __init__(self, references, failing=()):
        self.references_by_id = references
        self.failing = set(failing)
        self.calls = []

    async def references(self, source_id):
        self.calls.append(source_id)
        if source_id in self.failing:
            raise ConnectionError("lookup service unavailable")
        return self.references_by_id.get(source_id, [])


CORPUS = [_make_source(f"s{i}", author=f"Author{i}, A") for i in range(10)]


class TestTokens:
    def test_token_format(self):
        assert citation_token("paper-1") == "[CITE: paper-1]"

    def test_extraction_tolerates_whitespace(self):
        text = "One [CITE:s1], two [CITE:   s2 ] and again [CITE: s1]."
        assert extract_citation_ids(text) == ["s1", "s2", "s1"]

    def test_record_context_is_enclosing_sentence(self):
        records = extract_citation_records(
            "First sentence. Second claims X [CITE: s1] more.", "intro"
        )
        assert len(records) == 1
        assert records[0].source_id == "s1"
        assert records[0].section_key == "intro"
        assert records[0].context == "Second claims X [CITE: s1]"


class TestCleanup:
    def test_unknown_ids_are_stripped_not_renumbered(self):
        text = "Known [CITE: s1] and unknown [CITE: zz9] claim [CITE: s2]."

        cleaned, removed = cleanup_content(text, {"s1", "s2"})

        assert cleaned == "Known [CITE: s1] and unknown claim [CITE: s2]."
        assert removed == ["zz9"]

    def test_strip_before_punctuation(self):
        cleaned, _ = cleanup_content("A final claim [CITE: ghost].", {"s1"})
        assert cleaned == "A final claim."

    def test_strip_keeps_valid_text_untouched(self):
        text = "Everything [CITE: s1] is fine."
        assert strip_unknown_citations(text, ["s1"]) == (text, [])

    def test_generation_artifacts(self):
        text = "Text [citation needed] here CITATION_3 and addCitation(x) [CONTEXT FROM: abc]."
        assert normalize_whitespace(clean_generation_artifacts(text)) == "Text here and."

    def test_normalize_whitespace(self):
        text = "Para  one , end.   \n\n\n\nPara two ."
        assert normalize_whitespace(text) == "Para one, end.\n\nPara two."


class TestFormatting:
    @pytest.mark.parametrize(
        "authors,year,expected",
        [
            (["Doe, Jane"], 2021, "(Doe, 2021)"),
            (["Jane Doe"], 2019, "(Doe, 2019)"),
            ([], None, "(Anonymous, n.d.)"),
        ],
    )
    def test_author_year(self, authors, year, expected):
        source = SourceDocument(id="x", title="T", authors=authors, year=year)
        assert author_year(source) == expected

    def test_truncate_at_word_boundary(self):
        result = truncate_at_word_boundary("word " * 100)
        assert result.endswith("...")
        assert not result[:-3].endswith(" ")
        assert len(result) <= 283

    def test_truncate_without_spaces(self):
        assert truncate_at_word_boundary("x" * 500) == "x" * 280 + "..."

    def test_short_text_untouched(self):
        assert truncate_at_word_boundary("short text") == "short text"

    def test_evidence_sentence(self):
        content = "Title: T\n\nAbstract: Graph models **improve** binding prediction."
        sentence = evidence_sentence(content, _make_source("s1"))
        assert sentence == "Graph models improve binding prediction (Doe, 2021) [CITE: s1]."


class TestSynthesisSection:
    def test_keyword_priority(self):
        drafts = [
            _make_draft("intro", "Introduction", "x"),
            _make_draft("conclusion", "Conclusion", "x"),
            _make_draft("discussion", "Discussion", "x"),
        ]
        assert find_synthesis_section(drafts) == 2

    def test_matches_section_key(self):
        drafts = [_make_draft("intro", "Introduction", "x"), _make_draft("literatureReview", "Prior Work", "x")]
        assert find_synthesis_section(drafts) == 1

    def test_none_found(self):
        assert find_synthesis_section([_make_draft("intro", "Introduction", "x")]) is None


class TestCoordinator:
    def test_coverage_target(self):
        assert coverage_target(10, 5, 0.6) == 6
        assert coverage_target(4, 5, 0.5) == 5
        assert CitationCoordinator(CORPUS, 5, 0.6).coverage_target == 6

    def test_register_ignores_unknown_sources(self):
        coordinator = CitationCoordinator(CORPUS)
        draft = _make_draft("intro", "Introduction", "A [CITE: s1] B [CITE: s1] C [CITE: nope].")

        assert coordinator.register(draft) == 1
        assert coordinator.cited_source_ids == frozenset({"s1"})
        assert len(coordinator.records) == 2

    def test_cleanup_returns_copy_of_frozen_draft(self):
        coordinator = CitationCoordinator(CORPUS)
        draft = _make_draft("intro", "Introduction", "Claim [CITE: s1] and [CITE: bogus].")

        cleaned = coordinator.cleanup(draft)

        assert cleaned is not draft
        assert cleaned.content == "Claim [CITE: s1] and."
        assert [r.source_id for r in cleaned.citations] == ["s1"]
        assert cleaned.is_frozen
        assert "bogus" in draft.content

    def test_cleanup_unchanged_draft_is_same_object(self):
        draft = _make_draft("intro", "Introduction", "Claim [CITE: s1].")
        assert CitationCoordinator(CORPUS).cleanup(draft) is draft

    def test_citation_map(self):
        coordinator = CitationCoordinator(CORPUS)
        coordinator.register(_make_draft("intro", "Introduction", "A [CITE: s1]. B [CITE: s2]."))
        coordinator.register(_make_draft("methods", "Methods", "C [CITE: s1]."))

        citation_map = coordinator.citation_map()

        assert set(citation_map) == {"s1", "s2"}
        assert citation_map["s1"].occurrences == 2
        assert citation_map["s1"].sections == ["intro", "methods"]
        assert citation_map["s1"].authors == ["Author1, A"]


class TestBackfill:
    async def test_evidence_backfill_reaches_target(self):
        coordinator = CitationCoordinator(CORPUS, coverage_floor=5, coverage_fraction=0.6)
        drafts = [
            _make_draft("intro", "Introduction", "Opening [CITE: s0]."),
            _make_draft("discussion", "Discussion", "Closing [CITE: s1]."),
        ]
        for draft in drafts:
            coordinator.register(draft)
        best = {f"s{i}": _evidence_chunk(f"s{i}", 0.9 - i * 0.05) for i in range(2, 10)}

        updated, report = await coordinator.backfill(drafts, _FakeRetriever(best), "topic text")

        assert report.cited_before == 2
        assert report.cited_after == 6
        assert report.target_met
        assert report.evidence_added == ["s2", "s3", "s4", "s5"]
        assert report.inserted_into == "discussion"
        assert len(updated) == 2
        assert "[CITE: s5]" in updated[1].content
        assert updated[1].is_frozen
        assert updated[0] is drafts[0]

    async def test_new_synthesis_section_when_none_fits(self):
        coordinator = CitationCoordinator(CORPUS[:5], coverage_floor=2, coverage_fraction=0.0)
        drafts = [_make_draft("intro", "Introduction", "Opening text.")]
        best = {"s3": _evidence_chunk("s3", 0.7), "s4": _evidence_chunk("s4", 0.6)}

        updated, report = await coordinator.backfill(drafts, _FakeRetriever(best), "topic text")

        assert len(updated) == 2
        assert updated[-1].section_key == "evidenceSynthesis"
        assert updated[-1].title == "Evidence Synthesis"
        assert updated[-1].is_frozen
        assert report.cited_after == 2

    async def test_no_backfill_when_target_met(self):
        coordinator = CitationCoordinator(CORPUS[:5], coverage_floor=1, coverage_fraction=0.0)
        drafts = [_make_draft("intro", "Introduction", "Opening [CITE: s0].")]
        coordinator.register(drafts[0])
        retriever = _FakeRetriever()

        updated, report = await coordinator.backfill(drafts, retriever, "topic text")

        assert updated is drafts
        assert report.target_met
        assert retriever.requested is None

    async def test_reference_pass_after_evidence(self):
        coordinator = CitationCoordinator(CORPUS[:5], coverage_floor=5, coverage_fraction=0.5)
        drafts = [_make_draft("intro", "Introduction", "Opening [CITE: s0] (Smith, 2010).")]
        coordinator.register(drafts[0])
        lookup = _FakeReferenceLookup(
            {
                "s1": [Reference(authors=["Smith, A"], year=2010)],
                "s2": [Reference(authors=["Lee, B"], year=2015)],
                "s3": [Reference(authors=["Kim, C"], year=2018)],
            },
            failing={"s4"},
        )

        updated, report = await coordinator.backfill(
            drafts, _FakeRetriever(), "topic text", reference_lookup=lookup
        )

        assert report.references_added == ["s2", "s3"]
        assert report.cited_after == 3
        assert not report.target_met
        assert "(Lee, 2015)" in updated[-1].content

    async def test_reference_pass_skips_unusable_sources(self):
        coordinator = CitationCoordinator(CORPUS[:6], coverage_floor=3, coverage_fraction=0.5)
        drafts = [_make_draft("intro", "Introduction", "Opening [CITE: s0].")]
        coordinator.register(drafts[0])
        lookup = _FakeReferenceLookup(
            {
                "s1": [],
                "s3": [Reference(authors=["Lee, B"], year=2015)],
                "s4": [Reference(authors=["Kim, C"], year=2018)],
                "s5": [Reference(authors=["Park, D"], year=2019)],
            },
            failing={"s2"},
        )

        _, report = await coordinator.backfill(
            drafts, _FakeRetriever(), "topic text", reference_lookup=lookup
        )

        assert report.references_added == ["s3", "s4"]
        assert report.target_met
        assert lookup.calls == ["s1", "s2", "s3", "s4"]

    async def test_cited_set_never_shrinks(self):
        coordinator = CitationCoordinator(CORPUS, coverage_floor=5, coverage_fraction=0.6)
        drafts = [_make_draft("discussion", "Discussion", "x [CITE: s0] y [CITE: s1].")]
        coordinator.register(drafts[0])
        before = coordinator.cited_source_ids

        await coordinator.backfill(drafts, _FakeRetriever(), "topic text")

        assert before <= coordinator.cited_source_ids
