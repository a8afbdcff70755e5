import pytest

from draftforge.pipeline.planning import fallback_plan, scale_target_words, validate_plan
from draftforge.schemas import CitationNeed, SectionPlan


def _make_plan(**overrides) -> SectionPlan:
    fields = {
        "outline": ["Background", "Findings"],
        "citation_plan": [
            CitationNeed(placeholder=f"[{letter}]", need="support", target_source_ids=["s1"])
            for letter in "ABC"
        ],
        "key_arguments": ["First argument", "Second argument"],
        "estimated_paragraphs": 3,
    }
    fields.update(overrides)
    return SectionPlan(**fields)


class TestValidatePlan:
    def test_valid_plan(self):
        assert validate_plan(_make_plan(), ["s1", "s2"]) == []

    def test_too_few_parts(self):
        plan = _make_plan(outline=["Only"], key_arguments=[], estimated_paragraphs=0)
        errors = validate_plan(plan, ["s1"])
        assert len(errors) == 3
        assert any("Outline" in e for e in errors)
        assert any("key arguments" in e for e in errors)
        assert any("paragraph" in e for e in errors)

    def test_too_few_citation_slots(self):
        plan = _make_plan(citation_plan=[CitationNeed(placeholder="[A]", need="x")])
        assert validate_plan(plan, ["s1"]) == ["Citation plan has 1 slots, need 3"]

    def test_bad_and_duplicate_placeholders(self):
        plan = _make_plan(
            citation_plan=[
                CitationNeed(placeholder="[A]", need="x"),
                CitationNeed(placeholder="[A]", need="y"),
                CitationNeed(placeholder="A1", need="z"),
            ]
        )
        errors = validate_plan(plan, [])
        assert "Duplicate placeholder: [A]" in errors
        assert "Invalid placeholder key: 'A1'" in errors

    def test_unknown_target_sources(self):
        errors = validate_plan(_make_plan(), ["s2"])
        assert errors == [f"[{letter}] targets unknown sources: s1" for letter in "ABC"]


class TestFallbackPlan:
    def test_round_robin_targets(self):
        plan = fallback_plan("intro", "protein folding", 800, ["s1", "s2"])

        assert plan.estimated_paragraphs == 4
        assert [n.placeholder for n in plan.citation_plan] == ["[A]", "[B]", "[C]", "[D]"]
        assert [n.target_source_ids for n in plan.citation_plan] == [["s1"], ["s2"], ["s1"], ["s2"]]
        assert validate_plan(plan, ["s1", "s2"]) == []

    def test_without_sources_is_still_valid(self):
        plan = fallback_plan("intro", "protein folding", 100)
        assert plan.estimated_paragraphs == 2
        assert len(plan.citation_plan) == 3
        assert validate_plan(plan, []) == []

    def test_slot_count_capped_at_alphabet(self):
        plan = fallback_plan("intro", "protein folding", 20_000, ["s1"])
        assert len(plan.citation_plan) == 26


@pytest.mark.parametrize(
    "expected_words,chunks,target",
    [
        (1000, 50, 1000),
        (1000, 80, 1000),
        (1000, 25, 500),
        (1000, 10, 250),
        (200, 0, 200),
        (2000, 0, 500),
    ],
)
def test_scale_target_words(expected_words, chunks, target):
    assert scale_target_words(expected_words, chunks) == target
