import logging
import math
import re
import string
from collections.abc import Sequence
from dataclasses import dataclass, field

from draftforge.constants import (
    EVIDENCE_SATURATION_CHUNKS,
    MIN_EVIDENCE_FACTOR,
    MIN_SCALED_WORDS,
    PLAN_MIN_CITATION_SLOTS,
    PLAN_MIN_KEY_ARGUMENTS,
    PLAN_MIN_OUTLINE_POINTS,
    WORDS_PER_PARAGRAPH,
)
from draftforge.schemas import CitationNeed, SectionPlan

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"^\[[A-Z]\]$")


@dataclass
class PlanningOutcome:
    plan: SectionPlan
    is_valid: bool
    is_fallback: bool = False
    errors: list[str] = field(default_factory=list)


def validate_plan(plan: SectionPlan, available_source_ids: Sequence[str]) -> list[str]:
    """Every reason the plan is unusable; empty when valid."""
    errors: list[str] = []
    if len(plan.outline) < PLAN_MIN_OUTLINE_POINTS:
        errors.append(f"Outline has {len(plan.outline)} points, need {PLAN_MIN_OUTLINE_POINTS}")
    if len(plan.citation_plan) < PLAN_MIN_CITATION_SLOTS:
        errors.append(
            f"Citation plan has {len(plan.citation_plan)} slots, need {PLAN_MIN_CITATION_SLOTS}"
        )
    if len(plan.key_arguments) < PLAN_MIN_KEY_ARGUMENTS:
        errors.append(
            f"Plan has {len(plan.key_arguments)} key arguments, need {PLAN_MIN_KEY_ARGUMENTS}"
        )
    if plan.estimated_paragraphs < 1:
        errors.append("Estimated paragraph count must be positive")

    available = set(available_source_ids)
    seen: set[str] = set()
    for need in plan.citation_plan:
        if not PLACEHOLDER_RE.match(need.placeholder):
            errors.append(f"Invalid placeholder key: {need.placeholder!r}")
        if need.placeholder in seen:
            errors.append(f"Duplicate placeholder: {need.placeholder}")
        seen.add(need.placeholder)
        unknown = [sid for sid in need.target_source_ids if sid not in available]
        if unknown:
            errors.append(f"{need.placeholder} targets unknown sources: {', '.join(unknown)}")
    return errors


def fallback_plan(
    section_key: str,
    topic: str,
    target_words: int,
    source_ids: Sequence[str] = (),
) -> SectionPlan:
    """Mechanical plan used when the model's plan is missing or invalid."""
    paragraphs = max(2, math.ceil(target_words / WORDS_PER_PARAGRAPH))
    slots = min(max(PLAN_MIN_CITATION_SLOTS, paragraphs), len(string.ascii_uppercase))
    ids = list(source_ids)
    citation_plan = [
        CitationNeed(
            placeholder=f"[{string.ascii_uppercase[i]}]",
            need=f"Supporting evidence for point {i + 1} of the {section_key} section",
            target_source_ids=[ids[i % len(ids)]] if ids else [],
        )
        for i in range(slots)
    ]
    return SectionPlan(
        outline=[
            f"Introduction to {topic} in context of {section_key}",
            "Key findings and evidence",
            "Analysis and implications",
            "Summary and connections",
        ],
        citation_plan=citation_plan,
        key_arguments=[
            f"Current evidence on {topic}",
            f"Implications of {topic} for {section_key}",
        ],
        estimated_paragraphs=paragraphs,
    )


def scale_target_words(expected_words: int, chunk_count: int) -> int:
    """Shrink the target when little evidence is available."""
    factor = min(1.0, chunk_count / EVIDENCE_SATURATION_CHUNKS)
    scaled = round(expected_words * max(factor, MIN_EVIDENCE_FACTOR))
    return max(min(expected_words, MIN_SCALED_WORDS), scaled)
