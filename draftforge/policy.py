from collections.abc import Iterable
from dataclasses import dataclass

from draftforge.constants import (
    DEFAULT_REFLECTION_CYCLES,
    HIGH_STAKES_SECTIONS,
    REFLECTION_LONG_SECTION_WORDS,
    REFLECTION_MIN_WORDS,
    REFLECTION_QUALITY_THRESHOLD,
    REFLECTION_TOKENS_PER_CYCLE,
)
from draftforge.schemas import QualityMetrics


@dataclass(frozen=True)
class ReflectionDecision:
    use: bool
    reason: str
    max_cycles: int = 0


class ReflectionPolicy:
    """Decides whether a drafted section gets critique-and-revise cycles.

    Pure: the decision depends only on the arguments and the policy's own
    immutable settings.
    """

    def __init__(
        self,
        min_words: int = REFLECTION_MIN_WORDS,
        long_section_words: int = REFLECTION_LONG_SECTION_WORDS,
        quality_threshold: int = REFLECTION_QUALITY_THRESHOLD,
        default_cycles: int = DEFAULT_REFLECTION_CYCLES,
        high_stakes_sections: Iterable[str] = HIGH_STAKES_SECTIONS,
    ) -> None:
        self.min_words = min_words
        self.long_section_words = long_section_words
        self.quality_threshold = quality_threshold
        self.default_cycles = default_cycles
        self.high_stakes_sections = frozenset(high_stakes_sections)

    def decide(
        self,
        section_key: str,
        expected_words: int,
        metrics: QualityMetrics | None = None,
    ) -> ReflectionDecision:
        if expected_words < self.min_words:
            return ReflectionDecision(
                False, f"Section too short ({expected_words} words) for reflection"
            )
        if section_key in self.high_stakes_sections:
            return ReflectionDecision(
                True, f"High-stakes section: {section_key}", self.default_cycles + 1
            )
        if metrics is not None and metrics.composite_score < self.quality_threshold:
            return ReflectionDecision(
                True,
                f"Quality below threshold ({metrics.composite_score} < {self.quality_threshold})",
                self.default_cycles,
            )
        if expected_words >= self.long_section_words:
            return ReflectionDecision(
                True, f"Long section ({expected_words} words)", self.default_cycles
            )
        return ReflectionDecision(False, "Quality acceptable, reflection not needed")

    def estimate_savings(
        self,
        sections: Iterable[tuple[str, int]],
        base_tokens: int = REFLECTION_TOKENS_PER_CYCLE,
    ) -> int:
        """Tokens saved by skipped reflection, assuming two cycles per section."""
        skipped = sum(1 for key, words in sections if not self.decide(key, words).use)
        return skipped * base_tokens * 2
