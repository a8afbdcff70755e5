"""Heuristic quality metrics for drafted sections.

All metrics are computed from the text alone (plus the evidence it was
written from), so scoring a draft never needs a model call.
"""

import logging
import math
import re
from collections import Counter
from collections.abc import Sequence
from typing import Any

import tiktoken

from draftforge.citations import extract_citation_ids
from draftforge.constants import TIKTOKEN_MODEL
from draftforge.schemas import QualityMetrics
from draftforge.utils.text import (
    count_paragraphs,
    count_sentences,
    count_words,
    significant_terms,
)

logger = logging.getLogger(__name__)

FACT_PATTERNS = [
    re.compile(r"\d{4}"),
    re.compile(r"\d+%"),
    re.compile(r"\d+\.\d+"),
    re.compile(r"\b(found|showed|demonstrated|revealed|indicated)\b", re.IGNORECASE),
    re.compile(r"\b(compared to|versus|higher than|lower than)\b", re.IGNORECASE),
]

TRANSITION_WORDS = [
    "however",
    "furthermore",
    "additionally",
    "moreover",
    "consequently",
    "therefore",
    "nevertheless",
    "meanwhile",
    "subsequently",
    "alternatively",
]
_TRANSITION_RE = re.compile(r"\b(" + "|".join(TRANSITION_WORDS) + r")\b", re.IGNORECASE)

COMPLEXITY_INDICATORS = [
    re.compile(r"\b(therefore|consequently|thus|hence)\b", re.IGNORECASE),
    re.compile(r"\b(although|despite|however|nevertheless)\b", re.IGNORECASE),
    re.compile(r"\b(furthermore|moreover|additionally)\b", re.IGNORECASE),
    re.compile(r"\b(alternatively|conversely|on the other hand)\b", re.IGNORECASE),
]

INTEGRATION_PATTERNS = [
    re.compile(
        r"\[CITE:[^\]]+\][^.]*\b(shows?|demonstrates?|indicates?|suggests?|reveals?)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(according to|as noted by|research shows)\b[^.]*\[CITE:[^\]]+\]",
        re.IGNORECASE,
    ),
]

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


class MetricsEngine:
    def __init__(self, encoding: Any | None = None) -> None:
        self._encoding = encoding

    @property
    def encoding(self) -> Any:
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(TIKTOKEN_MODEL)
        return self._encoding

    def compute(
        self,
        content: str,
        topic: str,
        available_source_ids: Sequence[str],
        evidence: Sequence[str] = (),
        depth_cues: Sequence[str] = (),
    ) -> QualityMetrics:
        words = count_words(content)
        sentences = count_sentences(content)
        paragraphs = count_paragraphs(content)
        citations = extract_citation_ids(content)
        coverage = citation_coverage(citations, available_source_ids)

        metrics = QualityMetrics(
            citation_coverage=coverage,
            relevance_score=lexical_relevance(content, topic, evidence),
            verbosity_ratio=self.verbosity_ratio(content, words),
            fact_density=fact_density(content, sentences),
            paragraph_count=paragraphs,
            average_paragraph_length=words / max(1, paragraphs),
            transition_word_density=transition_word_density(content, words),
            citation_density=len(citations) / max(1, words) * 100,
            citation_diversity=coverage,
            citation_distribution=citation_distribution(citations),
            depth_cue_coverage=depth_cue_coverage(content, depth_cues),
            argument_complexity=argument_complexity(content, words),
            evidence_integration=evidence_integration(content, citations),
        )
        return with_scores(metrics)

    def verbosity_ratio(self, content: str, words: int | None = None) -> float:
        words = count_words(content) if words is None else words
        if words == 0:
            return 0.0
        return len(self.encoding.encode(content)) / words


def with_scores(metrics: QualityMetrics) -> QualityMetrics:
    return metrics.model_copy(
        update={
            "overall_quality": overall_quality(metrics),
            "composite_score": composite_score(metrics),
        }
    )


def overall_quality(metrics: QualityMetrics) -> float:
    return (
        metrics.citation_coverage * 0.25
        + metrics.relevance_score * 0.25
        + metrics.fact_density * 0.20
        + metrics.depth_cue_coverage * 0.15
        + metrics.evidence_integration * 0.15
    )


def composite_score(metrics: QualityMetrics) -> int:
    """0-100 score used by the reflection policy and section scoring."""
    coherence = min(1.0, metrics.transition_word_density / 2)
    score = (
        min(1.0, metrics.citation_coverage) * 20
        + metrics.relevance_score * 20
        + metrics.fact_density * 15
        + metrics.depth_cue_coverage * 15
        + coherence * 10
        + metrics.argument_complexity * 10
        + min(1.0, metrics.evidence_integration) * 10
    )
    return round(score)


def citation_coverage(citations: Sequence[str], available_source_ids: Sequence[str]) -> float:
    if not available_source_ids:
        return 0.0
    return len(set(citations)) / len(available_source_ids)


def fact_density(content: str, sentence_count: int) -> float:
    factual = sum(
        1
        for sentence in _SENTENCE_SPLIT_RE.split(content)
        if any(pattern.search(sentence) for pattern in FACT_PATTERNS)
    )
    return min(1.0, factual / max(1, sentence_count))


def transition_word_density(content: str, word_count: int) -> float:
    if word_count == 0:
        return 0.0
    return len(_TRANSITION_RE.findall(content)) / word_count * 100


def citation_distribution(citations: Sequence[str]) -> float:
    """Evenness of per-source citation counts; needs 3+ distinct sources."""
    counts = Counter(citations)
    if len(counts) < 3:
        return 0.0
    return min(counts.values()) / max(counts.values())


def depth_cue_coverage(content: str, depth_cues: Sequence[str]) -> float:
    if not depth_cues:
        return 1.0
    lowered = content.lower()
    covered = sum(1 for cue in depth_cues if cue.lower() in lowered)
    return covered / len(depth_cues)


def argument_complexity(content: str, word_count: int) -> float:
    if word_count == 0:
        return 0.0
    indicators = sum(len(pattern.findall(content)) for pattern in COMPLEXITY_INDICATORS)
    return min(indicators / word_count * 100, 1.0)


def evidence_integration(content: str, citations: Sequence[str]) -> float:
    if not citations:
        return 0.0
    integrated = sum(len(pattern.findall(content)) for pattern in INTEGRATION_PATTERNS)
    return min(1.0, integrated / len(citations))


def lexical_relevance(content: str, topic: str, evidence: Sequence[str] = ()) -> float:
    """Topic-term coverage blended with vocabulary shared with the evidence."""
    content_terms = set(significant_terms(content))
    if not content_terms:
        return 0.0

    topic_terms = set(significant_terms(topic))
    topic_coverage = len(topic_terms & content_terms) / len(topic_terms) if topic_terms else 1.0
    if not evidence:
        return topic_coverage

    evidence_terms: set[str] = set()
    for passage in evidence:
        evidence_terms.update(significant_terms(passage))
    evidence_overlap = len(evidence_terms & content_terms) / len(content_terms)
    return 0.6 * topic_coverage + 0.4 * evidence_overlap


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


async def embedding_relevance(embedder: Any, topic: str, content: str) -> float:
    """Cosine similarity between topic and content embeddings (Embedder-compatible)."""
    topic_vec, content_vec = await embedder.embed_batch([topic, content[:4000]])
    return max(0.0, cosine_similarity(topic_vec, content_vec))
