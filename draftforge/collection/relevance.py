"""On-topic filtering and full-text URL classification for discovered sources."""

import re
from dataclasses import dataclass

from draftforge.constants import (
    ACCEPT_UNSCORED_SOURCES,
    MIN_KEYWORD_SCORE,
    MIN_KEYWORD_SCORE_PERMISSIVE,
    MIN_SEMANTIC_SCORE,
    MIN_SEMANTIC_SCORE_PERMISSIVE,
    MIN_TERM_LENGTH,
    ON_TOPIC_MIN_MATCH_RATIO,
)
from draftforge.schemas import SourceDocument
from draftforge.utils.text import contains_whole_word, significant_terms

DIRECT_FULLTEXT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\.pdf$",
        r"arxiv\.org/pdf/",
        r"biorxiv\.org/content/.*\.full\.pdf",
        r"medrxiv\.org/content/.*\.full\.pdf",
        r"core\.ac\.uk/download/pdf",
        r"europepmc\.org/.*\.pdf",
        r"ncbi\.nlm\.nih\.gov/pmc/articles/.*/pdf",
    )
]

# Publisher landing pages serve HTML even when the path looks like a PDF link.
LANDING_PAGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"doi\.org/",
        r"dx\.doi\.org/",
        r"link\.springer\.com/",
        r"ieeexplore\.ieee\.org/",
        r"acm\.org/doi/",
        r"onlinelibrary\.wiley\.com/",
        r"sciencedirect\.com/science/article/",
        r"nature\.com/articles/",
        r"tandfonline\.com/",
        r"jstor\.org/",
        r"sage.*\.com/",
    )
]


def is_direct_fulltext_url(url: str | None) -> bool:
    if not url:
        return False
    url = url.strip().split("?", 1)[0].split("#", 1)[0]
    if any(p.search(url) for p in LANDING_PAGE_PATTERNS):
        return False
    return any(p.search(url) for p in DIRECT_FULLTEXT_PATTERNS)


def is_score_acceptable(
    semantic_score: float | None,
    keyword_score: float | None,
    permissive: bool = False,
    accept_unscored: bool = ACCEPT_UNSCORED_SOURCES,
) -> bool:
    if semantic_score is not None:
        floor = MIN_SEMANTIC_SCORE_PERMISSIVE if permissive else MIN_SEMANTIC_SCORE
        return semantic_score >= floor
    if keyword_score is not None:
        floor = MIN_KEYWORD_SCORE_PERMISSIVE if permissive else MIN_KEYWORD_SCORE
        return keyword_score >= floor
    return accept_unscored


@dataclass(frozen=True)
class OnTopicFilter:
    topic: str
    min_match_ratio: float = ON_TOPIC_MIN_MATCH_RATIO
    permissive: bool = False
    accept_unscored: bool = ACCEPT_UNSCORED_SOURCES

    @property
    def terms(self) -> list[str]:
        return significant_terms(self.topic, MIN_TERM_LENGTH)

    def match_ratio(self, source: SourceDocument) -> float:
        terms = self.terms
        if not terms:
            return 1.0
        haystack = f"{source.title} {source.abstract}"
        if self.topic.strip().lower() in haystack.lower():
            return 1.0
        matched = sum(1 for term in terms if contains_whole_word(haystack, term))
        return matched / len(terms)

    def accepts(self, source: SourceDocument) -> bool:
        if self.match_ratio(source) < self.min_match_ratio:
            return False
        return is_score_acceptable(
            source.semantic_score,
            source.keyword_score,
            permissive=self.permissive,
            accept_unscored=self.accept_unscored,
        )
