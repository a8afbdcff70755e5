"""Text helpers shared by relevance filtering, metrics and overlap checks."""

import re

STOP_WORDS = frozenset(
    {
        "this", "that", "these", "those", "which", "where", "when", "what", "while",
        "with", "from", "into", "have", "been", "were", "being", "would", "could",
        "should", "their", "there", "other", "about", "more", "most", "also", "such",
        "than", "then", "some", "only", "very", "just", "over", "under", "before",
        "after", "between", "through", "during", "each", "both", "however",
        "therefore", "thus", "hence", "because", "although", "though", "since",
        "until", "within",
    }
)

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9\-]*")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


def significant_terms(text: str, min_length: int = 4) -> list[str]:
    """Lowercase content words of at least `min_length` characters, first occurrence order."""
    seen: dict[str, None] = {}
    for word in _WORD_RE.findall(text.lower()):
        if len(word) >= min_length and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def contains_whole_word(haystack: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", haystack, re.IGNORECASE) is not None


def count_words(text: str) -> int:
    return len(text.split())


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def count_sentences(text: str) -> int:
    return len(split_sentences(text))


def count_paragraphs(text: str) -> int:
    return len([p for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()])


def word_ngrams(text: str, n: int = 4) -> set[tuple[str, ...]]:
    words = _WORD_RE.findall(text.lower())
    return {tuple(words[i : i + n]) for i in range(len(words) - n + 1)}


def ngram_overlap(candidate: str, reference: str, n: int = 4) -> float:
    """Fraction of the candidate's n-grams that also occur in the reference."""
    candidate_grams = word_ngrams(candidate, n)
    if not candidate_grams:
        return 0.0
    return len(candidate_grams & word_ngrams(reference, n)) / len(candidate_grams)
