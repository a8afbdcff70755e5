"""Configuration constants with trade-off documentation.

Each constant has a rationale explaining why this specific value was chosen.
Operationally tunable values are read from the environment and clamped.
"""

import os

# =============================================================================
# Environment Variable Helpers
# =============================================================================


def _parse_int_env(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds clamping.

    Returns default if env var is unset or unparseable. Clamps to [min_val, max_val].
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


def _parse_float_env(name: str, default: float, min_val: float, max_val: float) -> float:
    """Float counterpart of _parse_int_env."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


# =============================================================================
# Source Collection
# =============================================================================

DEFAULT_TARGET_SOURCES = _parse_int_env(
    "DEFAULT_TARGET_SOURCES", default=90, min_val=1, max_val=500
)
# Why 90: Matches the discovery search limit. A long-form review rarely cites
# more than ~60 sources, the surplus absorbs on-topic filtering and ingest losses.

MIN_TOPIC_LENGTH = 10
# Why 10: Shorter topics ("AI", "cancer") produce unusable retrieval queries.

MIN_TERM_LENGTH = 4
# Why 4: Words of 3 characters or fewer are mostly function words or
# ambiguous acronyms and inflate false-positive matches.

ON_TOPIC_MIN_MATCH_RATIO = 0.5
# Why 0.5: Half of the significant topic terms must appear as whole words in
# title+abstract. Lower admitted tangential papers in testing.

MIN_SEMANTIC_SCORE = 0.25
MIN_SEMANTIC_SCORE_PERMISSIVE = 0.15
MIN_KEYWORD_SCORE = 0.1
MIN_KEYWORD_SCORE_PERMISSIVE = 0.05
# Why these: Semantic similarity is consulted first because it is the
# stronger signal. Permissive mode halves the bar for sparse literatures.

ACCEPT_UNSCORED_SOURCES = os.getenv("ACCEPT_UNSCORED_SOURCES", "true").lower() == "true"
# Sources with neither a semantic nor a keyword score. Default keeps them,
# the term-overlap check still applies. Set to "false" for strict corpora.

INGEST_CONCURRENCY = _parse_int_env("INGEST_CONCURRENCY", default=5, min_val=1, max_val=20)
# Why 5: Ingest and chunk-count lookups hit the same store. 5 in flight keeps
# a 90-source batch under ~20s without tripping connection pool limits.

INGEST_AUTO_THRESHOLD = 20
# Why 20: Below 20 discovered sources ingestion is cheap enough to run
# without confirmation. Above it, discovery is capped unless bulk is allowed.

INGEST_COST_PER_SOURCE_USD = 0.00002
INGEST_MAX_COST_USD = 5.0
# Why: Embedding cost of an average abstract plus metadata. $5 ceiling flags
# runaway bulk imports.

# =============================================================================
# Coverage Gating
# =============================================================================

MIN_FULLTEXT_CHUNKS = 10
# Why 10: A source with fewer than 10 indexed chunks is effectively
# abstract-only for retrieval purposes.

FULLTEXT_CHUNK_MIN_CHARS = 500
# Why 500: Shorter indexed chunks are headers, captions or reference entries.

COVERAGE_GATE_RATIO = 0.7
# Why 0.7: Above 70% coverage the remaining sources add little evidence and
# waiting is not worth the latency.

COVERAGE_TARGET_RATIO = 0.9
# Why 0.9: Some PDFs never extract (scanned, paywalled redirects). Waiting
# for 100% would always hit the timeout.

COVERAGE_POLL_INTERVAL_SECONDS = 3.0
COVERAGE_WAIT_PER_SOURCE_SECONDS = 90
COVERAGE_MIN_WAIT_SECONDS = 120
COVERAGE_MAX_WAIT_SECONDS = _parse_int_env(
    "COVERAGE_MAX_WAIT_SECONDS", default=600, min_val=120, max_val=3600
)
# Why 90s/source clamped to [120, 600]: Measured median extraction is ~60s per
# PDF with parallel workers. 10 minutes is the longest a user waits in practice.

ENQUEUE_PRIORITY = "high"

# =============================================================================
# Passage Retrieval
# =============================================================================

RETRIEVAL_TIERS: tuple[tuple[float, str], ...] = (
    (0.5, "high-precision"),
    (0.3, "balanced"),
    (0.2, "high-recall"),
    (0.15, "ultra-recall"),
)
# Why descending: The first tier with any hit wins. Relaxing only when
# nothing is found keeps precision for well-indexed corpora.

TIER_CANDIDATE_MULTIPLIER = 2
# Why 2: Balancing and the quality filter discard candidates, over-fetch 2x.

CHUNK_MIN_CHARS = 30
CHUNK_MIN_WORDS = 5
RAW_FALLBACK_LIMIT = 10
# Why 10: When every candidate fails the quality filter, the top 10 raw
# candidates still beat an empty evidence set.

ABSTRACT_MIN_CHARS = 100
ABSTRACT_SPLIT_THRESHOLD = 800
ABSTRACT_SENTENCE_MIN_CHARS = 50
ABSTRACT_FALLBACK_MAX_SOURCES = 10
ABSTRACT_FALLBACK_SCORE = 0.5
ABSTRACT_TOP_UP_SCORE = 0.4
# Why 0.5 / 0.4: Abstract pseudo-chunks rank with mid-tier passages but never
# above a strong full-text match.

MIN_AVERAGE_CHUNK_SCORE = 0.08
TOP_UP_MIN_CHUNKS = 30

PER_SOURCE_CAP_FLOOR = 10
# Why 10: With few candidate sources the cap must not starve the limit.

MIN_BALANCED_CHUNKS = 3

CHUNK_LIMIT_FLOOR = 20
WORDS_PER_CHUNK = 225
# Why 225: One retrieved passage supports roughly one paragraph of output.


def chunk_limit_for(expected_words: int) -> int:
    return max(CHUNK_LIMIT_FLOOR, -(-expected_words // WORDS_PER_CHUNK))


RETRIEVAL_CACHE_TTL_SECONDS = _parse_int_env(
    "RETRIEVAL_CACHE_TTL_SECONDS", default=300, min_val=10, max_val=3600
)
# Why 300: Retrieval for a job finishes in a few minutes. Longer TTLs serve
# stale results after background extraction adds chunks.

RETRIEVAL_CACHE_MAX_ENTRIES = 512

# =============================================================================
# Section Pipeline
# =============================================================================

PLANNING_MIN_WORDS = 400
REFLECTION_MIN_WORDS = 400
# Why 400: Planning and critique calls cost about as much as drafting a
# 400-word section. Below that the overhead is not justified.

REFLECTION_LONG_SECTION_WORDS = 800
REFLECTION_QUALITY_THRESHOLD = 75
DEFAULT_REFLECTION_CYCLES = 2
HIGH_STAKES_SECTIONS = frozenset({"results", "discussion", "methodology", "literatureReview"})

REFLECTION_STOP_SCORE = 90
REFLECTION_PLATEAU_DELTA = 1.0
CRITIQUE_FALLBACK_SCORE = 70
REFLECTION_TOKENS_PER_CYCLE = 4000
# Why 4000: Average critique + revision prompt/response size per cycle.

PLAN_MIN_OUTLINE_POINTS = 2
PLAN_MIN_CITATION_SLOTS = 3
PLAN_MIN_KEY_ARGUMENTS = 2
WORDS_PER_PARAGRAPH = 200
EVIDENCE_SATURATION_CHUNKS = 50
MIN_EVIDENCE_FACTOR = 0.25
MIN_SCALED_WORDS = 250

PLANNING_QUALITY_VALID = 85
PLANNING_QUALITY_FALLBACK = 60
PLANNING_QUALITY_SKIPPED = 70
REFLECTION_QUALITY_SKIPPED = 75

SECTION_OVERLAP_THRESHOLD = 0.22
# Why 0.22: Above ~1 in 5 shared 4-grams, readers notice repeated passages.

ROLLING_SUMMARY_MAX_CHARS = 1500
SECTION_MAX_TOKENS = _parse_int_env("SECTION_MAX_TOKENS", default=4000, min_val=512, max_val=16000)

# =============================================================================
# Citations
# =============================================================================

DEFAULT_COVERAGE_FLOOR = 5
DEFAULT_COVERAGE_FRACTION = 0.5
BACKFILL_PER_SOURCE_CAP = 3
EVIDENCE_SNIPPET_MAX_CHARS = 280
SNIPPET_BOUNDARY_MIN_FRACTION = 0.6
CITATION_CONTEXT_MAX_CHARS = 160
SYNTHESIS_HEADING_KEYWORDS = ("discussion", "synthesis", "literature review", "conclusion")
SYNTHESIS_SECTION_TITLE = "Evidence Synthesis"

# =============================================================================
# Job Driver
# =============================================================================

LLM_DEFAULT_MAX_TOKENS = 8192
# Why 8192: Some providers default to 4096 when max_tokens is unset, which
# truncates long sections.

TRANSIENT_MAX_RETRIES = 3
TRANSIENT_BACKOFF_SECONDS = 1.0
TIMEOUT_MAX_RETRIES = 2
TIMEOUT_BACKOFF_SECONDS = 2.0
QUALITY_MAX_RETRIES = 2
QUALITY_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 30.0

# =============================================================================
# Embedding & Vector Index
# =============================================================================

TIKTOKEN_MODEL = "cl100k_base"

EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = 1536
EMBEDDING_BATCH_SIZE = 100
EMBEDDING_CACHE_TTL = 2592000  # 30 days in seconds
# Why 30 days: Embeddings are deterministic for same text+model.
EMBEDDING_MAX_RETRIES = 3

QDRANT_HOST = os.getenv("QDRANT_HOST", "localhost")
QDRANT_PORT = _parse_int_env("QDRANT_PORT", default=6333, min_val=1, max_val=65535)
QDRANT_COLLECTION_NAME = os.getenv("QDRANT_COLLECTION_NAME", "source_chunks")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = _parse_int_env("REDIS_PORT", default=6379, min_val=1, max_val=65535)

# =============================================================================
# Model & Profile Configuration
# =============================================================================

MODEL_CONFIG_PATH = os.getenv("MODEL_CONFIG_PATH", "")
# Path to YAML model registry. Takes priority over LLM_* env vars.

STRUCTURAL_PROFILES_PATH = os.getenv("STRUCTURAL_PROFILES_PATH", "")
