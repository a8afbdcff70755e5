from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

# =============================================================================
# Corpus
# =============================================================================


class SourceDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    authors: list[str] = Field(default_factory=list)
    abstract: str = ""
    year: int | None = None
    url: str | None = None
    pdf_url: str | None = None
    has_full_text: bool = False
    chunk_count: int = Field(default=0, ge=0)
    semantic_score: float | None = None
    keyword_score: float | None = None

    def with_chunk_count(self, chunk_count: int) -> "SourceDocument":
        return self.model_copy(update={"chunk_count": chunk_count})

    @property
    def fulltext_url(self) -> str | None:
        return self.pdf_url or self.url


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source_id: str
    content: str
    score: float = Field(ge=0.0, le=1.0)
    tier: str


class PassageHit(BaseModel):
    source_id: str
    content: str
    score: float


class SearchFilters(BaseModel):
    limit: int = Field(default=90, ge=0)
    exclude_ids: list[str] = Field(default_factory=list)
    from_year: int | None = None


class CollectionConstraints(BaseModel):
    target_total: int = Field(default=90, ge=0)
    discovery_enabled: bool = True
    from_year: int | None = None
    permissive_scoring: bool = False
    accept_unscored: bool | None = None
    allow_bulk_ingest: bool = False
    gate_coverage: bool = True


class Reference(BaseModel):
    """One entry of a source's own reference list."""

    authors: list[str] = Field(default_factory=list)
    year: int | None = None
    title: str = ""


# =============================================================================
# Structure
# =============================================================================


class SectionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    title: str
    expected_words: int = Field(ge=0)
    candidate_source_ids: list[str] = Field(default_factory=list)


class StructuralProfile(BaseModel):
    document_type: str = "literatureReview"
    section_specs: list[SectionSpec] = Field(default_factory=list)
    coverage_floor: int = Field(default=5, ge=0)
    coverage_fraction: float = Field(default=0.5, ge=0.0, le=1.0)
    forbidden_sections: list[str] = Field(default_factory=list)


# =============================================================================
# Planning & Critique (LLM structured outputs)
# =============================================================================


class CitationNeed(BaseModel):
    placeholder: str = Field(description="Placeholder key such as [A]")
    need: str = Field(description="The claim that needs support")
    target_source_ids: list[str] = Field(default_factory=list)


class SectionPlan(BaseModel):
    outline: list[str]
    citation_plan: list[CitationNeed]
    key_arguments: list[str]
    estimated_paragraphs: int


class IssueSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CritiqueIssue(BaseModel):
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM


class Critique(BaseModel):
    score: float = Field(description="Overall quality 0-100")
    issues: list[CritiqueIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class RevisionPriority(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Drafts & Metrics
# =============================================================================


class QualityMetrics(BaseModel):
    citation_coverage: float = 0.0
    relevance_score: float = 0.0
    verbosity_ratio: float = 0.0
    fact_density: float = 0.0
    paragraph_count: int = 0
    average_paragraph_length: float = 0.0
    transition_word_density: float = 0.0
    citation_density: float = 0.0
    citation_diversity: float = 0.0
    citation_distribution: float = 0.0
    depth_cue_coverage: float = 1.0
    argument_complexity: float = 0.0
    evidence_integration: float = 0.0
    overall_quality: float = 0.0
    composite_score: int = 0


class CitationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    source_id: str
    section_key: str
    context: str = ""


class DraftFrozenError(TypeError):
    pass


class SectionDraft(BaseModel):
    section_key: str
    title: str
    content: str
    citations: list[CitationRecord] = Field(default_factory=list)
    metrics: QualityMetrics | None = None
    revision_count: int = 0

    _frozen: bool = PrivateAttr(default=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and self._frozen:
            raise DraftFrozenError(f"Draft for section '{self.section_key}' is frozen")
        super().__setattr__(name, value)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    @property
    def cited_source_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for record in self.citations:
            seen.setdefault(record.source_id, None)
        return list(seen)


class QualityBreakdown(BaseModel):
    planning_quality: int
    writing_quality: int
    reflection_quality: int
    metrics_score: int

    @property
    def overall(self) -> int:
        total = (
            self.planning_quality
            + self.writing_quality
            + self.reflection_quality
            + self.metrics_score
        )
        return round(total / 4)


# =============================================================================
# Job Output
# =============================================================================


class ProgressStage(StrEnum):
    SEARCHING = "searching"
    ANALYZING = "analyzing"
    WRITING = "writing"
    CITATIONS = "citations"
    COMPLETE = "complete"
    FAILED = "failed"


class ProgressUpdate(BaseModel):
    stage: ProgressStage
    percent: int = Field(ge=0, le=100)
    message: str = ""


class CitationMapEntry(BaseModel):
    source_id: str
    title: str
    authors: list[str] = Field(default_factory=list)
    year: int | None = None
    sections: list[str] = Field(default_factory=list)
    occurrences: int = 0


class SectionSummary(BaseModel):
    key: str
    title: str
    word_count: int
    citation_count: int
    revision_count: int
    reflection_used: bool
    quality: QualityBreakdown
    overall_score: int


class TaskUsage(BaseModel):
    task_type: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    cost_usd: float = 0.0


class UsageSummary(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_llm_calls: int = 0
    total_index_queries: int = 0
    total_cost_usd: float = 0.0
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)
    task_breakdown: list[TaskUsage] = Field(default_factory=list)


class JobQualityReport(BaseModel):
    overall_score: int
    section_scores: dict[str, int] = Field(default_factory=dict)
    cited_sources: int = 0
    coverage_target: int = 0
    coverage_met: bool = False
    corpus_coverage_ratio: float = 1.0
    warnings: list[str] = Field(default_factory=list)


class GenerationRequest(BaseModel):
    topic: str
    pinned_ids: list[str] = Field(default_factory=list)
    document_type: str = "literatureReview"
    constraints: CollectionConstraints = Field(default_factory=CollectionConstraints)
    job_id: str | None = None


class GenerationResult(BaseModel):
    job_id: str
    content: str
    citation_map: dict[str, CitationMapEntry]
    word_count: int
    section_structure: list[SectionSummary]
    quality_metrics: JobQualityReport
    tool_call_analytics: UsageSummary


# =============================================================================
# Model Registry
# =============================================================================


class ModelProvider(StrEnum):
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    OLLAMA = "ollama"
    CUSTOM = "custom"


class CostTier(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class ModelConfig(BaseModel):
    id: str
    provider: ModelProvider
    model_name: str
    display_name: str = ""
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "LLM_API_KEY"
    supports_json_mode: bool = True
    supports_structured_output: bool = True
    max_output_tokens: int = 8192
    max_context_tokens: int = 128_000
    supports_long_context: bool = True
    cost_tier: CostTier = CostTier.MEDIUM
    reasoning_score: int = Field(default=5, ge=1, le=10)
    creativity_score: int = Field(default=5, ge=1, le=10)
    latency_score: int = Field(default=5, ge=1, le=10)
    is_local: bool = False
    enabled: bool = True
