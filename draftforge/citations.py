"""Neutral citation tokens and per-job citation bookkeeping.

Drafts cite sources with `[CITE: <source_id>]`. Styling into (Author, Year)
or numbered references happens once, after assembly, outside this package.
"""

import logging
import math
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from draftforge.constants import (
    BACKFILL_PER_SOURCE_CAP,
    CITATION_CONTEXT_MAX_CHARS,
    DEFAULT_COVERAGE_FLOOR,
    DEFAULT_COVERAGE_FRACTION,
    EVIDENCE_SNIPPET_MAX_CHARS,
    SNIPPET_BOUNDARY_MIN_FRACTION,
    SYNTHESIS_HEADING_KEYWORDS,
    SYNTHESIS_SECTION_TITLE,
)
from draftforge.schemas import (
    CitationMapEntry,
    CitationRecord,
    Reference,
    SectionDraft,
    SourceDocument,
)

logger = logging.getLogger(__name__)

CITATION_TOKEN_RE = re.compile(r"\[CITE:\s*([^\]\s]+)\s*\]")

_ARTIFACT_PATTERNS = [
    re.compile(r"\[CONTEXT FROM:[^\]]*\]"),
    re.compile(r"addCitation\([^)]*\)"),
    re.compile(r"\bCITATION_\d+\b"),
    re.compile(r"\[(?:citation needed|cite|citation|ref|source needed)\]", re.IGNORECASE),
]
_MARKUP_RE = re.compile(r"[#*_`>]+")
_ABSTRACT_PREFIX_RE = re.compile(r"^Title:.*?\n\s*\nAbstract:\s*", re.DOTALL)
_CONTEXT_BOUNDARY_RE = re.compile(r"[.!?\n]")


def citation_token(source_id: str) -> str:
    return f"[CITE: {source_id}]"


def extract_citation_ids(text: str) -> list[str]:
    """Bound source ids of every token, in order, duplicates kept."""
    return CITATION_TOKEN_RE.findall(text)


def extract_citation_records(text: str, section_key: str) -> list[CitationRecord]:
    records = []
    for match in CITATION_TOKEN_RE.finditer(text):
        records.append(
            CitationRecord(
                token=match.group(0),
                source_id=match.group(1),
                section_key=section_key,
                context=_insertion_context(text, match.start(), match.end()),
            )
        )
    return records


def _insertion_context(text: str, start: int, end: int) -> str:
    boundary = 0
    for m in _CONTEXT_BOUNDARY_RE.finditer(text, 0, start):
        boundary = m.end()
    return text[boundary:end].strip()[-CITATION_CONTEXT_MAX_CHARS:]


def strip_unknown_citations(text: str, valid_ids: Iterable[str]) -> tuple[str, list[str]]:
    """Remove tokens bound to ids outside `valid_ids`; never renumber."""
    valid = set(valid_ids)
    removed: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        if match.group(1) in valid:
            return match.group(0)
        removed.append(match.group(1))
        return ""

    cleaned = CITATION_TOKEN_RE.sub(_replace, text)
    if removed:
        logger.warning("citations: stripped %d unknown token(s): %s", len(removed), removed)
    return cleaned, removed


def clean_generation_artifacts(text: str) -> str:
    for pattern in _ARTIFACT_PATTERNS:
        text = pattern.sub("", text)
    return text


def normalize_whitespace(text: str) -> str:
    text = re.sub(r"[ \t]+([.,;:])", r"\1", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def cleanup_content(text: str, valid_ids: Iterable[str]) -> tuple[str, list[str]]:
    text, removed = strip_unknown_citations(text, valid_ids)
    return normalize_whitespace(clean_generation_artifacts(text)), removed


# =============================================================================
# Evidence sentences
# =============================================================================


def author_last_name(author: str) -> str:
    author = author.strip()
    if "," in author:
        return author.split(",", 1)[0].strip()
    parts = author.split()
    return parts[-1] if parts else author


def author_year(source: SourceDocument) -> str:
    last = author_last_name(source.authors[0]) if source.authors else "Anonymous"
    year = str(source.year) if source.year else "n.d."
    return f"({last}, {year})"


def reference_author_year(reference: Reference) -> str | None:
    if not reference.authors:
        return None
    year = str(reference.year) if reference.year else "n.d."
    return f"({author_last_name(reference.authors[0])}, {year})"


def truncate_at_word_boundary(
    text: str,
    max_chars: int = EVIDENCE_SNIPPET_MAX_CHARS,
    min_fraction: float = SNIPPET_BOUNDARY_MIN_FRACTION,
) -> str:
    if len(text) <= max_chars:
        return text
    cut = text.rfind(" ", 0, max_chars + 1)
    if cut >= max_chars * min_fraction:
        return text[:cut].rstrip() + "..."
    return text[:max_chars].rstrip() + "..."


def clean_snippet(content: str) -> str:
    content = _ABSTRACT_PREFIX_RE.sub("", content)
    content = CITATION_TOKEN_RE.sub("", content)
    content = _MARKUP_RE.sub("", clean_generation_artifacts(content))
    return " ".join(content.split())


def evidence_sentence(content: str, source: SourceDocument) -> str:
    snippet = truncate_at_word_boundary(clean_snippet(content)).rstrip(" .,;:")
    return f"{snippet} {author_year(source)} {citation_token(source.id)}."


def find_synthesis_section(drafts: Sequence[SectionDraft]) -> int | None:
    for keyword in SYNTHESIS_HEADING_KEYWORDS:
        compact = keyword.replace(" ", "")
        for i, draft in enumerate(drafts):
            if keyword in draft.title.lower() or compact in draft.section_key.lower():
                return i
    return None


# =============================================================================
# Coordinator
# =============================================================================


@dataclass
class BackfillReport:
    target: int
    cited_before: int
    cited_after: int
    evidence_added: list[str] = field(default_factory=list)
    references_added: list[str] = field(default_factory=list)
    inserted_into: str | None = None

    @property
    def target_met(self) -> bool:
        return self.cited_after >= self.target


class CitationCoordinator:
    """Owns the cited-source set of one job. Single writer: the job driver."""

    def __init__(
        self,
        corpus: Sequence[SourceDocument],
        coverage_floor: int = DEFAULT_COVERAGE_FLOOR,
        coverage_fraction: float = DEFAULT_COVERAGE_FRACTION,
    ) -> None:
        self.sources: dict[str, SourceDocument] = {s.id: s for s in corpus}
        self.coverage_floor = coverage_floor
        self.coverage_fraction = coverage_fraction
        self._cited: dict[str, None] = {}
        self._records: list[CitationRecord] = []
        self._backfill_counts: Counter[str] = Counter()

    @property
    def cited_source_ids(self) -> frozenset[str]:
        return frozenset(self._cited)

    @property
    def records(self) -> tuple[CitationRecord, ...]:
        return tuple(self._records)

    @property
    def coverage_target(self) -> int:
        return coverage_target(len(self.sources), self.coverage_floor, self.coverage_fraction)

    def register(self, draft: SectionDraft) -> int:
        """Record a draft's citations; returns how many sources were newly cited."""
        before = len(self._cited)
        for record in draft.citations:
            if record.source_id not in self.sources:
                logger.warning(
                    "citations: section %s cites unknown source %s, not recorded",
                    draft.section_key,
                    record.source_id,
                )
                continue
            self._records.append(record)
            self._cited.setdefault(record.source_id, None)
        return len(self._cited) - before

    def cleanup(self, draft: SectionDraft) -> SectionDraft:
        content, removed = cleanup_content(draft.content, self.sources)
        if content == draft.content:
            return draft
        citations = [r for r in draft.citations if r.source_id in self.sources]
        if removed:
            logger.info(
                "citations: cleanup removed %d token(s) from %s", len(removed), draft.section_key
            )
        return draft.model_copy(update={"content": content, "citations": citations})

    async def backfill(
        self,
        drafts: list[SectionDraft],
        retriever,
        topic: str,
        reference_lookup=None,
    ) -> tuple[list[SectionDraft], BackfillReport]:
        """Add evidence-based citations until the coverage target is met.

        Returns the (possibly extended) draft list; the cited-source set
        never shrinks.
        """
        report = BackfillReport(
            target=self.coverage_target,
            cited_before=len(self._cited),
            cited_after=len(self._cited),
        )
        if report.target_met:
            logger.info(
                "citations: coverage met (%d/%d), no backfill", report.cited_before, report.target
            )
            return drafts, report

        needed = report.target - report.cited_before
        uncited = [sid for sid in self.sources if sid not in self._cited]
        best = await retriever.best_chunk_per_source(topic, uncited)
        ranked = sorted(best.values(), key=lambda c: c.score, reverse=True)

        sentences: list[str] = []
        for chunk in ranked:
            if len(report.evidence_added) >= needed:
                break
            if self._backfill_counts[chunk.source_id] >= BACKFILL_PER_SOURCE_CAP:
                continue
            sentences.append(evidence_sentence(chunk.content, self.sources[chunk.source_id]))
            self._backfill_counts[chunk.source_id] += 1
            report.evidence_added.append(chunk.source_id)

        still_needed = needed - len(report.evidence_added)
        if still_needed > 0 and reference_lookup is not None:
            existing_text = "\n".join(d.content for d in drafts) + "\n" + " ".join(sentences)
            evidenced = set(report.evidence_added)
            for source_id in (sid for sid in uncited if sid not in evidenced):
                if len(report.references_added) >= still_needed:
                    break
                sentence = await self._reference_sentence(
                    source_id, reference_lookup, existing_text
                )
                if sentence is None:
                    continue
                sentences.append(sentence)
                existing_text += " " + sentence
                report.references_added.append(source_id)

        if sentences:
            drafts, report.inserted_into = self._insert(drafts, " ".join(sentences))

        report.cited_after = len(self._cited)
        logger.info(
            "citations: backfill %d -> %d cited (target %d, evidence=%d, references=%d)",
            report.cited_before,
            report.cited_after,
            report.target,
            len(report.evidence_added),
            len(report.references_added),
        )
        return drafts, report

    async def _reference_sentence(
        self, source_id: str, reference_lookup, existing_text: str
    ) -> str | None:
        try:
            references = await reference_lookup.references(source_id)
        except Exception as e:
            logger.warning("citations: reference lookup failed for %s: %s", source_id, e)
            return None

        fresh: list[str] = []
        for reference in references:
            formatted = reference_author_year(reference)
            if formatted and formatted not in existing_text and formatted not in fresh:
                fresh.append(formatted)
        if not fresh:
            return None

        source = self.sources[source_id]
        inline = "; ".join(f.strip("()") for f in fresh[:3])
        return (
            f"{source.title} {author_year(source)} {citation_token(source_id)} "
            f"builds on earlier work ({inline})."
        )

    def _insert(
        self, drafts: list[SectionDraft], paragraph: str
    ) -> tuple[list[SectionDraft], str]:
        index = find_synthesis_section(drafts)
        if index is None:
            draft = SectionDraft(
                section_key="evidenceSynthesis",
                title=SYNTHESIS_SECTION_TITLE,
                content=paragraph,
                citations=extract_citation_records(paragraph, "evidenceSynthesis"),
            )
            draft.freeze()
            self.register(draft)
            return [*drafts, draft], draft.section_key

        target = drafts[index]
        new_records = extract_citation_records(paragraph, target.section_key)
        updated = target.model_copy(
            update={
                "content": f"{target.content.rstrip()}\n\n{paragraph}",
                "citations": [*target.citations, *new_records],
            }
        )
        self.register(updated.model_copy(update={"citations": new_records}))
        return [*drafts[:index], updated, *drafts[index + 1 :]], target.section_key

    def citation_map(self) -> dict[str, CitationMapEntry]:
        entries: dict[str, CitationMapEntry] = {}
        for record in self._records:
            source = self.sources[record.source_id]
            entry = entries.get(source.id)
            if entry is None:
                entry = CitationMapEntry(
                    source_id=source.id,
                    title=source.title,
                    authors=list(source.authors),
                    year=source.year,
                )
                entries[source.id] = entry
            if record.section_key not in entry.sections:
                entry.sections.append(record.section_key)
            entry.occurrences += 1
        return entries


def coverage_target(source_count: int, floor: int, fraction: float) -> int:
    return max(floor, math.ceil(source_count * fraction))
