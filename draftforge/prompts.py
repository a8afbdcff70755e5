from collections.abc import Sequence

from draftforge.schemas import Chunk, Critique, SectionPlan, SectionSpec

WRITER_SYSTEM = """You are an academic writer drafting one section of a long-form document.
Cite sources ONLY with the token [CITE: <source_id>] using ids from the evidence list.
Never write formatted citations such as (Author, Year) or numbered references.
Write in paragraphs separated by blank lines. Do not include the section heading."""

PLANNER_SYSTEM = """You plan one section of an academic document before it is written.
Return outline points, citation needs with placeholder keys [A], [B], [C]..., key arguments,
and an estimated paragraph count. Target only source ids from the evidence list."""

CRITIC_SYSTEM = """You are a strict academic reviewer. Score the section from 0 to 100 and list
concrete issues with severity (low, medium, high) and actionable suggestions."""

REVISER_SYSTEM = """You revise a drafted section according to reviewer feedback.
Keep every [CITE: <source_id>] token that is still supported; do not invent new source ids.
Return only the revised section text."""


def format_evidence(chunks: Sequence[Chunk], max_chars: int = 600) -> str:
    lines = []
    for chunk in chunks:
        text = " ".join(chunk.content.split())[:max_chars]
        lines.append(f"[source_id: {chunk.source_id}] {text}")
    return "\n\n".join(lines)


def planning_messages(
    topic: str, section: SectionSpec, target_words: int, chunks: Sequence[Chunk]
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": PLANNER_SYSTEM},
        {
            "role": "user",
            "content": (
                f"Topic: {topic}\nSection: {section.title} ({section.key})\n"
                f"Target length: {target_words} words\n\nEvidence:\n{format_evidence(chunks)}"
            ),
        },
    ]


def writing_messages(
    topic: str,
    section: SectionSpec,
    target_words: int,
    plan: SectionPlan | None,
    chunks: Sequence[Chunk],
    rolling_summary: str = "",
) -> list[dict[str, str]]:
    parts = [f"Topic: {topic}", f"Section: {section.title}", f"Target length: {target_words} words"]
    if plan is not None:
        outline = "\n".join(f"- {point}" for point in plan.outline)
        needs = "\n".join(
            f"- {need.placeholder} {need.need} -> {', '.join(need.target_source_ids) or 'any'}"
            for need in plan.citation_plan
        )
        arguments = "\n".join(f"- {arg}" for arg in plan.key_arguments)
        parts.append(
            f"Plan ({plan.estimated_paragraphs} paragraphs):\n{outline}\n"
            f"Citation needs:\n{needs}\nKey arguments:\n{arguments}"
        )
    if rolling_summary:
        parts.append(f"Earlier sections (do not repeat them):\n{rolling_summary}")
    parts.append(f"Evidence:\n{format_evidence(chunks)}")
    return [
        {"role": "system", "content": WRITER_SYSTEM},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def critique_messages(topic: str, section: SectionSpec, content: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": CRITIC_SYSTEM},
        {
            "role": "user",
            "content": f"Topic: {topic}\nSection: {section.title}\n\n{content}",
        },
    ]


def revision_messages(
    topic: str, section: SectionSpec, content: str, critique: Critique, chunks: Sequence[Chunk]
) -> list[dict[str, str]]:
    issues = "\n".join(f"- [{i.severity}] {i.description}" for i in critique.issues)
    suggestions = "\n".join(f"- {s}" for s in critique.suggestions)
    return [
        {"role": "system", "content": REVISER_SYSTEM},
        {
            "role": "user",
            "content": (
                f"Topic: {topic}\nSection: {section.title}\nReviewer score: {critique.score:.0f}\n"
                f"Issues:\n{issues or '- none listed'}\nSuggestions:\n{suggestions or '- none'}\n\n"
                f"Evidence:\n{format_evidence(chunks)}\n\nDraft:\n{content}"
            ),
        },
    ]


def overlap_rewrite_messages(
    section: SectionSpec, content: str, earlier: str
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": REVISER_SYSTEM},
        {
            "role": "user",
            "content": (
                f"The section '{section.title}' repeats passages from earlier sections. "
                "Rewrite it so it adds new analysis instead of restating them.\n\n"
                f"Earlier sections:\n{earlier[-4000:]}\n\nSection to rewrite:\n{content}"
            ),
        },
    ]
