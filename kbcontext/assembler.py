from __future__ import annotations

"""
Citation assembly.

Assigns ordinals with one running counter across knowledge bases in
priority order and renders the context block handed to answer generation:
header, one line per citation, and a trailing index back to raw ids.
"""

from typing import Dict, List

from kbcontext.classifier import classify, tag_catalogue
from kbcontext.models import AssembledContext, Candidate, Citation, KnowledgeBase

CITATION_INSTRUCTIONS = (
    "IMPORTANT: Cite the context passages you rely on using [CITn], where n is the passage number. "
    "When several passages support one statement, list every marker separated by commas. "
    "Use ONLY the provided context to answer the question."
)


def citation_marker(ordinal: int) -> str:
    return f"[CIT{ordinal}]"


def assign_citations(
    cleaned: Dict[str, List[Candidate]],
    bases: List[KnowledgeBase],
) -> List[Citation]:
    """Number every surviving candidate, bases in priority order, 1..n with no gaps."""
    citations: List[Citation] = []
    ordinal = 0
    for kb in sorted(bases, key=lambda b: b.priority_rank):
        for candidate in cleaned.get(kb.id, []):
            ordinal += 1
            citations.append(Citation(ordinal=ordinal, tag=classify(candidate, kb), candidate=candidate))
    return citations


def render_header(bases: List[KnowledgeBase]) -> str:
    ordered = sorted(bases, key=lambda b: b.priority_rank)
    lines = [CITATION_INSTRUCTIONS, "", "CONTEXT TYPES:"]
    for tag, display_name in tag_catalogue(ordered).items():
        lines.append(f"- [{tag}]: {display_name}")
    if ordered:
        hierarchy = ", then ".join(f"[{kb.tag}]" for kb in ordered)
        lines.extend(["", f"HIERARCHY: Always prioritize {hierarchy}."])
    lines.append("")
    return "\n".join(lines)


def render_index_line(citation: Citation, kb: KnowledgeBase) -> str:
    c = citation.candidate
    # Bare ordinal so the only [CITn] marker in the block is the passage line
    line = f"CIT{citation.ordinal} [{citation.tag}] ID: {c.raw_id}"
    for field_name in kb.index_fields:
        value = c.metadata.get(field_name)
        if value not in (None, ""):
            line += f", {field_name}: {value}"
    if kb.namespaces and c.namespace:
        line += f", channel: {c.namespace}"
    return line


def assemble_context(
    cleaned: Dict[str, List[Candidate]],
    bases: List[KnowledgeBase],
) -> AssembledContext:
    """
    Build the citation list and rendered block for one request.

    Args:
        cleaned: Filtered candidates keyed by knowledge base id
        bases: Registry entries to render (header lists all of them)

    Returns:
        AssembledContext; with no candidates the block is header only
    """
    by_id = {kb.id: kb for kb in bases}
    citations = assign_citations(cleaned, bases)

    parts = [render_header(bases), "Relevant context from knowledge base:", ""]
    for citation in citations:
        parts.append(f"{citation_marker(citation.ordinal)}[{citation.tag}] {citation.candidate.text}")
        parts.append("")

    if citations:
        parts.append("Citations:")
        for citation in citations:
            parts.append(render_index_line(citation, by_id[citation.candidate.knowledge_base_id]))

    return AssembledContext(citations=tuple(citations), rendered_block="\n".join(parts).rstrip() + "\n")
