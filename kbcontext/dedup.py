"""
Result filtering and deduplication.

Each (variant, knowledge base) call is first cut back to the base's
top_k passing candidates (score-sorted first for multi-namespace bases).

Per knowledge base, in order:
1. score threshold (and minimal-metadata rejection where configured)
2. exact raw id collapse
3. source identifier and full-text dedup in discovery order
4. cap to result_cap (score-sorted first for multi-namespace bases)

A final cross-source pass walks bases in priority order so a document
cited by a higher-priority base is not cited again by a lower one.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set

from loguru import logger

from kbcontext.models import Candidate, KnowledgeBase

# Metadata shape of bare Q&A rows that carry no source information
MINIMAL_METADATA_KEYS = frozenset({"question", "answer", "text"})


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.split()).lower()


def source_identifier(candidate: Candidate) -> str:
    """Lower-cased trimmed source_file, else the normalized original_text."""
    source_file = (candidate.metadata.source_file or "").strip().lower()
    if source_file:
        return source_file
    return normalize_text(candidate.metadata.original_text)


def has_minimal_metadata(candidate: Candidate) -> bool:
    return set(candidate.metadata.keys()) == MINIMAL_METADATA_KEYS


def filter_by_threshold(candidates: List[Candidate], kb: KnowledgeBase) -> List[Candidate]:
    kept = []
    for c in candidates:
        if not c.text or c.score < kb.score_threshold:
            continue
        if kb.reject_minimal_metadata and has_minimal_metadata(c):
            continue
        kept.append(c)
    return kept


def select_top_k(candidates: List[Candidate], kb: KnowledgeBase, top_k: Optional[int] = None) -> List[Candidate]:
    """
    Best ``top_k`` passing candidates of one (variant, knowledge base) call.

    The index is asked for twice as many matches as wanted so that
    filtered ones can be replaced; the surplus is cut here so no single
    variant fills the base's result_cap on its own.
    """
    kept = filter_by_threshold(candidates, kb)
    if kb.is_multi_namespace:
        kept = sorted(kept, key=lambda c: c.score, reverse=True)
    return kept[: top_k or kb.top_k]


def collapse_raw_ids(candidates: List[Candidate]) -> List[Candidate]:
    seen: Set[str] = set()
    kept = []
    for c in candidates:
        if c.raw_id in seen:
            continue
        seen.add(c.raw_id)
        kept.append(c)
    return kept


def dedup_sources(candidates: List[Candidate]) -> List[Candidate]:
    seen: Set[str] = set()
    kept = []
    for c in candidates:
        key = source_identifier(c)
        if key:
            if key in seen:
                continue
            seen.add(key)
        kept.append(c)
    return kept


def dedup_texts(candidates: List[Candidate]) -> List[Candidate]:
    seen: Set[str] = set()
    kept = []
    for c in candidates:
        text = normalize_text(c.text)
        if text in seen:
            continue
        seen.add(text)
        kept.append(c)
    return kept


def cap_results(candidates: List[Candidate], kb: KnowledgeBase) -> List[Candidate]:
    if kb.is_multi_namespace:
        # sorted() is stable: equal scores keep discovery order
        candidates = sorted(candidates, key=lambda c: c.score, reverse=True)
    return candidates[: kb.result_cap]


def clean_knowledge_base(candidates: List[Candidate], kb: KnowledgeBase) -> List[Candidate]:
    """Run the four per-base stages over one base's raw candidates."""
    stage1 = filter_by_threshold(candidates, kb)
    stage2 = collapse_raw_ids(stage1)
    stage3 = dedup_texts(dedup_sources(stage2))
    final = cap_results(stage3, kb)
    logger.debug(
        f"{kb.id}: {len(candidates)} raw -> {len(stage1)} above threshold -> "
        f"{len(stage2)} unique ids -> {len(stage3)} unique sources and texts -> {len(final)} kept"
    )
    return final


def dedup_across_sources(
    cleaned: Dict[str, List[Candidate]],
    bases: List[KnowledgeBase],
) -> Dict[str, List[Candidate]]:
    """Drop candidates whose source or full text was already kept by a higher-priority base."""
    seen_sources: Set[str] = set()
    seen_texts: Set[str] = set()
    result: Dict[str, List[Candidate]] = {}
    for kb in sorted(bases, key=lambda b: b.priority_rank):
        if kb.id not in cleaned:
            continue
        kept = []
        for c in cleaned[kb.id]:
            source = source_identifier(c)
            text = normalize_text(c.text)
            if (source and source in seen_sources) or (text and text in seen_texts):
                logger.debug(f"{kb.id}: dropped {c.raw_id}, already cited by a higher-priority source")
                continue
            if source:
                seen_sources.add(source)
            if text:
                seen_texts.add(text)
            kept.append(c)
        result[kb.id] = kept
    return result


def filter_and_deduplicate(
    raw: Dict[str, List[Candidate]],
    bases: List[KnowledgeBase],
) -> Dict[str, List[Candidate]]:
    """
    Clean every searched knowledge base and remove cross-source repeats.

    Args:
        raw: Raw candidates keyed by knowledge base id, in discovery order
        bases: Registry entries for the bases present in ``raw``

    Returns:
        Cleaned candidates keyed by knowledge base id
    """
    cleaned = {kb.id: clean_knowledge_base(raw.get(kb.id, []), kb) for kb in bases if kb.id in raw}
    return dedup_across_sources(cleaned, bases)
