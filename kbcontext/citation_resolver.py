"""
Citation Resolution for Generated Answers

Maps the [CITn] markers in a generated answer back to the citations stored
for its message:
- Extracts cited ordinals in first-seen order
- Resolves each ordinal to its stored citation
- Reports markers with no citation and citations never used

The ordinal is only meaningful inside one response; anything persisted
across turns should carry the resolved citation's raw id instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from loguru import logger

from kbcontext.models import Citation

CITATION_PATTERN = re.compile(r"\[CIT(\d{1,4})\]")


@dataclass
class CitationResolution:
    """Result of matching an answer's markers against stored citations."""
    cited: List[Citation] = field(default_factory=list)
    unknown_ordinals: List[int] = field(default_factory=list)
    unused_ordinals: List[int] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.unknown_ordinals


def extract_citation_ordinals(answer: str) -> List[int]:
    """
    Extract unique citation ordinals from text like [CIT1], [CIT2].

    Examples:
        >>> extract_citation_ordinals("Prayer [CIT2], [CIT1]. Charity [CIT2].")
        [2, 1]
    """
    ordinals: List[int] = []
    for match in CITATION_PATTERN.findall(answer or ""):
        ordinal = int(match)
        if ordinal not in ordinals:
            ordinals.append(ordinal)
    return ordinals


def resolve_cited_sources(answer: str, citations: Sequence[Citation]) -> CitationResolution:
    """
    Resolve every [CITn] marker in ``answer`` against ``citations``.

    Args:
        answer: Generated answer text
        citations: Citations stored for the answer's message

    Returns:
        CitationResolution with cited citations in first-seen order
    """
    by_ordinal: Dict[int, Citation] = {c.ordinal: c for c in citations}
    resolution = CitationResolution()
    for ordinal in extract_citation_ordinals(answer):
        citation = by_ordinal.get(ordinal)
        if citation is None:
            resolution.unknown_ordinals.append(ordinal)
        else:
            resolution.cited.append(citation)

    cited_ordinals = {c.ordinal for c in resolution.cited}
    resolution.unused_ordinals = sorted(o for o in by_ordinal if o not in cited_ordinals)

    if resolution.unknown_ordinals:
        logger.warning(f"Answer cites unknown ordinals: {resolution.unknown_ordinals}")
    return resolution
