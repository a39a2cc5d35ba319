"""
Data Models for the Context Engine

Provides structured, type-safe data definitions for:
- Knowledge base registry entries and source-type rules
- Candidate metadata envelope
- Candidates, citations and assembled contexts
- API requests and responses
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


# ============================================================================
# Knowledge Base Registry
# ============================================================================


class TagRule(BaseModel):
    """
    One ordered source-type rule.

    A rule matches when the candidate's ``metadata_field`` holds one of
    ``values`` (case-insensitive), or when the candidate came from one of
    ``namespaces``. A rule may set both; either condition is enough.
    """

    tag: str = Field(..., min_length=1, description="Source-type abbreviation, e.g. FAT")
    metadata_field: Optional[str] = Field(default=None, description="Metadata field to inspect")
    values: List[str] = Field(default_factory=list, description="Accepted field values")
    namespaces: List[str] = Field(default_factory=list, description="Namespaces mapped to this tag")
    display_name: Optional[str] = Field(default=None, description="Listed in the context header")

    @model_validator(mode="after")
    def _has_condition(self) -> "TagRule":
        if not (self.metadata_field and self.values) and not self.namespaces:
            raise ValueError("tag rule needs a metadata_field/values pair or a namespace list")
        return self


class KnowledgeBase(BaseModel):
    """One independently searchable document collection."""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "risale",
            "display_name": "Risale-i Nur and related works",
            "priority_rank": 2,
            "index_name": "risale",
            "namespaces": ["Sozler-Bediuzzaman_Said_Nursi", "Mektubat-Bediuzzaman_Said_Nursi"],
            "score_threshold": 0.4,
            "result_cap": 6,
            "top_k": 2,
            "tag": "RIS",
        }
    })

    id: str = Field(..., min_length=1, description="Stable knowledge base id")
    display_name: str = Field(..., description="Human readable name used in the context header")
    priority_rank: int = Field(..., ge=1, description="Lower rank is cited first")
    index_name: str = Field(..., min_length=1, description="Backend index name")
    namespaces: List[str] = Field(default_factory=list, description="Empty = single implicit namespace")
    score_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    result_cap: int = Field(default=6, ge=1, description="Max citations kept for this base")
    top_k: int = Field(default=2, ge=1, description="Matches wanted per search call")
    tag: str = Field(..., min_length=1, description="Default source-type abbreviation")
    tag_rules: List[TagRule] = Field(default_factory=list)
    reject_minimal_metadata: bool = Field(
        default=False,
        description="Drop matches whose metadata only holds question/answer/text",
    )
    index_fields: List[str] = Field(
        default_factory=list,
        description="Metadata fields appended to the trailing citation index",
    )

    @field_validator("namespaces")
    @classmethod
    def _unique_namespaces(cls, value: List[str]) -> List[str]:
        ordered: List[str] = []
        for ns in value:
            ns = ns.strip()
            if ns and ns not in ordered:
                ordered.append(ns)
        return ordered

    @property
    def is_multi_namespace(self) -> bool:
        return len(self.namespaces) > 1

    def search_namespaces(self) -> List[Optional[str]]:
        """Namespaces to query; ``[None]`` for the implicit default namespace."""
        return list(self.namespaces) if self.namespaces else [None]


# ============================================================================
# Candidate Metadata Envelope
# ============================================================================


WELL_KNOWN_METADATA_FIELDS = ("source_file", "original_text", "content_type", "source_link", "score")


class CandidateMetadata(BaseModel):
    """
    Structured metadata for a retrieval match.

    Well-known optional fields are typed; everything else a backend returns
    is kept verbatim in ``extra``.
    """

    source_file: Optional[str] = None
    original_text: Optional[str] = None
    content_type: Optional[str] = None
    source_link: Optional[str] = None
    score: Optional[float] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "CandidateMetadata":
        """Split a backend metadata dict into well-known fields and extras."""
        raw = dict(raw or {})
        known: Dict[str, Any] = {}
        for name in WELL_KNOWN_METADATA_FIELDS:
            if name in raw:
                value = raw.pop(name)
                if name == "score":
                    try:
                        value = float(value) if value is not None else None
                    except (TypeError, ValueError):
                        raw["score"] = value
                        continue
                elif value is not None and not isinstance(value, str):
                    value = str(value)
                known[name] = value
        return cls(**known, extra=raw)

    def get(self, name: str, default: Any = None) -> Any:
        """Look up a well-known field or an extra by name."""
        if name in WELL_KNOWN_METADATA_FIELDS:
            value = getattr(self, name)
            return default if value is None else value
        return self.extra.get(name, default)

    def keys(self) -> List[str]:
        """Names of all fields that carry a value."""
        present = [n for n in WELL_KNOWN_METADATA_FIELDS if getattr(self, n) is not None]
        return present + list(self.extra.keys())

    def to_flat_dict(self) -> Dict[str, Any]:
        flat = {n: getattr(self, n) for n in WELL_KNOWN_METADATA_FIELDS if getattr(self, n) is not None}
        flat.update(self.extra)
        return flat


# ============================================================================
# Pipeline Data Structures
# ============================================================================


@dataclass(frozen=True)
class SearchQuery:
    """User query plus its enhanced search variants."""
    original_text: str
    enhanced_variants: Tuple[str, ...]


@dataclass(frozen=True)
class Candidate:
    """Single raw retrieval match, before filtering."""
    raw_id: str
    text: str
    score: float
    knowledge_base_id: str
    namespace: Optional[str] = None
    metadata: CandidateMetadata = field(default_factory=CandidateMetadata)
    query: Optional[str] = None


@dataclass(frozen=True)
class Citation:
    """Candidate that survived filtering and received an ordinal."""
    ordinal: int
    tag: str
    candidate: Candidate

    def to_dict(self) -> Dict[str, Any]:
        c = self.candidate
        return {
            "ordinal": self.ordinal,
            "tag": self.tag,
            "id": c.raw_id,
            "text": c.text,
            "score": c.score,
            "knowledge_base_id": c.knowledge_base_id,
            "namespace": c.namespace,
            "query": c.query,
            "metadata": c.metadata.to_flat_dict(),
        }


@dataclass(frozen=True)
class AssembledContext:
    """Ordered citations plus the rendered context block."""
    citations: Tuple[Citation, ...]
    rendered_block: str


@dataclass
class SearchResponse:
    """Result of one ``perform_search`` call."""
    message_id: str
    citations: List[Citation]
    improved_queries: List[str]
    context_block: str
    counts_by_knowledge_base: Dict[str, int] = field(default_factory=dict)
    warnings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "citations": [c.to_dict() for c in self.citations],
            "improved_queries": list(self.improved_queries),
            "context_block": self.context_block,
            "counts_by_knowledge_base": dict(self.counts_by_knowledge_base),
            "warnings": self.warnings,
        }


# ============================================================================
# API Models
# ============================================================================


class ChatMessage(BaseModel):
    role: str
    content: str = ""


class SearchRequest(BaseModel):
    """Request for a context assembly run."""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "query": "What is the ruling on combining prayers when traveling?",
            "history": "User: Is travel prayer shortened?",
            "model_hint": "chat-model",
            "sources": {"classic": True, "youtube": False},
        }
    })

    query: str = Field(..., min_length=1, max_length=4000, description="User message")
    history: Optional[str] = Field(default=None, description="Pre-rendered conversation history")
    messages: List[ChatMessage] = Field(default_factory=list, description="Raw chat turns, used when history is absent")
    model_hint: str = Field(default="chat-model", description="Model hint forwarded to query enhancement")
    sources: Dict[str, bool] = Field(default_factory=dict, description="knowledge base id -> enabled")


class CitationModel(BaseModel):
    ordinal: int
    tag: str
    id: str
    text: str
    score: float
    knowledge_base_id: str
    namespace: Optional[str] = None
    query: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponseModel(BaseModel):
    message_id: str
    citations: List[CitationModel]
    improved_queries: List[str]
    context_block: str
    counts_by_knowledge_base: Dict[str, int] = Field(default_factory=dict)
    warnings: int = 0


class ResolveRequest(BaseModel):
    answer: str = Field(..., description="Generated answer containing [CITn] markers")


class ResolvedCitationModel(BaseModel):
    marker: str
    citation: CitationModel


class ResolveResponseModel(BaseModel):
    message_id: str
    cited: List[ResolvedCitationModel]
    unknown_ordinals: List[int]
    unused_ordinals: List[int]
