#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from kbcontext.errors import ConfigurationError
from kbcontext.models import KnowledgeBase, TagRule

load_dotenv()


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None else (default or "")


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        raise ConfigurationError(f"Invalid {name}; must be integer.")


# Query enhancement
QUERY_ENHANCER_URL: str = _get_env("QUERY_ENHANCER_URL", "http://localhost:8100/improve-queries").strip()
QUERY_ENHANCER_TIMEOUT_SECONDS: float = _parse_float("QUERY_ENHANCER_TIMEOUT_SECONDS", 20.0)
QUERY_VARIANTS: int = _parse_int("QUERY_VARIANTS", 3)
if QUERY_VARIANTS < 1:
    raise ConfigurationError("QUERY_VARIANTS must be >= 1.")

# Embeddings
EMBEDDINGS_BACKEND: str = _get_env("EMBEDDINGS_BACKEND", "http").strip().lower()
EMBEDDING_URL: str = _get_env("EMBEDDING_URL", "http://localhost:8100/embed").strip()
EMBEDDING_MODEL: str = _get_env("EMBEDDING_MODEL", "text-embedding-3-large")
EMBEDDING_DIM: int = _parse_int("EMBEDDING_DIM", 3072)
EMBEDDING_TIMEOUT_SECONDS: float = _parse_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_FAILURE_POLICY: str = _get_env("EMBEDDING_FAILURE_POLICY", "abort").strip().lower()
if EMBEDDINGS_BACKEND not in ("http", "stub"):
    raise ConfigurationError(f"EMBEDDINGS_BACKEND must be 'http' or 'stub', got: {EMBEDDINGS_BACKEND}")
if EMBEDDING_FAILURE_POLICY not in ("abort", "skip"):
    raise ConfigurationError(
        f"EMBEDDING_FAILURE_POLICY must be 'abort' or 'skip', got: {EMBEDDING_FAILURE_POLICY}"
    )

# Vector index backend ({index_name} is substituted per knowledge base)
VECTOR_INDEX_BACKEND: str = _get_env("VECTOR_INDEX_BACKEND", "http").strip().lower()
if VECTOR_INDEX_BACKEND not in ("http", "memory"):
    raise ConfigurationError(f"VECTOR_INDEX_BACKEND must be 'http' or 'memory', got: {VECTOR_INDEX_BACKEND}")
VECTOR_INDEX_URL_TEMPLATE: str = _get_env(
    "VECTOR_INDEX_URL_TEMPLATE", "https://{index_name}.svc.pinecone.io"
).strip()
VECTOR_INDEX_API_KEY: str = _get_env("VECTOR_INDEX_API_KEY", _get_env("PINECONE_API_KEY")).strip()
VECTOR_INDEX_TIMEOUT_SECONDS: float = _parse_float("VECTOR_INDEX_TIMEOUT_SECONDS", 15.0)

# Filtering
DEFAULT_SCORE_THRESHOLD: float = _parse_float("DEFAULT_SCORE_THRESHOLD", 0.4)
if not (0.0 <= DEFAULT_SCORE_THRESHOLD <= 1.0):
    raise ConfigurationError("DEFAULT_SCORE_THRESHOLD must be in [0,1].")

# Context store
CONTEXT_STORE: str = _get_env("CONTEXT_STORE", "memory").strip().lower()
CONTEXT_STORE_MAX_SIZE: int = _parse_int("CONTEXT_STORE_MAX_SIZE", 10000)
CONTEXT_STORE_TTL_SECONDS: int = _parse_int("CONTEXT_STORE_TTL_SECONDS", 86400)
if CONTEXT_STORE not in ("memory", "lru"):
    raise ConfigurationError(f"CONTEXT_STORE must be 'memory' or 'lru', got: {CONTEXT_STORE}")

# Logging
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE: str = _get_env("LOG_FILE", "").strip()

# Server
API_HOST: str = _get_env("API_HOST", "0.0.0.0")
API_PORT: int = _parse_int("API_PORT", 7001)

# Knowledge base registry override
KNOWLEDGE_BASES_PATH: str = _get_env("KNOWLEDGE_BASES_PATH", "").strip()


# ============================================================================
# Knowledge Base Registry
# ============================================================================

RISALE_NAMESPACES: List[str] = [
    "Sozler-Bediuzzaman_Said_Nursi",
    "Mektubat-Bediuzzaman_Said_Nursi",
    "lemalar-bediuzzaman_said_nursi",
    "Hasir_Risalesi-Bediuzzaman_Said_Nursi",
    "Otuz_Uc_Pencere-Bediuzzaman_Said_Nursi",
    "Hastalar_Risalesi-Bediuzzaman_Said_Nursi",
    "ihlas_risaleleri-bediuzzaman_said_nursi",
    "enne_ve_zerre_risalesi-bediuzzaman_said_nursi",
    "tabiat_risalesi-bediuzzaman_said_nursi",
    "kader_risalesi-bediuzzaman_said_nursi",
]

YOUTUBE_NAMESPACES: List[str] = [
    "4455",
    "Islam_The_Ultimate_Peace",
    "2238",
    "Islamic_Guidance",
    "2004",
    "MercifulServant",
    "1572",
    "Towards_Eternity",
]

# Fatwa-shaped matches can surface in any index
_FATWA_RULES = [
    TagRule(
        tag="FAT",
        metadata_field="content_type",
        values=["islamqa_fatwa"],
        display_name="Fatwa and ruling sites",
    ),
    TagRule(tag="FAT", metadata_field="type", values=["fatwa", "FAT"], display_name="Fatwa and ruling sites"),
]


def default_knowledge_bases() -> List[KnowledgeBase]:
    """Built-in registry, in citation priority order."""
    variants_cap = max(QUERY_VARIANTS, 1) * 2
    return [
        KnowledgeBase(
            id="classic",
            display_name="Classical sources (primary, most authoritative)",
            priority_rank=1,
            index_name=_get_env("PINECONE_CLASSIC_INDEX", "cls-books"),
            score_threshold=_parse_float("CLASSIC_SCORE_THRESHOLD", 0.25),
            result_cap=variants_cap,
            tag="CLS",
            reject_minimal_metadata=True,
            index_fields=["block_id", "end_page"],
        ),
        KnowledgeBase(
            id="risale",
            display_name="Risale-i Nur and related works (secondary)",
            priority_rank=2,
            index_name=_get_env("PINECONE_RISALE_INDEX", "risale"),
            namespaces=RISALE_NAMESPACES,
            score_threshold=DEFAULT_SCORE_THRESHOLD,
            result_cap=variants_cap,
            tag="RIS",
            index_fields=["block_id", "end_page"],
        ),
        KnowledgeBase(
            id="fatwa",
            display_name="Fatwa and ruling sites",
            priority_rank=3,
            index_name=_get_env("PINECONE_FATWA_INDEX", "fatwa-sites"),
            score_threshold=DEFAULT_SCORE_THRESHOLD,
            result_cap=variants_cap,
            tag="FAT",
            index_fields=["source_link"],
        ),
        KnowledgeBase(
            id="modern",
            display_name="Modern sources (tertiary)",
            priority_rank=4,
            index_name=_get_env("PINECONE_MODERN_INDEX", "islamqadtaset"),
            score_threshold=DEFAULT_SCORE_THRESHOLD,
            result_cap=variants_cap,
            tag="MOD",
            tag_rules=list(_FATWA_RULES),
            index_fields=["block_id", "end_page"],
        ),
        KnowledgeBase(
            id="youtube",
            display_name="Popular YouTube scholars (complementary)",
            priority_rank=5,
            index_name=_get_env("PINECONE_YOUTUBE_INDEX", "yt-db"),
            namespaces=YOUTUBE_NAMESPACES,
            score_threshold=DEFAULT_SCORE_THRESHOLD,
            result_cap=variants_cap,
            tag="YT",
            index_fields=["source", "title"],
        ),
    ]


def validate_knowledge_bases(bases: List[KnowledgeBase]) -> List[KnowledgeBase]:
    """Check id/rank uniqueness and return the registry sorted by priority."""
    if not bases:
        raise ConfigurationError("At least one knowledge base must be configured.")
    seen_ids: Dict[str, int] = {}
    seen_ranks: Dict[int, str] = {}
    for kb in bases:
        if kb.id in seen_ids:
            raise ConfigurationError(f"Duplicate knowledge base id: {kb.id}")
        if kb.priority_rank in seen_ranks:
            raise ConfigurationError(
                f"Knowledge bases '{seen_ranks[kb.priority_rank]}' and '{kb.id}' "
                f"share priority_rank {kb.priority_rank}"
            )
        seen_ids[kb.id] = kb.priority_rank
        seen_ranks[kb.priority_rank] = kb.id
    return sorted(bases, key=lambda kb: kb.priority_rank)


def load_knowledge_bases(path: Optional[str] = None) -> List[KnowledgeBase]:
    """
    Load the knowledge base registry.

    Reads a JSON list of knowledge base objects from ``path`` (or
    KNOWLEDGE_BASES_PATH); falls back to the built-in registry.

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    path = path if path is not None else KNOWLEDGE_BASES_PATH
    if not path:
        return validate_knowledge_bases(default_knowledge_bases())

    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"KNOWLEDGE_BASES_PATH does not exist: {file_path}")
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read knowledge base registry {file_path}: {e}", cause=e) from e
    if not isinstance(raw, list):
        raise ConfigurationError(f"Knowledge base registry {file_path} must be a JSON list")
    try:
        bases = [KnowledgeBase.model_validate(item) for item in raw]
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid knowledge base entry in {file_path}: {e}", cause=e) from e
    return validate_knowledge_bases(bases)


_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[^\s]+", re.IGNORECASE),
    re.compile(r"((?:api[_-]?key|token|secret|password)\s*[=:]\s*)[^\s,&]+", re.IGNORECASE),
]


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and key=value secrets in free text."""
    if not text:
        return text
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1***", text)
    return text


def health_summary() -> dict:
    """Return a health summary for /healthz."""
    return {
        "query_variants": QUERY_VARIANTS,
        "embeddings_backend": EMBEDDINGS_BACKEND,
        "vector_index_backend": VECTOR_INDEX_BACKEND,
        "embedding_model": EMBEDDING_MODEL,
        "embedding_dim": EMBEDDING_DIM,
        "embedding_failure_policy": EMBEDDING_FAILURE_POLICY,
        "context_store": CONTEXT_STORE,
        "knowledge_bases": [kb.id for kb in load_knowledge_bases()],
    }
