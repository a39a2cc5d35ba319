"""
Vector Index Client with Swappable Backends

One client serves every knowledge base. Backends implement a single
similarity query against one index, optionally scoped to a namespace:

- HTTPIndexBackend: remote index speaking the Pinecone-style /query API
- InMemoryIndexBackend: numpy cosine search for local runs and tests

Namespace calls for one knowledge base run concurrently; a failing
namespace is logged and contributes nothing instead of failing the base.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np
from loguru import logger

from kbcontext import config as CFG
from kbcontext.errors import IndexBackendError, NamespaceSearchError
from kbcontext.logging_config import log_namespace_failure
from kbcontext.models import Candidate, CandidateMetadata, KnowledgeBase

# Match keys that are never folded into metadata
_MATCH_RESERVED_KEYS = {"id", "score", "values", "sparseValues", "metadata"}

# Matches ask for this many times top_k so filtering has headroom
RETRIEVAL_HEADROOM = 2


# ============================================================================
# Backends
# ============================================================================


class VectorIndexBackend(ABC):
    """Base class for all index backends."""

    @abstractmethod
    async def query(
        self,
        index_name: str,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return raw matches ``[{id, score, metadata}, ...]`` best first."""

    async def close(self) -> None:
        return None


class HTTPIndexBackend(VectorIndexBackend):
    """Remote vector index reached over HTTP."""

    def __init__(
        self,
        url_template: str = CFG.VECTOR_INDEX_URL_TEMPLATE,
        api_key: str = CFG.VECTOR_INDEX_API_KEY,
        timeout: float = CFG.VECTOR_INDEX_TIMEOUT_SECONDS,
        max_connections: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP index backend.

        Args:
            url_template: Base URL with an ``{index_name}`` placeholder
            api_key: Sent as the Api-Key header when set
            timeout: Per-request deadline in seconds
            max_connections: Pool size shared by all namespace calls
            transport: Optional httpx transport (tests inject a mock)
        """
        self.url_template = url_template
        self.api_key = api_key
        self.timeout = timeout
        self.max_connections = max_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Api-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(
                    max_connections=self.max_connections,
                    max_keepalive_connections=self.max_connections // 2,
                ),
                transport=self._transport,
            )
        return self._client

    def query_url(self, index_name: str) -> str:
        return self.url_template.format(index_name=index_name).rstrip("/") + "/query"

    async def query(
        self,
        index_name: str,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "vector": [float(x) for x in vector],
            "topK": top_k,
            "includeMetadata": True,
            "includeValues": False,
        }
        if namespace:
            payload["namespace"] = namespace

        client = await self._get_client()
        try:
            resp = await client.post(self.query_url(index_name), json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise IndexBackendError(
                f"Query against index '{index_name}' failed: {e}", index_name=index_name, cause=e
            ) from e

        matches = data.get("matches") if isinstance(data, dict) else None
        if matches is None:
            return []
        if not isinstance(matches, list):
            raise IndexBackendError(
                f"Index '{index_name}' returned non-list matches", index_name=index_name
            )
        return matches

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class InMemoryIndexBackend(VectorIndexBackend):
    """Cosine-similarity index held in process memory.

    Selected with VECTOR_INDEX_BACKEND=memory for offline runs together with
    the stub embedder. It starts empty and is filled through ``upsert``.
    """

    def __init__(self) -> None:
        # (index_name, namespace) -> list of (id, vector, metadata)
        self._rows: Dict[Tuple[str, Optional[str]], List[Tuple[str, np.ndarray, Dict[str, Any]]]] = {}

    def upsert(
        self,
        index_name: str,
        doc_id: str,
        vector: np.ndarray,
        metadata: Optional[Dict[str, Any]] = None,
        namespace: Optional[str] = None,
    ) -> None:
        rows = self._rows.setdefault((index_name, namespace), [])
        vec = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec = vec / norm
        rows[:] = [r for r in rows if r[0] != doc_id]
        rows.append((doc_id, vec, dict(metadata or {})))

    async def query(
        self,
        index_name: str,
        vector: np.ndarray,
        top_k: int,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows = self._rows.get((index_name, namespace), [])
        if not rows:
            return []

        query_vec = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(query_vec)
        if norm > 0:
            query_vec = query_vec / norm

        embeddings = np.vstack([r[1] for r in rows])
        similarities = embeddings @ query_vec
        top_indices = np.argsort(-similarities, kind="stable")[:top_k]
        return [
            {"id": rows[i][0], "score": float(similarities[i]), "metadata": dict(rows[i][2])}
            for i in top_indices
        ]


# ============================================================================
# Client
# ============================================================================


def extract_text(metadata: CandidateMetadata) -> str:
    """Canonical full text first, generic ``text`` field second."""
    for value in (metadata.original_text, metadata.extra.get("text")):
        if isinstance(value, str) and value.strip():
            return value
    return ""


@dataclass
class KnowledgeBaseHits:
    """Candidates from every namespace of one knowledge base for one vector."""
    knowledge_base_id: str
    candidates: List[Candidate] = field(default_factory=list)
    failed_namespaces: List[Optional[str]] = field(default_factory=list)


class VectorIndexClient:
    """Per knowledge base adapter over a VectorIndexBackend."""

    def __init__(self, backend: VectorIndexBackend):
        self.backend = backend

    def _to_candidate(
        self,
        kb: KnowledgeBase,
        namespace: Optional[str],
        match: Dict[str, Any],
        position: int,
        query: Optional[str],
    ) -> Candidate:
        raw = match.get("metadata")
        raw_metadata = dict(raw) if isinstance(raw, dict) else {}
        # Some indexes return document fields beside metadata instead of inside it
        for key, value in match.items():
            if key not in _MATCH_RESERVED_KEYS and key not in raw_metadata:
                raw_metadata[key] = value
        metadata = CandidateMetadata.from_raw(raw_metadata)

        raw_id = match.get("id") or f"unknown-id-{kb.id}-{namespace or 'default'}-{position + 1}"
        try:
            score = float(match.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0

        return Candidate(
            raw_id=str(raw_id),
            text=extract_text(metadata),
            score=score,
            knowledge_base_id=kb.id,
            namespace=namespace,
            metadata=metadata,
            query=query,
        )

    async def search(
        self,
        kb: KnowledgeBase,
        namespace: Optional[str],
        vector: np.ndarray,
        top_k: int,
        query: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Run one similarity query against one namespace.

        Args:
            kb: Knowledge base to search
            namespace: Namespace, or None for the implicit one
            vector: Query embedding
            top_k: Matches wanted; ``top_k * 2`` are requested
            query: Variant text that produced ``vector`` (kept on candidates)

        Returns:
            Candidates with non-empty text, in the index's ranking order

        Raises:
            NamespaceSearchError: If the backend call fails or returns malformed matches
        """
        try:
            matches = await self.backend.query(
                kb.index_name, vector, top_k * RETRIEVAL_HEADROOM, namespace=namespace
            )
        except Exception as e:
            raise NamespaceSearchError(
                f"Search failed for {kb.id}/{namespace or 'default'}: {e}",
                knowledge_base_id=kb.id,
                namespace=namespace,
                index_name=kb.index_name,
                cause=e,
            ) from e

        candidates = []
        try:
            for position, match in enumerate(matches):
                if not isinstance(match, dict):
                    continue
                candidate = self._to_candidate(kb, namespace, match, position, query)
                if candidate.text:
                    candidates.append(candidate)
        except (TypeError, ValueError) as e:
            raise NamespaceSearchError(
                f"Malformed matches from {kb.id}/{namespace or 'default'}: {e}",
                knowledge_base_id=kb.id,
                namespace=namespace,
                index_name=kb.index_name,
                cause=e,
            ) from e
        return candidates

    async def search_knowledge_base(
        self,
        kb: KnowledgeBase,
        vector: np.ndarray,
        top_k: Optional[int] = None,
        query: Optional[str] = None,
    ) -> KnowledgeBaseHits:
        """Search every namespace of ``kb`` concurrently and merge in namespace order."""
        top_k = top_k or kb.top_k
        namespaces = kb.search_namespaces()
        results = await asyncio.gather(
            *(self.search(kb, ns, vector, top_k, query=query) for ns in namespaces),
            return_exceptions=True,
        )

        hits = KnowledgeBaseHits(knowledge_base_id=kb.id)
        for ns, result in zip(namespaces, results):
            if isinstance(result, NamespaceSearchError):
                log_namespace_failure(kb.id, ns, result.cause or result)
                hits.failed_namespaces.append(ns)
                continue
            if isinstance(result, BaseException):
                raise result
            hits.candidates.extend(result)

        logger.debug(
            f"{kb.id}: {len(hits.candidates)} candidates from {len(namespaces)} namespace(s), "
            f"{len(hits.failed_namespaces)} failed"
        )
        return hits

    async def close(self) -> None:
        await self.backend.close()


def create_index_backend(kind: Optional[str] = None) -> VectorIndexBackend:
    """Build the index backend selected by VECTOR_INDEX_BACKEND."""
    kind = (kind or CFG.VECTOR_INDEX_BACKEND).lower()
    if kind == "memory":
        logger.info("Vector index: in-memory backend")
        return InMemoryIndexBackend()
    if kind != "http":
        raise ValueError(f"Unknown vector index backend: {kind}")
    logger.info(f"Vector index: HTTP backend at {CFG.VECTOR_INDEX_URL_TEMPLATE}")
    return HTTPIndexBackend()
