"""
Parallel search orchestration.

For every enabled knowledge base, every query variant and every namespace
one independent search call is dispatched. Each variant is embedded once
and its vector shared by all of that variant's calls. The whole batch is
joined before anything is returned; nothing is consumed early.

Every (variant, knowledge base) call contributes at most the base's top_k
passing candidates. Discovery order of the merged candidates is variant
order, then namespace order (score order for multi-namespace bases),
because asyncio.gather preserves submission order.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from kbcontext import config as CFG
from kbcontext.dedup import select_top_k
from kbcontext.embeddings import BaseEmbedder
from kbcontext.errors import EmbeddingError
from kbcontext.models import Candidate, KnowledgeBase
from kbcontext.vector_index import KnowledgeBaseHits, VectorIndexClient

EMBEDDING_POLICIES = ("abort", "skip")


@dataclass
class SearchBatchResult:
    """Joined output of one fan-out batch."""
    candidates_by_knowledge_base: Dict[str, List[Candidate]] = field(default_factory=dict)
    calls_dispatched: int = 0
    failed_namespaces: int = 0
    skipped_variants: int = 0
    latency_ms: int = 0

    @property
    def warnings(self) -> int:
        return self.failed_namespaces + self.skipped_variants


def count_calls(variants: Sequence[str], bases: Sequence[KnowledgeBase]) -> int:
    """Number of index calls a batch dispatches."""
    return len(variants) * sum(len(kb.search_namespaces()) for kb in bases)


class SearchOrchestrator:
    """Fans searches out across knowledge bases, variants and namespaces."""

    def __init__(
        self,
        embedder: BaseEmbedder,
        index_client: VectorIndexClient,
        embedding_failure_policy: Optional[str] = None,
    ):
        """
        Args:
            embedder: Embedding gateway shared by all variants
            index_client: Vector index client shared by all knowledge bases
            embedding_failure_policy: ``abort`` fails the request when any
                variant cannot be embedded; ``skip`` drops that variant
        """
        policy = (embedding_failure_policy or CFG.EMBEDDING_FAILURE_POLICY).lower()
        if policy not in EMBEDDING_POLICIES:
            raise ValueError(f"embedding_failure_policy must be one of {EMBEDDING_POLICIES}, got {policy}")
        self.embedder = embedder
        self.index_client = index_client
        self.embedding_failure_policy = policy

    async def _search_variant(self, variant: str, bases: Sequence[KnowledgeBase]) -> List[KnowledgeBaseHits]:
        vector = await self.embedder.embed(variant)
        return await asyncio.gather(
            *(
                self.index_client.search_knowledge_base(kb, vector, kb.top_k, query=variant)
                for kb in bases
            )
        )

    async def search(self, variants: Sequence[str], bases: Sequence[KnowledgeBase]) -> SearchBatchResult:
        """
        Run the full fan-out and join it.

        Args:
            variants: Enhanced query variants, searched independently
            bases: Enabled knowledge bases (disabled ones are simply absent)

        Returns:
            SearchBatchResult with raw candidates keyed by knowledge base id

        Raises:
            EmbeddingError: Under the ``abort`` policy, after the batch joins
        """
        result = SearchBatchResult(
            candidates_by_knowledge_base={kb.id: [] for kb in bases},
            calls_dispatched=count_calls(variants, bases),
        )
        if not variants or not bases:
            return result

        t0 = time.time()
        outcomes = await asyncio.gather(
            *(self._search_variant(v, bases) for v in variants),
            return_exceptions=True,
        )
        result.latency_ms = int((time.time() - t0) * 1000)

        first_error: Optional[EmbeddingError] = None
        for variant, outcome in zip(variants, outcomes):
            if isinstance(outcome, EmbeddingError):
                if self.embedding_failure_policy == "abort":
                    first_error = first_error or outcome
                else:
                    logger.warning(f"Skipping variant, embedding failed: {variant[:100]!r}: {outcome}")
                    result.skipped_variants += 1
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            for kb, hits in zip(bases, outcome):
                result.candidates_by_knowledge_base[kb.id].extend(select_top_k(hits.candidates, kb))
                result.failed_namespaces += len(hits.failed_namespaces)

        if first_error is not None:
            logger.error(f"Aborting search, embedding failed for a variant: {first_error}")
            raise first_error

        logger.info(
            f"Search batch joined: {result.calls_dispatched} calls, "
            f"{sum(len(c) for c in result.candidates_by_knowledge_base.values())} raw candidates, "
            f"{result.warnings} warnings in {result.latency_ms}ms"
        )
        return result
