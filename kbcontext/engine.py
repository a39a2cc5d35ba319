"""
Context Engine

Entry points consumed by the serving layer:

    engine = create_engine()
    response = await engine.perform_search(user_message, history_text, model_hint, {"youtube": False})
    citations = engine.get_context(response.message_id)

Per request: Idle -> EnhancingQuery -> Searching -> Filtering -> Assembling
-> Cached -> Done. Zero citations is a valid outcome, not an error.
"""

from __future__ import annotations

import time
import uuid
from typing import Dict, List, Optional

from loguru import logger

from kbcontext import config as CFG
from kbcontext.assembler import assemble_context
from kbcontext.citation_resolver import CitationResolution, resolve_cited_sources
from kbcontext.context_store import ContextStore, InMemoryContextStore, create_context_store
from kbcontext.dedup import filter_and_deduplicate
from kbcontext.embeddings import BaseEmbedder, create_embedder
from kbcontext.errors import ValidationError
from kbcontext.logging_config import log_context_assembled, log_search
from kbcontext.models import Citation, KnowledgeBase, SearchQuery, SearchResponse
from kbcontext.orchestrator import SearchOrchestrator, count_calls
from kbcontext.progress import ProgressCallback, ProgressReporter, ProgressStage
from kbcontext.query_enhance import QueryEnhancementClient
from kbcontext.vector_index import VectorIndexClient, create_index_backend


class ContextEngine:
    """Runs query enhancement, fan-out search, filtering, assembly and storage."""

    def __init__(
        self,
        knowledge_bases: List[KnowledgeBase],
        enhancer: QueryEnhancementClient,
        embedder: BaseEmbedder,
        index_client: VectorIndexClient,
        store: Optional[ContextStore] = None,
        embedding_failure_policy: Optional[str] = None,
    ):
        self.knowledge_bases = CFG.validate_knowledge_bases(list(knowledge_bases))
        self.enhancer = enhancer
        self.embedder = embedder
        self.index_client = index_client
        self.store = store if store is not None else InMemoryContextStore()
        self.orchestrator = SearchOrchestrator(embedder, index_client, embedding_failure_policy)

    def resolve_sources(self, source_selection: Optional[Dict[str, bool]] = None) -> List[KnowledgeBase]:
        """
        Apply a knowledge base enable map.

        Missing ids default to enabled; unknown ids are ignored with a warning.
        """
        selection = source_selection or {}
        known = {kb.id for kb in self.knowledge_bases}
        unknown = sorted(k for k in selection if k not in known)
        if unknown:
            logger.warning(f"Ignoring unknown knowledge base ids in source selection: {unknown}")
        return [kb for kb in self.knowledge_bases if selection.get(kb.id, True)]

    async def perform_search(
        self,
        user_message: str,
        history_text: str = "",
        model_hint: str = "",
        source_selection: Optional[Dict[str, bool]] = None,
    ) -> SearchResponse:
        """Assemble and store a cited context for ``user_message``."""
        return await self.perform_search_with_progress(
            user_message, history_text, model_hint, source_selection, on_progress=None
        )

    async def perform_search_with_progress(
        self,
        user_message: str,
        history_text: str = "",
        model_hint: str = "",
        source_selection: Optional[Dict[str, bool]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SearchResponse:
        """
        Same as ``perform_search``, reporting each stage to ``on_progress``.

        Args:
            user_message: Query being answered
            history_text: Rendered prior conversation
            model_hint: Forwarded to query enhancement
            source_selection: knowledge base id -> enabled
            on_progress: Optional observer called with ProgressEvent objects

        Returns:
            SearchResponse with a freshly minted message id

        Raises:
            ValidationError: If ``user_message`` is blank
            EmbeddingError: Under the ``abort`` embedding policy
        """
        if not user_message or not user_message.strip():
            raise ValidationError("user_message must not be empty", field="user_message")

        message_id = str(uuid.uuid4())
        reporter = ProgressReporter(on_progress, request_id=message_id)
        t0 = time.time()

        reporter.emit(ProgressStage.QUERY_ENHANCEMENT_STARTED)
        variants = await self.enhancer.improve_queries(user_message, history_text or "", model_hint or "")
        query = SearchQuery(original_text=user_message, enhanced_variants=tuple(variants))
        reporter.emit(ProgressStage.QUERIES_ENHANCED, variants=list(query.enhanced_variants))

        bases = self.resolve_sources(source_selection)
        reporter.emit(
            ProgressStage.SEARCH_DISPATCHED,
            knowledge_bases=[kb.id for kb in bases],
            calls=count_calls(query.enhanced_variants, bases),
        )
        batch = await self.orchestrator.search(query.enhanced_variants, bases)

        cleaned = filter_and_deduplicate(batch.candidates_by_knowledge_base, bases)
        counts = {kb.id: len(cleaned.get(kb.id, [])) for kb in bases}
        reporter.emit(ProgressStage.SEARCH_COMPLETED, counts_by_knowledge_base=counts)

        assembled = assemble_context(cleaned, bases)
        self.store.put(message_id, assembled.citations)
        log_context_assembled(message_id, len(assembled.citations), len(assembled.rendered_block))
        reporter.emit(
            ProgressStage.CONTEXT_READY,
            citation_count=len(assembled.citations),
            message_id=message_id,
        )

        log_search(message_id, user_message, int((time.time() - t0) * 1000), counts, batch.warnings)
        return SearchResponse(
            message_id=message_id,
            citations=list(assembled.citations),
            improved_queries=list(query.enhanced_variants),
            context_block=assembled.rendered_block,
            counts_by_knowledge_base=counts,
            warnings=batch.warnings,
        )

    def get_context(self, message_id: str) -> List[Citation]:
        """Citations stored for ``message_id``; [] when unknown."""
        return self.store.get(message_id)

    def has_context(self, message_id: str) -> bool:
        return self.store.has(message_id)

    def resolve_answer(self, message_id: str, answer: str) -> CitationResolution:
        """Match the [CITn] markers in ``answer`` against the stored context."""
        return resolve_cited_sources(answer, self.get_context(message_id))

    async def close(self) -> None:
        await self.enhancer.close()
        await self.embedder.close()
        await self.index_client.close()


def create_engine(knowledge_bases: Optional[List[KnowledgeBase]] = None) -> ContextEngine:
    """Build an engine wired from configuration."""
    bases = knowledge_bases if knowledge_bases is not None else CFG.load_knowledge_bases()
    return ContextEngine(
        knowledge_bases=bases,
        enhancer=QueryEnhancementClient(),
        embedder=create_embedder(),
        index_client=VectorIndexClient(create_index_backend()),
        store=create_context_store(),
        embedding_failure_policy=CFG.EMBEDDING_FAILURE_POLICY,
    )
