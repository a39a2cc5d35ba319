"""Pytest configuration and fixtures for context engine tests."""

import json
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import pytest

from kbcontext.context_store import InMemoryContextStore
from kbcontext.embeddings import StubEmbedder
from kbcontext.engine import ContextEngine
from kbcontext.models import Candidate, CandidateMetadata, KnowledgeBase
from kbcontext.query_enhance import QueryEnhancementClient
from kbcontext.vector_index import VectorIndexBackend, VectorIndexClient


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (skip with '-m \"not integration\"')"
    )


class ScriptedIndexBackend(VectorIndexBackend):
    """Index backend returning canned matches per (index_name, namespace)."""

    def __init__(
        self,
        matches: Optional[Dict[Tuple[str, Optional[str]], List[Dict[str, Any]]]] = None,
        failing: Iterable[Tuple[str, Optional[str]]] = (),
    ):
        self.matches = matches or {}
        self.failing = set(failing)
        self.calls: List[Tuple[str, Optional[str], int]] = []
        self.closed = False

    async def query(self, index_name, vector, top_k, namespace=None):
        self.calls.append((index_name, namespace, top_k))
        if (index_name, namespace) in self.failing:
            raise RuntimeError(f"simulated outage in {index_name}/{namespace}")
        return [dict(m) for m in self.matches.get((index_name, namespace), [])][:top_k]

    async def close(self):
        self.closed = True


def match(raw_id: str, score: float, text: Optional[str] = None, **metadata: Any) -> Dict[str, Any]:
    """Build a raw index match with ``original_text`` defaulting to a unique passage."""
    meta = {"original_text": text if text is not None else f"passage {raw_id}"}
    meta.update(metadata)
    return {"id": raw_id, "score": score, "metadata": meta}


def enhancer_transport(variants: Optional[List[str]] = None, status_code: int = 200) -> httpx.MockTransport:
    """Mock enhancement endpoint; ``variants=None`` simulates an unreachable gateway."""

    def handler(request: httpx.Request) -> httpx.Response:
        if variants is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status_code, json={"improvedQueries": variants})

    return httpx.MockTransport(handler)


@pytest.fixture
def make_kb():
    """Factory for KnowledgeBase registry entries."""

    def _make(kb_id: str = "classic", rank: int = 1, **overrides: Any) -> KnowledgeBase:
        data: Dict[str, Any] = {
            "id": kb_id,
            "display_name": f"{kb_id.title()} sources",
            "priority_rank": rank,
            "index_name": f"{kb_id}-index",
            "score_threshold": 0.4,
            "result_cap": 6,
            "top_k": 5,
            "tag": kb_id[:3].upper(),
        }
        data.update(overrides)
        return KnowledgeBase(**data)

    return _make


@pytest.fixture
def make_candidate():
    """Factory for Candidate objects."""

    def _make(
        raw_id: str,
        score: float,
        text: Optional[str] = None,
        kb_id: str = "classic",
        namespace: Optional[str] = None,
        **metadata: Any,
    ) -> Candidate:
        text = text if text is not None else f"passage {raw_id}"
        raw_meta = {"original_text": text}
        raw_meta.update(metadata)
        return Candidate(
            raw_id=raw_id,
            text=text,
            score=score,
            knowledge_base_id=kb_id,
            namespace=namespace,
            metadata=CandidateMetadata.from_raw(raw_meta),
        )

    return _make


@pytest.fixture
def scripted_backend():
    """Factory for ScriptedIndexBackend."""
    return ScriptedIndexBackend


@pytest.fixture
def make_match():
    return match


@pytest.fixture
def make_enhancer_transport():
    return enhancer_transport


@pytest.fixture
def make_engine():
    """Factory wiring a ContextEngine to a scripted backend and mock enhancer."""

    def _make(
        bases: List[KnowledgeBase],
        backend: VectorIndexBackend,
        variants: Optional[List[str]] = None,
        arity: int = 3,
        embedder=None,
        store=None,
        policy: str = "abort",
    ) -> ContextEngine:
        enhancer = QueryEnhancementClient(
            url="http://enhancer.test/improve-queries",
            arity=arity,
            transport=enhancer_transport(variants),
        )
        return ContextEngine(
            knowledge_bases=bases,
            enhancer=enhancer,
            embedder=embedder or StubEmbedder(dimension=16),
            index_client=VectorIndexClient(backend),
            store=store if store is not None else InMemoryContextStore(),
            embedding_failure_policy=policy,
        )

    return _make


@pytest.fixture
def kb_registry_file(tmp_path):
    """Write a registry JSON file and return its path."""

    def _write(entries: List[Dict[str, Any]]) -> str:
        path = tmp_path / "knowledge_bases.json"
        path.write_text(json.dumps(entries), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def ci_environment():
    """Check if running in CI environment."""
    ci_vars = ["CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_HOME"]
    return any(os.getenv(var) for var in ci_vars)
