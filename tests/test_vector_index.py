"""
Test the vector index client and its backends.

Tests cover:
- top_k headroom and text extraction
- Namespace fan-out with failure isolation
- HTTP backend request shape and error mapping
- In-memory cosine backend
"""

import json

import httpx
import numpy as np
import pytest

from kbcontext.errors import IndexBackendError, NamespaceSearchError
from kbcontext.vector_index import (
    HTTPIndexBackend,
    InMemoryIndexBackend,
    VectorIndexClient,
    create_index_backend,
)

VEC = np.ones(4, dtype=np.float32)


class TestVectorIndexClientSearch:
    """Single-namespace search behavior."""

    @pytest.mark.asyncio
    async def test_requests_double_top_k(self, make_kb, scripted_backend):
        backend = scripted_backend()
        client = VectorIndexClient(backend)
        await client.search(make_kb(), None, VEC, top_k=3)
        assert backend.calls == [("classic-index", None, 6)]

    @pytest.mark.asyncio
    async def test_prefers_original_text(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [
            {"id": "a", "score": 0.9, "metadata": {"original_text": "canonical", "text": "generic"}},
        ]})
        results = await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert results[0].text == "canonical"

    @pytest.mark.asyncio
    async def test_falls_back_to_text_field(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [
            {"id": "a", "score": 0.9, "metadata": {"text": "generic"}},
        ]})
        results = await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert results[0].text == "generic"

    @pytest.mark.asyncio
    async def test_empty_text_dropped(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [
            {"id": "a", "score": 0.9, "metadata": {"original_text": "   "}},
            {"id": "b", "score": 0.8, "metadata": {}},
            {"id": "c", "score": 0.7, "metadata": {"text": "kept"}},
        ]})
        results = await VectorIndexClient(backend).search(make_kb(), None, VEC, 5)
        assert [c.raw_id for c in results] == ["c"]

    @pytest.mark.asyncio
    async def test_candidate_fields(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", "ns1"): [
            {"id": "a", "score": 0.55, "metadata": {"text": "t", "source_file": "Kitab.pdf", "block_id": 7}},
        ]})
        kb = make_kb(namespaces=["ns1"])
        (c,) = await VectorIndexClient(backend).search(kb, "ns1", VEC, 2, query="variant one")
        assert c.raw_id == "a"
        assert c.score == pytest.approx(0.55)
        assert c.knowledge_base_id == "classic"
        assert c.namespace == "ns1"
        assert c.query == "variant one"
        assert c.metadata.source_file == "Kitab.pdf"
        assert c.metadata.get("block_id") == 7

    @pytest.mark.asyncio
    async def test_top_level_fields_folded_into_metadata(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [
            {"id": "a", "score": 0.9, "text": "from top level", "end_page": 12},
        ]})
        (c,) = await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert c.text == "from top level"
        assert c.metadata.get("end_page") == 12

    @pytest.mark.asyncio
    async def test_missing_id_and_score(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [{"metadata": {"text": "x"}}]})
        (c,) = await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert c.raw_id.startswith("unknown-id-")
        assert c.score == 0.0

    @pytest.mark.asyncio
    async def test_backend_failure_wrapped(self, make_kb, scripted_backend):
        backend = scripted_backend(failing=[("classic-index", None)])
        with pytest.raises(NamespaceSearchError) as exc_info:
            await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert exc_info.value.knowledge_base_id == "classic"
        assert isinstance(exc_info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_non_dict_metadata_ignored(self, make_kb, scripted_backend):
        backend = scripted_backend({("classic-index", None): [
            {"id": "z", "score": 0.9, "metadata": "oops", "text": "top-level text"},
        ]})
        candidates = await VectorIndexClient(backend).search(make_kb(), None, VEC, 2)
        assert [c.raw_id for c in candidates] == ["z"]
        assert candidates[0].text == "top-level text"

    @pytest.mark.asyncio
    async def test_malformed_namespace_degrades_to_empty(self, make_kb, scripted_backend, make_match):
        backend = scripted_backend({
            ("classic-index", "ok"): [make_match("a", 0.8)],
            ("classic-index", "bad"): [{"id": "z", "score": 0.9, "metadata": "oops"}],
        })
        kb = make_kb(namespaces=["ok", "bad"])
        hits = await VectorIndexClient(backend).search_knowledge_base(kb, VEC)
        assert [c.raw_id for c in hits.candidates] == ["a"]
        assert hits.failed_namespaces == []


class TestSearchKnowledgeBase:
    """Namespace fan-out for one knowledge base."""

    @pytest.mark.asyncio
    async def test_merges_in_namespace_order(self, make_kb, scripted_backend, make_match):
        backend = scripted_backend({
            ("classic-index", "ns1"): [make_match("a", 0.5)],
            ("classic-index", "ns2"): [make_match("b", 0.9)],
        })
        kb = make_kb(namespaces=["ns1", "ns2"])
        hits = await VectorIndexClient(backend).search_knowledge_base(kb, VEC)
        assert [c.raw_id for c in hits.candidates] == ["a", "b"]
        assert hits.failed_namespaces == []

    @pytest.mark.asyncio
    async def test_failing_namespace_isolated(self, make_kb, scripted_backend, make_match):
        """One namespace failing does not reduce sibling contributions."""
        matches = {
            ("classic-index", "ns1"): [make_match("a", 0.5), make_match("b", 0.6)],
            ("classic-index", "ns2"): [make_match("c", 0.9)],
        }
        kb = make_kb(namespaces=["ns1", "ns2"])

        healthy = await VectorIndexClient(scripted_backend(matches)).search_knowledge_base(kb, VEC)
        degraded = await VectorIndexClient(
            scripted_backend(matches, failing=[("classic-index", "ns2")])
        ).search_knowledge_base(kb, VEC)

        ns1_healthy = [c.raw_id for c in healthy.candidates if c.namespace == "ns1"]
        assert [c.raw_id for c in degraded.candidates] == ns1_healthy
        assert degraded.failed_namespaces == ["ns2"]

    @pytest.mark.asyncio
    async def test_all_namespaces_fail(self, make_kb, scripted_backend):
        kb = make_kb(namespaces=["ns1", "ns2"])
        backend = scripted_backend(failing=[("classic-index", "ns1"), ("classic-index", "ns2")])
        hits = await VectorIndexClient(backend).search_knowledge_base(kb, VEC)
        assert hits.candidates == []
        assert hits.failed_namespaces == ["ns1", "ns2"]

    @pytest.mark.asyncio
    async def test_uses_kb_top_k_by_default(self, make_kb, scripted_backend):
        backend = scripted_backend()
        await VectorIndexClient(backend).search_knowledge_base(make_kb(top_k=4), VEC)
        assert backend.calls == [("classic-index", None, 8)]


class TestHTTPIndexBackend:
    """Pinecone-style /query requests."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["api_key"] = request.headers.get("Api-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"matches": [{"id": "a", "score": 0.7, "metadata": {"text": "x"}}]})

        backend = HTTPIndexBackend(
            url_template="https://{index_name}.example.test/",
            api_key="k-123",
            transport=httpx.MockTransport(handler),
        )
        matches = await backend.query("risale", np.array([0.5, 0.5], dtype=np.float32), 4, namespace="Sozler")
        await backend.close()

        assert matches[0]["id"] == "a"
        assert seen["url"] == "https://risale.example.test/query"
        assert seen["api_key"] == "k-123"
        assert seen["body"]["topK"] == 4
        assert seen["body"]["namespace"] == "Sozler"
        assert seen["body"]["includeMetadata"] is True
        assert seen["body"]["vector"] == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_namespace_omitted_when_none(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"matches": []})

        backend = HTTPIndexBackend(url_template="http://{index_name}", api_key="", transport=httpx.MockTransport(handler))
        assert await backend.query("cls", VEC, 2) == []
        assert "namespace" not in bodies[0]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        backend = HTTPIndexBackend(
            url_template="http://{index_name}",
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        with pytest.raises(IndexBackendError):
            await backend.query("cls", VEC, 2)

    @pytest.mark.asyncio
    async def test_non_list_matches_raises(self):
        backend = HTTPIndexBackend(
            url_template="http://{index_name}",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"matches": "nope"})),
        )
        with pytest.raises(IndexBackendError):
            await backend.query("cls", VEC, 2)

    @pytest.mark.asyncio
    async def test_failure_surfaces_as_namespace_error_through_client(self, make_kb):
        backend = HTTPIndexBackend(
            url_template="http://{index_name}",
            transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        )
        kb = make_kb(namespaces=["a", "b"])
        hits = await VectorIndexClient(backend).search_knowledge_base(kb, VEC)
        assert hits.candidates == []
        assert hits.failed_namespaces == ["a", "b"]


class TestInMemoryIndexBackend:
    """Cosine similarity search."""

    @pytest.mark.asyncio
    async def test_ranks_by_cosine(self):
        backend = InMemoryIndexBackend()
        backend.upsert("idx", "x", np.array([1.0, 0.0]), {"text": "x"})
        backend.upsert("idx", "y", np.array([0.0, 1.0]), {"text": "y"})
        backend.upsert("idx", "xy", np.array([1.0, 1.0]), {"text": "xy"})

        matches = await backend.query("idx", np.array([1.0, 0.1]), top_k=2)
        assert [m["id"] for m in matches] == ["x", "xy"]
        assert matches[0]["score"] == pytest.approx(0.995, abs=1e-3)

    @pytest.mark.asyncio
    async def test_namespaces_are_separate(self):
        backend = InMemoryIndexBackend()
        backend.upsert("idx", "a", np.array([1.0, 0.0]), {"text": "a"}, namespace="ns1")
        assert await backend.query("idx", np.array([1.0, 0.0]), 5, namespace="ns2") == []
        assert len(await backend.query("idx", np.array([1.0, 0.0]), 5, namespace="ns1")) == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces(self):
        backend = InMemoryIndexBackend()
        backend.upsert("idx", "a", np.array([1.0, 0.0]), {"text": "old"})
        backend.upsert("idx", "a", np.array([1.0, 0.0]), {"text": "new"})
        matches = await backend.query("idx", np.array([1.0, 0.0]), 5)
        assert len(matches) == 1
        assert matches[0]["metadata"]["text"] == "new"

    @pytest.mark.asyncio
    async def test_end_to_end_with_client(self, make_kb):
        backend = InMemoryIndexBackend()
        backend.upsert("classic-index", "a", np.array([1.0, 0.0]), {"original_text": "alpha"})
        results = await VectorIndexClient(backend).search(make_kb(), None, np.array([1.0, 0.0]), 1)
        assert [c.text for c in results] == ["alpha"]


class TestCreateIndexBackend:
    def test_memory_backend(self):
        assert isinstance(create_index_backend("memory"), InMemoryIndexBackend)

    def test_http_backend(self):
        assert isinstance(create_index_backend("http"), HTTPIndexBackend)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_index_backend("faiss")
