"""
Test the embedding gateway and the deterministic stub embedder.
"""

import httpx
import numpy as np
import pytest

from kbcontext.embeddings import HTTPEmbeddingClient, StubEmbedder, create_embedder
from kbcontext.errors import EmbeddingError


def _client(handler, dimension=4):
    return HTTPEmbeddingClient(
        url="http://embed.test/embed",
        model="test-model",
        dimension=dimension,
        transport=httpx.MockTransport(handler),
    )


class TestHTTPEmbeddingClient:
    """Gateway parsing and failure behavior."""

    @pytest.mark.asyncio
    async def test_embed_returns_normalized_vector(self):
        client = _client(lambda r: httpx.Response(200, json={"embedding": [3.0, 4.0, 0.0, 0.0], "dimension": 4}))
        vec = await client.embed("  prayer  ")
        await client.close()
        assert vec.dtype == np.float32
        assert vec.shape == (4,)
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)
        assert vec[0] == pytest.approx(0.6, abs=1e-5)

    @pytest.mark.asyncio
    async def test_request_body_is_stripped_text(self):
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200, json={"embedding": [1, 0, 0, 0]})

        client = _client(handler)
        await client.embed("  zakat ")
        assert b'"zakat"' in bodies[0]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = _client(lambda r: httpx.Response(500, json={"error": "down"}))
        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed("prayer")
        assert exc_info.value.error_code == "EMBEDDING_ERROR"

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EmbeddingError):
            await _client(handler).embed("prayer")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"vector": [1, 2, 3, 4]},
        {"embedding": []},
        {"embedding": "1,2,3,4"},
        {"embedding": [[1, 2], [3, 4]]},
        {"embedding": ["a", "b", "c", "d"]},
        [1, 2, 3, 4],
    ])
    async def test_malformed_body_raises(self, body):
        client = _client(lambda r: httpx.Response(200, json=body))
        with pytest.raises(EmbeddingError):
            await client.embed("prayer")

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        client = _client(lambda r: httpx.Response(200, content=b"not json"))
        with pytest.raises(EmbeddingError):
            await client.embed("prayer")

    @pytest.mark.asyncio
    async def test_declared_dimension_mismatch_raises(self):
        client = _client(lambda r: httpx.Response(200, json={"embedding": [1, 0, 0, 0], "dimension": 3}))
        with pytest.raises(EmbeddingError, match="Declared dimension"):
            await client.embed("prayer")

    @pytest.mark.asyncio
    async def test_expected_dimension_mismatch_raises(self):
        client = _client(lambda r: httpx.Response(200, json={"embedding": [1, 0, 0]}))
        with pytest.raises(EmbeddingError, match="Expected dimension"):
            await client.embed("prayer")

    @pytest.mark.asyncio
    async def test_dimension_check_disabled(self):
        client = _client(lambda r: httpx.Response(200, json={"embedding": [1, 0, 0]}), dimension=None)
        vec = await client.embed("prayer")
        assert vec.shape == (3,)


class TestStubEmbedder:
    """Deterministic hash-seeded vectors."""

    def test_deterministic(self):
        a = StubEmbedder(dimension=32).encode("prayer")
        b = StubEmbedder(dimension=32).encode("prayer")
        np.testing.assert_array_equal(a, b)

    def test_different_texts_differ(self):
        emb = StubEmbedder(dimension=32)
        assert not np.allclose(emb.encode("prayer"), emb.encode("fasting"))

    def test_unit_norm(self):
        vec = StubEmbedder(dimension=64).encode("charity")
        assert vec.shape == (64,)
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.asyncio
    async def test_async_embed_matches_encode(self):
        emb = StubEmbedder(dimension=8)
        np.testing.assert_array_equal(await emb.embed("hajj"), emb.encode("hajj"))


def test_create_embedder_selects_backend():
    assert isinstance(create_embedder("stub"), StubEmbedder)
    assert isinstance(create_embedder("http"), HTTPEmbeddingClient)
