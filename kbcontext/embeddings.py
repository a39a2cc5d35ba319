"""
Async Embedding Gateway

Provides:
- HTTP embedding client with connection pooling and per-request deadline
- Deterministic stub embedder for offline development and CI
- Factory selecting the backend from EMBEDDINGS_BACKEND

Failures raise EmbeddingError; callers decide whether a failed variant
is skipped or aborts the request.
"""

from __future__ import annotations

import hashlib
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import numpy as np
from loguru import logger

from kbcontext import config as CFG
from kbcontext.errors import EmbeddingError
from kbcontext.logging_config import log_embedding


def _l2_normalize(vec: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec.astype(np.float32)


class BaseEmbedder(ABC):
    """Turns a text string into a fixed-dimension vector."""

    model: str = "unknown"

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Embed single text. Raises EmbeddingError on failure."""

    async def close(self) -> None:
        return None


# ============================================================================
# HTTP Embedding Client
# ============================================================================

class HTTPEmbeddingClient(BaseEmbedder):
    """Async HTTP client with connection pooling for embeddings."""

    def __init__(
        self,
        url: str = CFG.EMBEDDING_URL,
        model: str = CFG.EMBEDDING_MODEL,
        dimension: Optional[int] = CFG.EMBEDDING_DIM,
        max_connections: int = 20,
        max_keepalive: int = 10,
        timeout: float = CFG.EMBEDDING_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize embedding HTTP client.

        Args:
            url: Embedding endpoint URL
            model: Model name (for logging and error context)
            dimension: Expected vector dimension; None disables the check
            max_connections: Maximum concurrent connections
            max_keepalive: Maximum keepalive connections
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        self.url = url
        self.model = model
        self.dimension = dimension
        self.max_connections = max_connections
        self.max_keepalive = max_keepalive
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            limits = httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_keepalive,
            )
            self._client = httpx.AsyncClient(
                limits=limits,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
            logger.debug(
                f"Created async HTTP client for embeddings: "
                f"max_connections={self.max_connections}, "
                f"max_keepalive={self.max_keepalive}"
            )
        return self._client

    def _parse(self, data: object) -> np.ndarray:
        if not isinstance(data, dict) or not isinstance(data.get("embedding"), list):
            raise EmbeddingError("Embedding response missing 'embedding' list", model=self.model)
        values = data["embedding"]
        if not values:
            raise EmbeddingError("Embedding response has an empty vector", model=self.model)
        try:
            embedding = np.asarray(values, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise EmbeddingError(f"Embedding values are not numeric: {e}", model=self.model) from e
        if embedding.ndim != 1:
            raise EmbeddingError(f"Expected 1D embedding, got {embedding.ndim}D", model=self.model)

        declared = data.get("dimension")
        if declared is not None and not isinstance(declared, int):
            raise EmbeddingError(f"Declared dimension is not an integer: {declared!r}", model=self.model)
        if declared is not None and declared != embedding.shape[0]:
            raise EmbeddingError(
                f"Declared dimension {declared} != vector length {embedding.shape[0]}",
                model=self.model,
            )
        if self.dimension is not None and embedding.shape[0] != self.dimension:
            raise EmbeddingError(
                f"Expected dimension {self.dimension}, got {embedding.shape[0]}",
                model=self.model,
            )
        return _l2_normalize(embedding)

    async def embed(self, text: str) -> np.ndarray:
        """
        Embed single text via the gateway.

        Args:
            text: Text to embed

        Returns:
            Embedding vector (L2-normalized)

        Raises:
            EmbeddingError: On transport failure, non-success status or malformed body
        """
        client = await self._get_client()
        t0 = time.time()
        try:
            resp = await client.post(self.url, json={"text": text.strip()})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Embedding failed for text: {e}")
            raise EmbeddingError(f"Failed to embed text: {e}", model=self.model, cause=e) from e

        embedding = self._parse(data)
        log_embedding(text, int((time.time() - t0) * 1000))
        return embedding

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Closed async HTTP client for embeddings")


# ============================================================================
# Stub Embedder
# ============================================================================

class StubEmbedder(BaseEmbedder):
    """Lightweight stub embedder for offline runs and CI.

    Generates deterministic embeddings by hashing input text, so the same
    text always maps to the same vector across processes.
    """

    def __init__(self, dimension: int = 384):
        self.model = "stub"
        self.dimension = dimension

    def encode(self, text: str) -> np.ndarray:
        seed = int.from_bytes(hashlib.sha256(text.strip().encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        embedding = np.clip(rng.standard_normal(self.dimension), -5.0, 5.0)
        return _l2_normalize(embedding.astype(np.float32))

    async def embed(self, text: str) -> np.ndarray:
        return self.encode(text)


def create_embedder(backend: Optional[str] = None) -> BaseEmbedder:
    """Build the embedder selected by EMBEDDINGS_BACKEND."""
    backend = (backend or CFG.EMBEDDINGS_BACKEND).lower()
    if backend == "stub":
        logger.info("Embeddings: deterministic stub backend")
        return StubEmbedder()
    logger.info(f"Embeddings: HTTP gateway at {CFG.EMBEDDING_URL}, model {CFG.EMBEDDING_MODEL}")
    return HTTPEmbeddingClient()
