from __future__ import annotations

"""
Query enhancement gateway.

Turns one user query plus conversation history into a fixed number of
search-query variants (translation, expansion, re-angling) by calling an
external enhancement service. Never fails: any transport or parse problem
degrades to N copies of the original query.
"""

import re
from typing import Any, List, Optional

import httpx
from loguru import logger

from kbcontext import config as CFG
from kbcontext.errors import TransientGatewayError


def _extract_queries(data: Any) -> List[Any]:
    """Pull the variant list out of the response body, whatever its shape."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("improvedQueries", "improved_queries", "queries", "questions"):
            value = data.get(key)
            if isinstance(value, list):
                return value
        # {"1": "...", "2": "...", "3": "..."}
        numeric = sorted((k for k in data if re.fullmatch(r"\d+", str(k))), key=int)
        if numeric:
            return [data[k] for k in numeric]
    raise TransientGatewayError(f"Unrecognised enhancement response shape: {type(data).__name__}")


def normalize_variants(variants: List[Any], original: str, arity: int) -> List[str]:
    """
    Force a variant list to exactly ``arity`` entries.

    Blank or non-string entries are dropped. A single variant is repeated,
    a short list is padded with the original query, a long one is truncated.
    """
    cleaned = [v.strip() for v in variants if isinstance(v, str) and v.strip()]
    if not cleaned:
        return [original] * arity
    if len(cleaned) == 1:
        return cleaned * arity
    if len(cleaned) < arity:
        return cleaned + [original] * (arity - len(cleaned))
    return cleaned[:arity]


class QueryEnhancementClient:
    """Async client for the query enhancement service."""

    def __init__(
        self,
        url: str = CFG.QUERY_ENHANCER_URL,
        arity: int = CFG.QUERY_VARIANTS,
        timeout: float = CFG.QUERY_ENHANCER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize enhancement client.

        Args:
            url: Full URL of the enhancement endpoint
            arity: Number of variants every call returns
            timeout: Per-request deadline in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        if arity < 1:
            raise ValueError("arity must be >= 1")
        self.url = url
        self.arity = arity
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def _request(self, query: str, history: str, model_hint: str) -> List[str]:
        client = await self._get_client()
        payload = {"query": query, "history": history, "modelHint": model_hint}
        try:
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except Exception as e:
            raise TransientGatewayError(f"Query enhancement call failed: {e}", cause=e) from e
        return normalize_variants(_extract_queries(data), query, self.arity)

    async def improve_queries(self, query: str, history: str = "", model_hint: str = "") -> List[str]:
        """
        Produce exactly ``arity`` search variants for ``query``.

        Returns:
            List of variants; N copies of ``query`` when the gateway fails
        """
        try:
            variants = await self._request(query, history or "", model_hint or "")
        except TransientGatewayError as e:
            logger.warning(f"Query enhancement degraded to original query: {e}")
            return [query] * self.arity
        logger.debug(f"Enhanced query into {len(variants)} variants: {variants}")
        return variants

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
