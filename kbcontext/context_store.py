from __future__ import annotations

"""
Per-request citation store.

Each assembled context is stored once under a freshly minted message id so
individual citations can be explained or re-displayed later.

Design:
- Write-once: a second put for the same id raises CacheError
- A miss is not an error: get returns an empty list
- InMemoryContextStore is unbounded (entries live for the whole process)
- LRUContextStore bounds memory with LRU eviction and a per-entry TTL
- Thread-safe with lock-based synchronization
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from threading import Lock
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from kbcontext import config as CFG
from kbcontext.errors import CacheError
from kbcontext.models import Citation


class ContextStore(ABC):
    """Key-value capability mapping message ids to citation lists."""

    @abstractmethod
    def put(self, message_id: str, citations: Sequence[Citation]) -> None:
        """Store citations under a new id. Raises CacheError if the id exists."""

    @abstractmethod
    def get(self, message_id: str) -> List[Citation]:
        """Return a copy of the stored citations, or [] when unknown."""

    @abstractmethod
    def has(self, message_id: str) -> bool:
        """True when ``message_id`` holds an entry."""

    def stats(self) -> Dict[str, int]:
        return {}


class InMemoryContextStore(ContextStore):
    """Unbounded process-local store."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[Citation, ...]] = {}
        self.lock = Lock()

    def put(self, message_id: str, citations: Sequence[Citation]) -> None:
        with self.lock:
            if message_id in self._entries:
                raise CacheError(
                    f"Context already stored for message {message_id}",
                    context={"message_id": message_id},
                )
            self._entries[message_id] = tuple(citations)

    def get(self, message_id: str) -> List[Citation]:
        with self.lock:
            return list(self._entries.get(message_id, ()))

    def has(self, message_id: str) -> bool:
        with self.lock:
            return message_id in self._entries

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {"size": len(self)}


class _StoreEntry:
    """Stored citations with their creation time."""

    def __init__(self, citations: Tuple[Citation, ...], ttl: int):
        self.citations = citations
        self.created_at = time.time()
        self.ttl = ttl

    def is_expired(self) -> bool:
        return self.ttl > 0 and (time.time() - self.created_at) > self.ttl

    def __repr__(self) -> str:
        age_sec = time.time() - self.created_at
        return f"_StoreEntry(citations={len(self.citations)}, age={age_sec:.1f}s, ttl={self.ttl}s)"


class LRUContextStore(ContextStore):
    """
    Bounded store with LRU eviction and TTL-based expiration.

    An expired or evicted id behaves like an unknown id.
    """

    def __init__(self, max_size: int = 10000, ttl_seconds: int = 86400):
        """
        Initialize store.

        Args:
            max_size: Maximum number of entries before LRU eviction
            ttl_seconds: Entry lifetime in seconds; 0 disables expiry
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[str, _StoreEntry]" = OrderedDict()
        self.lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _live_entry(self, message_id: str) -> Optional[_StoreEntry]:
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        if entry.is_expired():
            del self._entries[message_id]
            logger.debug(f"Context store entry expired: {message_id}")
            return None
        return entry

    def put(self, message_id: str, citations: Sequence[Citation]) -> None:
        with self.lock:
            if self._live_entry(message_id) is not None:
                raise CacheError(
                    f"Context already stored for message {message_id}",
                    context={"message_id": message_id},
                )
            self._entries[message_id] = _StoreEntry(tuple(citations), self.ttl_seconds)

            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Context store eviction: {evicted}, size={len(self._entries)}")

    def get(self, message_id: str) -> List[Citation]:
        with self.lock:
            entry = self._live_entry(message_id)
            if entry is None:
                self.misses += 1
                return []
            self._entries.move_to_end(message_id)
            self.hits += 1
            return list(entry.citations)

    def has(self, message_id: str) -> bool:
        with self.lock:
            return self._live_entry(message_id) is not None

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self.lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }


def create_context_store(kind: Optional[str] = None) -> ContextStore:
    """Build the store selected by CONTEXT_STORE."""
    kind = (kind or CFG.CONTEXT_STORE).lower()
    if kind == "lru":
        logger.info(
            f"Context store: LRU (max_size={CFG.CONTEXT_STORE_MAX_SIZE}, "
            f"ttl={CFG.CONTEXT_STORE_TTL_SECONDS}s)"
        )
        return LRUContextStore(CFG.CONTEXT_STORE_MAX_SIZE, CFG.CONTEXT_STORE_TTL_SECONDS)
    logger.info("Context store: unbounded in-memory")
    return InMemoryContextStore()
