from __future__ import annotations

"""
Centralized logging configuration for the context engine.

Provides unified logging across all modules using loguru.
Supports both console and file output with structured logging.
"""

import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from loguru import logger
from kbcontext import config as CFG
from kbcontext.config import redact_secrets


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure unified logging for the whole engine.

    This should be called once at application startup.
    """
    level = (level or CFG.LOG_LEVEL).upper()
    log_file = log_file if log_file is not None else CFG.LOG_FILE

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level,
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} - "
                "{message}"
            ),
            level=level,
            rotation="500 MB",
            retention="7 days",
            compression="zip",
        )

    logger.info(f"Logging configured: level={level}")


def log_structured(event_type: str, data: Dict[str, Any], level: str = "info") -> None:
    """
    Log structured data as JSON.

    Args:
        event_type: Type of event (e.g., 'search_completed', 'error_occurred')
        data: Dictionary of data to log
        level: Log level (debug, info, warning, error, critical)
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        **data,
    }

    if "error" in log_entry and log_entry["error"]:
        log_entry["error"] = redact_secrets(str(log_entry["error"]))

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_entry, default=str))


def log_search(
    request_id: str,
    query: str,
    latency_ms: int,
    counts_by_knowledge_base: Dict[str, int],
    warnings: int = 0,
) -> None:
    """Log a completed fan-out search."""
    log_structured(
        "search_completed",
        {
            "request_id": request_id,
            "query": query[:100],  # Truncate long queries
            "latency_ms": latency_ms,
            "counts": counts_by_knowledge_base,
            "warnings": warnings,
        },
    )


def log_namespace_failure(
    knowledge_base_id: str,
    namespace: Optional[str],
    error: Exception,
) -> None:
    """Log one namespace search that degraded to an empty result."""
    log_structured(
        "namespace_search_failed",
        {
            "knowledge_base": knowledge_base_id,
            "namespace": namespace,
            "error": str(error),
        },
        level="warning",
    )


def log_embedding(query: str, latency_ms: int) -> None:
    """Log an embedding operation."""
    log_structured(
        "embedding_generated",
        {
            "query": query[:100],
            "latency_ms": latency_ms,
        },
        level="debug",
    )


def log_context_assembled(message_id: str, citation_count: int, block_chars: int) -> None:
    """Log a context block stored under a fresh message id."""
    log_structured(
        "context_assembled",
        {
            "message_id": message_id,
            "citations": citation_count,
            "block_chars": block_chars,
        },
    )


def log_error(
    error_type: str,
    message: str,
    request_id: Optional[str] = None,
    level: str = "error",
    **kwargs: Any,
) -> None:
    """Log an error with context."""
    log_structured(
        "error_occurred",
        {
            "error_type": error_type,
            "message": message,
            "request_id": request_id,
            **kwargs,
        },
        level=level,
    )
