"""
Staged progress events for observers of a search request.

Stages always arrive in the same order; a reporter without a callback is
a no-op so the pipeline runs identically with or without an observer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class ProgressStage(str, Enum):
    """Pipeline stages reported to observers, in emission order."""
    QUERY_ENHANCEMENT_STARTED = "query_enhancement_started"
    QUERIES_ENHANCED = "queries_enhanced"
    SEARCH_DISPATCHED = "search_dispatched"
    SEARCH_COMPLETED = "search_completed"
    CONTEXT_READY = "context_ready"


STAGE_ORDER: List[ProgressStage] = list(ProgressStage)


@dataclass
class ProgressEvent:
    """One emitted stage with its payload."""
    stage: ProgressStage
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Emits stages to an optional observer, enforcing strictly increasing order."""

    def __init__(self, callback: Optional[ProgressCallback] = None, request_id: Optional[str] = None):
        self.callback = callback
        self.request_id = request_id
        self._last_index = -1

    @property
    def enabled(self) -> bool:
        return self.callback is not None

    def emit(self, stage: ProgressStage, **data: Any) -> None:
        """
        Report ``stage`` to the observer.

        Raises:
            ValueError: If ``stage`` does not come after the last emitted stage
        """
        index = STAGE_ORDER.index(stage)
        if index <= self._last_index:
            raise ValueError(
                f"Progress stage {stage.value} emitted after {STAGE_ORDER[self._last_index].value}"
            )
        self._last_index = index

        if self.callback is None:
            return
        try:
            self.callback(ProgressEvent(stage=stage, data=data))
        except Exception as e:
            logger.warning(f"Progress observer failed at {stage.value} (request {self.request_id}): {e}")
