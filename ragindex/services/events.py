# =============================================================================
# Pipeline Events — Structured Progress & Metrics Emission
# =============================================================================
#
# The orchestrators report stage boundaries ("indexing.chunked",
# "embedding.batch_failed", "retrieval.reranked", ...) to an EventSink that
# the caller injects. There is no process-wide counter map: whoever wants
# metrics plugs in a sink that forwards to their metrics system.
#
#   EventSink (Protocol)
#   ├── LoggingEventSink   — default, writes each event to the logger
#   ├── RecordingEventSink — keeps events in memory (tests, progress UIs)
#   └── NullEventSink      — discards everything
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass
class PipelineEvent:
    """A single named event with its structured payload."""

    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventSink(Protocol):
    """Anything with an `emit(name, **fields)` method."""

    def emit(self, name: str, **fields: Any) -> None:
        ...


class LoggingEventSink:
    """Write events to this module's logger at `level`."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def emit(self, name: str, **fields: Any) -> None:
        logger.log(self._level, "event=%s %s", name, fields)


class RecordingEventSink:
    """Collect events in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def emit(self, name: str, **fields: Any) -> None:
        self.events.append(PipelineEvent(name=name, fields=fields))

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def first(self, name: str) -> PipelineEvent | None:
        return next((e for e in self.events if e.name == name), None)


class NullEventSink:
    def emit(self, name: str, **fields: Any) -> None:
        return None
