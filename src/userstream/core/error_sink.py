"""
Error sink for the ingestion pipeline.

Decoder and Persister report non-fatal failures here instead of raising.
Reporting never suspends the reporter: the sink's channel drops its oldest
entry when full and counts the drop.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Optional

import structlog

from .channel import Channel
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

HISTORY_SIZE = 100


class ErrorKind(str, Enum):
    """Failure categories reported by the pipeline stages."""

    DECODE = "decode"
    ENCRYPT = "encrypt"
    DUPLICATE = "duplicate"
    TIMEOUT = "timeout"
    STORE = "store"


@dataclass
class PipelineError:
    """A failure observed by a stage. Carries no control-flow meaning."""
    kind: ErrorKind
    cause: BaseException
    stage: str
    payload: Optional[Any] = None
    record_id: Optional[int] = None


@dataclass
class ErrorSinkStats:
    """Counters kept by the sink for health checks and tests."""
    counts: Dict[ErrorKind, int] = field(default_factory=dict)
    dropped: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class ErrorSink:
    """
    Dedicated consumer of the PipelineError stream.

    ``report`` is synchronous and non-blocking. ``run`` drains the channel
    until the last producer closes it.
    """

    def __init__(self, capacity: int, metrics: Optional[MetricsCollector] = None) -> None:
        self.channel: Channel[PipelineError] = Channel(capacity, name="errors", drop_oldest=True)
        self.metrics = metrics
        self.stats = ErrorSinkStats()
        self.history: Deque[PipelineError] = deque(maxlen=HISTORY_SIZE)

    def report(self, error: PipelineError) -> None:
        dropped_before = self.channel.dropped
        self.channel.put_nowait(error)
        self._account_drops(self.channel.dropped - dropped_before)

    async def close(self) -> None:
        dropped_before = self.channel.dropped
        await self.channel.close()
        self._account_drops(self.channel.dropped - dropped_before)

    def _account_drops(self, dropped: int) -> None:
        if not dropped:
            return
        self.stats.dropped += dropped
        logger.warning("Error sink full, dropped oldest errors", dropped=dropped)
        if self.metrics:
            self.metrics.record_dropped_errors(dropped)

    async def run(self) -> None:
        async for error in self.channel:
            self._record(error)
        logger.info("Error sink stopped", errors_total=self.stats.total, errors_dropped=self.stats.dropped)

    def _record(self, error: PipelineError) -> None:
        self.stats.counts[error.kind] = self.stats.counts.get(error.kind, 0) + 1
        self.history.append(error)

        if self.metrics:
            self.metrics.record_pipeline_error(error.kind.value)

        log = logger.warning if error.kind is ErrorKind.DUPLICATE else logger.error
        log(
            "Pipeline error",
            kind=error.kind.value,
            stage=error.stage,
            record_id=error.record_id,
            error=str(error.cause),
            error_type=type(error.cause).__name__,
        )

    def count(self, kind: ErrorKind) -> int:
        return self.stats.counts.get(kind, 0)
