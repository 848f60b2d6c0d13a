"""
Ingestion pipeline orchestrator.

Wires the stages together with bounded channels:

    source -> [decoder_input] -> Decoder -> [persister_input] -> Persister
                                    \\                              /
                                     `------> [errors] -> ErrorSink

Lifecycle: INIT -> RUNNING -> DRAINING -> STOPPED. Draining starts only when
the ingestion source ends its subscription. Close signals then cascade one
stage at a time: the pump closes the decoder input, the decoder closes the
persister input, the persister closes the error channel. STOPPED is reached
once every stage task has returned. In-flight writes are never cancelled.
A stage that dies has its input discarded and its output closed, so its
neighbours still finish.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..models.user import UserRecord
from .channel import Channel
from .decoder import BatchDecoder
from .error_sink import ErrorSink
from .exceptions import PipelineStateError
from .interfaces import IngestionSource, PIICipher, UserCache, UserStore
from .metrics import MetricsCollector
from .persister import DEFAULT_WRITE_TIMEOUT, RecordPersister

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 50
DEFAULT_ERROR_BUFFER_SIZE = 10


class PipelineState(str, Enum):
    """Orchestrator lifecycle states."""

    INIT = "init"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class IngestionPipeline:
    """
    Runs the Decoder, Persister and Error Sink as long-lived asyncio tasks.

    Each stage is a single task consuming its channel in arrival order. A
    full channel suspends its producer, so a slow store stalls the decoder,
    which stalls consumption from the source.
    """

    def __init__(
        self,
        source: IngestionSource,
        store: UserStore,
        cache: UserCache,
        cipher: PIICipher,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        error_buffer_size: int = DEFAULT_ERROR_BUFFER_SIZE,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.source = source
        self.metrics = metrics
        self.error_sink = ErrorSink(error_buffer_size, metrics=metrics)
        self.decoder = BatchDecoder(self.error_sink, metrics=metrics)
        self.persister = RecordPersister(
            store=store,
            cache=cache,
            cipher=cipher,
            error_sink=self.error_sink,
            write_timeout=write_timeout,
            metrics=metrics,
        )
        self.state = PipelineState.INIT
        self._tasks: List[asyncio.Task[None]] = []
        self._decoder_input: Optional[Channel[bytes]] = None
        self._persister_input: Optional[Channel[List[UserRecord]]] = None
        self._source_closed = False
        # Stage name -> (inbox, outbox), used to unwedge neighbours of a dead stage
        self._links: Dict[str, Tuple[Optional[Channel[Any]], Optional[Channel[Any]]]] = {}
        self.failed_stages: List[str] = []

        logger.info("Ingestion pipeline initialized", write_timeout=write_timeout)

    @property
    def is_running(self) -> bool:
        return self.state in (PipelineState.RUNNING, PipelineState.DRAINING)

    @property
    def tasks(self) -> Tuple["asyncio.Task[None]", ...]:
        return tuple(self._tasks)

    async def start(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        """Spawn the stages and begin pulling from the ingestion source."""
        if self.state is not PipelineState.INIT:
            raise PipelineStateError(
                "pipeline can only be started once",
                details={"state": self.state.value},
            )

        self._decoder_input = Channel(buffer_size, name="decoder_input")
        self._persister_input = Channel(buffer_size, name="persister_input")

        self._tasks = [
            asyncio.create_task(self.error_sink.run(), name="error_sink"),
            asyncio.create_task(self.persister.run(self._persister_input), name="persister"),
            asyncio.create_task(
                self.decoder.run(self._decoder_input, self._persister_input),
                name="decoder",
            ),
            asyncio.create_task(self._pump(self._decoder_input), name="source_pump"),
        ]
        self._links = {
            "error_sink": (self.error_sink.channel, None),
            "persister": (self._persister_input, self.error_sink.channel),
            "decoder": (self._decoder_input, self._persister_input),
            "source_pump": (None, self._decoder_input),
        }
        for task in self._tasks:
            task.add_done_callback(self._on_stage_done)

        self.state = PipelineState.RUNNING
        if self.metrics:
            self.metrics.set_pipeline_running(True)
        logger.info("Ingestion pipeline started", buffer_size=buffer_size)

    async def _pump(self, decoder_input: Channel[bytes]) -> None:
        try:
            async for delivery in self.source.subscribe():
                body = delivery.body
                if not body:
                    continue
                await decoder_input.put(body)
        except Exception as e:
            # A broken source ends ingestion the same way a closed one does
            logger.error(
                "Ingestion source failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            if self.state is PipelineState.RUNNING:
                self.state = PipelineState.DRAINING
            logger.info("Ingestion source closed, draining pipeline")
            await decoder_input.close()

    async def wait(self) -> None:
        """Block until every stage has exited, then release the source."""
        if self.state is PipelineState.STOPPED:
            return
        if self.state is PipelineState.INIT:
            raise PipelineStateError("pipeline was never started")

        # Stage failures are logged and isolated by _on_stage_done
        await asyncio.gather(*self._tasks, return_exceptions=True)

        await self._close_source()
        if self.state is not PipelineState.STOPPED:
            self.state = PipelineState.STOPPED
            if self.metrics:
                self.metrics.set_pipeline_running(False)
            logger.info(
                "Ingestion pipeline stopped",
                errors_total=self.error_sink.stats.total,
                errors_dropped=self.error_sink.stats.dropped,
            )

    async def stop(self) -> None:
        """
        Close the source and drain in-flight work to completion.

        Safe to call more than once. A pipeline that was never started goes
        straight to STOPPED.
        """
        if self.state is PipelineState.STOPPED:
            return
        if self.state is PipelineState.INIT:
            self.state = PipelineState.STOPPED
            await self._close_source()
            return

        await self._close_source()
        await self.wait()

    async def run(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        """Start and block until the source is exhausted and the stages have drained."""
        await self.start(buffer_size)
        await self.wait()

    def _on_stage_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            error: BaseException = asyncio.CancelledError()
        else:
            exc = task.exception()
            if exc is None:
                return
            error = exc

        stage = task.get_name()
        self.failed_stages.append(stage)
        logger.error(
            "Pipeline stage exited with error",
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
        )

        # Release the producer feeding the dead stage and end the stream it fed
        inbox, outbox = self._links.get(stage, (None, None))
        if inbox is not None:
            discarded = inbox.abort()
            if discarded:
                logger.warning("Discarded queued items of failed stage", stage=stage, discarded=discarded)
        if outbox is not None:
            outbox.close_nowait()

    async def _close_source(self) -> None:
        if self._source_closed:
            return
        self._source_closed = True
        try:
            await self.source.close()
        except Exception as e:
            logger.warning("Failed to close ingestion source", error=str(e))
