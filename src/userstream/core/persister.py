"""
Persister stage: encrypt, write through to the durable store, then cache.

Records of a batch are handled strictly in decoder order. A failing record
is reported to the error sink and the batch moves on to the next one;
nothing is retried.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional

import structlog

from ..models.user import UserRecord
from .channel import Channel
from .error_sink import ErrorKind, ErrorSink, PipelineError
from .exceptions import DuplicateError, EncryptionError, StoreTimeoutError
from .interfaces import PIICipher, UserCache, UserStore
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

DEFAULT_WRITE_TIMEOUT = 15.0


@dataclass
class PersistResult:
    """Outcome of persisting one batch."""
    persisted: int = 0
    duplicates: int = 0
    failed: int = 0
    cache_failures: int = 0


class RecordPersister:
    """The only pipeline stage that changes a record (its email becomes ciphertext)."""

    stage = "persister"

    def __init__(
        self,
        store: UserStore,
        cache: UserCache,
        cipher: PIICipher,
        error_sink: ErrorSink,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cipher = cipher
        self.error_sink = error_sink
        self.write_timeout = write_timeout
        self.metrics = metrics

    async def run(self, inbox: Channel[List[UserRecord]]) -> None:
        """Consume batches until the inbox closes, then close the error sink."""
        try:
            async for batch in inbox:
                await self.persist_batch(batch)
        finally:
            await self.error_sink.close()
            logger.info("Persister stopped")

    async def persist_batch(self, records: List[UserRecord]) -> PersistResult:
        result = PersistResult()
        for record in records:
            await self._persist_one(record, result)

        logger.debug(
            "Batch persisted",
            persisted=result.persisted,
            duplicates=result.duplicates,
            failed=result.failed,
            cache_failures=result.cache_failures,
        )
        return result

    async def _persist_one(self, record: UserRecord, result: PersistResult) -> None:
        # Step 1: encrypt the PII field
        try:
            encrypted = record.with_email(self.cipher.encrypt(record.email))
        except EncryptionError as e:
            result.failed += 1
            self._report(ErrorKind.ENCRYPT, e, record)
            return

        # Step 2: durable write, bounded per record
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self.store.create_user(encrypted), timeout=self.write_timeout)
        except DuplicateError as e:
            result.duplicates += 1
            logger.warning("User already exists", record_id=record.id)
            self._report(ErrorKind.DUPLICATE, e, record)
            return
        except asyncio.TimeoutError:
            result.failed += 1
            self._report(ErrorKind.TIMEOUT, StoreTimeoutError(timeout_seconds=self.write_timeout), record)
            return
        except Exception as e:
            result.failed += 1
            self._report(ErrorKind.STORE, e, record)
            return

        result.persisted += 1
        if self.metrics:
            self.metrics.record_persisted(time.perf_counter() - started)

        # Step 3: best-effort cache write, the store is authoritative
        try:
            await self.cache.set(encrypted.cache_key, encrypted)
        except Exception as e:
            result.cache_failures += 1
            if self.metrics:
                self.metrics.record_cache_failure("set")
            logger.warning(
                "Failed to store user in cache",
                record_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _report(self, kind: ErrorKind, cause: BaseException, record: UserRecord) -> None:
        self.error_sink.report(PipelineError(
            kind=kind,
            cause=cause,
            stage=self.stage,
            record_id=record.id,
        ))
