"""
Decoder stage: raw batch bytes -> list of UserRecord.

A batch is decoded all-or-nothing. A payload that fails structural parsing,
or any record in it that fails validation, rejects the whole batch with a
single DECODE error.
"""

import json
from typing import Any, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..models.user import EMAIL_ALIASES, RECORD_FIELDS, UserRecord
from .channel import Channel
from .error_sink import ErrorKind, ErrorSink, PipelineError
from .exceptions import DecodeError
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)


def _missing_fields(item: dict) -> List[str]:
    missing = []
    for name in RECORD_FIELDS:
        if name == "email":
            if not any(alias in item for alias in EMAIL_ALIASES):
                missing.append(name)
        elif name not in item:
            missing.append(name)
    return missing


def decode_batch(payload: bytes) -> List[UserRecord]:
    """Decode a JSON array of user records, raising DecodeError on any defect."""
    try:
        data: Any = json.loads(payload)
    except ValueError as e:
        raise DecodeError(f"batch is not valid JSON: {e}") from e
    except RecursionError as e:
        raise DecodeError("batch is nested too deeply") from e

    if not isinstance(data, list):
        raise DecodeError("batch must be a JSON array", details={"type": type(data).__name__})

    records = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise DecodeError("batch item is not an object", details={"index": index})

        missing = _missing_fields(item)
        if missing:
            raise DecodeError(
                "batch item is missing fields",
                details={"index": index, "missing": missing},
            )

        try:
            records.append(UserRecord.model_validate(item))
        except PydanticValidationError as e:
            raise DecodeError(
                "batch item failed validation",
                details={"index": index, "errors": e.errors(include_url=False)},
            ) from e

    return records


class BatchDecoder:
    """Pipeline stage wrapping decode_batch. Never encrypts or decrypts."""

    stage = "decoder"

    def __init__(self, error_sink: ErrorSink, metrics: Optional[MetricsCollector] = None) -> None:
        self.error_sink = error_sink
        self.metrics = metrics

    def decode(self, payload: Optional[bytes]) -> List[UserRecord]:
        """Decode one payload; empty payloads yield no records."""
        if not payload:
            return []
        return decode_batch(payload)

    async def run(self, inbox: Channel[bytes], outbox: Channel[List[UserRecord]]) -> None:
        """Consume payloads until the inbox closes, then close the outbox."""
        try:
            async for payload in inbox:
                if not payload:
                    continue

                try:
                    records = self.decode(payload)
                except Exception as e:
                    # Any failure rejects this batch only
                    if not isinstance(e, DecodeError):
                        logger.error(
                            "Unexpected failure decoding batch",
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    self.error_sink.report(PipelineError(
                        kind=ErrorKind.DECODE,
                        cause=e,
                        stage=self.stage,
                        payload=payload,
                    ))
                    continue

                logger.debug("Consumed batch", size=len(records))
                if self.metrics:
                    self.metrics.record_batch(len(records))

                if records:
                    await outbox.put(records)
        finally:
            await outbox.close()
            logger.info("Decoder stopped")
