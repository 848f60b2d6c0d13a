"""
CSV bulk-load producer.

Reads user rows from a CSV file and publishes them to the ingestion queue
as JSON batches. Expected columns, in order:

    id, first_name, last_name, email, created_at, deleted_at, merged_at, parent_user_id

Timestamps are epoch milliseconds, with -1 meaning "not set". Rows that do
not have exactly eight columns or whose numeric columns do not parse are
skipped with a warning.
"""

import asyncio
import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

import structlog

from ..models.user import RECORD_FIELDS, UserRecord
from .interfaces import QueuePublisher

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_PUBLISH_TIMEOUT = 15.0


def _parse_millis(value: str) -> Optional[datetime]:
    millis = int(value)
    if millis == -1:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def row_to_record(row: Sequence[str]) -> Optional[UserRecord]:
    """Convert one CSV row, or return None when the row is unusable."""
    if len(row) != len(RECORD_FIELDS):
        logger.warning("Skipping row with wrong column count", columns=len(row))
        return None

    try:
        return UserRecord(
            id=int(row[0]),
            first_name=row[1],
            last_name=row[2],
            email=row[3],
            created_at=_parse_millis(row[4]),
            deleted_at=_parse_millis(row[5]),
            merged_at=_parse_millis(row[6]),
            parent_user_id=int(row[7]),
        )
    except (ValueError, OverflowError, OSError) as e:
        logger.warning("Skipping row that failed to parse", row_id=row[0], error=str(e))
        return None


def read_batches(rows: Iterable[Sequence[str]], batch_size: int) -> Iterator[List[UserRecord]]:
    """Group converted rows into batches of at most batch_size records."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    batch: List[UserRecord] = []
    for row in rows:
        record = row_to_record(row)
        if record is None:
            continue
        batch.append(record)
        if len(batch) == batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def encode_batch(records: List[UserRecord]) -> bytes:
    """Serialize a batch in the wire format the decoder expects."""
    return json.dumps([record.model_dump(mode="json") for record in records]).encode("utf-8")


class CsvProducer:
    """Publishes a CSV file to the ingestion queue batch by batch."""

    def __init__(
        self,
        publisher: QueuePublisher,
        batch_size: int = DEFAULT_BATCH_SIZE,
        publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT,
    ) -> None:
        self.publisher = publisher
        self.batch_size = batch_size
        self.publish_timeout = publish_timeout

    async def publish(self, records: List[UserRecord]) -> None:
        await asyncio.wait_for(self.publisher.publish(encode_batch(records)), timeout=self.publish_timeout)

    async def publish_rows(self, rows: Iterable[Sequence[str]]) -> int:
        """Publish every batch built from rows; returns the number of records sent."""
        sent = 0
        for batch in read_batches(rows, self.batch_size):
            await self.publish(batch)
            sent += len(batch)
            logger.debug("Published batch", size=len(batch))
        return sent

    async def run(self, csv_path: Path) -> int:
        """Publish a CSV file, skipping its header line."""
        with open(csv_path, newline="") as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if header is None:
                logger.warning("CSV file is empty", csv_path=str(csv_path))
                return 0
            sent = await self.publish_rows(reader)

        logger.info("Producer has completed its work", csv_path=str(csv_path), records=sent)
        return sent

    async def close(self) -> None:
        await self.publisher.close()
