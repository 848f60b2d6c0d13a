"""
Command-line entry point for the CSV bulk-load producer.

    python -m userstream.producer --csv users.csv

The CSV path falls back to USERSTREAM_PRODUCER_CSV_PATH when --csv is not given.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .config import get_settings
from .core.producer import CsvProducer
from .log_config import configure_logging
from .stores.rabbitmq import RabbitMQPublisher


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish user records from a CSV file to the ingestion queue")
    parser.add_argument("--csv", dest="csv_path", type=Path, default=None, help="Path to CSV file")
    parser.add_argument("--batch-size", type=int, default=None, help="Records per published batch")
    return parser.parse_args(argv)


async def run_producer(csv_path: Path, batch_size: int) -> int:
    settings = get_settings()
    producer = CsvProducer(
        RabbitMQPublisher(settings.queue),
        batch_size=batch_size,
        publish_timeout=settings.producer.publish_timeout_seconds,
    )
    try:
        return await producer.run(csv_path)
    finally:
        await producer.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.is_production)
    logger = structlog.get_logger(__name__)

    csv_path = args.csv_path or settings.producer.csv_path
    if csv_path is None:
        logger.error(
            "CSV file path not provided",
            hint="use --csv or set USERSTREAM_PRODUCER_CSV_PATH",
        )
        return 2

    batch_size = args.batch_size or settings.producer.batch_size
    logger.info("Starting producer", csv_path=str(csv_path), batch_size=batch_size)

    try:
        asyncio.run(run_producer(csv_path, batch_size))
    except FileNotFoundError:
        logger.error("CSV file not found", csv_path=str(csv_path))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
