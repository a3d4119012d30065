#!/usr/bin/env python
"""CLI for running the 13F ingestion pipeline once.

Usage:
    python -m src.cli.ingest                          # Previous completed quarter
    python -m src.cli.ingest --year 2024 --quarter 3  # Specific quarter
    python -m src.cli.ingest --max-filings 10         # Smaller batch
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from src.api.cron import get_filing_source, get_ingestion_config
from src.config import get_settings
from src.db.database import SessionLocal, init_db
from src.services.ingest_13f import ThirteenFIngestionService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest SEC 13F-HR filings into the database")
    parser.add_argument("--year", type=int, help="Fiscal year to ingest")
    parser.add_argument("--quarter", type=int, choices=[1, 2, 3, 4], help="Fiscal quarter to ingest")
    parser.add_argument("--max-filings", type=int, help="Override the per-run filing limit")
    parser.add_argument(
        "--max-seconds", type=float,
        help="Override the processing time budget in seconds",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run one ingestion and print the JSON summary. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if (args.year is None) != (args.quarter is None):
        parser.error("--year and --quarter must be given together")

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = get_ingestion_config(settings)
    if args.max_filings is not None:
        config.max_filings = args.max_filings
    if args.max_seconds is not None:
        config.max_process_seconds = args.max_seconds

    init_db()
    db = SessionLocal()
    try:
        service = ThirteenFIngestionService(db, get_filing_source(settings), config)
        result = asyncio.run(service.run(year=args.year, quarter=args.quarter))
    finally:
        db.close()

    payload = result.to_response().model_dump(mode="json", exclude_none=True)
    print(json.dumps(payload, indent=2))
    return 1 if result.is_fatal else 0


if __name__ == "__main__":
    sys.exit(main())
