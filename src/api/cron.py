"""Cron job API endpoints."""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from src.collectors.structured.openfigi_collector import OpenFIGICollector
from src.collectors.structured.sec13f_collector import SEC13FCollector
from src.config import Settings, get_settings
from src.db.database import get_db
from src.services.auth import require_cron_auth
from src.services.ingest_13f import (
    FilingSource,
    IngestionConfig,
    ThirteenFIngestionService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


# ---------------------------------------------------------------------------
# Singleton for app-wide use
# ---------------------------------------------------------------------------
_ticker_resolver: Optional[OpenFIGICollector] = None


def get_ticker_resolver(settings: Settings) -> OpenFIGICollector:
    """Get or create the process-wide CUSIP resolver.

    Shared so its lookup cache outlives a single ingestion run.
    """
    global _ticker_resolver
    if _ticker_resolver is None:
        _ticker_resolver = OpenFIGICollector(api_key=settings.openfigi_api_key)
    return _ticker_resolver


def get_filing_source(settings: Settings = Depends(get_settings)) -> FilingSource:
    """Dependency providing the SEC EDGAR client used by ingestion."""
    return SEC13FCollector(
        user_agent=settings.sec_user_agent,
        ticker_resolver=get_ticker_resolver(settings),
    )


def get_ingestion_config(settings: Settings = Depends(get_settings)) -> IngestionConfig:
    return IngestionConfig.from_settings(settings)


@router.get("/ingest-13f", dependencies=[Depends(require_cron_auth)])
def ingest_13f(
    db: Session = Depends(get_db),
    source: FilingSource = Depends(get_filing_source),
    config: IngestionConfig = Depends(get_ingestion_config),
):
    """Ingest the previous quarter's 13F-HR filings.

    Declared sync so FastAPI runs it in its threadpool; the pipeline gets its
    own event loop there and the blocking session calls stay off the app loop.

    Returns 200 with run stats, including runs stopped early by the time
    budget, or 500 with partial stats when filing discovery fails.
    """
    service = ThirteenFIngestionService(db, source, config)
    result = asyncio.run(service.run())
    return JSONResponse(
        status_code=result.status_code,
        content=result.to_response().model_dump(mode="json", exclude_none=True),
    )
