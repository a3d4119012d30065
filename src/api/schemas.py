"""Pydantic schemas for API request/response validation."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


# ===== Cron Schemas =====

class IngestionSummaryResponse(BaseModel):
    """Result payload of the 13F ingestion cron job.

    Field names are camelCase because monitoring consumes them verbatim.
    """
    filingsFound: int = 0
    filingsProcessed: int = 0
    institutionsCreated: int = 0
    filingsCreated: int = 0
    holdingsCreated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    timestamp: datetime
    durationMs: int = Field(..., ge=0)
    error: Optional[str] = None
    message: Optional[str] = None


class ScheduledJobResponse(BaseModel):
    """A job registered with the scheduler."""
    id: str
    name: str
    trigger: str
    next_run_time: Optional[str] = None
