"""APScheduler-based scheduled task framework."""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError
from fastapi import APIRouter, HTTPException

from src.api.schemas import ScheduledJobResponse

TIMEZONE = ZoneInfo("UTC")

logger = logging.getLogger(__name__)


def _ingest_13f() -> None:
    """Run the 13F filing ingestion pipeline for the previous quarter."""
    logger.info("Running scheduled 13F ingestion")
    try:
        from src.api.cron import get_filing_source, get_ingestion_config
        from src.config import get_settings
        from src.db.database import SessionLocal
        from src.services.ingest_13f import ThirteenFIngestionService

        settings = get_settings()
        db = SessionLocal()
        try:
            service = ThirteenFIngestionService(
                db,
                get_filing_source(settings),
                get_ingestion_config(settings),
            )
            result = asyncio.run(service.run())
            if result.is_fatal:
                logger.error(f"Scheduled 13F ingestion failed: {result.error}")
            else:
                logger.info(
                    f"Scheduled 13F ingestion finished: "
                    f"{result.stats.filings_created} filings, "
                    f"{result.stats.holdings_created} holdings"
                )
        finally:
            db.close()
    except Exception as e:
        logger.error(f"13F ingestion job failed: {e}")


# Map default schedule names to their functions
_DEFAULT_FUNCS = {
    "ingest_13f": _ingest_13f,
}


def get_default_schedule() -> Dict[str, Dict[str, int]]:
    """Daily schedule (UTC) for each default job."""
    from src.config import get_settings

    settings = get_settings()
    return {
        "ingest_13f": {"hour": settings.ingest_13f_hour, "minute": settings.ingest_13f_minute},
    }


class SchedulerService:
    """Scheduled task service using APScheduler BackgroundScheduler.

    Provides methods to add, list, and remove scheduled jobs.
    """

    def __init__(self) -> None:
        self._scheduler = BackgroundScheduler()
        self._started = False

    @property
    def is_running(self) -> bool:
        """Whether the scheduler is currently running."""
        return self._started

    def start(self) -> None:
        """Start the scheduler. Safe to call multiple times."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler. Safe to call when not running."""
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Scheduler stopped")

    def add_daily_job(
        self,
        func: Callable,
        hour: int,
        minute: int,
        name: str,
    ) -> str:
        """Schedule a job to run daily at a specific time.

        Args:
            func: The callable to execute.
            hour: Hour of day (0-23), UTC.
            minute: Minute of hour (0-59).
            name: Human-readable job name (also used as job ID).

        Returns:
            The job ID.
        """
        trigger = CronTrigger(hour=hour, minute=minute, timezone=TIMEZONE)
        job = self._scheduler.add_job(
            func, trigger=trigger, id=name, name=name,
            replace_existing=True, max_instances=1, coalesce=True,
        )
        logger.info(f"Added daily job '{name}' at {hour:02d}:{minute:02d} UTC")
        return job.id

    def list_jobs(self) -> List[Dict[str, Any]]:
        """List all scheduled jobs.

        Returns:
            List of dicts with id, name, trigger, and next_run_time.
        """
        jobs = self._scheduler.get_jobs()
        return [
            {
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            }
            for job in jobs
        ]

    def remove_job(self, job_id: str) -> bool:
        """Remove a scheduled job by ID.

        Returns:
            True if removed, False if not found.
        """
        try:
            self._scheduler.remove_job(job_id)
            logger.info(f"Removed job '{job_id}'")
            return True
        except JobLookupError:
            return False

    def setup_default_jobs(self) -> None:
        """Register all jobs from the default schedule."""
        for name, config in get_default_schedule().items():
            func = _DEFAULT_FUNCS.get(name)
            if func:
                self.add_daily_job(func, hour=config["hour"], minute=config["minute"], name=name)


# ---------------------------------------------------------------------------
# Singleton for app-wide use
# ---------------------------------------------------------------------------
_scheduler_service: Optional[SchedulerService] = None


def get_scheduler_service() -> SchedulerService:
    """Get or create the global SchedulerService singleton."""
    global _scheduler_service
    if _scheduler_service is None:
        _scheduler_service = SchedulerService()
    return _scheduler_service


# ---------------------------------------------------------------------------
# FastAPI router
# ---------------------------------------------------------------------------
router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get("/jobs", response_model=List[ScheduledJobResponse])
def list_scheduled_jobs() -> List[Dict[str, Any]]:
    """List all scheduled jobs."""
    service = get_scheduler_service()
    return service.list_jobs()


@router.delete("/jobs/{job_id}")
def delete_scheduled_job(job_id: str) -> Dict[str, Any]:
    """Remove a scheduled job by ID."""
    service = get_scheduler_service()
    removed = service.remove_job(job_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return {"status": "removed", "job_id": job_id}
