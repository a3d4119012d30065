"""13F institutional holdings ingestion pipeline.

Discovers the previous quarter's 13F-HR filings on SEC EDGAR, processes the
notable institutions first, and writes institutions, filings, companies and
holdings. Every write is keyed on a unique column, so a run that stops early
(time budget, crash) is resumed by the next run simply skipping filings that
already exist.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.api.schemas import IngestionSummaryResponse
from src.collectors.structured.sec13f_collector import (
    FilingMetadata,
    ParsedHoldings,
    quarter_end_date,
)
from src.config import NOTABLE_INSTITUTIONS, Settings
from src.db.database import is_unique_violation
from src.db.models import Company
from src.db.models_institutional import (
    Institution,
    InstitutionalFiling,
    InstitutionalHolding,
)

logger = logging.getLogger(__name__)

HEDGE_FUND_TYPE = "Hedge Fund"

# Log a progress line every N processed filings
PROGRESS_LOG_INTERVAL = 10

_PERCENT_QUANTUM = Decimal("0.0001")


class FilingSource(Protocol):
    """Interface of the EDGAR client consumed by the pipeline."""

    async def fetch_quarter_filings(
        self, year: int, quarter: int, size: int = ...
    ) -> List[FilingMetadata]:
        ...

    async def fetch_and_parse_holdings(
        self,
        cik: str,
        accession_number: str,
        enrich_tickers: bool = ...,
        filed_at: Optional[date] = ...,
    ) -> ParsedHoldings:
        ...


@dataclass
class IngestionConfig:
    """Tunables for one ingestion run."""

    max_filings: int = 50
    rate_limit_delay: float = 0.15
    max_process_seconds: float = 55.0
    holdings_batch_size: int = 50
    max_reported_errors: int = 10
    notable_institutions: List[str] = field(
        default_factory=lambda: list(NOTABLE_INSTITUTIONS)
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestionConfig":
        return cls(
            max_filings=settings.ingest_13f_max_filings,
            rate_limit_delay=settings.ingest_13f_rate_limit_ms / 1000,
            max_process_seconds=settings.ingest_13f_max_process_seconds,
            holdings_batch_size=settings.ingest_13f_holdings_batch_size,
            max_reported_errors=settings.ingest_13f_max_reported_errors,
            notable_institutions=list(settings.notable_institutions),
        )


@dataclass
class IngestionStats:
    """Counters accumulated across a run."""

    filings_found: int = 0
    filings_processed: int = 0
    institutions_created: int = 0
    filings_created: int = 0
    holdings_created: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        logger.error(message)
        self.errors.append(message)


@dataclass
class IngestionResult:
    """Outcome of a run, convertible to the endpoint's JSON payload."""

    stats: IngestionStats
    duration_ms: int
    timestamp: datetime
    max_reported_errors: int = 10
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_fatal(self) -> bool:
        return self.error is not None

    @property
    def status_code(self) -> int:
        return 500 if self.is_fatal else 200

    def to_response(self) -> IngestionSummaryResponse:
        stats = self.stats
        return IngestionSummaryResponse(
            filingsFound=stats.filings_found,
            filingsProcessed=stats.filings_processed,
            institutionsCreated=stats.institutions_created,
            filingsCreated=stats.filings_created,
            holdingsCreated=stats.holdings_created,
            skipped=stats.skipped,
            errors=stats.errors[:self.max_reported_errors],
            timestamp=self.timestamp,
            durationMs=self.duration_ms,
            error=self.error,
            message=self.message,
        )


def get_current_quarter(today: date) -> Tuple[int, int]:
    """Return (year, quarter) containing the given date."""
    return today.year, (today.month - 1) // 3 + 1


def get_previous_quarter(today: date) -> Tuple[int, int]:
    """Return (year, quarter) of the last completed fiscal quarter."""
    year, quarter = get_current_quarter(today)
    if quarter == 1:
        return year - 1, 4
    return year, quarter - 1


def is_notable_institution(filer_name: str, notable_institutions: List[str]) -> bool:
    """Case-insensitive substring match of a filer name against the allow-list."""
    upper_name = filer_name.upper()
    return any(fragment.upper() in upper_name for fragment in notable_institutions)


def prioritize_filings(
    filings: List[FilingMetadata],
    notable_institutions: List[str],
    max_filings: int,
) -> List[FilingMetadata]:
    """
    Put notable institutions first and cap the batch size.

    The sort is stable: order inside the notable and non-notable groups is
    the discovery order.
    """
    ordered = sorted(
        filings,
        key=lambda f: 0 if is_notable_institution(f.filer_name, notable_institutions) else 1,
    )
    return ordered[:max_filings]


def percent_of_portfolio(value: Decimal, total_value: Optional[Decimal]) -> Optional[Decimal]:
    """Position value as a percentage of the filing total, None when the total is not positive."""
    if total_value is None or total_value <= 0:
        return None
    return (Decimal(value) / Decimal(total_value) * 100).quantize(_PERCENT_QUANTUM)


class ThirteenFIngestionService:
    """Runs the 13F ingestion pipeline against a database session.

    Each database step commits its own unit of work; on failure the session
    is rolled back so the next step (or filing) starts clean.
    """

    def __init__(
        self,
        db: Session,
        source: FilingSource,
        config: Optional[IngestionConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.source = source
        self.config = config or IngestionConfig()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        year: Optional[int] = None,
        quarter: Optional[int] = None,
        today: Optional[date] = None,
    ) -> IngestionResult:
        """
        Ingest 13F filings for a fiscal quarter.

        Args:
            year: Fiscal year; defaults to the previous completed quarter's
            quarter: Quarter number (1-4); defaults likewise
            today: Reference date for the previous-quarter default

        Returns:
            IngestionResult. A failed discovery or an unexpected error outside
            the per-filing boundary yields a fatal result (status 500) that
            still carries the stats accumulated so far.
        """
        started = self._clock()
        deadline = started + self.config.max_process_seconds
        stats = IngestionStats()

        if year is None or quarter is None:
            year, quarter = get_previous_quarter(today or date.today())

        logger.info(
            f"Starting 13F filing ingestion for {year}Q{quarter} "
            f"(max filings {self.config.max_filings})"
        )

        try:
            try:
                filings = await self.source.fetch_quarter_filings(
                    year, quarter, size=self.config.max_filings * 2
                )
            except Exception as e:
                error = f"Failed to fetch 13F filings: {e}"
                logger.error(f"SEC EDGAR 13F fetch failed: {e}")
                stats.errors.append(error)
                return self._result(stats, started, error=error)

            stats.filings_found = len(filings)
            logger.info(f"Found {len(filings)} 13F filings")

            if not filings:
                logger.warning("No 13F filings found")
                return self._result(
                    stats, started, message="No 13F filings found in date range"
                )

            batch = prioritize_filings(
                filings, self.config.notable_institutions, self.config.max_filings
            )

            for filing in batch:
                if self._clock() > deadline:
                    logger.warning(
                        f"Timeout approaching, stopping early after "
                        f"{stats.filings_processed}/{len(batch)} filings"
                    )
                    break

                stats.filings_processed += 1
                try:
                    await self.process_filing(filing, year, quarter, stats)
                except Exception as e:
                    self.db.rollback()
                    stats.record_error(f"Filing {filing.accession_number}: {e}")

                if stats.filings_processed % PROGRESS_LOG_INTERVAL == 0:
                    logger.info(
                        f"13F ingestion progress: {stats.filings_processed}/{len(batch)} filings, "
                        f"{stats.holdings_created} holdings"
                    )
        except Exception as e:
            logger.critical(f"Fatal error in 13F ingestion: {e}")
            self.db.rollback()
            return self._result(stats, started, error=str(e))

        result = self._result(stats, started)
        logger.info(
            f"13F ingestion completed: processed={stats.filings_processed} "
            f"institutions={stats.institutions_created} filings={stats.filings_created} "
            f"holdings={stats.holdings_created} skipped={stats.skipped} "
            f"errors={len(stats.errors)} duration={result.duration_ms}ms"
        )
        return result

    def _result(
        self,
        stats: IngestionStats,
        started: float,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> IngestionResult:
        cap = self.config.max_reported_errors
        if len(stats.errors) > cap:
            logger.error(
                f"{len(stats.errors)} ingestion errors, reporting first {cap}. Full list:\n"
                + "\n".join(stats.errors)
            )
        return IngestionResult(
            stats=stats,
            duration_ms=int((self._clock() - started) * 1000),
            timestamp=datetime.now(timezone.utc),
            max_reported_errors=cap,
            error=error,
            message=message,
        )

    # ------------------------------------------------------------------
    # Per-filing processing
    # ------------------------------------------------------------------

    async def process_filing(
        self,
        filing: FilingMetadata,
        year: int,
        quarter: int,
        stats: IngestionStats,
    ) -> None:
        """Ingest one filing; recoverable failures are recorded in stats."""
        accession = filing.accession_number

        if self._filing_exists(accession):
            logger.debug(f"Filing {accession} already ingested, skipping")
            stats.skipped += 1
            return

        await self._sleep(self.config.rate_limit_delay)

        try:
            parsed = await self.source.fetch_and_parse_holdings(
                filing.cik, accession, enrich_tickers=True, filed_at=filing.filed_at
            )
        except Exception as e:
            logger.warning(f"Skipping filing {accession}: {e}")
            stats.errors.append(f"Failed to parse 13F {accession}: {e}")
            return

        if not parsed.holdings:
            logger.info(f"Filing {accession} has no holdings, skipping")
            stats.skipped += 1
            return

        if parsed.total_value < 0:
            stats.record_error(
                f"Filing {accession}: negative total value {parsed.total_value}"
            )
            return

        notable = is_notable_institution(filing.filer_name, self.config.notable_institutions)
        try:
            institution, created = self._upsert_institution(filing, parsed.total_value, notable)
        except SQLAlchemyError as e:
            self.db.rollback()
            stats.record_error(f"Institution upsert failed for {accession}: {e}")
            return
        if created:
            stats.institutions_created += 1

        report_date = filing.period_of_report or quarter_end_date(year, quarter)
        try:
            filing_row = self._insert_filing(
                institution, filing, report_date, parsed.total_value
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            stats.record_error(f"Filing insert failed for {accession}: {e}")
            return

        if filing_row is None:
            logger.info(f"Filing {accession} was inserted concurrently, skipping")
            stats.skipped += 1
            return
        stats.filings_created += 1

        rows = self._build_holding_rows(parsed, filing_row, institution, report_date)
        stats.holdings_created += self._insert_holdings(rows, accession, stats)

    def _filing_exists(self, accession_number: str) -> bool:
        return self.db.query(InstitutionalFiling.id).filter(
            InstitutionalFiling.accession_number == accession_number
        ).first() is not None

    def _upsert_institution(
        self,
        filing: FilingMetadata,
        total_value: Decimal,
        notable: bool,
    ) -> Tuple[Institution, bool]:
        """Insert or refresh the institution keyed by CIK.

        Returns:
            (institution, created) where created is False if the CIK existed
        """
        values = {
            "name": filing.filer_name,
            "institution_type": HEDGE_FUND_TYPE if notable else None,
            "aum_estimate": total_value,
        }

        institution = self.db.query(Institution).filter(
            Institution.cik == filing.cik
        ).first()
        if institution is None:
            institution = Institution(cik=filing.cik, **values)
            self.db.add(institution)
            try:
                self.db.commit()
                return institution, True
            except IntegrityError as e:
                self.db.rollback()
                if not is_unique_violation(e):
                    raise
                logger.info(f"Institution {filing.cik} created concurrently, updating instead")
                institution = self.db.query(Institution).filter(
                    Institution.cik == filing.cik
                ).one()

        for key, value in values.items():
            setattr(institution, key, value)
        self.db.commit()
        return institution, False

    def _insert_filing(
        self,
        institution: Institution,
        filing: FilingMetadata,
        report_date: date,
        total_value: Decimal,
    ) -> Optional[InstitutionalFiling]:
        """Insert the filing row; returns None if the accession number already exists."""
        filing_row = InstitutionalFiling(
            institution_id=institution.id,
            accession_number=filing.accession_number,
            report_date=report_date,
            filed_at=datetime.combine(filing.filed_at, dt_time.min),
            total_value=total_value,
        )
        self.db.add(filing_row)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if is_unique_violation(e):
                return None
            raise
        return filing_row

    def _get_company(self, ticker: str) -> Optional[Company]:
        return self.db.query(Company).filter(Company.ticker == ticker).first()

    def _resolve_company(self, ticker: str, name: str) -> Optional[Company]:
        """Find or create the company for a ticker.

        A unique conflict on create means another writer won the race; the
        row is re-read instead.
        """
        symbol = ticker.strip().upper()
        if not symbol:
            return None

        company = self._get_company(symbol)
        if company is not None:
            return company

        company = Company(ticker=symbol, name=name or symbol)
        self.db.add(company)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not is_unique_violation(e):
                logger.warning(f"Could not create company {symbol}: {e}")
                return None
            return self._get_company(symbol)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Could not create company {symbol}: {e}")
            return None
        return company

    def _build_holding_rows(
        self,
        parsed: ParsedHoldings,
        filing_row: InstitutionalFiling,
        institution: Institution,
        report_date: date,
    ) -> List[dict]:
        """Map parsed holdings to insert rows, one per company.

        Holdings without a ticker, or whose company cannot be resolved, are
        dropped. Several lines for the same company are summed.
        """
        filing_id = filing_row.id
        institution_id = institution.id
        by_company: Dict[int, dict] = {}
        dropped = 0

        for holding in parsed.holdings:
            if not holding.ticker:
                dropped += 1
                continue

            company = self._resolve_company(holding.ticker, holding.name_of_issuer)
            if company is None:
                dropped += 1
                continue

            row = by_company.get(company.id)
            if row is None:
                by_company[company.id] = {
                    "filing_id": filing_id,
                    "institution_id": institution_id,
                    "company_id": company.id,
                    "report_date": report_date,
                    "shares": holding.shares,
                    "value": holding.value,
                    "is_new_position": False,
                    "is_closed_position": False,
                }
            else:
                row["shares"] += holding.shares
                row["value"] += holding.value

        for row in by_company.values():
            row["percent_of_portfolio"] = percent_of_portfolio(row["value"], parsed.total_value)

        if dropped:
            logger.debug(f"Dropped {dropped} holdings without a resolvable ticker")
        return list(by_company.values())

    def _insert_holdings(self, rows: List[dict], accession: str, stats: IngestionStats) -> int:
        """Insert holding rows in batches; returns the number of rows written."""
        inserted = 0
        batch_size = self.config.holdings_batch_size

        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            try:
                self.db.execute(insert(InstitutionalHolding), batch)
                self.db.commit()
                inserted += len(batch)
            except IntegrityError as e:
                self.db.rollback()
                if is_unique_violation(e):
                    logger.info(
                        f"Holdings batch for {accession} conflicts with existing rows, "
                        f"inserting individually"
                    )
                    inserted += self._insert_holdings_individually(batch, accession, stats)
                else:
                    stats.record_error(f"Holdings insert failed for {accession}: {e}")
            except SQLAlchemyError as e:
                self.db.rollback()
                stats.record_error(f"Holdings insert failed for {accession}: {e}")

        return inserted

    def _insert_holdings_individually(
        self, batch: List[dict], accession: str, stats: IngestionStats
    ) -> int:
        inserted = 0
        for row in batch:
            try:
                self.db.execute(insert(InstitutionalHolding), [row])
                self.db.commit()
                inserted += 1
            except IntegrityError as e:
                self.db.rollback()
                if not is_unique_violation(e):
                    stats.record_error(f"Holding insert failed for {accession}: {e}")
        return inserted
