"""Tests for the cron ingestion endpoint."""
import asyncio
import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, Mock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.cron import (
    router as cron_router,
    get_filing_source,
    get_ingestion_config,
    ingest_13f,
)
from src.collectors.structured.sec13f_collector import (
    EdgarError,
    FilingMetadata,
    HoldingRecord,
    ParsedHoldings,
)
from src.config import Settings, get_settings
from src.db.database import Base, get_db
from src.db.models_institutional import InstitutionalHolding
from src.services.ingest_13f import IngestionConfig


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CRON_SECRET = "test-cron-secret"


def override_get_db():
    """Override database dependency for testing."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class StubFilingSource:
    """Returns one Berkshire filing with two holdings."""

    def __init__(self, discovery_error=None):
        self.discovery_error = discovery_error
        self.calls = 0

    async def fetch_quarter_filings(self, year, quarter, size=100):
        self.calls += 1
        if self.discovery_error is not None:
            raise self.discovery_error
        return [FilingMetadata(
            accession_number="0000950123-24-012345",
            cik="0001067983",
            filer_name="BERKSHIRE HATHAWAY INC",
            filed_at=date(2024, 11, 14),
            period_of_report=date(2024, 9, 30),
        )]

    async def fetch_and_parse_holdings(self, cik, accession_number, enrich_tickers=True, filed_at=None):
        holdings = [
            HoldingRecord(name_of_issuer="APPLE INC", cusip="037833100",
                          value=Decimal("750"), shares=10, ticker="AAPL"),
            HoldingRecord(name_of_issuer="BANK OF AMERICA CORP", cusip="060505104",
                          value=Decimal("250"), shares=5, ticker="BAC"),
        ]
        return ParsedHoldings(holdings=holdings, total_value=Decimal("1000"))


def create_test_app(source, settings):
    """Create a test FastAPI app without the startup event."""
    test_app = FastAPI()
    test_app.include_router(cron_router, prefix="/api")
    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_filing_source] = lambda: source
    test_app.dependency_overrides[get_ingestion_config] = lambda: IngestionConfig(rate_limit_delay=0)
    return test_app


@pytest.fixture(scope="function")
def database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def make_client(source, settings):
    return TestClient(create_test_app(source, settings))


def auth_header(token=CRON_SECRET):
    return {"Authorization": f"Bearer {token}"}


class TestCronAuth:
    """Tests for cron endpoint authorization."""

    def test_missing_token_is_rejected(self, database):
        source = StubFilingSource()
        client = make_client(source, Settings(cron_secret=CRON_SECRET))

        response = client.get("/api/cron/ingest-13f")

        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}
        assert source.calls == 0

    def test_wrong_token_is_rejected(self, database):
        source = StubFilingSource()
        client = make_client(source, Settings(cron_secret=CRON_SECRET))

        response = client.get("/api/cron/ingest-13f", headers=auth_header("nope"))

        assert response.status_code == 401
        assert source.calls == 0

    def test_unset_secret_in_production(self, database):
        source = StubFilingSource()
        client = make_client(source, Settings(cron_secret="", environment="production"))

        response = client.get("/api/cron/ingest-13f", headers=auth_header())

        assert response.status_code == 500
        assert response.json() == {"detail": "Server configuration error"}
        assert source.calls == 0

    def test_unset_secret_in_development(self, database):
        source = StubFilingSource()
        client = make_client(source, Settings(cron_secret="", environment="development"))

        response = client.get("/api/cron/ingest-13f")

        assert response.status_code == 200
        assert source.calls == 1


class TestIngest13FEndpoint:
    """Tests for GET /api/cron/ingest-13f."""

    def test_successful_run(self, database):
        client = make_client(StubFilingSource(), Settings(cron_secret=CRON_SECRET))

        response = client.get("/api/cron/ingest-13f", headers=auth_header())

        assert response.status_code == 200
        data = response.json()
        assert data["filingsFound"] == 1
        assert data["filingsProcessed"] == 1
        assert data["institutionsCreated"] == 1
        assert data["filingsCreated"] == 1
        assert data["holdingsCreated"] == 2
        assert data["skipped"] == 0
        assert data["errors"] == []
        assert data["durationMs"] >= 0
        assert "timestamp" in data
        assert "error" not in data

        db = TestingSessionLocal()
        try:
            assert db.query(InstitutionalHolding).count() == 2
        finally:
            db.close()

    def test_second_run_skips_existing_filing(self, database):
        client = make_client(StubFilingSource(), Settings(cron_secret=CRON_SECRET))

        client.get("/api/cron/ingest-13f", headers=auth_header())
        response = client.get("/api/cron/ingest-13f", headers=auth_header())

        data = response.json()
        assert data["filingsCreated"] == 0
        assert data["holdingsCreated"] == 0
        assert data["skipped"] == 1

    def test_discovery_failure_returns_500(self, database):
        source = StubFilingSource(discovery_error=EdgarError("SEC EDGAR returned HTTP 503"))
        client = make_client(source, Settings(cron_secret=CRON_SECRET))

        response = client.get("/api/cron/ingest-13f", headers=auth_header())

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "Failed to fetch 13F filings: SEC EDGAR returned HTTP 503"
        assert data["filingsFound"] == 0
        assert data["filingsProcessed"] == 0
        assert data["errors"] == [data["error"]]

    def test_pipeline_runs_off_the_app_event_loop(self, database):
        """The blocking pipeline must not run on the loop serving other requests."""
        app_loops = []
        pipeline_loops = []
        settings = Settings(cron_secret=CRON_SECRET)

        async def settings_on_app_loop():
            app_loops.append(asyncio.get_running_loop())
            return settings

        class LoopRecordingSource(StubFilingSource):
            async def fetch_quarter_filings(self, year, quarter, size=100):
                pipeline_loops.append(asyncio.get_running_loop())
                return await super().fetch_quarter_filings(year, quarter, size)

        app = create_test_app(LoopRecordingSource(), settings)
        app.dependency_overrides[get_settings] = settings_on_app_loop

        response = TestClient(app).get("/api/cron/ingest-13f", headers=auth_header())

        assert response.status_code == 200
        assert len(app_loops) == 1
        assert len(pipeline_loops) == 1
        assert pipeline_loops[0] is not app_loops[0]
        assert not asyncio.iscoroutinefunction(ingest_13f)


class TestFilingSourceDependency:
    """Tests for the EDGAR client dependency."""

    @pytest.fixture(autouse=True)
    def fresh_resolver(self, monkeypatch):
        monkeypatch.setattr("src.api.cron._ticker_resolver", None)

    def test_sources_share_ticker_resolver(self):
        settings = Settings()
        first = get_filing_source(settings)
        second = get_filing_source(settings)

        assert first is not second
        assert first._ticker_resolver is second._ticker_resolver

    @pytest.mark.asyncio
    async def test_cusip_lookups_are_cached_across_runs(self):
        response = Mock()
        response.status_code = 200
        response.raise_for_status = Mock()
        response.json.return_value = [{"data": [{"ticker": "ACME", "securityType": "Common Stock"}]}]
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=response)
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        settings = Settings()

        with patch("src.collectors.structured.openfigi_collector.httpx.AsyncClient", return_value=mock_client):
            for _ in range(2):
                source = get_filing_source(settings)
                tickers = await source._ticker_resolver.resolve_tickers(["999999999"])
                assert tickers == {"999999999": "ACME"}

        assert mock_client.post.await_count == 1
