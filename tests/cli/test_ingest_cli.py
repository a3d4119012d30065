"""Tests for the ingestion CLI."""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from src.cli.ingest import build_parser, main
from src.services.ingest_13f import IngestionResult, IngestionStats


def make_result(error=None):
    return IngestionResult(
        stats=IngestionStats(filings_found=3, filings_processed=2, filings_created=1),
        duration_ms=1200,
        timestamp=datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc),
        error=error,
    )


@pytest.fixture
def patched_cli():
    service = MagicMock()
    service.run = AsyncMock(return_value=make_result())
    with patch("src.cli.ingest.init_db") as mock_init, \
            patch("src.cli.ingest.SessionLocal") as mock_session, \
            patch("src.cli.ingest.get_filing_source"), \
            patch("src.cli.ingest.ThirteenFIngestionService", return_value=service) as mock_cls:
        yield {
            "init_db": mock_init,
            "session": mock_session,
            "service_cls": mock_cls,
            "service": service,
        }


class TestParser:
    def test_quarter_must_be_valid(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--quarter", "5"])

    def test_year_requires_quarter(self, patched_cli):
        with pytest.raises(SystemExit):
            main(["--year", "2024"])
        patched_cli["init_db"].assert_not_called()


class TestMain:
    def test_prints_summary(self, patched_cli, capsys):
        exit_code = main(["--year", "2024", "--quarter", "3"])

        assert exit_code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["filingsFound"] == 3
        assert payload["filingsCreated"] == 1
        assert payload["errors"] == []
        patched_cli["service"].run.assert_awaited_once_with(year=2024, quarter=3)
        patched_cli["session"].return_value.close.assert_called_once()

    def test_overrides_config(self, patched_cli, capsys):
        main(["--max-filings", "5", "--max-seconds", "10"])

        config = patched_cli["service_cls"].call_args.args[2]
        assert config.max_filings == 5
        assert config.max_process_seconds == 10.0
        patched_cli["service"].run.assert_awaited_once_with(year=None, quarter=None)

    def test_fatal_result_exit_code(self, patched_cli, capsys):
        patched_cli["service"].run = AsyncMock(return_value=make_result(error="Failed to fetch 13F filings: boom"))

        assert main([]) == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["error"] == "Failed to fetch 13F filings: boom"
