"""Tests for database models."""
import pytest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from src.db.database import Base, is_unique_violation
from src.db.models import Company
from src.db.models_institutional import (
    Institution, InstitutionalFiling, InstitutionalHolding,
)


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database session for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def filing(db_session):
    """Persist an institution with one filing."""
    institution = Institution(cik="0001067983", name="BERKSHIRE HATHAWAY INC")
    db_session.add(institution)
    db_session.commit()

    filing = InstitutionalFiling(
        institution_id=institution.id,
        accession_number="0000950123-24-012345",
        report_date=date(2024, 9, 30),
        filed_at=datetime(2024, 11, 14),
        total_value=Decimal("1000.00"),
    )
    db_session.add(filing)
    db_session.commit()
    return filing


class TestCompanyModel:
    """Tests for Company model."""

    def test_company_creation(self, db_session):
        company = Company(ticker="AAPL", name="APPLE INC")
        db_session.add(company)
        db_session.commit()

        assert company.id is not None
        assert company.created_at is not None

    def test_ticker_is_unique(self, db_session):
        db_session.add(Company(ticker="AAPL", name="APPLE INC"))
        db_session.commit()

        db_session.add(Company(ticker="AAPL", name="Apple duplicate"))
        with pytest.raises(IntegrityError) as exc_info:
            db_session.commit()

        assert is_unique_violation(exc_info.value)


class TestInstitutionModel:
    """Tests for Institution model."""

    def test_cik_is_unique(self, db_session):
        db_session.add(Institution(cik="0001067983", name="BERKSHIRE HATHAWAY INC"))
        db_session.commit()

        db_session.add(Institution(cik="0001067983", name="Someone else"))
        with pytest.raises(IntegrityError) as exc_info:
            db_session.commit()

        assert is_unique_violation(exc_info.value)

    def test_optional_fields_default_to_none(self, db_session):
        institution = Institution(cik="0000000001", name="Small Fund LP")
        db_session.add(institution)
        db_session.commit()

        assert institution.institution_type is None
        assert institution.aum_estimate is None
        assert institution.updated_at is not None


class TestInstitutionalFilingModel:
    """Tests for InstitutionalFiling model."""

    def test_filing_relationship(self, db_session, filing):
        assert filing.institution.cik == "0001067983"
        assert filing.institution.filings == [filing]

    def test_accession_number_is_unique(self, db_session, filing):
        duplicate = InstitutionalFiling(
            institution_id=filing.institution_id,
            accession_number=filing.accession_number,
            report_date=date(2024, 9, 30),
            filed_at=datetime(2024, 11, 15),
            total_value=Decimal("1.00"),
        )
        db_session.add(duplicate)
        with pytest.raises(IntegrityError) as exc_info:
            db_session.commit()

        assert is_unique_violation(exc_info.value)


class TestInstitutionalHoldingModel:
    """Tests for InstitutionalHolding model."""

    def _holding(self, filing, company, **overrides):
        values = dict(
            filing_id=filing.id,
            institution_id=filing.institution_id,
            company_id=company.id,
            report_date=filing.report_date,
            shares=400000000,
            value=Decimal("250.00"),
            percent_of_portfolio=Decimal("25.0000"),
        )
        values.update(overrides)
        return InstitutionalHolding(**values)

    def test_holding_defaults(self, db_session, filing):
        company = Company(ticker="AAPL", name="APPLE INC")
        db_session.add(company)
        db_session.commit()

        holding = self._holding(filing, company)
        db_session.add(holding)
        db_session.commit()

        assert holding.is_new_position is False
        assert holding.is_closed_position is False
        assert holding.company.ticker == "AAPL"
        assert holding.filing.holdings == [holding]
        assert holding.institution.holdings == [holding]

    def test_percent_may_be_null(self, db_session, filing):
        company = Company(ticker="BAC", name="BANK OF AMERICA CORP")
        db_session.add(company)
        db_session.commit()

        holding = self._holding(filing, company, percent_of_portfolio=None)
        db_session.add(holding)
        db_session.commit()

        assert holding.percent_of_portfolio is None

    def test_one_row_per_company_per_filing(self, db_session, filing):
        company = Company(ticker="AAPL", name="APPLE INC")
        db_session.add(company)
        db_session.commit()

        db_session.add(self._holding(filing, company))
        db_session.commit()

        db_session.add(self._holding(filing, company, shares=1))
        with pytest.raises(IntegrityError) as exc_info:
            db_session.commit()

        assert is_unique_violation(exc_info.value)


class TestIsUniqueViolation:
    """Tests for duplicate-key detection across drivers."""

    def _error(self, orig):
        return IntegrityError("INSERT ...", {}, orig)

    def test_postgres_code(self):
        orig = Exception("duplicate key value")
        orig.pgcode = "23505"
        assert is_unique_violation(self._error(orig))

    def test_postgres_other_code(self):
        orig = Exception("null value in column")
        orig.pgcode = "23502"
        assert not is_unique_violation(self._error(orig))

    def test_mysql_duplicate_entry(self):
        orig = Exception(1062, "Duplicate entry 'AAPL' for key 'uq_companies_ticker'")
        assert is_unique_violation(self._error(orig))

    def test_not_null_is_not_unique(self, db_session):
        db_session.add(Company(ticker="AAPL", name=None))
        with pytest.raises(IntegrityError) as exc_info:
            db_session.commit()

        assert not is_unique_violation(exc_info.value)
