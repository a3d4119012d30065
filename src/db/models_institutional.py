"""SQLAlchemy models for institutional (13F) holdings data."""
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    String, DECIMAL, Integer, BigInteger, Boolean,
    DateTime, Date, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from src.db.database import Base
from src.db.models import Company


class Institution(Base):
    """Institutions table - investment managers that file 13F-HR reports."""
    __tablename__ = "institutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # SEC Central Index Key, 10-digit zero-padded
    cik: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    institution_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    aum_estimate: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(20, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    filings: Mapped[List["InstitutionalFiling"]] = relationship(
        "InstitutionalFiling", back_populates="institution"
    )
    holdings: Mapped[List["InstitutionalHolding"]] = relationship(
        "InstitutionalHolding", back_populates="institution"
    )

    __table_args__ = (
        UniqueConstraint('cik', name='uq_institutions_cik'),
        {"mysql_charset": "utf8mb4"},
    )


class InstitutionalFiling(Base):
    """Institutional filings table - one row per 13F-HR submission.

    Rows are written once when an accession number is first ingested and
    are never updated afterwards.
    """
    __tablename__ = "institutional_filings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    institution_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("institutions.id"), nullable=False, index=True
    )

    accession_number: Mapped[str] = mapped_column(String(25), nullable=False)

    # Period of report (end of the reporting quarter)
    report_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    filed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(DECIMAL(20, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    # Relationships
    institution: Mapped["Institution"] = relationship(
        "Institution", back_populates="filings"
    )
    holdings: Mapped[List["InstitutionalHolding"]] = relationship(
        "InstitutionalHolding", back_populates="filing"
    )

    __table_args__ = (
        UniqueConstraint('accession_number', name='uq_institutional_filings_accession'),
        {"mysql_charset": "utf8mb4"},
    )


class InstitutionalHolding(Base):
    """Institutional holding table - one position line of a 13F filing.

    Values are stored in dollars. percent_of_portfolio is the position's
    share of the filing's total value and is NULL when that total is zero.
    """
    __tablename__ = "institutional_holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    filing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("institutional_filings.id"), nullable=False, index=True
    )
    institution_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("institutions.id"), nullable=False, index=True
    )
    company_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("companies.id"), nullable=False, index=True
    )

    report_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    # Holding details
    shares: Mapped[int] = mapped_column(BigInteger, nullable=False)
    value: Mapped[Decimal] = mapped_column(DECIMAL(20, 2), nullable=False)
    percent_of_portfolio: Mapped[Optional[Decimal]] = mapped_column(
        DECIMAL(9, 4), nullable=True
    )

    # Position-change flags, filled in by later enrichment
    is_new_position: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_closed_position: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    # Relationships
    filing: Mapped["InstitutionalFiling"] = relationship(
        "InstitutionalFiling", back_populates="holdings"
    )
    institution: Mapped["Institution"] = relationship(
        "Institution", back_populates="holdings"
    )
    company: Mapped["Company"] = relationship("Company")

    __table_args__ = (
        # One row per company per filing
        UniqueConstraint(
            'filing_id', 'company_id',
            name='uq_institutional_holding_filing_company'
        ),
        {"mysql_charset": "utf8mb4"},
    )
