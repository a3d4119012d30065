"""SQLAlchemy models shared across InsiderIntel features."""
from datetime import datetime

from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from src.db.database import Base


class Company(Base):
    """Companies table - publicly traded issuers keyed by ticker symbol.

    Tickers are stored upper-cased; rows are created lazily the first time
    any ingested holding references a ticker.
    """
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint('ticker', name='uq_companies_ticker'),
        {"mysql_charset": "utf8mb4"},
    )
