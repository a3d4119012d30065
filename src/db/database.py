"""Database connection and session management."""
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from src.config import get_settings

logger = logging.getLogger(__name__)

# Driver-level codes for duplicate-key errors
_PG_UNIQUE_VIOLATION = "23505"
_MYSQL_DUPLICATE_ENTRY = 1062


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


settings = get_settings()
engine = create_engine(settings.database_url, echo=settings.debug)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return True if an IntegrityError was raised by a unique/primary key conflict.

    Other integrity failures (NOT NULL, foreign keys) return False.
    """
    orig = getattr(exc, "orig", None)
    if orig is None:
        return False

    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode is not None:
        return pgcode == _PG_UNIQUE_VIOLATION

    args = getattr(orig, "args", ())
    if args and args[0] == _MYSQL_DUPLICATE_ENTRY:
        return True

    message = str(orig)
    return "UNIQUE constraint failed" in message or "Duplicate entry" in message


def init_db():
    """Create all tables."""
    # Import all model modules so they register with Base.metadata
    import src.db.models  # noqa: F401
    import src.db.models_institutional  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")
