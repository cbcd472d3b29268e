#!/usr/bin/env python
"""
backend/database.py

Sets up the SQLAlchemy database connection, session management, and helper
functions for creating tables. All SatLedger models (Portfolio, Transaction,
Invoice) register with this Base.

Key Features:
- Loads environment variables from .env at project root
- Handles default SQLite or custom DB URLs
- Provides get_db() for FastAPI dependency injection
- UTCDateTime stores timestamps as fixed-width ISO8601 strings so that
  string comparison in SQL matches chronological order
"""

import os
import logging
import datetime

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator, String

# ------------------------------------------------------------------
# 0) Logging Setup
# ------------------------------------------------------------------
logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# 1) Environment Setup
# ------------------------------------------------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(BASE_DIR)

dotenv_path = os.path.join(PROJECT_ROOT, ".env")
load_dotenv(dotenv_path=dotenv_path)
logger.debug(f"Loaded .env from: {dotenv_path}")

DATABASE_FILE_ENV = os.getenv("DATABASE_FILE", "backend/satledger.db")
DATABASE_FILE = (
    DATABASE_FILE_ENV if os.path.isabs(DATABASE_FILE_ENV)
    else os.path.join(PROJECT_ROOT, DATABASE_FILE_ENV)
)

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATABASE_FILE}")
logger.debug(f"DATABASE_URL: {DATABASE_URL}")

if DATABASE_URL.startswith("sqlite:///"):
    db_dir = os.path.dirname(DATABASE_URL[len("sqlite:///"):])
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir)
        logger.debug(f"Created directory: {db_dir}")

# ------------------------------------------------------------------
# 2) SQLAlchemy Engine and Session Setup
# ------------------------------------------------------------------
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# ------------------------------------------------------------------
# 3) Custom UTC DateTime for SQLite
# ------------------------------------------------------------------
UTC_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_utc(value: datetime.datetime) -> datetime.datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Stores Python datetime objects as ISO8601 strings with 'Z' in SQLite,
    ensuring they are read back as offset-aware UTC datetimes.

    Microseconds are always written so every stored value has the same
    width and compares correctly as text.
    """
    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Convert Python datetime -> string before saving to DB."""
        if value is None:
            return None
        return to_utc(value).strftime(UTC_FORMAT)

    def process_result_value(self, value, dialect):
        """Convert string -> Python datetime (UTC) after fetching from DB."""
        if value is None:
            return None
        return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))

# ------------------------------------------------------------------
# 4) FastAPI Dependency Injection
# ------------------------------------------------------------------
def get_db():
    """
    Provides a DB session for FastAPI routes. Yields a SessionLocal instance
    and closes it after use to prevent leaks.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# ------------------------------------------------------------------
# 5) Table Initialization
# ------------------------------------------------------------------
def create_tables(bind=None):
    """
    Creates all tables that don't exist yet. Idempotent; never drops data.
    """
    # Import models to register with Base.metadata
    from backend.models import portfolio, transaction, invoice  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created or verified.")


if __name__ == "__main__":
    create_tables()
