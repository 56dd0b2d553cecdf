"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the Gameroom Token Backend.
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, ProgrammingError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_options(database_url: str) -> dict:
    """Pool options per dialect; SQLite has no server-side pool"""
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False, "timeout": 30},
            "echo": False,
        }
    return {
        "pool_size": 7,           # Sync base pool
        "max_overflow": 15,       # Burst capacity for webhook storms
        "pool_pre_ping": True,    # Validate connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,       # Wait max 30 seconds for connection during bursts
        "echo": False,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "gameroom_token_backend",
        },
    }


def configure_sqlite_locking(target_engine) -> None:
    """
    SQLite ignores SELECT ... FOR UPDATE. Open every transaction with BEGIN IMMEDIATE so
    writers serialize on the database lock instead of failing on lock upgrade.
    """

    @event.listens_for(target_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_engine(Config.DATABASE_URL, **_engine_options(Config.DATABASE_URL))
if engine.dialect.name == "sqlite":
    configure_sqlite_locking(engine)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except ProgrammingError as e:
        if "already exists" in str(e):
            logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            return True
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection() -> bool:
    """Run a trivial query to confirm the database is reachable"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection OK")
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False

