"""
Database Initialization Script

Creates SQLite tables for the order ledger: orders, order_observations.
Also provides the async engine and session factory used by SqlAlchemyOrderStore.
"""
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import settings

logger = logging.getLogger(__name__)


def create_tables(conn: sqlite3.Connection) -> None:
    """
    Create all database tables with indexes.

    Tables:
    - orders: One row per merchant transaction id
    - order_observations: Audit trail of every outcome handed to the ledger

    Also enables WAL mode for better concurrency.
    """
    cursor = conn.cursor()

    # Enable WAL mode for better concurrency (prevents most locking issues)
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            transaction_id TEXT PRIMARY KEY,
            customer_data TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK(amount > 0),
            display_amount TEXT,
            status TEXT NOT NULL CHECK(status IN ('PENDING', 'PAID', 'FAILED')),
            gateway_transaction_id TEXT,
            last_outcome_code TEXT,
            initiation_data TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at DESC)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS order_observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id TEXT NOT NULL,
            code TEXT NOT NULL,
            status TEXT NOT NULL,
            source TEXT NOT NULL CHECK(source IN ('CALLBACK', 'POLL')),
            gateway_transaction_id TEXT,
            observed_at TIMESTAMP NOT NULL,
            disposition TEXT NOT NULL
                CHECK(disposition IN ('APPLIED', 'REFRESHED', 'DUPLICATE', 'CONFLICT')),
            FOREIGN KEY (transaction_id) REFERENCES orders(transaction_id)
        )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_observations_txn ON order_observations(transaction_id)"
    )

    conn.commit()
    logger.info("All ledger tables created successfully")


def initialize_database(database_path: Optional[str] = None) -> Path:
    """
    Initialize the database with all required tables.

    Called during FastAPI startup when LEDGER_BACKEND=sqlite.

    Returns:
        Path of the initialized database file
    """
    db_path = Path(database_path or settings.database_path)

    logger.info(f"Initializing database at: {db_path}")

    # Create database directory if it doesn't exist
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        create_tables(conn)
    finally:
        conn.close()

    return db_path


# ============================================================================
# SQLAlchemy Async Session Setup
# ============================================================================

def create_engine_for(database_path: str) -> AsyncEngine:
    """Create an aiosqlite-backed async engine for the given database file."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
        pool_recycle=3600
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory with expire_on_commit disabled so rows stay readable."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
