"""
PostgreSQL Database Integration Module for the reservation escrow service.

This module owns the asyncpg connection pool and the schema. Queries live
in escrow_database.py.

Dependencies:
    - asyncpg: For async PostgreSQL operations
    - python-dotenv: For environment variable management (through config)
"""

import json
import logging
import os
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


SCHEMA_STATEMENTS = [
    # profiles and listings are owned by other parts of the platform; the
    # escrow core only reads them and flips listing status.
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        full_name TEXT,
        email TEXT,
        tax_id VARCHAR(14),
        is_verified BOOLEAN DEFAULT FALSE,
        kyc_status VARCHAR(20),
        completed_transactions_count INTEGER DEFAULT 0,
        telegram_chat_id BIGINT,
        avatar_url TEXT,
        city TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS listings (
        id SERIAL PRIMARY KEY,
        seller_id TEXT NOT NULL REFERENCES profiles(id),
        title TEXT NOT NULL,
        description TEXT,
        category VARCHAR(50),
        venue_city TEXT,
        asking_price NUMERIC(12, 2) NOT NULL,
        original_price NUMERIC(12, 2) NOT NULL,
        images TEXT[] DEFAULT '{}',
        event_date TIMESTAMPTZ NOT NULL,
        status VARCHAR(20) DEFAULT 'ACTIVE' CHECK (
            status IN ('DRAFT', 'ACTIVE', 'RESERVED', 'SOLD', 'CANCELLED', 'EXPIRED')
        ),
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id SERIAL PRIMARY KEY,
        code VARCHAR(20) UNIQUE NOT NULL,
        listing_id INTEGER NOT NULL REFERENCES listings(id),
        buyer_id TEXT NOT NULL REFERENCES profiles(id),
        seller_id TEXT NOT NULL REFERENCES profiles(id),
        quantity INTEGER NOT NULL DEFAULT 1,
        agreed_price NUMERIC(12, 2) NOT NULL,
        platform_fee NUMERIC(12, 2) NOT NULL,
        platform_fee_rate NUMERIC(6, 4) NOT NULL,
        seller_net_amount NUMERIC(12, 2) NOT NULL,
        buyer_fee NUMERIC(12, 2) NOT NULL DEFAULT 0,
        buyer_total NUMERIC(12, 2) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'INITIATED' CHECK (
            status IN ('INITIATED', 'AWAITING_PAYMENT', 'PAYMENT_CONFIRMED',
                       'ESCROW_HELD', 'TRANSFER_PENDING', 'COMPLETED',
                       'DISPUTE_OPENED', 'DISPUTE_RESOLVED', 'CANCELLED', 'REFUNDED')
        ),
        payment_method VARCHAR(10),
        payment_deadline TIMESTAMPTZ,
        payment_confirmed_at TIMESTAMPTZ,
        seller_transferred_at TIMESTAMPTZ,
        escrow_release_date TIMESTAMPTZ,
        buyer_confirmed_at TIMESTAMPTZ,
        auto_release BOOLEAN DEFAULT FALSE,
        completed_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        cancel_reason TEXT,
        refunded_at TIMESTAMPTZ,
        refund_reason TEXT,
        buyer_ip TEXT,
        seller_ip TEXT,
        failed_payment_attempts INTEGER DEFAULT 0,
        buyer_first_viewed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        CONSTRAINT positive_price CHECK (agreed_price > 0),
        CONSTRAINT net_plus_fee_is_price CHECK (seller_net_amount + platform_fee = agreed_price)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id SERIAL PRIMARY KEY,
        transaction_id INTEGER NOT NULL REFERENCES transactions(id),
        direction VARCHAR(10) NOT NULL CHECK (direction IN ('charge', 'payout')),
        payer_id TEXT,
        payee_id TEXT,
        gateway_id VARCHAR(100) UNIQUE,
        gross_amount NUMERIC(12, 2) NOT NULL,
        net_amount NUMERIC(12, 2) NOT NULL,
        platform_fee NUMERIC(12, 2) DEFAULT 0,
        method VARCHAR(10),
        status VARCHAR(20) NOT NULL DEFAULT 'PENDING' CHECK (
            status IN ('PENDING', 'SUCCEEDED', 'FAILED', 'REFUNDED', 'RETRY',
                       'REFUND_PENDING', 'REFUND_FAILED')
        ),
        attempts INTEGER DEFAULT 0,
        last_error TEXT,
        next_attempt_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS disputes (
        id SERIAL PRIMARY KEY,
        protocol VARCHAR(20) UNIQUE NOT NULL,
        transaction_id INTEGER NOT NULL REFERENCES transactions(id),
        opened_by TEXT NOT NULL REFERENCES profiles(id),
        reason VARCHAR(30) NOT NULL,
        description TEXT NOT NULL,
        evidence_urls TEXT[] DEFAULT '{}',
        status VARCHAR(20) NOT NULL DEFAULT 'OPEN' CHECK (
            status IN ('OPEN', 'UNDER_REVIEW', 'RESOLVED_BUYER', 'RESOLVED_SELLER', 'CLOSED')
        ),
        resolution_notes TEXT,
        resolved_by TEXT,
        resolved_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS vendor_approvals (
        id SERIAL PRIMARY KEY,
        token VARCHAR(64) UNIQUE NOT NULL,
        transaction_id INTEGER NOT NULL REFERENCES transactions(id),
        listing_id INTEGER NOT NULL REFERENCES listings(id),
        requested_by TEXT NOT NULL,
        vendor_name TEXT,
        vendor_email TEXT NOT NULL,
        vendor_phone TEXT,
        status VARCHAR(10) NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending', 'approved', 'rejected', 'expired')
        ),
        expires_at TIMESTAMPTZ NOT NULL,
        approved_at TIMESTAMPTZ,
        rejected_at TIMESTAMPTZ,
        rejected_reason TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS user_violations (
        user_id TEXT PRIMARY KEY,
        violation_count INTEGER NOT NULL DEFAULT 0,
        last_violation_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS violation_records (
        id SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES user_violations(user_id) ON DELETE CASCADE,
        conversation_id TEXT NOT NULL,
        violation_type TEXT NOT NULL,
        message_snippet VARCHAR(120),
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        event_id VARCHAR(200) PRIMARY KEY,
        event_type VARCHAR(50) NOT NULL,
        processed_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        kind VARCHAR(40) NOT NULL,
        message TEXT NOT NULL,
        context JSONB DEFAULT '{}'::jsonb,
        is_read BOOLEAN DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS fraud_reviews (
        id SERIAL PRIMARY KEY,
        subject_type VARCHAR(20) NOT NULL CHECK (subject_type IN ('listing', 'transaction')),
        subject_id INTEGER NOT NULL,
        score INTEGER NOT NULL,
        risk VARCHAR(10) NOT NULL,
        signals JSONB DEFAULT '[]'::jsonb,
        status VARCHAR(20) DEFAULT 'pending',
        created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
]

INDEX_STATEMENTS = """
CREATE INDEX IF NOT EXISTS idx_transactions_status_release
    ON transactions(status, escrow_release_date);
CREATE INDEX IF NOT EXISTS idx_transactions_status_deadline
    ON transactions(status, payment_deadline);
CREATE INDEX IF NOT EXISTS idx_transactions_buyer ON transactions(buyer_id);
CREATE INDEX IF NOT EXISTS idx_transactions_seller ON transactions(seller_id);
CREATE INDEX IF NOT EXISTS idx_transactions_listing_buyer ON transactions(listing_id, buyer_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_payments_active_direction
    ON payments(transaction_id, direction) WHERE status <> 'FAILED';
CREATE INDEX IF NOT EXISTS idx_payments_retry ON payments(status, next_attempt_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_disputes_active_opener
    ON disputes(transaction_id, opened_by) WHERE status IN ('OPEN', 'UNDER_REVIEW');
CREATE INDEX IF NOT EXISTS idx_disputes_transaction ON disputes(transaction_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_vendor_approvals_active
    ON vendor_approvals(transaction_id) WHERE status IN ('pending', 'approved');
CREATE INDEX IF NOT EXISTS idx_violation_records_user ON violation_records(user_id);
CREATE INDEX IF NOT EXISTS idx_listings_category_status ON listings(category, status);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at DESC);
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns into Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema='pg_catalog'
    )


class Database:
    """
    Database manager owning the asyncpg pool.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string. If not provided,
                             will be read from DATABASE_URL environment variable.
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string or os.getenv('DATABASE_URL')
        self.min_size = min_size
        self.max_size = max_size

        if not self.connection_string:
            raise DatabaseError(
                "Database connection string not provided. "
                "Set DATABASE_URL environment variable or pass connection_string parameter."
            )

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection
            )
            logger.info("Database connection pool created successfully")
        except Exception as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def init_database(self) -> None:
        """
        Initialize database schema by creating tables if they don't exist.

        Raises:
            DatabaseError: If table creation fails
        """
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for statement in SCHEMA_STATEMENTS:
                        await conn.execute(statement)
                    await conn.execute(INDEX_STATEMENTS)

            logger.info("Database initialization completed successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseError(f"Failed to initialize database: {e}") from e


_db_instance: Optional[Database] = None


async def get_database(
    connection_string: Optional[str] = None,
    min_size: int = 2,
    max_size: int = 10
) -> Database:
    """
    Get or create the database singleton instance.

    Args:
        connection_string: PostgreSQL connection string (optional)
        min_size: Minimum pool size
        max_size: Maximum pool size

    Returns:
        Connected Database instance with schema initialized
    """
    global _db_instance

    if _db_instance is None:
        database = Database(connection_string, min_size, max_size)
        await database.connect()
        await database.init_database()
        _db_instance = database

    return _db_instance


async def close_database() -> None:
    """Close the database singleton instance."""
    global _db_instance

    if _db_instance:
        await _db_instance.disconnect()
        _db_instance = None
