"""
Escrow query layer.

Every read and write the escrow core performs against PostgreSQL goes
through EscrowDatabase. Status changes are compare-and-set updates
(``WHERE id = $1 AND status = ANY($2)``) so that concurrent handlers and
sweep workers on different instances can never both apply the same
transition.
"""

import logging
import re
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Iterable

import asyncpg

from database import Database, DatabaseError

logger = logging.getLogger(__name__)

_COLUMN_RE = re.compile(r'^[a-z_][a-z0-9_]*$')


class DuplicateRecordError(DatabaseError):
    """Raised when an insert hits a unique constraint."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


def _set_clause(fields: Dict[str, Any], start: int) -> Tuple[str, List[Any]]:
    """
    Build a ``SET a = $n, b = $n+1`` fragment from a dict of column values.

    Args:
        fields: Column name to value
        start: Index of the first placeholder

    Returns:
        Tuple of (sql fragment, ordered values)
    """
    parts = []
    values = []
    for offset, (column, value) in enumerate(fields.items()):
        if not _COLUMN_RE.match(column):
            raise DatabaseError(f"Invalid column name: {column!r}")
        parts.append(f"{column} = ${start + offset}")
        values.append(value)
    return ', '.join(parts), values


def _insert_parts(fields: Dict[str, Any]) -> Tuple[str, str, List[Any]]:
    """Column list, placeholder list and values for an INSERT."""
    columns = list(fields.keys())
    for column in columns:
        if not _COLUMN_RE.match(column):
            raise DatabaseError(f"Invalid column name: {column!r}")
    placeholders = ', '.join(f"${i}" for i in range(1, len(columns) + 1))
    return ', '.join(columns), placeholders, list(fields.values())


def _row(record: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    return dict(record) if record is not None else None


class EscrowDatabase:
    """Database handler for the escrow core."""

    def __init__(self, database: Database):
        """
        Args:
            database: Connected Database instance
        """
        self.db = database

    @property
    def pool(self) -> asyncpg.Pool:
        if not self.db.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.db.pool

    async def ping(self) -> bool:
        """Run a trivial query; used by the health check."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def _insert(self, conn: asyncpg.Connection, table: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        columns, placeholders, values = _insert_parts(fields)
        try:
            record = await conn.fetchrow(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
                *values
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(
                f"Duplicate {table} record: {e}",
                constraint=e.constraint_name
            ) from e
        return dict(record)

    # ==================== PROFILES & LISTINGS ====================

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM profiles WHERE id = $1", user_id))

    async def get_listing(self, listing_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM listings WHERE id = $1", listing_id))

    async def update_listing_status(
        self,
        listing_id: int,
        new_status: str,
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Set a listing's status, optionally only from the given statuses.

        Returns:
            True if a row was updated
        """
        async with self.pool.acquire() as conn:
            if expected_statuses is None:
                result = await conn.execute(
                    "UPDATE listings SET status = $2 WHERE id = $1",
                    listing_id, new_status
                )
            else:
                result = await conn.execute(
                    "UPDATE listings SET status = $2 WHERE id = $1 AND status = ANY($3::text[])",
                    listing_id, new_status, list(expected_statuses)
                )
        return result == "UPDATE 1"

    async def get_seller_listings(
        self,
        seller_id: str,
        exclude_listing_id: Optional[int] = None,
        statuses: Iterable[str] = ('ACTIVE', 'RESERVED')
    ) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM listings
                WHERE seller_id = $1
                AND status = ANY($2::text[])
                AND ($3::int IS NULL OR id <> $3)
                ORDER BY created_at DESC
                """,
                seller_id, list(statuses), exclude_listing_id
            )
        return [dict(r) for r in records]

    async def get_active_listings(
        self,
        category: Optional[str] = None,
        exclude_listing_id: Optional[int] = None,
        limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Active listings used as the pricing cohort and for duplicate detection."""
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM listings
                WHERE status = 'ACTIVE'
                AND ($1::text IS NULL OR category = $1)
                AND ($2::int IS NULL OR id <> $2)
                ORDER BY created_at DESC
                LIMIT $3
                """,
                category, exclude_listing_id, limit
            )
        return [dict(r) for r in records]

    # ==================== TRANSACTIONS ====================

    async def insert_transaction(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a transaction row.

        Raises:
            DuplicateRecordError: If the code already exists
        """
        async with self.pool.acquire() as conn:
            transaction = await self._insert(conn, 'transactions', fields)
        logger.info(f"Transaction row created: {transaction['code']}")
        return transaction

    async def get_transaction(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM transactions WHERE id = $1", transaction_id))

    async def get_transaction_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM transactions WHERE code = $1", code))

    async def find_open_transaction(
        self,
        listing_id: int,
        buyer_id: str,
        terminal_statuses: Iterable[str]
    ) -> Optional[Dict[str, Any]]:
        """A non-terminal transaction by this buyer on this listing, if any."""
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                """
                SELECT * FROM transactions
                WHERE listing_id = $1 AND buyer_id = $2
                AND NOT (status = ANY($3::text[]))
                ORDER BY created_at DESC
                LIMIT 1
                """,
                listing_id, buyer_id, list(terminal_statuses)
            ))

    async def transition_transaction(
        self,
        transaction_id: int,
        expected_statuses: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically move a transaction to ``new_status`` if, and only if, its
        current status is one of ``expected_statuses``.

        Args:
            transaction_id: Transaction id
            expected_statuses: Statuses the caller observed as legal
            new_status: Target status
            fields: Extra columns to set in the same statement

        Returns:
            The updated row, or None if the compare-and-set lost
        """
        async with self.pool.acquire() as conn:
            return await self._transition_transaction(
                conn, transaction_id, expected_statuses, new_status, fields
            )

    async def _transition_transaction(
        self,
        conn: asyncpg.Connection,
        transaction_id: int,
        expected_statuses: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        updates = dict(fields or {})
        updates['status'] = new_status
        set_sql, values = _set_clause(updates, start=3)
        record = await conn.fetchrow(
            f"""
            UPDATE transactions
            SET {set_sql}, updated_at = NOW()
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING *
            """,
            transaction_id, list(expected_statuses), *values
        )
        return _row(record)

    async def increment_failed_payment_attempts(self, transaction_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE transactions
                SET failed_payment_attempts = failed_payment_attempts + 1, updated_at = NOW()
                WHERE id = $1
                """,
                transaction_id
            )

    async def get_auto_release_candidates(self, now: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        """TRANSFER_PENDING transactions whose escrow release date has passed."""
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM transactions
                WHERE status = 'TRANSFER_PENDING'
                AND escrow_release_date IS NOT NULL
                AND escrow_release_date <= $1
                ORDER BY escrow_release_date ASC
                LIMIT $2
                """,
                now, limit
            )
        return [dict(r) for r in records]

    async def get_unpaid_expired(self, now: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM transactions
                WHERE status IN ('INITIATED', 'AWAITING_PAYMENT')
                AND payment_deadline IS NOT NULL
                AND payment_deadline < $1
                ORDER BY payment_deadline ASC
                LIMIT $2
                """,
                now, limit
            )
        return [dict(r) for r in records]

    async def count_buyer_transactions_since(self, buyer_id: str, since: datetime) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM transactions WHERE buyer_id = $1 AND created_at >= $2",
                buyer_id, since
            )

    async def list_user_transactions(
        self,
        user_id: str,
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM transactions
                WHERE buyer_id = $1 OR seller_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                user_id, limit, offset
            )
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM transactions WHERE buyer_id = $1 OR seller_id = $1",
                user_id
            )
        return [dict(r) for r in records], total

    # ==================== PAYMENTS ====================

    async def insert_payment(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            DuplicateRecordError: If an active payment already exists in this direction
        """
        async with self.pool.acquire() as conn:
            return await self._insert(conn, 'payments', fields)

    async def get_active_payment(self, transaction_id: int, direction: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                """
                SELECT * FROM payments
                WHERE transaction_id = $1 AND direction = $2 AND status <> 'FAILED'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                transaction_id, direction
            ))

    async def get_payment_by_gateway_id(self, gateway_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM payments WHERE gateway_id = $1", gateway_id))

    async def update_payment(self, payment_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        set_sql, values = _set_clause(fields, start=2)
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                f"UPDATE payments SET {set_sql}, updated_at = NOW() WHERE id = $1 RETURNING *",
                payment_id, *values
            ))

    async def transition_payment(
        self,
        payment_id: int,
        expected_statuses: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-set on a payment row's status; None if it lost."""
        updates = dict(fields or {})
        updates['status'] = new_status
        set_sql, values = _set_clause(updates, start=3)
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                f"""
                UPDATE payments
                SET {set_sql}, updated_at = NOW()
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING *
                """,
                payment_id, list(expected_statuses), *values
            ))

    async def get_payouts_due(self, now: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Payouts to re-attempt: rejected ones queued as RETRY, and PENDING
        ones whose create call ended without a gateway id.
        """
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM payments
                WHERE direction = 'payout'
                AND (
                    (status = 'RETRY' AND (next_attempt_at IS NULL OR next_attempt_at <= $1))
                    OR (status = 'PENDING' AND gateway_id IS NULL AND next_attempt_at <= $1)
                )
                ORDER BY next_attempt_at ASC NULLS FIRST
                LIMIT $2
                """,
                now, limit
            )
        return [dict(r) for r in records]

    async def get_refunds_due(self, now: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM payments
                WHERE direction = 'charge' AND status = 'REFUND_PENDING'
                AND next_attempt_at <= $1
                ORDER BY next_attempt_at ASC
                LIMIT $2
                """,
                now, limit
            )
        return [dict(r) for r in records]

    # ==================== DISPUTES ====================

    async def open_dispute(
        self,
        fields: Dict[str, Any],
        expected_statuses: Iterable[str],
        forced_status: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Insert a dispute and force the transaction status in one database
        transaction.

        Returns:
            (dispute, transaction); both None if the transaction was no longer
            in one of ``expected_statuses``

        Raises:
            DuplicateRecordError: On protocol collision or an existing active
                dispute by the same opener
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                transaction = await self._transition_transaction(
                    conn, fields['transaction_id'], expected_statuses, forced_status
                )
                if transaction is None:
                    return None, None
                dispute = await self._insert(conn, 'disputes', fields)
        return dispute, transaction

    async def get_dispute(self, dispute_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM disputes WHERE id = $1", dispute_id))

    async def get_active_dispute(self, transaction_id: int, opened_by: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                """
                SELECT * FROM disputes
                WHERE transaction_id = $1 AND opened_by = $2
                AND status IN ('OPEN', 'UNDER_REVIEW')
                """,
                transaction_id, opened_by
            ))

    async def count_active_disputes(self, transaction_id: int) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM disputes
                WHERE transaction_id = $1 AND status IN ('OPEN', 'UNDER_REVIEW')
                """,
                transaction_id
            )

    async def update_dispute_status(
        self,
        dispute_id: int,
        expected_statuses: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        updates = dict(fields or {})
        updates['status'] = new_status
        set_sql, values = _set_clause(updates, start=3)
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                f"""
                UPDATE disputes SET {set_sql}, updated_at = NOW()
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING *
                """,
                dispute_id, list(expected_statuses), *values
            ))

    async def resolve_dispute(
        self,
        dispute_id: int,
        resolution: str,
        fields: Dict[str, Any],
        transaction_from: str,
        transaction_to: str
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Close a dispute and, when it was the last active one on its
        transaction, move the transaction out of the dispute state, all in
        one database transaction.

        Returns:
            (dispute, transaction); dispute is None if it was not active,
            transaction is None if other disputes remain active
        """
        updates = dict(fields)
        updates['status'] = resolution
        set_sql, values = _set_clause(updates, start=2)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                dispute = _row(await conn.fetchrow(
                    f"""
                    UPDATE disputes SET {set_sql}, updated_at = NOW()
                    WHERE id = $1 AND status IN ('OPEN', 'UNDER_REVIEW')
                    RETURNING *
                    """,
                    dispute_id, *values
                ))
                if dispute is None:
                    return None, None

                remaining = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM disputes
                    WHERE transaction_id = $1 AND status IN ('OPEN', 'UNDER_REVIEW')
                    """,
                    dispute['transaction_id']
                )
                transaction = None
                if remaining == 0:
                    transaction = await self._transition_transaction(
                        conn, dispute['transaction_id'], [transaction_from], transaction_to
                    )
        return dispute, transaction

    async def list_user_disputes(
        self,
        user_id: str,
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Disputes on transactions where the user is buyer or seller."""
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT d.*, t.code AS transaction_code
                FROM disputes d
                JOIN transactions t ON t.id = d.transaction_id
                WHERE t.buyer_id = $1 OR t.seller_id = $1
                ORDER BY d.created_at DESC
                LIMIT $2 OFFSET $3
                """,
                user_id, limit, offset
            )
            total = await conn.fetchval(
                """
                SELECT COUNT(*) FROM disputes d
                JOIN transactions t ON t.id = d.transaction_id
                WHERE t.buyer_id = $1 OR t.seller_id = $1
                """,
                user_id
            )
        return [dict(r) for r in records], total

    # ==================== VENDOR APPROVALS ====================

    async def insert_vendor_approval(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            DuplicateRecordError: If a pending/approved record already exists
        """
        async with self.pool.acquire() as conn:
            return await self._insert(conn, 'vendor_approvals', fields)

    async def get_vendor_approval_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow("SELECT * FROM vendor_approvals WHERE token = $1", token))

    async def get_active_vendor_approval(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                """
                SELECT * FROM vendor_approvals
                WHERE transaction_id = $1 AND status IN ('pending', 'approved')
                """,
                transaction_id
            ))

    async def get_latest_vendor_approval(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                """
                SELECT * FROM vendor_approvals
                WHERE transaction_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                transaction_id
            ))

    async def update_vendor_approval(
        self,
        approval_id: int,
        expected_status: str,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        updates = dict(fields or {})
        updates['status'] = new_status
        set_sql, values = _set_clause(updates, start=3)
        async with self.pool.acquire() as conn:
            return _row(await conn.fetchrow(
                f"""
                UPDATE vendor_approvals SET {set_sql}
                WHERE id = $1 AND status = $2
                RETURNING *
                """,
                approval_id, expected_status, *values
            ))

    # ==================== CHAT VIOLATIONS ====================

    async def record_violation(
        self,
        user_id: str,
        conversation_id: str,
        violation_type: str,
        message_snippet: str,
        now: datetime
    ) -> Dict[str, Any]:
        """
        Atomically increment the user's counter and append a record.

        Returns:
            Violation data with ``violation_count`` and ordered ``records``
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                counter = await conn.fetchrow(
                    """
                    INSERT INTO user_violations (user_id, violation_count, last_violation_at)
                    VALUES ($1, 1, $2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET violation_count = user_violations.violation_count + 1,
                        last_violation_at = EXCLUDED.last_violation_at
                    RETURNING *
                    """,
                    user_id, now
                )
                await conn.execute(
                    """
                    INSERT INTO violation_records
                    (user_id, conversation_id, violation_type, message_snippet, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    user_id, conversation_id, violation_type, message_snippet, now
                )
                records = await conn.fetch(
                    "SELECT * FROM violation_records WHERE user_id = $1 ORDER BY id ASC",
                    user_id
                )
        data = dict(counter)
        data['records'] = [dict(r) for r in records]
        return data

    async def get_violation_data(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            counter = await conn.fetchrow("SELECT * FROM user_violations WHERE user_id = $1", user_id)
            if counter is None:
                return None
            records = await conn.fetch(
                "SELECT * FROM violation_records WHERE user_id = $1 ORDER BY id ASC",
                user_id
            )
        data = dict(counter)
        data['records'] = [dict(r) for r in records]
        return data

    async def clear_violations(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM user_violations WHERE user_id = $1", user_id)
        return result == "DELETE 1"

    async def list_violations(self) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            records = await conn.fetch(
                "SELECT * FROM user_violations ORDER BY violation_count DESC, last_violation_at DESC"
            )
        return [dict(r) for r in records]

    # ==================== WEBHOOKS, NOTIFICATIONS, REVIEWS ====================

    async def register_webhook_event(self, event_id: str, event_type: str) -> bool:
        """
        Record a webhook event id.

        Returns:
            False if the event was already processed
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO webhook_events (event_id, event_type)
                VALUES ($1, $2)
                ON CONFLICT (event_id) DO NOTHING
                """,
                event_id, event_type
            )
        return result == "INSERT 0 1"

    async def delete_webhook_event(self, event_id: str) -> None:
        """Forget an event whose processing failed so a redelivery is applied."""
        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM webhook_events WHERE event_id = $1", event_id)

    async def insert_notification(
        self,
        user_id: str,
        kind: str,
        message: str,
        context: Dict[str, Any]
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO notifications (user_id, kind, message, context) VALUES ($1, $2, $3, $4)",
                user_id, kind, message, context
            )

    async def enqueue_fraud_review(
        self,
        subject_type: str,
        subject_id: int,
        score: int,
        risk: str,
        signals: List[Dict[str, Any]]
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO fraud_reviews (subject_type, subject_id, score, risk, signals)
                VALUES ($1, $2, $3, $4, $5)
                """,
                subject_type, subject_id, score, risk, signals
            )
