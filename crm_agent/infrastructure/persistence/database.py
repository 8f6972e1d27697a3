"""
SQLite database shared by the conversation, approval and domain stores.

Every write runs inside ``transaction()``; nested calls join the outer
transaction so a multi-statement apply commits or rolls back as one unit.
"""

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence
import asyncio
import sqlite3
import threading

import structlog

logger = structlog.get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        active_agent TEXT,
        agent_history TEXT NOT NULL DEFAULT '[]',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        organization_id TEXT NOT NULL,
        message_json TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON conversation_messages(conversation_id, id)",
    """
    CREATE TABLE IF NOT EXISTS ai_approvals (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        conversation_id TEXT,
        action TEXT NOT NULL,
        agent TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('pending','approved','rejected','applied','cancelled')),
        record_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_approvals_org_status ON ai_approvals(organization_id, status)",
    """
    CREATE TABLE IF NOT EXISTS customers (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        customer_type TEXT NOT NULL DEFAULT 'business',
        internal_notes TEXT NOT NULL DEFAULT '',
        tax_id TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customer_activities (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        activity_type TEXT NOT NULL,
        description TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        sku TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'uncategorized',
        base_price REAL NOT NULL DEFAULT 0,
        cost_price REAL NOT NULL DEFAULT 0,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        order_number TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        order_date TEXT NOT NULL,
        due_date TEXT,
        subtotal REAL NOT NULL DEFAULT 0,
        tax_amount REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0,
        paid_amount REAL NOT NULL DEFAULT 0,
        balance_due REAL NOT NULL DEFAULT 0,
        internal_notes TEXT,
        customer_notes TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT,
        UNIQUE(organization_id, order_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_line_items (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        order_id TEXT NOT NULL REFERENCES orders(id),
        product_id TEXT NOT NULL,
        description TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        unit_price REAL NOT NULL,
        line_total REAL NOT NULL,
        notes TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotes (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        quote_number TEXT NOT NULL,
        title TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        valid_until TEXT NOT NULL,
        subtotal REAL NOT NULL DEFAULT 0,
        tax_amount REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0,
        internal_notes TEXT,
        customer_notes TEXT,
        line_items_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        UNIQUE(organization_id, quote_number)
    )
    """,
]


class Database:
    """
    Thin wrapper over a single sqlite3 connection.

    Prototype: SQLite. Production would point the stores at PostgreSQL
    with row-level security on organization_id.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._init_schema()

    def _init_schema(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Database initialized", db_path=self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; joins an enclosing transaction if one is open"""

        with self._lock:
            if self._in_transaction:
                yield self._conn
                return

            self._conn.execute("BEGIN")
            self._in_transaction = True
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                logger.debug("Transaction rolled back")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    async def read_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        """fetch_one on a worker thread so the event loop keeps serving other sessions"""
        return await asyncio.to_thread(self.fetch_one, sql, params)

    async def read_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return await asyncio.to_thread(self.fetch_all, sql, params)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
