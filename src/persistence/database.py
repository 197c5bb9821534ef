"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.

Every read-modify-write on a tenant's ledger runs inside ``Database.transaction``:
SQLite takes the database write lock up front (``BEGIN IMMEDIATE``) and
PostgreSQL takes a transaction-scoped advisory lock on the tenant key, so a
balance read and the insert that depends on it are serialized per tenant.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL,
    reference_id TEXT,
    created_at TEXT NOT NULL
);

-- Credit package catalogue
CREATE TABLE IF NOT EXISTS credit_packages (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    credits INTEGER NOT NULL,
    price_cents INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

-- Processor customers, one per tenant
CREATE TABLE IF NOT EXISTS processor_customers (
    tenant_id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Saved payment methods
CREATE TABLE IF NOT EXISTS payment_methods (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    external_id TEXT NOT NULL UNIQUE,
    customer_id TEXT,
    card_brand TEXT,
    card_last4 TEXT,
    card_exp_month INTEGER,
    card_exp_year INTEGER,
    is_default INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

-- Auto-recharge settings, one row per tenant
CREATE TABLE IF NOT EXISTS auto_recharge_settings (
    tenant_id TEXT PRIMARY KEY,
    is_enabled INTEGER NOT NULL DEFAULT 0,
    minimum_balance INTEGER NOT NULL DEFAULT 100,
    recharge_amount INTEGER NOT NULL DEFAULT 1000,
    payment_method_id TEXT,
    last_triggered_at TEXT,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (payment_method_id) REFERENCES payment_methods(id)
);

-- Low-balance alert preferences, one row per tenant
CREATE TABLE IF NOT EXISTS notification_preferences (
    tenant_id TEXT PRIMARY KEY,
    low_balance_threshold INTEGER NOT NULL DEFAULT 100,
    email_notifications INTEGER NOT NULL DEFAULT 1,
    notification_email TEXT,
    updated_at TEXT NOT NULL
);

-- Payment history
CREATE TABLE IF NOT EXISTS payment_records (
    id TEXT PRIMARY KEY,
    charge_key TEXT NOT NULL UNIQUE,
    external_payment_id TEXT UNIQUE,
    tenant_id TEXT NOT NULL,
    customer_id TEXT,
    payment_method_id TEXT,
    amount_cents INTEGER NOT NULL,
    subtotal_cents INTEGER NOT NULL,
    tax_cents INTEGER NOT NULL DEFAULT 0,
    tax_rate REAL NOT NULL DEFAULT 0.0,
    tax_name TEXT,
    credits_purchased INTEGER NOT NULL,
    status TEXT NOT NULL,
    is_auto_recharge INTEGER NOT NULL DEFAULT 0,
    description TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Metered subscriptions (rented phone numbers)
CREATE TABLE IF NOT EXISTS metered_subscriptions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    resource TEXT NOT NULL,
    monthly_cost INTEGER NOT NULL,
    next_billing_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Manual reconciliation queue
CREATE TABLE IF NOT EXISTS reconciliation_queue (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    tenant_id TEXT,
    external_id TEXT,
    details TEXT,  -- JSON object
    status TEXT NOT NULL DEFAULT 'open',
    created_at TEXT NOT NULL,
    resolved_at TEXT
);

-- Notification outbox
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON object
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_reference
    ON credit_transactions(tenant_id, type, reference_id) WHERE reference_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_ledger_tenant ON credit_transactions(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payment_methods_tenant ON payment_methods(tenant_id);
CREATE INDEX IF NOT EXISTS idx_payment_records_tenant ON payment_records(tenant_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_due ON metered_subscriptions(status, next_billing_date);
CREATE INDEX IF NOT EXISTS idx_reconciliation_status ON reconciliation_queue(status);
CREATE INDEX IF NOT EXISTS idx_notifications_status ON notifications(status);
"""

POSTGRES_SCHEMA_SQL = """
-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    amount BIGINT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL,
    reference_id TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Credit package catalogue
CREATE TABLE IF NOT EXISTS credit_packages (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    credits INTEGER NOT NULL,
    price_cents INTEGER NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

-- Processor customers
CREATE TABLE IF NOT EXISTS processor_customers (
    tenant_id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL
);

-- Saved payment methods
CREATE TABLE IF NOT EXISTS payment_methods (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    external_id TEXT NOT NULL UNIQUE,
    customer_id TEXT,
    card_brand TEXT,
    card_last4 TEXT,
    card_exp_month INTEGER,
    card_exp_year INTEGER,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL
);

-- Auto-recharge settings
CREATE TABLE IF NOT EXISTS auto_recharge_settings (
    tenant_id TEXT PRIMARY KEY,
    is_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    minimum_balance INTEGER NOT NULL DEFAULT 100,
    recharge_amount INTEGER NOT NULL DEFAULT 1000,
    payment_method_id TEXT REFERENCES payment_methods(id),
    last_triggered_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Low-balance alert preferences
CREATE TABLE IF NOT EXISTS notification_preferences (
    tenant_id TEXT PRIMARY KEY,
    low_balance_threshold INTEGER NOT NULL DEFAULT 100,
    email_notifications BOOLEAN NOT NULL DEFAULT TRUE,
    notification_email TEXT,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Payment history
CREATE TABLE IF NOT EXISTS payment_records (
    id TEXT PRIMARY KEY,
    charge_key TEXT NOT NULL UNIQUE,
    external_payment_id TEXT UNIQUE,
    tenant_id TEXT NOT NULL,
    customer_id TEXT,
    payment_method_id TEXT,
    amount_cents INTEGER NOT NULL,
    subtotal_cents INTEGER NOT NULL,
    tax_cents INTEGER NOT NULL DEFAULT 0,
    tax_rate REAL NOT NULL DEFAULT 0.0,
    tax_name TEXT,
    credits_purchased INTEGER NOT NULL,
    status TEXT NOT NULL,
    is_auto_recharge BOOLEAN NOT NULL DEFAULT FALSE,
    description TEXT,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Metered subscriptions
CREATE TABLE IF NOT EXISTS metered_subscriptions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    resource TEXT NOT NULL,
    monthly_cost INTEGER NOT NULL,
    next_billing_date TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Manual reconciliation queue
CREATE TABLE IF NOT EXISTS reconciliation_queue (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    tenant_id TEXT,
    external_id TEXT,
    details JSONB,
    status TEXT NOT NULL DEFAULT 'open',
    created_at TIMESTAMPTZ NOT NULL,
    resolved_at TIMESTAMPTZ
);

-- Notification outbox
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    sent_at TIMESTAMPTZ
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_reference
    ON credit_transactions(tenant_id, type, reference_id) WHERE reference_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_ledger_tenant ON credit_transactions(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payment_methods_tenant ON payment_methods(tenant_id);
CREATE INDEX IF NOT EXISTS idx_payment_records_tenant ON payment_records(tenant_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_due ON metered_subscriptions(status, next_billing_date);
CREATE INDEX IF NOT EXISTS idx_reconciliation_status ON reconciliation_queue(status);
CREATE INDEX IF NOT EXISTS idx_notifications_status ON notifications(status);
"""


class Transaction:
    """
    An open unit of work.

    Exposes the same ``execute`` / ``execute_update`` surface as ``Database`` so
    repositories do not care whether they run inside a transaction.
    """

    def __init__(self, database: "Database", handle: Any):
        self.database = database
        self._handle = handle

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self._run(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        return self._run(query, params).rowcount

    def _run(self, query: str, params: tuple) -> Any:
        query = self.database.adapt(query)
        if self.database.is_postgres:
            self._handle.execute(query, params)
            return self._handle
        return self._handle.execute(query, params)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database("sqlite:///credit_rail.db")
        db.initialize()
        with db.transaction(lock_key=tenant_id) as tx:
            tx.execute("SELECT ...")
    """

    def __init__(self, database_url: str = "sqlite:///credit_rail.db"):
        self.database_url = database_url
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credit_rail.db"

    def adapt(self, query: str) -> str:
        """Translate ``?`` placeholders to the driver's paramstyle."""
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection in autocommit mode, WAL journal."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, committed on clean exit."""
        import psycopg2
        from psycopg2.extras import RealDictCursor

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self, lock_key: Optional[str] = None) -> Generator[Transaction, None, None]:
        """
        Open a serializable unit of work.

        Nested calls on the same thread join the outer transaction, so a
        service can compose several repository writes (and a ledger apply)
        into a single commit.
        """
        active = getattr(self._local, "tx", None)
        if active is not None:
            if lock_key and self.is_postgres:
                active.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (lock_key,))
            yield active
            return

        if self.is_postgres:
            with self._postgres_connection() as conn:
                cursor = conn.cursor()
                tx = Transaction(self, cursor)
                if lock_key:
                    tx.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (lock_key,))
                self._local.tx = tx
                try:
                    yield tx
                finally:
                    self._local.tx = None
            return

        conn = self._sqlite_conn()
        conn.execute("BEGIN IMMEDIATE")
        tx = Transaction(self, conn)
        self._local.tx = tx
        try:
            yield tx
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx = None

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self._postgres_connection() as conn:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                conn = self._sqlite_conn()
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        active = getattr(self._local, "tx", None)
        if active is not None:
            return active.execute(query, params)
        if self.is_postgres:
            with self._postgres_connection() as conn:
                return Transaction(self, conn.cursor()).execute(query, params)
        return Transaction(self, self._sqlite_conn()).execute(query, params)

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        active = getattr(self._local, "tx", None)
        if active is not None:
            return active.execute_update(query, params)
        if self.is_postgres:
            with self._postgres_connection() as conn:
                return Transaction(self, conn.cursor()).execute_update(query, params)
        return Transaction(self, self._sqlite_conn()).execute_update(query, params)

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
