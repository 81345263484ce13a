"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema migration.
Queries are written with ``?`` placeholders and adapted for PostgreSQL.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List, Tuple
from datetime import datetime, timezone
import threading
import structlog

from ..errors import StoreUnavailable

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Users are created lazily on first request bearing an email
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Append-only credit ledger; balance is always SUM(amount_micros)
CREATE TABLE IF NOT EXISTS credit_txn (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    reason TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',  -- JSON object
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

-- One row per billable call, paired with one negative credit_txn row
CREATE TABLE IF NOT EXISTS usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    route TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    tokens_in INTEGER NOT NULL DEFAULT 0,
    tokens_out INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    request_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

-- Queued generation jobs
CREATE TABLE IF NOT EXISTS job (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    owner_email TEXT NOT NULL,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON object
    status TEXT NOT NULL DEFAULT 'queued',
    progress INTEGER NOT NULL DEFAULT 0,
    result_ref TEXT,
    result_payload TEXT,  -- JSON
    error TEXT,
    claim_token TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_credit_txn_user ON credit_txn(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_credit_txn_reason ON credit_txn(reason);
CREATE INDEX IF NOT EXISTS idx_usage_event_user ON usage_event(user_id, created_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_event_request ON usage_event(request_id);
CREATE INDEX IF NOT EXISTS idx_job_status ON job(status, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_job_owner ON job(owner_email, created_at);
CREATE INDEX IF NOT EXISTS idx_job_claim ON job(claim_token);
"""

POSTGRES_SCHEMA_SQL = """
-- Users
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

-- Credit ledger
CREATE TABLE IF NOT EXISTS credit_txn (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    amount_micros BIGINT NOT NULL,
    reason TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TEXT NOT NULL
);

-- Usage events
CREATE TABLE IF NOT EXISTS usage_event (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    route TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    tokens_in INTEGER NOT NULL DEFAULT 0,
    tokens_out INTEGER NOT NULL DEFAULT 0,
    cost_micros BIGINT NOT NULL DEFAULT 0,
    request_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Jobs
CREATE TABLE IF NOT EXISTS job (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    owner_email TEXT NOT NULL,
    type TEXT NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    progress INTEGER NOT NULL DEFAULT 0,
    result_ref TEXT,
    result_payload JSONB,
    error TEXT,
    claim_token TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_credit_txn_user ON credit_txn(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_credit_txn_reason ON credit_txn(reason);
CREATE INDEX IF NOT EXISTS idx_usage_event_user ON usage_event(user_id, created_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_event_request ON usage_event(request_id);
CREATE INDEX IF NOT EXISTS idx_job_status ON job(status, created_at, seq);
CREATE INDEX IF NOT EXISTS idx_job_owner ON job(owner_email, created_at);
CREATE INDEX IF NOT EXISTS idx_job_claim ON job(claim_token);
"""


class Transaction:
    """
    A unit of work spanning several statements.

    Obtained from ``Database.transaction()``; everything executed through it
    commits or rolls back together.
    """

    def __init__(self, db: "Database", conn: Any):
        self._db = db
        self._conn = conn
        self.rowcount = 0

    @property
    def is_postgres(self) -> bool:
        return self._db.is_postgres

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a statement inside the transaction and return rows as dicts."""
        rows, self.rowcount = self._db._run(self._conn, query, params)
        return rows


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        rows = db.execute("SELECT * FROM job WHERE id = ?", (job_id,))
        with db.transaction() as tx:
            tx.execute("INSERT INTO usage_event ...", (...))
            tx.execute("INSERT INTO credit_txn ...", (...))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///tollgate.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False
        # A private in-memory database only exists on one connection, so it is
        # shared across threads and serialized.
        self._memory_conn: Optional[sqlite3.Connection] = None
        self._memory_lock = threading.RLock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests point DATABASE_URL somewhere new)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    @property
    def errors(self) -> Tuple[type, ...]:
        """Driver exception types that mean the store itself failed."""
        if self.is_postgres:
            import psycopg2
            return (psycopg2.Error,)
        return (sqlite3.Error,)

    @property
    def integrity_errors(self) -> Tuple[type, ...]:
        if self.is_postgres:
            import psycopg2
            return (psycopg2.IntegrityError,)
        return (sqlite3.IntegrityError,)

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "tollgate.db"

    def _open_sqlite(self, db_path: str) -> sqlite3.Connection:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection, one per thread (or one shared for :memory:)."""
        db_path = self._get_sqlite_path()
        if db_path == ":memory:":
            with self._memory_lock:
                if self._memory_conn is None:
                    self._memory_conn = self._open_sqlite(db_path)
                yield self._memory_conn
            return

        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._open_sqlite(db_path)
        yield self._local.conn

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, opened per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
        finally:
            conn.close()

    def _adapt(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _run(self, conn: Any, query: str, params: tuple) -> Tuple[List[Dict[str, Any]], int]:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
        else:
            cursor = conn.execute(query, params)
        rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
        return rows, cursor.rowcount

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                    conn.commit()
                else:
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement atomically and return results as list of dicts."""
        is_read = query.lstrip().upper().startswith("SELECT")
        with self.transaction(immediate=not is_read) as tx:
            return tx.execute(query, params)

    @contextmanager
    def transaction(self, immediate: bool = True) -> Generator[Transaction, None, None]:
        """
        Run several statements as one atomic unit.

        On SQLite ``immediate=True`` takes the database write lock up front
        (BEGIN IMMEDIATE) so a read inside the transaction cannot be invalidated
        by a concurrent writer before our own write lands. PostgreSQL callers
        lock the rows they depend on with SELECT ... FOR UPDATE.
        """
        with self.connection() as conn:
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield Transaction(self, conn)
            except BaseException:
                if self.is_postgres:
                    conn.rollback()
                else:
                    conn.execute("ROLLBACK")
                raise
            if self.is_postgres:
                conn.commit()
            else:
                conn.execute("COMMIT")

    @contextmanager
    def guard(self, operation: str, error_cls: type = StoreUnavailable) -> Generator[None, None, None]:
        """Re-raise driver failures inside the block as a gateway error."""
        try:
            yield
        except self.errors as e:
            logger.error("store_operation_failed", operation=operation, error=str(e))
            raise error_cls(f"{operation} failed", detail=str(e)) from e

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
