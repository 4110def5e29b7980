"""
Balance, purchase and job persistence layer.
Supports both SQLite (development) and PostgreSQL/Supabase (production).
"""

import json
import uuid
import sqlite3
import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable

from models import DecrementResult, JobEvent, PurchaseRecord, PurchaseStatus

logger = logging.getLogger(__name__)


class DuplicateRecord(Exception):
    """Insert hit a unique constraint."""


def _now() -> str:
    return datetime.utcnow().isoformat()


class Database:
    """
    Connection management for either backend.
    PostgreSQL is used when the URL starts with postgres, otherwise a local
    SQLite file in WAL mode.
    """

    def __init__(self, database_url: str = "", sqlite_path: str = "./temp/app_data.db"):
        self.database_url = database_url or ""
        self.use_postgres = self.database_url.startswith("postgres")
        self.sqlite_path = sqlite_path
        self._pool = None
        self._lock = threading.Lock()

        if self.use_postgres:
            import psycopg2
            self.integrity_errors = (psycopg2.IntegrityError,)
        else:
            self.integrity_errors = (sqlite3.IntegrityError,)

    def get_connection(self):
        """Get a connection (pooled for PostgreSQL)."""
        if self.use_postgres:
            from psycopg2.extras import RealDictCursor
            from psycopg2.pool import SimpleConnectionPool

            if self._pool is None:
                with self._lock:
                    if self._pool is None:
                        self._pool = SimpleConnectionPool(
                            1, 20,
                            self.database_url,
                            cursor_factory=RealDictCursor
                        )
            return self._pool.getconn()

        conn = sqlite3.connect(self.sqlite_path, check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def release_connection(self, conn):
        if self.use_postgres:
            if self._pool:
                self._pool.putconn(conn)
        else:
            conn.close()

    def get_db(self):
        """Context manager: commit on success, roll back on exception."""
        db = self

        class DBContext:
            def __enter__(self):
                self.conn = db.get_connection()
                return self.conn

            def __exit__(self, exc_type, exc_val, exc_tb):
                if exc_type:
                    self.conn.rollback()
                else:
                    self.conn.commit()
                db.release_connection(self.conn)
                return False

        return DBContext()

    def format_query(self, query: str) -> str:
        """Convert ? placeholders to %s for PostgreSQL if needed."""
        if self.use_postgres:
            return query.replace("?", "%s")
        return query

    def begin_locked(self, cursor):
        """Start a write transaction up front so read-then-write is atomic on SQLite."""
        if not self.use_postgres:
            cursor.execute("BEGIN IMMEDIATE")

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def init_db(self):
        """Initialize the database schema."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    tokens_remaining BIGINT NOT NULL DEFAULT 0,
                    tokens_used BIGINT NOT NULL DEFAULT 0,
                    gemini_api_key TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS token_purchases (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    amount_usd TEXT NOT NULL,
                    tokens_purchased BIGINT NOT NULL,
                    payment_provider TEXT NOT NULL,
                    provider_transaction_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    metadata TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_purchases_user
                ON token_purchases(user_id, created_at)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS job_logs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    request_id TEXT NOT NULL,
                    batch_id TEXT,
                    mode TEXT NOT NULL,
                    image_size TEXT,
                    model TEXT,
                    images_submitted INTEGER NOT NULL DEFAULT 0,
                    instruction_length INTEGER NOT NULL DEFAULT 0,
                    total_input_bytes BIGINT NOT NULL DEFAULT 0,
                    images_returned INTEGER NOT NULL DEFAULT 0,
                    prompt_tokens BIGINT NOT NULL DEFAULT 0,
                    completion_tokens BIGINT NOT NULL DEFAULT 0,
                    total_tokens BIGINT NOT NULL DEFAULT 0,
                    elapsed_ms BIGINT NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    error_code TEXT,
                    error_message TEXT,
                    tokens_charged BIGINT NOT NULL DEFAULT 0,
                    token_balance_before BIGINT,
                    token_balance_after BIGINT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_logs_user
                ON job_logs(user_id, created_at)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pending_jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    request_payload TEXT NOT NULL,
                    model TEXT,
                    image_size TEXT,
                    result TEXT,
                    error_message TEXT,
                    error_code TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_pending_jobs_user
                ON pending_jobs(user_id, status)
            """)

        logger.info(f"Database initialized: {'PostgreSQL (Supabase)' if self.use_postgres else 'SQLite'}")


def _row(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return dict(row)


class BalanceStore:
    """Per-user token balance and stored BYO key."""

    def __init__(self, db: Database):
        self.db = db

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("SELECT * FROM profiles WHERE id = ?")
            cursor.execute(query, (user_id,))
            return _row(cursor.fetchone())

    def get_balance(self, user_id: str) -> int:
        """Current balance; a missing profile counts as zero."""
        profile = self.get_profile(user_id)
        if not profile:
            return 0
        return int(profile["tokens_remaining"] or 0)

    def _insert_profile(self, cursor, user_id: str, email: Optional[str], tokens: int = 0):
        now = _now()
        query = self.db.format_query("""
            INSERT INTO profiles (id, email, tokens_remaining, tokens_used, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?)
            ON CONFLICT(id) DO NOTHING
        """)
        cursor.execute(query, (user_id, email, tokens, now, now))

    def ensure_profile(self, user_id: str, email: Optional[str] = None, initial_tokens: int = 0) -> Dict[str, Any]:
        """Create the profile row if it does not exist yet."""
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            self._insert_profile(cursor, user_id, email, initial_tokens)
            query = self.db.format_query("SELECT * FROM profiles WHERE id = ?")
            cursor.execute(query, (user_id,))
            return _row(cursor.fetchone())

    def set_byo_key(self, user_id: str, api_key: Optional[str], email: Optional[str] = None) -> None:
        """Store or clear (None) the personal Google key used by byo/ models."""
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            self._insert_profile(cursor, user_id, email)
            query = self.db.format_query(
                "UPDATE profiles SET gemini_api_key = ?, updated_at = ? WHERE id = ?"
            )
            cursor.execute(query, (api_key or None, _now(), user_id))

    def decrement(self, user_id: str, amount: int) -> DecrementResult:
        """
        Atomically subtract `amount` from the balance, clamping at zero.
        success is False when the balance could not cover the full amount.
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        with self.db.get_db() as conn:
            cursor = conn.cursor()
            self.db.begin_locked(cursor)
            lock_clause = " FOR UPDATE" if self.db.use_postgres else ""
            query = self.db.format_query(
                f"SELECT tokens_remaining FROM profiles WHERE id = ?{lock_clause}"
            )
            cursor.execute(query, (user_id,))
            row = cursor.fetchone()
            if row is None:
                return DecrementResult(success=False, new_balance=0)

            current = int(row["tokens_remaining"] or 0)
            charged = min(current, amount)
            new_balance = current - charged

            query = self.db.format_query("""
                UPDATE profiles
                SET tokens_remaining = tokens_remaining - ?,
                    tokens_used = tokens_used + ?,
                    updated_at = ?
                WHERE id = ?
            """)
            cursor.execute(query, (charged, charged, _now(), user_id))

        if charged < amount:
            logger.warning(f"Balance clamped at zero for user {user_id}: wanted {amount}, had {current}")
        return DecrementResult(success=charged == amount, new_balance=new_balance)

    def credit(self, user_id: str, amount: int, purchase_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Add purchased tokens. Returns {success, tokens_added, new_balance, error}.

        With a purchase_id the purchase row is flipped to completed in the same
        transaction, and nothing is added if it was already completed.
        """
        if amount <= 0:
            return {"success": False, "tokens_added": 0, "new_balance": None, "error": "amount must be positive"}

        with self.db.get_db() as conn:
            cursor = conn.cursor()
            self.db.begin_locked(cursor)
            self._insert_profile(cursor, user_id, None)

            tokens_added = amount
            if purchase_id:
                query = self.db.format_query("""
                    UPDATE token_purchases SET status = 'completed', completed_at = ?
                    WHERE id = ? AND status != 'completed'
                """)
                cursor.execute(query, (_now(), purchase_id))
                if cursor.rowcount != 1:
                    tokens_added = 0

            if tokens_added:
                query = self.db.format_query("""
                    UPDATE profiles
                    SET tokens_remaining = tokens_remaining + ?, updated_at = ?
                    WHERE id = ?
                """)
                cursor.execute(query, (tokens_added, _now(), user_id))

            query = self.db.format_query("SELECT tokens_remaining FROM profiles WHERE id = ?")
            cursor.execute(query, (user_id,))
            new_balance = int(cursor.fetchone()["tokens_remaining"])

        if tokens_added:
            logger.info(f"Credited {tokens_added} tokens to {user_id} (purchase {purchase_id}); balance {new_balance}")
        else:
            logger.info(f"Purchase {purchase_id} already credited; balance {new_balance}")
        return {"success": True, "tokens_added": tokens_added, "new_balance": new_balance, "error": None}


class PurchaseLedger:
    """One record per provider transaction id."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> PurchaseRecord:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata) if metadata else {}
        return PurchaseRecord(
            id=row["id"],
            user_id=row["user_id"],
            provider_transaction_id=row["provider_transaction_id"],
            tokens_purchased=int(row["tokens_purchased"]),
            amount_usd=Decimal(str(row["amount_usd"])),
            status=PurchaseStatus(row["status"]),
            payment_provider=row["payment_provider"],
            metadata=metadata or {},
            created_at=row.get("created_at"),
            completed_at=row.get("completed_at"),
        )

    def find_by_transaction_id(self, transaction_id: str) -> Optional[PurchaseRecord]:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query(
                "SELECT * FROM token_purchases WHERE provider_transaction_id = ?"
            )
            cursor.execute(query, (transaction_id,))
            row = cursor.fetchone()
            return self._to_record(dict(row)) if row else None

    def insert(self, record: PurchaseRecord) -> PurchaseRecord:
        """Insert a new record. Raises DuplicateRecord on a repeated transaction id."""
        record.id = record.id or uuid.uuid4().hex
        record.created_at = record.created_at or _now()
        try:
            with self.db.get_db() as conn:
                cursor = conn.cursor()
                query = self.db.format_query("""
                    INSERT INTO token_purchases
                    (id, user_id, amount_usd, tokens_purchased, payment_provider,
                     provider_transaction_id, status, created_at, completed_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """)
                cursor.execute(query, (
                    record.id, record.user_id, str(record.amount_usd), record.tokens_purchased,
                    record.payment_provider, record.provider_transaction_id, record.status.value,
                    record.created_at, record.completed_at, json.dumps(record.metadata or {}),
                ))
        except self.db.integrity_errors as e:
            raise DuplicateRecord(str(e))
        return record

    def update_status(self, purchase_id: str, status: PurchaseStatus) -> None:
        completed_at = _now() if status == PurchaseStatus.COMPLETED else None
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query(
                "UPDATE token_purchases SET status = ?, completed_at = ? WHERE id = ? AND status != 'completed'"
            )
            cursor.execute(query, (status.value, completed_at, purchase_id))

    def list_for_user(self, user_id: str, limit: int = 20) -> List[PurchaseRecord]:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                SELECT * FROM token_purchases WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
            """)
            cursor.execute(query, (user_id, limit))
            return [self._to_record(dict(row)) for row in cursor.fetchall()]


JOB_LOG_COLUMNS = (
    "user_id", "request_id", "batch_id", "mode", "image_size", "model",
    "images_submitted", "instruction_length", "total_input_bytes", "images_returned",
    "prompt_tokens", "completion_tokens", "total_tokens", "elapsed_ms",
    "status", "error_code", "error_message", "tokens_charged",
    "token_balance_before", "token_balance_after",
)


class JobLogStore:
    """Append-only audit log of attempted operations."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, event: JobEvent) -> str:
        event_id = uuid.uuid4().hex
        values = []
        for column in JOB_LOG_COLUMNS:
            value = getattr(event, column)
            if column == "status":
                value = value.value
            values.append(value)

        columns = ", ".join(("id",) + JOB_LOG_COLUMNS + ("created_at",))
        placeholders = ", ".join("?" for _ in range(len(JOB_LOG_COLUMNS) + 2))
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query(
                f"INSERT INTO job_logs ({columns}) VALUES ({placeholders})"
            )
            cursor.execute(query, [event_id] + values + [event.created_at.isoformat()])
        return event_id

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                SELECT * FROM job_logs WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
            """)
            cursor.execute(query, (user_id, limit))
            return [dict(row) for row in cursor.fetchall()]


class PendingJobStore:
    """Queued generation jobs processed in the background."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _decode(row) -> Optional[Dict[str, Any]]:
        job = _row(row)
        if job is None:
            return None
        for key in ("request_payload", "result"):
            if job.get(key):
                job[key] = json.loads(job[key])
        return job

    def insert(self, user_id: str, request_id: str, payload: Dict[str, Any],
               model: Optional[str] = None, image_size: Optional[str] = None) -> str:
        job_id = uuid.uuid4().hex
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                INSERT INTO pending_jobs
                (id, user_id, request_id, status, request_payload, model, image_size, retry_count, created_at)
                VALUES (?, ?, ?, 'pending', ?, ?, ?, 0, ?)
            """)
            cursor.execute(query, (job_id, user_id, request_id, json.dumps(payload), model, image_size, _now()))
        return job_id

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(self.db.format_query("SELECT * FROM pending_jobs WHERE id = ?"), (job_id,))
            return self._decode(cursor.fetchone())

    def get_many(self, user_id: str, job_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Jobs owned by user_id among job_ids, keyed by id."""
        job_ids = list(job_ids)
        if not job_ids:
            return {}
        placeholders = ", ".join("?" for _ in job_ids)
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query(
                f"SELECT * FROM pending_jobs WHERE user_id = ? AND id IN ({placeholders})"
            )
            cursor.execute(query, [user_id] + job_ids)
            jobs = [self._decode(row) for row in cursor.fetchall()]
        return {job["id"]: job for job in jobs}

    def claim(self, job_id: str) -> bool:
        """Move pending -> processing. False if another worker got there first."""
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                UPDATE pending_jobs SET status = 'processing', started_at = ?
                WHERE id = ? AND status = 'pending'
            """)
            cursor.execute(query, (_now(), job_id))
            return cursor.rowcount == 1

    def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                UPDATE pending_jobs SET status = 'completed', result = ?, completed_at = ?
                WHERE id = ?
            """)
            cursor.execute(query, (json.dumps(result), _now(), job_id))

    def fail(self, job_id: str, message: str, error_code: Optional[str], status: str = "failed") -> None:
        with self.db.get_db() as conn:
            cursor = conn.cursor()
            query = self.db.format_query("""
                UPDATE pending_jobs
                SET status = ?, error_message = ?, error_code = ?,
                    retry_count = retry_count + 1, completed_at = ?
                WHERE id = ?
            """)
            cursor.execute(query, (status, (message or "")[:500], error_code, _now(), job_id))
