"""
History and billing persistence layer.
Supports both SQLite (development) and PostgreSQL/Supabase (production).
"""

import os
import time
import uuid
import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

# Database configuration
DATABASE_URL = os.environ.get("DATABASE_URL", "")
USE_POSTGRES = DATABASE_URL.startswith("postgres") or DATABASE_URL.startswith("postgresql")
HISTORY_LIMIT = int(os.environ.get("HISTORY_LIMIT", "50"))

if USE_POSTGRES:
    import psycopg2
    from psycopg2.extras import RealDictCursor
    from psycopg2.pool import SimpleConnectionPool

    db_pool = None
    db_lock = threading.Lock()

    def get_connection():
        """Get a connection from the pool."""
        global db_pool
        if db_pool is None:
            with db_lock:
                if db_pool is None:
                    db_pool = SimpleConnectionPool(
                        1, 20,
                        DATABASE_URL,
                        cursor_factory=RealDictCursor
                    )
        return db_pool.getconn()

    def release_connection(conn):
        """Release connection back to pool."""
        if db_pool:
            db_pool.putconn(conn)

else:
    import sqlite3

    DB_PATH = os.path.join(os.environ.get("TEMP_DIR", "./temp"), "studio_data.db")

    def get_connection():
        """Open a SQLite connection (one per operation)."""
        conn = sqlite3.connect(DB_PATH, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def release_connection(conn):
        conn.close()


def get_db():
    """Context manager for database connections."""
    class DBContext:
        def __enter__(self):
            self.conn = get_connection()
            return self.conn

        def __exit__(self, exc_type, exc_val, exc_tb):
            if exc_type:
                self.conn.rollback()
            else:
                self.conn.commit()
            release_connection(self.conn)
            return False

    return DBContext()


def _format_query(query: str) -> str:
    """Convert ? placeholders to %s for PostgreSQL if needed."""
    if USE_POSTGRES:
        return query.replace("?", "%s")
    return query


def init_db():
    """Initialize the database schema."""
    if not USE_POSTGRES:
        os.makedirs(os.path.dirname(os.path.abspath(DB_PATH)), exist_ok=True)

    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS history_items (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                timestamp BIGINT NOT NULL,
                image_url TEXT NOT NULL,
                prompt TEXT NOT NULL,
                style_title TEXT NOT NULL,
                emoji TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_user
            ON history_items(user_id, timestamp)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                user_id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                customer_id TEXT,
                subscription_id TEXT,
                status TEXT NOT NULL,
                period_start TEXT,
                period_end TEXT,
                plan_code TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        # Processed webhooks table (idempotency)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processed_webhooks (
                webhook_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                received_at TEXT NOT NULL
            )
        """)

    logger.info(f"Database initialized: {'PostgreSQL (Supabase)' if USE_POSTGRES else DB_PATH}")


# ============= HISTORY =============

def add_to_history(
    user_id: str,
    image_url: str,
    prompt: str,
    style_title: str,
    emoji: str,
    item_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> Optional[str]:
    """
    Save a generated image to the user's history, trimming to HISTORY_LIMIT.
    History is best effort: failures are logged and None is returned.
    """
    item_id = item_id or uuid.uuid4().hex
    timestamp = timestamp if timestamp is not None else int(time.time() * 1000)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(_format_query("""
                INSERT INTO history_items (id, user_id, timestamp, image_url, prompt, style_title, emoji)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    timestamp = excluded.timestamp,
                    image_url = excluded.image_url,
                    prompt = excluded.prompt,
                    style_title = excluded.style_title,
                    emoji = excluded.emoji
            """), (item_id, user_id, timestamp, image_url, prompt, style_title, emoji))

            cursor.execute(_format_query("""
                DELETE FROM history_items
                WHERE user_id = ? AND id NOT IN (
                    SELECT id FROM history_items
                    WHERE user_id = ?
                    ORDER BY timestamp DESC
                    LIMIT ?
                )
            """), (user_id, user_id, HISTORY_LIMIT))
        return item_id
    except Exception as e:
        logger.error(f"Failed to save to history DB: {e}")
        return None


def get_history(user_id: str) -> List[Dict[str, Any]]:
    """Get a user's history entries, newest first. Image payloads are served separately."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("""
            SELECT id, timestamp, prompt, style_title, emoji
            FROM history_items
            WHERE user_id = ?
            ORDER BY timestamp DESC
        """), (user_id,))
        return [dict(row) for row in cursor.fetchall()]


def get_history_image(user_id: str, item_id: str) -> Optional[str]:
    """Stored data URL for one of the user's history entries."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query(
            "SELECT image_url FROM history_items WHERE id = ? AND user_id = ?"
        ), (item_id, user_id))
        row = cursor.fetchone()
        return row["image_url"] if row else None


def clear_history(user_id: str) -> int:
    """Delete all of a user's history. Returns number of rows removed."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("DELETE FROM history_items WHERE user_id = ?"), (user_id,))
        return cursor.rowcount


# ============= BILLING =============

def set_subscription(
    user_id: str,
    provider: str,
    customer_id: Optional[str],
    subscription_id: Optional[str],
    status: str,
    period_start: Optional[str],
    period_end: Optional[str],
    plan_code: Optional[str]
) -> None:
    """Set or update a user's subscription mirror."""
    now = datetime.utcnow().isoformat()

    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO subscriptions
            (user_id, provider, customer_id, subscription_id, status, period_start, period_end, plan_code, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                provider = excluded.provider,
                customer_id = COALESCE(excluded.customer_id, subscriptions.customer_id),
                subscription_id = COALESCE(excluded.subscription_id, subscriptions.subscription_id),
                status = excluded.status,
                period_start = COALESCE(excluded.period_start, subscriptions.period_start),
                period_end = excluded.period_end,
                plan_code = COALESCE(excluded.plan_code, subscriptions.plan_code),
                updated_at = excluded.updated_at
        """)
        cursor.execute(query, (
            user_id, provider, customer_id, subscription_id, status,
            period_start, period_end, plan_code, now
        ))


def get_subscription(user_id: str) -> Optional[Dict[str, Any]]:
    """Local mirror of the user's subscription as last reported by the billing webhook."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("""
            SELECT status, customer_id, subscription_id, period_start, period_end, plan_code, updated_at
            FROM subscriptions
            WHERE user_id = ?
        """), (user_id,))
        row = cursor.fetchone()
        return dict(row) if row else None


def record_webhook(webhook_id: str, event_type: str) -> bool:
    """
    Record a processed webhook for idempotency.
    Returns True if newly recorded, False if already processed.
    """
    now = datetime.utcnow().isoformat()

    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO processed_webhooks (webhook_id, event_type, received_at)
            VALUES (?, ?, ?)
            ON CONFLICT(webhook_id) DO NOTHING
        """)
        cursor.execute(query, (webhook_id, event_type, now))
        return cursor.rowcount > 0


def is_webhook_processed(webhook_id: str) -> bool:
    """Check if a webhook has already been processed."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("SELECT 1 FROM processed_webhooks WHERE webhook_id = ?"), (webhook_id,))
        return cursor.fetchone() is not None


if __name__ == "__main__":
    init_db()
    print("Database initialization complete")
