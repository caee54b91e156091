import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from sealbid.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for persistent storage.

    Provides:
    1. Key-Value store for small binary records (backend metadata,
       settlement state).
    2. Engine checkpoints: one JSON snapshot per auction.
    3. Coprocessor table: ciphertext handle -> cleartext value.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            # 1. KV Store
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key BLOB PRIMARY KEY,
                    value BLOB NOT NULL,
                    bucket TEXT NOT NULL DEFAULT 'default'
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_kv_bucket ON kv_store(bucket);")

            # 2. Engine checkpoints
            conn.execute("""
                CREATE TABLE IF NOT EXISTS engine_state (
                    auction_id TEXT PRIMARY KEY,
                    step INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            # 3. Coprocessor table
            # Values up to 256 bits, stored as decimal text
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ciphertexts (
                    handle BLOB PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

    def close(self):
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn

    # =========================================================================
    # Key-Value Operations
    # =========================================================================

    def put(self, key: bytes, value: bytes, bucket: str = "default"):
        """Save a key-value pair."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, bucket) VALUES (?, ?, ?)",
                (key, value, bucket)
            )

    def get(self, key: bytes) -> Optional[bytes]:
        """Get value by key."""
        conn = self._get_conn()
        cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row['value'] if row else None

    # =========================================================================
    # Engine Checkpoints
    # =========================================================================

    def save_engine_state(self, auction_id: str, step: int, data: str):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO engine_state (auction_id, step, data, updated_at) VALUES (?, ?, ?, ?)",
                (auction_id, step, data, int(time.time()))
            )

    def get_engine_state(self, auction_id: str) -> Optional[Tuple[int, str]]:
        """Get (step, data) for an auction."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT step, data FROM engine_state WHERE auction_id = ?", (auction_id,)
        )
        row = cursor.fetchone()
        return (row['step'], row['data']) if row else None

    def list_auctions(self) -> List[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT auction_id FROM engine_state ORDER BY auction_id ASC")
        return [row['auction_id'] for row in cursor]

    # =========================================================================
    # Coprocessor Table
    # =========================================================================

    def save_ciphertexts(self, rows: Iterable[Tuple[bytes, int]]):
        """Upsert (handle, value) rows in one transaction."""
        conn = self._get_conn()
        with conn:
            conn.executemany(
                "INSERT OR REPLACE INTO ciphertexts (handle, value) VALUES (?, ?)",
                [(handle, str(value)) for handle, value in rows]
            )

    def get_all_ciphertexts(self) -> List[Tuple[bytes, int]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT handle, value FROM ciphertexts")
        return [(bytes(row['handle']), int(row['value'])) for row in cursor]

    def get_ciphertext_count(self) -> int:
        conn = self._get_conn()
        cursor = conn.execute("SELECT COUNT(*) as cnt FROM ciphertexts")
        return cursor.fetchone()['cnt']
