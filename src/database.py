"""
Kimland Stock Sync - Sync History Database
SQLite store for per-product sync results and batch runs.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .models import BatchSummary, SyncResult, utcnow

logger = logging.getLogger(__name__)


class SyncDatabase:
    """
    SQLite database for sync history.

    - sync_results: one row per product sync, written as soon as it ends
    - batch_runs: one row per batch, opened at start and closed at the end
      (a cancelled batch keeps the rows of the items it finished)
    """

    RESULTS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identifier TEXT NOT NULL,
        product_id TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        remote_name TEXT,
        remote_stock INTEGER DEFAULT 0,
        updates INTEGER DEFAULT 0,
        creates INTEGER DEFAULT 0,
        errors INTEGER DEFAULT 0,
        synced_at TEXT
    )
    """

    BATCH_SCHEMA = """
    CREATE TABLE IF NOT EXISTS batch_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at TEXT,
        finished_at TEXT,
        total INTEGER DEFAULT 0,
        successful INTEGER DEFAULT 0,
        failed INTEGER DEFAULT 0,
        status TEXT DEFAULT 'running',
        stopped_at_index INTEGER,
        duration_ms INTEGER
    )
    """

    INDEX_SCHEMA = """
    CREATE INDEX IF NOT EXISTS idx_results_identifier ON sync_results(identifier);
    CREATE INDEX IF NOT EXISTS idx_results_synced_at ON sync_results(synced_at);
    """

    # Databases created before batch tracking lack this column
    MIGRATION_ADD_BATCH_ID = """
    ALTER TABLE sync_results ADD COLUMN batch_id INTEGER REFERENCES batch_runs(id);
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = Path(db_path)
        self._ensure_dir()
        # Batches run in a worker thread under the API
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()
        self._run_migrations()
        logger.info(f"Database initialized: {self.db_path}")

    def _ensure_dir(self):
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self):
        cursor = self.conn.cursor()
        cursor.execute(self.RESULTS_SCHEMA)
        cursor.execute(self.BATCH_SCHEMA)
        cursor.executescript(self.INDEX_SCHEMA)
        self.conn.commit()

    def _run_migrations(self):
        """Run database migrations for schema updates."""
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA table_info(sync_results)")
        columns = [col[1] for col in cursor.fetchall()]

        if "batch_id" not in columns:
            cursor.execute(self.MIGRATION_ADD_BATCH_ID)
            self.conn.commit()
            logger.info("Migration: Added 'batch_id' column to sync_results table")

    # =========================================================================
    # SYNC RESULTS
    # =========================================================================

    def save_sync_result(self, result: SyncResult, batch_id: Optional[int] = None) -> int:
        """Persist one sync result, returns its row id."""
        updates = result.update_result
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO sync_results (
                    identifier, product_id, status, error_message, remote_name,
                    remote_stock, updates, creates, errors, synced_at, batch_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.identifier,
                    result.local_product_id,
                    result.status.value,
                    result.error_message,
                    result.remote_product.name if result.remote_product else None,
                    result.remote_stock,
                    updates.updates if updates else 0,
                    updates.creates if updates else 0,
                    updates.errors if updates else 0,
                    result.synced_at.isoformat(),
                    batch_id,
                ),
            )
            self.conn.commit()
            return cursor.lastrowid

    def get_history(self, limit: int = 50) -> List[Dict]:
        """Most recent results first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT identifier, product_id, status, error_message, remote_name,
                   remote_stock, updates, creates, errors, synced_at, batch_id
            FROM sync_results
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_last_result(self, identifier: str) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM sync_results WHERE identifier = ? ORDER BY id DESC LIMIT 1",
            (identifier,),
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    def clear_history(self) -> int:
        """Delete all results and batches, returns how many results were removed."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM sync_results")
            removed = cursor.rowcount
            cursor.execute("DELETE FROM batch_runs")
            self.conn.commit()
        logger.info(f"🧹 Cleared {removed} sync results")
        return removed

    # =========================================================================
    # BATCH RUNS
    # =========================================================================

    def start_batch(self, total: int) -> int:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT INTO batch_runs (started_at, total, status) VALUES (?, ?, 'running')",
                (utcnow().isoformat(), total),
            )
            self.conn.commit()
            return cursor.lastrowid

    def finish_batch(self, batch_id: int, summary: BatchSummary):
        with self._lock:
            self.conn.execute(
                """
                UPDATE batch_runs
                SET finished_at = ?, successful = ?, failed = ?, status = ?,
                    stopped_at_index = ?, duration_ms = ?
                WHERE id = ?
                """,
                (
                    utcnow().isoformat(),
                    summary.successful,
                    summary.failed,
                    summary.status,
                    summary.stopped_at,
                    summary.duration_ms,
                    batch_id,
                ),
            )
            self.conn.commit()

    def get_batch(self, batch_id: int) -> Optional[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM batch_runs WHERE id = ?", (batch_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_stats(self) -> Dict:
        """Get database statistics."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS successful,
                   SUM(CASE WHEN status = 'not_found' THEN 1 ELSE 0 END) AS not_found,
                   SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) AS errors,
                   COALESCE(SUM(updates), 0) AS variant_updates,
                   MAX(synced_at) AS last_sync
            FROM sync_results
            """
        )
        row = cursor.fetchone()
        cursor.execute("SELECT COUNT(*) AS batches FROM batch_runs")
        batches = cursor.fetchone()["batches"]

        total = row["total"] or 0
        return {
            "total_syncs": total,
            "successful": row["successful"] or 0,
            "not_found": row["not_found"] or 0,
            "errors": row["errors"] or 0,
            "variant_updates": row["variant_updates"],
            "last_sync": row["last_sync"],
            "batches": batches,
            "success_rate": round((row["successful"] or 0) / total * 100, 1) if total else 0.0,
        }

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
