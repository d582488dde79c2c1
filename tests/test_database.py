"""
Kimland Stock Sync - Database Tests
Tests for SyncDatabase SQLite operations.
"""

import sqlite3
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.database import SyncDatabase
from src.models import BatchSummary, SyncResult, SyncStatus, UpdateResult


def success_result(remote_product, identifier="CD6109-200", updates=2) -> SyncResult:
    return SyncResult(
        identifier=identifier,
        local_product_id="8001",
        remote_product=remote_product,
        status=SyncStatus.SUCCESS,
        update_result=UpdateResult(updates=updates),
    )


def failed_result(identifier="ZZ0000", status=SyncStatus.NOT_FOUND) -> SyncResult:
    return SyncResult(
        identifier=identifier,
        local_product_id="8002",
        status=status,
        error_message=f"Product {identifier} not found on Kimland",
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_database_creates_file(self, tmp_path):
        """Database should create SQLite file, parent folders included."""
        db_path = tmp_path / "data" / "sync.db"
        db = SyncDatabase(db_path)

        assert db_path.exists()
        db.close()

    def test_database_stats_empty(self, temp_database):
        """New database should have zero syncs."""
        stats = temp_database.get_stats()

        assert stats["total_syncs"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["last_sync"] is None

    def test_migrates_old_schema(self, tmp_path):
        """A results table without batch_id gets the column added."""
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(str(db_path))
        conn.execute(SyncDatabase.RESULTS_SCHEMA)
        conn.execute(
            "INSERT INTO sync_results (identifier, product_id, status) VALUES ('EG1758', '1', 'success')"
        )
        conn.commit()
        conn.close()

        with SyncDatabase(db_path) as db:
            columns = [row[1] for row in db.conn.execute("PRAGMA table_info(sync_results)")]
            assert "batch_id" in columns
            assert db.get_history()[0]["identifier"] == "EG1758"

    def test_reopen_is_idempotent(self, tmp_path):
        db_path = tmp_path / "sync.db"
        SyncDatabase(db_path).close()

        with SyncDatabase(db_path) as db:
            assert db.get_stats()["total_syncs"] == 0


class TestSyncResults:
    """Tests for result persistence."""

    def test_save_and_history(self, temp_database, remote_product):
        temp_database.save_sync_result(success_result(remote_product))
        temp_database.save_sync_result(failed_result())

        history = temp_database.get_history()

        assert [row["identifier"] for row in history] == ["ZZ0000", "CD6109-200"]
        assert history[1]["remote_name"] == "NIKE CALM SLIDE CD6109-200"
        assert history[1]["remote_stock"] == 5
        assert history[1]["updates"] == 2
        assert history[0]["status"] == "not_found"
        assert history[0]["remote_name"] is None

    def test_history_limit(self, temp_database):
        for i in range(5):
            temp_database.save_sync_result(failed_result(f"ZZ000{i}"))

        assert len(temp_database.get_history(limit=2)) == 2

    def test_last_result(self, temp_database, remote_product):
        temp_database.save_sync_result(failed_result("CD6109-200", SyncStatus.ERROR))
        temp_database.save_sync_result(success_result(remote_product))

        assert temp_database.get_last_result("CD6109-200")["status"] == "success"
        assert temp_database.get_last_result("UNKNOWN") is None

    def test_stats(self, temp_database, remote_product):
        temp_database.save_sync_result(success_result(remote_product, updates=3))
        temp_database.save_sync_result(failed_result())
        temp_database.save_sync_result(failed_result("XX1111", SyncStatus.ERROR))
        temp_database.save_sync_result(success_result(remote_product, updates=1))

        stats = temp_database.get_stats()

        assert stats["total_syncs"] == 4
        assert stats["successful"] == 2
        assert stats["not_found"] == 1
        assert stats["errors"] == 1
        assert stats["variant_updates"] == 4
        assert stats["success_rate"] == 50.0
        assert stats["last_sync"] is not None

    def test_clear_history(self, temp_database, remote_product):
        temp_database.start_batch(1)
        temp_database.save_sync_result(success_result(remote_product))
        temp_database.save_sync_result(failed_result())

        assert temp_database.clear_history() == 2
        assert temp_database.get_history() == []
        assert temp_database.get_stats()["batches"] == 0


class TestBatchRuns:
    """Tests for batch bookkeeping."""

    def test_batch_lifecycle(self, temp_database):
        batch_id = temp_database.start_batch(3)
        assert temp_database.get_batch(batch_id)["status"] == "running"

        temp_database.finish_batch(
            batch_id,
            BatchSummary(batch_id=batch_id, successful=1, failed=0, total=3, duration_ms=4200, cancelled=True, stopped_at=1),
        )
        batch = temp_database.get_batch(batch_id)

        assert batch["status"] == "cancelled"
        assert batch["stopped_at_index"] == 1
        assert batch["duration_ms"] == 4200
        assert batch["finished_at"] is not None

    def test_results_linked_to_batch(self, temp_database, remote_product):
        batch_id = temp_database.start_batch(1)
        temp_database.save_sync_result(success_result(remote_product), batch_id=batch_id)

        assert temp_database.get_history()[0]["batch_id"] == batch_id

    def test_unknown_batch(self, temp_database):
        assert temp_database.get_batch(999) is None
