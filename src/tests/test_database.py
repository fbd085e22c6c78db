"""Tests for database.py module."""

import sqlite3

import database
from ledger import OffsetLedger, PartitionProgress


def make_ledger(batch_id, base):
    return OffsetLedger(
        batch_id=batch_id,
        offsets={0: PartitionProgress(base, base), 1: PartitionProgress(base + 1000, None)},
    )


class TestInitDb:

    def test_creates_checkpoint_table(self, db_conn):
        tables = {
            row[0]
            for row in db_conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert "ledger_checkpoints" in tables

    def test_init_is_idempotent(self, db_path):
        database.init_db(db_path).close()
        conn = database.init_db(db_path)
        conn.close()

    def test_connection_uses_row_factory(self, db_conn):
        assert db_conn.row_factory is sqlite3.Row


class TestLedgerCheckpoints:

    def test_load_without_checkpoints_returns_none(self, db_conn):
        assert database.load_latest_ledger(db_conn, "hub") is None
        assert database.get_latest_batch_id(db_conn, "hub") is None

    def test_save_and_load_latest(self, db_conn):
        database.save_ledger(db_conn, "hub", make_ledger(1, 10), 1000)
        database.save_ledger(db_conn, "hub", make_ledger(2, 20), 1010)
        database.commit_batch(db_conn)

        loaded = database.load_latest_ledger(db_conn, "hub")

        assert loaded.batch_id == 2
        assert loaded == make_ledger(2, 20)
        assert loaded.offsets[1].sequence_number is None

    def test_streams_are_isolated(self, db_conn):
        database.save_ledger(db_conn, "hub-a", make_ledger(5, 10), 1000)
        database.save_ledger(db_conn, "hub-b", make_ledger(1, 99), 1000)
        database.commit_batch(db_conn)

        assert database.load_latest_ledger(db_conn, "hub-a").batch_id == 5
        assert database.load_latest_ledger(db_conn, "hub-b") == make_ledger(1, 99)

    def test_resaving_batch_replaces_rows(self, db_conn):
        database.save_ledger(db_conn, "hub", make_ledger(1, 10), 1000)
        database.save_ledger(db_conn, "hub", make_ledger(1, 10), 2000)
        database.commit_batch(db_conn)

        count = db_conn.execute("SELECT COUNT(*) FROM ledger_checkpoints").fetchone()[0]
        assert count == 2

    def test_uncommitted_writes_not_visible_to_other_connections(self, db_path, db_conn):
        other = database.get_connection(db_path)
        try:
            database.save_ledger(db_conn, "hub", make_ledger(1, 10), 1000)
            assert database.load_latest_ledger(other, "hub") is None

            database.commit_batch(db_conn)
            assert database.load_latest_ledger(other, "hub").batch_id == 1
        finally:
            other.close()


class TestPrune:

    def test_keeps_newest_batches(self, db_conn):
        for batch_id in range(1, 6):
            database.save_ledger(db_conn, "hub", make_ledger(batch_id, batch_id * 10), 1000)
        database.commit_batch(db_conn)

        deleted = database.prune_ledgers(db_conn, "hub", keep=2)
        database.commit_batch(db_conn)

        batch_ids = [
            row[0]
            for row in db_conn.execute(
                "SELECT DISTINCT batch_id FROM ledger_checkpoints ORDER BY batch_id"
            ).fetchall()
        ]
        assert deleted == 6  # 3 batches x 2 partitions
        assert batch_ids == [4, 5]

    def test_prune_leaves_other_streams(self, db_conn):
        database.save_ledger(db_conn, "hub-a", make_ledger(1, 10), 1000)
        database.save_ledger(db_conn, "hub-a", make_ledger(2, 20), 1000)
        database.save_ledger(db_conn, "hub-b", make_ledger(1, 10), 1000)

        database.prune_ledgers(db_conn, "hub-a", keep=1)
        database.commit_batch(db_conn)

        assert database.load_latest_ledger(db_conn, "hub-b") is not None
        assert database.load_latest_ledger(db_conn, "hub-a").batch_id == 2

    def test_incremental_vacuum_runs(self, db_conn):
        database.run_incremental_vacuum(db_conn, pages=10)
