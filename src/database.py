"""Database module for SQLite operations.

Stores committed ledgers so a restarted cursor resumes where it stopped.
All SQL operations are isolated here. No other module writes SQL.
"""

import sqlite3
from typing import Optional

from ledger import OffsetLedger, PartitionProgress


def init_db(path: str) -> sqlite3.Connection:
    """Initialize database with tables and PRAGMAs.

    Args:
        path: Path to the SQLite database file (use ':memory:' for in-memory)

    Returns:
        sqlite3.Connection: Database connection with row factory set
    """
    conn = _create_connection(path)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS ledger_checkpoints (
            stream TEXT NOT NULL,
            batch_id INTEGER NOT NULL,
            partition INTEGER NOT NULL,
            offset INTEGER NOT NULL,
            sequence_number INTEGER,
            committed_at INTEGER NOT NULL,
            PRIMARY KEY (stream, batch_id, partition)
        )
    """)

    conn.commit()
    return conn


def _create_connection(path: str) -> sqlite3.Connection:
    """Create a new database connection with proper settings.

    Args:
        path: Path to the SQLite database file

    Returns:
        sqlite3.Connection: Database connection with row factory and PRAGMAs set
    """
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA auto_vacuum=INCREMENTAL")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.commit()

    return conn


def get_connection(path: str) -> sqlite3.Connection:
    """Get a new database connection for a worker thread.

    Each thread should call this to get its own connection to avoid
    thread-safety issues with SQLite connections.
    """
    return _create_connection(path)


def save_ledger(
    conn: sqlite3.Connection, stream: str, ledger: OffsetLedger, committed_at: int
) -> None:
    """Insert one row per partition for a committed ledger.

    Re-saving the same batch replaces its rows. No commit is issued here;
    call commit_batch().

    Args:
        conn: Database connection
        stream: Stream name
        ledger: The committed ledger
        committed_at: Unix timestamp
    """
    conn.executemany(
        """INSERT OR REPLACE INTO ledger_checkpoints
           (stream, batch_id, partition, offset, sequence_number, committed_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        [
            (
                stream,
                ledger.batch_id,
                partition,
                progress.offset,
                progress.sequence_number,
                committed_at,
            )
            for partition, progress in ledger.offsets.items()
        ],
    )


def commit_batch(conn: sqlite3.Connection) -> None:
    """Commit all pending writes in a single transaction."""
    conn.commit()


def get_latest_batch_id(conn: sqlite3.Connection, stream: str) -> Optional[int]:
    """Get the highest stored batch id for a stream, or None if none stored."""
    row = conn.execute(
        "SELECT MAX(batch_id) AS batch_id FROM ledger_checkpoints WHERE stream = ?",
        (stream,),
    ).fetchone()
    return row["batch_id"] if row is not None else None


def load_latest_ledger(conn: sqlite3.Connection, stream: str) -> Optional[OffsetLedger]:
    """Load the most recently committed ledger for a stream.

    Args:
        conn: Database connection
        stream: Stream name

    Returns:
        The ledger, or None if the stream has no stored checkpoints
    """
    batch_id = get_latest_batch_id(conn, stream)
    if batch_id is None:
        return None

    rows = conn.execute(
        """SELECT partition, offset, sequence_number FROM ledger_checkpoints
           WHERE stream = ? AND batch_id = ?""",
        (stream, batch_id),
    ).fetchall()

    offsets = {
        row["partition"]: PartitionProgress(row["offset"], row["sequence_number"])
        for row in rows
    }
    return OffsetLedger(batch_id=batch_id, offsets=offsets)


def prune_ledgers(conn: sqlite3.Connection, stream: str, keep: int) -> int:
    """Delete all but the newest `keep` batches for a stream.

    Args:
        conn: Database connection
        stream: Stream name
        keep: Number of most recent batches to retain

    Returns:
        Number of rows deleted
    """
    cursor = conn.execute(
        """DELETE FROM ledger_checkpoints
           WHERE stream = ? AND batch_id NOT IN (
               SELECT DISTINCT batch_id FROM ledger_checkpoints
               WHERE stream = ?
               ORDER BY batch_id DESC
               LIMIT ?
           )""",
        (stream, stream, keep),
    )
    return cursor.rowcount


def run_incremental_vacuum(conn: sqlite3.Connection, pages: int = 100) -> None:
    """Run incremental vacuum to reclaim space."""
    conn.execute(f"PRAGMA incremental_vacuum({pages})")
