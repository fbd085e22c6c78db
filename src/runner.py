"""Runner module for the polling loop.

Drives an EventStreamSource the way a streaming host would: plan the next
batch, read it, write it out, record the ledger durably, then commit it.
"""

import logging
import time
from typing import Any

import database
from config import Config
from ledger import OffsetLedger

logger = logging.getLogger(__name__)


class StreamRunner:
    """Polling loop around one source.

    Fatal cursor errors (CeilingUnavailable, NonMonotonicCeiling,
    DataLossError, TransportError from the reader) are not handled here.
    They propagate out of run() and stop the query.
    """

    def __init__(self, config: Config, source: Any, sink: Any, db_path: str) -> None:
        """Initialize the runner.

        Args:
            config: Configuration object
            source: EventStreamSource to drive
            sink: BatchSink the records are written to
            db_path: Path to the SQLite progress database
        """
        self._config = config
        self._source = source
        self._sink = sink
        self._db_path = db_path
        self._db_conn = database.get_connection(db_path)

    def run(self, shutdown_event: Any) -> None:
        """Run cycles until shutdown_event is set or a cycle fails.

        Args:
            shutdown_event: Threading event to signal shutdown
        """
        while not shutdown_event.is_set():
            cycle_start = time.time()
            self.run_cycle()

            # Sleep for remainder of poll interval
            elapsed = time.time() - cycle_start
            sleep_time = max(0, self._config.polling.poll_interval_seconds - elapsed)
            if shutdown_event.wait(timeout=sleep_time):
                break

    def run_cycle(self) -> OffsetLedger:
        """Execute a single planning cycle.

        Returns:
            The ledger committed by this cycle
        """
        cycle_start = time.time()
        committed = self._source.committed

        target = self._source.get_next_offset()
        if target is None:
            logger.info("Source has been stopped; nothing to plan")
            return committed

        if target == committed:
            # Stalled: no new data. The ledger is still committed so batch
            # ids stay consecutive and the next cycle sees the stall.
            record_count = 0
        else:
            records = self._source.get_batch(committed, target)
            record_count = len(records)
            self._sink.write(target, records)

        database.save_ledger(self._db_conn, self._source.uid(), target, int(time.time()))
        database.prune_ledgers(
            self._db_conn, self._source.uid(), self._config.progress.retained_batches
        )
        if target.batch_id % self._config.progress.vacuum_interval_batches == 0:
            database.run_incremental_vacuum(self._db_conn, pages=100)
        database.commit_batch(self._db_conn)
        self._source.commit(target)

        elapsed = time.time() - cycle_start
        logger.info(
            f"Batch {target.batch_id} committed: "
            f"{record_count} record(s), elapsed: {elapsed:.2f}s"
        )
        return target

    def close(self) -> None:
        self._db_conn.close()
