"""Event stream source module.

The surface a streaming host drives: ask for the next batch boundary, read
the records between two boundaries, confirm a boundary once it is durably
recorded.
"""

import logging
from typing import Any, List, Optional

from config import StreamConfig
from errors import SourceStopped
from ledger import OffsetLedger
from planner import BatchPlanner

logger = logging.getLogger(__name__)


class EventStreamSource:
    """One source per event stream; maps to a single event hub."""

    def __init__(self, stream_config: StreamConfig, planner: BatchPlanner, reader: Any) -> None:
        self._stream_config = stream_config
        self._planner = planner
        self._reader = reader
        self._stopped = False

    @property
    def committed(self) -> OffsetLedger:
        return self._planner.current

    @property
    def stopped(self) -> bool:
        return self._stopped

    def get_next_offset(self) -> Optional[OffsetLedger]:
        """Return the target ledger for the next batch, or None once stopped."""
        if self._stopped:
            return None
        return self._planner.plan_next_batch()

    def get_batch(self, start: Optional[OffsetLedger], end: OffsetLedger) -> List[Any]:
        """Return the records after `start` up to and including `end`.

        A `start` of None reads from the beginning of the stream.
        """
        if self._stopped:
            raise SourceStopped(f"source {self.uid()} has been stopped")
        return self._reader.read(start, end)

    def commit(self, ledger: OffsetLedger) -> None:
        self._planner.commit(ledger)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._reader.close()
        logger.info(f"Stopped source {self.uid()}")

    def uid(self) -> str:
        return self._stream_config.name

    def connected_partitions(self) -> List[int]:
        return sorted(self._planner.partitions)
