"""Data-plane reader module.

Reads the records between two ledgers with an explicitly assigned
confluent-kafka Consumer. Gaps in the log (records removed by retention
before they were read) are detected here and handled according to the
stream's fail_on_data_loss flag.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from confluent_kafka import TIMESTAMP_NOT_AVAILABLE, KafkaError, KafkaException, TopicPartition

from errors import DataLossError, TransportError
from ledger import OffsetLedger

logger = logging.getLogger(__name__)


@dataclass
class EventRecord:
    """One event read from a partition."""
    body: Optional[bytes]
    offset: int
    sequence_number: int
    enqueued_time: Optional[float]
    partition: int
    partition_key: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body = None
        body_encoding = None
        if self.body is not None:
            try:
                body = self.body.decode("utf-8")
                body_encoding = "utf-8"
            except UnicodeDecodeError:
                body = base64.b64encode(self.body).decode("ascii")
                body_encoding = "base64"
        return {
            "body": body,
            "body_encoding": body_encoding,
            "offset": self.offset,
            "sequence_number": self.sequence_number,
            "enqueued_time": self.enqueued_time,
            "partition": self.partition,
            "partition_key": self.partition_key,
            "properties": self.properties,
        }


def _decode_header(value: Any) -> Any:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(value).decode("ascii")
    return value


def record_from_message(msg: Any) -> EventRecord:
    """Convert a confluent-kafka Message into an EventRecord."""
    ts_type, ts_ms = msg.timestamp()
    enqueued_time = None if ts_type == TIMESTAMP_NOT_AVAILABLE else ts_ms / 1000.0

    key = msg.key()
    if isinstance(key, bytes):
        key = key.decode("utf-8", errors="replace")

    properties = {}
    for name, value in msg.headers() or []:
        properties[name] = _decode_header(value)

    # The Kafka endpoint exposes one position namespace per partition, so
    # the sequence number is the record's offset.
    return EventRecord(
        body=msg.value(),
        offset=msg.offset(),
        sequence_number=msg.offset(),
        enqueued_time=enqueued_time,
        partition=msg.partition(),
        partition_key=key,
        properties=properties,
    )


class KafkaBatchReader:
    """Reads the records strictly after `start` and up to `end`, per partition."""

    def __init__(
        self,
        consumer: Any,
        topic: str,
        fail_on_data_loss: bool = True,
        receiver_timeout_seconds: float = 60,
        poll_timeout_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the reader.

        Args:
            consumer: confluent-kafka Consumer (never subscribed, only assigned)
            topic: Topic (event hub) name
            fail_on_data_loss: Raise DataLossError on a gap instead of logging it
            receiver_timeout_seconds: Maximum time to read one partition's range
            poll_timeout_seconds: Timeout for a single poll() call
            clock: Monotonic clock, injectable for tests
        """
        self._consumer = consumer
        self._topic = topic
        self._fail_on_data_loss = fail_on_data_loss
        self._receiver_timeout_seconds = receiver_timeout_seconds
        self._poll_timeout_seconds = poll_timeout_seconds
        self._clock = clock

    def read(self, start: Optional[OffsetLedger], end: OffsetLedger) -> List[EventRecord]:
        """Read the records between two ledgers.

        Args:
            start: Last consumed ledger, or None to read from the start of the stream
            end: Target ledger (inclusive)

        Returns:
            Records ordered by partition, then offset

        Raises:
            DataLossError: If a gap is found and fail_on_data_loss is set
            TransportError: If the broker errors or the range cannot be read in time
        """
        if start is None:
            start = OffsetLedger.for_partitions(end.partitions)

        records: List[EventRecord] = []
        for partition in sorted(end.offsets):
            first = start.offsets[partition].offset + 1
            last = end.offsets[partition].offset
            if last < first:
                continue

            first = self._check_retention(partition, first)
            if last < first:
                continue
            records.extend(self._read_partition(partition, first, last))

        return records

    def close(self) -> None:
        self._consumer.close()

    def _report_gap(self, partition: int, expected: int, found: int) -> None:
        message = (
            f"Data loss on {self._topic}/{partition}: expected offset {expected}, "
            f"earliest available is {found}"
        )
        if self._fail_on_data_loss:
            raise DataLossError(message)
        logger.warning(f"{message}. Some data may have been lost; continuing")

    def _check_retention(self, partition: int, first: int) -> int:
        tp = TopicPartition(self._topic, partition)
        try:
            low, _high = self._consumer.get_watermark_offsets(
                tp, timeout=self._receiver_timeout_seconds
            )
        except KafkaException as e:
            raise TransportError(
                f"Failed to get watermarks for {self._topic}/{partition}: {e}"
            ) from e

        if low > first:
            self._report_gap(partition, first, low)
            return low
        return first

    def _read_partition(self, partition: int, first: int, last: int) -> List[EventRecord]:
        records = []
        expected = first
        deadline = self._clock() + self._receiver_timeout_seconds

        self._consumer.assign([TopicPartition(self._topic, partition, first)])
        try:
            while expected <= last:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise TransportError(
                        f"Timed out reading {self._topic}/{partition}: "
                        f"reached offset {expected - 1}, wanted {last}"
                    )

                msg = self._consumer.poll(min(self._poll_timeout_seconds, remaining))
                if msg is None:
                    continue

                error = msg.error()
                if error is not None:
                    if error.code() == KafkaError._PARTITION_EOF:
                        continue
                    raise TransportError(
                        f"Error reading {self._topic}/{partition}: {error}"
                    )

                offset = msg.offset()
                if offset < expected:
                    continue
                if offset > expected:
                    self._report_gap(partition, expected, offset)
                if offset > last:
                    break

                records.append(record_from_message(msg))
                expected = offset + 1
        finally:
            self._consumer.unassign()

        logger.debug(
            f"Read {len(records)} record(s) from {self._topic}/{partition} "
            f"[{first}, {last}]"
        )
        return records
