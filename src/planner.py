"""Batch planner module.

Decides how far consumption may advance on each polling cycle. The planner
holds the committed ledger and the most recent ceiling fetched from the
broker, and produces the next target ledger clamped to the per-partition
rate.

Failure policy:
    When the ceiling fetch fails and the previous cycle made progress, the
    last known ceiling is reused and a warning is logged. When nothing was
    ever fetched, or the committed ledger already equals the last ceiling
    (the stream looked stalled), a failed fetch raises CeilingUnavailable.
"""

import logging
from concurrent.futures import Executor
from typing import Any, Dict, Iterable, Mapping, Optional

from errors import (
    CeilingUnavailable,
    InvalidConfiguration,
    NonMonotonicCeiling,
    TransportError,
)
from executor import InlineExecutor
from ledger import OffsetLedger, PartitionProgress, UNKNOWN_SEQUENCE_NUMBER

logger = logging.getLogger(__name__)


def clamp(
    current: OffsetLedger, ceiling: OffsetLedger, rates: Mapping[int, int]
) -> Dict[int, PartitionProgress]:
    """Compute per-partition targets bounded by the ceiling and the rate.

    A partition whose target is the ceiling's own offset carries the
    ceiling's sequence number. A partition held back by its rate carries
    UNKNOWN_SEQUENCE_NUMBER, since the sequence number at an arbitrary
    offset is not known without reading the record.

    Args:
        current: The committed ledger
        ceiling: The broker's high-water-mark snapshot
        rates: Maximum offsets a single batch may advance, per partition

    Returns:
        Dict mapping partition id to its target progress

    Raises:
        NonMonotonicCeiling: If the ceiling is behind `current` for any partition
    """
    targets = {}
    for partition, position in current.offsets.items():
        high = ceiling.offsets[partition]
        if high.is_behind(position):
            raise NonMonotonicCeiling(
                f"partition {partition}: ceiling ({high.offset}, {high.sequence_number}) "
                f"is behind committed position ({position.offset}, {position.sequence_number})"
            )

        limit = position.offset + rates[partition]
        if high.offset <= limit:
            targets[partition] = high
        else:
            targets[partition] = PartitionProgress(limit, UNKNOWN_SEQUENCE_NUMBER)
    return targets


class BatchPlanner:
    """Single-writer coordinator for batch boundaries.

    The host calls plan_next_batch() and commit() strictly in sequence; no
    locking is done here.
    """

    def __init__(
        self,
        partitions: Iterable[int],
        broker: Any,
        max_rate_per_partition: int = 1000,
        rate_overrides: Optional[Mapping[int, int]] = None,
        executor: Optional[Executor] = None,
        initial: Optional[OffsetLedger] = None,
    ) -> None:
        """Initialize the planner.

        Args:
            partitions: Complete partition set of the stream
            broker: Collaborator exposing fetch_high_water_mark(partitions, force_retry)
            max_rate_per_partition: Default maximum advance per batch
            rate_overrides: Per-partition replacements for max_rate_per_partition
            executor: Executor the ceiling fetch runs on (inline if None)
            initial: Ledger to resume from (start of stream if None)

        Raises:
            InvalidConfiguration: If the partitions, rates or initial ledger are invalid
        """
        self._partitions = frozenset(partitions)
        if not self._partitions:
            raise InvalidConfiguration("planner needs at least one partition")
        if broker is None:
            raise InvalidConfiguration("planner needs a broker collaborator")

        self._rates = self._build_rates(max_rate_per_partition, rate_overrides or {})
        self._broker = broker
        self._executor = executor if executor is not None else InlineExecutor()

        if initial is None:
            self._current = OffsetLedger.for_partitions(self._partitions)
        else:
            if not initial.covers(self._partitions):
                raise InvalidConfiguration(
                    f"initial ledger covers {sorted(initial.partitions)}, "
                    f"expected {sorted(self._partitions)}"
                )
            self._current = initial
        self._last_fetched_ceiling: Optional[OffsetLedger] = None

    def _build_rates(self, default: int, overrides: Mapping[int, int]) -> Dict[int, int]:
        unknown = set(overrides) - self._partitions
        if unknown:
            raise InvalidConfiguration(
                f"rate overrides name unknown partitions: {sorted(unknown)}"
            )
        rates = {}
        for partition in self._partitions:
            rate = overrides.get(partition, default)
            if not isinstance(rate, int) or isinstance(rate, bool) or rate <= 0:
                raise InvalidConfiguration(
                    f"rate for partition {partition} must be a positive integer, got {rate!r}"
                )
            rates[partition] = rate
        return rates

    @property
    def partitions(self):
        return self._partitions

    @property
    def current(self) -> OffsetLedger:
        return self._current

    @property
    def last_fetched_ceiling(self) -> Optional[OffsetLedger]:
        return self._last_fetched_ceiling

    def rate_for(self, partition: int) -> int:
        return self._rates[partition]

    def _should_force_retry(self) -> bool:
        return (
            self._last_fetched_ceiling is None
            or self._last_fetched_ceiling == self._current
        )

    def _fetch_ceiling(self, force_retry: bool) -> OffsetLedger:
        future = self._executor.submit(
            self._broker.fetch_high_water_mark, set(self._partitions), force_retry
        )
        ceiling = future.result()
        if not ceiling.covers(self._partitions):
            raise TransportError(
                f"broker returned a ceiling for {sorted(ceiling.partitions)}, "
                f"expected {sorted(self._partitions)}"
            )
        return ceiling

    def plan_next_batch(self) -> OffsetLedger:
        """Compute the next target ledger.

        The returned ledger is not committed; call commit() once the host has
        durably recorded the batch.

        Returns:
            OffsetLedger: Target ledger with batch_id = current.batch_id + 1

        Raises:
            CeilingUnavailable: If the fetch failed and stale data may not be reused
            NonMonotonicCeiling: If the ceiling is behind the committed ledger
        """
        force_retry = self._should_force_retry()

        try:
            ceiling = self._fetch_ceiling(force_retry)
        except TransportError as e:
            if force_retry:
                raise CeilingUnavailable(
                    f"cannot get highest offset from broker: {e}"
                ) from e
            logger.warning(
                f"Failed to fetch highest offset ({e}); "
                f"reusing ceiling from previous cycle"
            )
            ceiling = self._last_fetched_ceiling
        else:
            self._last_fetched_ceiling = ceiling

        targets = clamp(self._current, ceiling, self._rates)
        next_ledger = OffsetLedger(batch_id=self._current.batch_id + 1, offsets=targets)
        target_offsets = {p: t.offset for p, t in sorted(targets.items())}
        logger.debug(f"Planned batch {next_ledger.batch_id}: {target_offsets}")
        return next_ledger

    def commit(self, ledger: OffsetLedger) -> None:
        """Make `ledger` the committed ledger.

        Raises:
            ValueError: If the batch id does not follow the current one
            InvalidConfiguration: If the ledger covers a different partition set
            NonMonotonicCeiling: If any partition would move backward
        """
        if ledger.batch_id != self._current.batch_id + 1:
            raise ValueError(
                f"expected batch {self._current.batch_id + 1}, got {ledger.batch_id}"
            )
        if not ledger.covers(self._partitions):
            raise InvalidConfiguration(
                f"ledger covers {sorted(ledger.partitions)}, "
                f"expected {sorted(self._partitions)}"
            )
        for partition, position in self._current.offsets.items():
            if ledger.offsets[partition].is_behind(position):
                raise NonMonotonicCeiling(
                    f"commit would move partition {partition} backward"
                )
        self._current = ledger
