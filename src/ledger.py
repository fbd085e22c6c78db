"""Offset ledger module.

Immutable per-partition progress snapshots. Pure value types with no I/O.

A ledger records, for every partition of one stream, the last position that
has been fully accounted for. The same type doubles as a high-water-mark
snapshot when tagged with CEILING_BATCH_ID.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from errors import InvalidConfiguration

# Sequence number carried by a target whose offset was clamped rather than
# taken from the broker's ceiling.
UNKNOWN_SEQUENCE_NUMBER = None

CEILING_BATCH_ID = 2 ** 63 - 1


@dataclass(frozen=True)
class PartitionProgress:
    """Last (offset, sequence number) accounted for in one partition."""
    offset: int
    sequence_number: Optional[int]

    def __post_init__(self) -> None:
        if not isinstance(self.offset, int) or isinstance(self.offset, bool):
            raise InvalidConfiguration(
                f"offset must be an integer, got {type(self.offset).__name__}"
            )
        seq = self.sequence_number
        if seq is not None and (not isinstance(seq, int) or isinstance(seq, bool)):
            raise InvalidConfiguration(
                f"sequence_number must be an integer or None, got {type(seq).__name__}"
            )

    @property
    def has_sequence_number(self) -> bool:
        return self.sequence_number is not UNKNOWN_SEQUENCE_NUMBER

    def is_behind(self, other: "PartitionProgress") -> bool:
        """Return True if this position is strictly behind `other` in either component.

        Sequence numbers are only compared when both are known.
        """
        if self.offset < other.offset:
            return True
        if self.has_sequence_number and other.has_sequence_number:
            return self.sequence_number < other.sequence_number
        return False


START_OF_STREAM = PartitionProgress(-1, -1)


@dataclass(frozen=True)
class OffsetLedger:
    """Per-partition progress tagged with a batch identifier.

    Equality is structural over `offsets` only; two ledgers with different
    batch ids but the same positions compare equal. The planner relies on
    this to detect a stalled stream.
    """
    batch_id: int = field(compare=False)
    offsets: Mapping[int, PartitionProgress]

    def __post_init__(self) -> None:
        # Read-only copy; later changes to the caller's dict do not leak in.
        object.__setattr__(self, "offsets", MappingProxyType(dict(self.offsets)))
        for partition, progress in self.offsets.items():
            if not isinstance(partition, int) or isinstance(partition, bool) or partition < 0:
                raise InvalidConfiguration(
                    f"partition id must be a non-negative integer, got {partition!r}"
                )
            if not isinstance(progress, PartitionProgress):
                raise InvalidConfiguration(
                    f"progress for partition {partition} must be a PartitionProgress"
                )

    @classmethod
    def for_partitions(
        cls,
        partitions: Iterable[int],
        offsets: Optional[Mapping[int, PartitionProgress]] = None,
        batch_id: int = 0,
    ) -> "OffsetLedger":
        """Build a ledger covering exactly `partitions`.

        Args:
            partitions: The complete partition set of the stream
            offsets: Progress per partition. None means every partition
                     starts at START_OF_STREAM.
            batch_id: Batch identifier for the ledger

        Returns:
            OffsetLedger: The validated ledger

        Raises:
            InvalidConfiguration: If offsets do not cover exactly `partitions`
        """
        partition_set = set(partitions)
        if not partition_set:
            raise InvalidConfiguration("a ledger needs at least one partition")
        if offsets is None:
            offsets = {p: START_OF_STREAM for p in partition_set}
        _require_partition_set(partition_set, offsets)
        return cls(batch_id=batch_id, offsets=offsets)

    @classmethod
    def ceiling(
        cls, partitions: Iterable[int], offsets: Mapping[int, PartitionProgress]
    ) -> "OffsetLedger":
        """Build a high-water-mark snapshot for `partitions`."""
        return cls.for_partitions(partitions, offsets, batch_id=CEILING_BATCH_ID)

    @property
    def is_ceiling(self) -> bool:
        return self.batch_id == CEILING_BATCH_ID

    @property
    def partitions(self):
        return frozenset(self.offsets)

    def covers(self, partitions: Iterable[int]) -> bool:
        return set(self.offsets) == set(partitions)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible data (partition ids become strings)."""
        return {
            "batch_id": self.batch_id,
            "offsets": {
                str(partition): {
                    "offset": progress.offset,
                    "sequence_number": progress.sequence_number,
                }
                for partition, progress in sorted(self.offsets.items())
            },
        }


def _require_partition_set(
    partitions: set, offsets: Mapping[int, PartitionProgress]
) -> None:
    missing = partitions - set(offsets)
    extra = set(offsets) - partitions
    if missing or extra:
        raise InvalidConfiguration(
            f"ledger must cover exactly partitions {sorted(partitions)}: "
            f"missing={sorted(missing)}, unexpected={sorted(extra)}"
        )
