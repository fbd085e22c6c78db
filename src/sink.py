"""Batch sink module.

Writes each batch's records to its own JSON file in the output directory.
"""

import json
import logging
import os
from typing import Any, Iterable

from ledger import OffsetLedger

logger = logging.getLogger(__name__)


class BatchSink:
    """Writes one JSON file per batch, named after the batch id.

    Writing the same batch again replaces the file, so a batch replayed
    after a crash produces the same output.
    """

    def __init__(self, directory: str) -> None:
        self._directory = directory

    def path_for(self, batch_id: int) -> str:
        return os.path.join(self._directory, f"batch-{batch_id:012d}.json")

    def write(self, ledger: OffsetLedger, records: Iterable[Any]) -> str:
        """Write a batch atomically.

        Writes to a temp file first, then uses os.replace() for atomic rename.

        Args:
            ledger: The batch's end ledger
            records: EventRecord instances

        Returns:
            Path of the written file
        """
        path = self.path_for(ledger.batch_id)
        tmp_path = f"{path}.tmp"
        output = {
            "ledger": ledger.to_dict(),
            "records": [record.to_dict() for record in records],
        }

        try:
            with open(tmp_path, 'w') as f:
                json.dump(output, f, indent=2)

            os.replace(tmp_path, path)

        except Exception:
            # Clean up temp file on error
            try:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            except OSError:
                pass
            raise

        logger.debug(f"Wrote {len(output['records'])} record(s) to {path}")
        return path
