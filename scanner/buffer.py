"""
Batched writes to the sink.

Rows are held per table and written with a single append call once a
table's buffer reaches the batch size. flush_all() must be called at the
end of a run to write whatever is left.
"""

import logging
import os

logger = logging.getLogger(__name__)

BATCH_SIZE = int(os.getenv("SCAN_BATCH_SIZE", "20"))


class RowBuffer:
    def __init__(self, sink, batch_size: int = BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sink = sink
        self.batch_size = batch_size
        self._pending: dict[str, list[list]] = {}
        self.written: dict[str, int] = {}

    def pending(self, table: str) -> int:
        return len(self._pending.get(table, []))

    def add(self, table: str, positional_row: list) -> None:
        rows = self._pending.setdefault(table, [])
        rows.append(positional_row)
        if len(rows) >= self.batch_size:
            self.flush(table)

    def flush(self, table: str) -> int:
        """Write one table's pending rows. Returns the number written."""
        rows = self._pending.get(table)
        if not rows:
            return 0
        self.sink.append_rows(table, rows)
        # only cleared once the sink accepted the batch
        self._pending[table] = []
        self.written[table] = self.written.get(table, 0) + len(rows)
        logger.debug("Flushed %d row(s) to %r", len(rows), table)
        return len(rows)

    def flush_all(self) -> int:
        return sum(self.flush(table) for table in list(self._pending))
