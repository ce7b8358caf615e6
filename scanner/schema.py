"""
Per-table column tracking.

Extracted rows are open-ended dicts: a new rule can introduce a field
name no earlier row had. The schema for each table is the ordered list
of every column seen so far; it only ever grows at the end, and each
new column is added to the sink's header as it appears.
"""

import logging

logger = logging.getLogger(__name__)


class ColumnSchema:
    def __init__(self, sink):
        self.sink = sink
        self._columns: dict[str, list[str]] = {}

    def columns(self, table: str) -> list[str]:
        """Return a copy of the known columns for a table."""
        return list(self._columns.get(table, []))

    def _load(self, table: str) -> list[str]:
        if table not in self._columns:
            self.sink.get_or_create(table)
            self._columns[table] = list(self.sink.get_header_row(table))
        return self._columns[table]

    def ensure_columns(self, table: str, row: dict) -> list[str]:
        """Grow the table's schema with any new field names in row.

        Returns the full ordered column list after the update.
        """
        known = self._load(table)
        for name in row:
            if not isinstance(name, str) or not name:
                raise ValueError(f"Field names must be non-empty strings, got {name!r}")
            if name not in known:
                self.sink.append_header_column(table, name)
                known.append(name)
                logger.info("Added column %r to table %r", name, table)
        return list(known)

    def to_positional_row(self, table: str, row: dict) -> list:
        """Lay row out under the table's full header, blanks for absent fields."""
        return [row.get(column, "") for column in self._load(table)]
