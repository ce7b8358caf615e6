"""
SQLite-backed tabular store for rules, extracted rows and settings.

Every table looks like a spreadsheet sheet: a header of TEXT columns
that can grow at the end, and rows appended in order. An internal
_row column keeps insertion order and is never part of the header.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

import pandas as pd

from scanner.patterns import REQUIRED_COLUMNS

logger = logging.getLogger(__name__)

DB_PATH = os.getenv(
    "SCANNER_DB_PATH",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "bank_alerts.db"),
)

RULES_TABLE = "rules"
MAILBOX_CONFIG_KEY = "mailbox_config"
_ROW_ID = "_row"
RESERVED_TABLES = frozenset({RULES_TABLE, "settings", "sqlite_sequence"})


class SinkWriteError(RuntimeError):
    """Raised when the store rejects a table, header or row write."""


def _quote(identifier: str) -> str:
    """Quote a table or column name for use in SQL."""
    return '"' + identifier.replace('"', '""') + '"'


class SqliteSink:
    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    @contextmanager
    def get_connection(self):
        """Yield a SQLite connection with row_factory set."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _writing(self, what: str):
        try:
            with self.get_connection() as conn:
                yield conn
        except sqlite3.Error as e:
            raise SinkWriteError(f"{what} failed: {e}") from e

    def init_db(self) -> None:
        """Create the settings and rule tables if they don't exist."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._writing("Initialising database") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            columns = ", ".join(f"{_quote(c)} TEXT" for c in REQUIRED_COLUMNS)
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {RULES_TABLE} "
                f"({_ROW_ID} INTEGER PRIMARY KEY AUTOINCREMENT, {columns})"
            )

    # -----------------------------------------------------------------------
    # Table operations
    # -----------------------------------------------------------------------

    def get_or_create(self, table: str) -> str:
        """Create an empty table if needed. Returns the table name."""
        if not table:
            raise ValueError("Table name must not be empty")
        with self._writing(f"Creating table {table!r}") as conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_quote(table)} "
                f"({_ROW_ID} INTEGER PRIMARY KEY AUTOINCREMENT)"
            )
        return table

    def get_header_row(self, table: str) -> list[str]:
        with self.get_connection() as conn:
            info = conn.execute(f"PRAGMA table_info({_quote(table)})").fetchall()
        return [r["name"] for r in sorted(info, key=lambda r: r["cid"]) if r["name"] != _ROW_ID]

    def append_header_column(self, table: str, name: str) -> None:
        with self._writing(f"Adding column {name!r} to {table!r}") as conn:
            conn.execute(f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(name)} TEXT")

    def append_row(self, table: str, row: list) -> None:
        self.append_rows(table, [row])

    def append_rows(self, table: str, rows: list[list]) -> int:
        """Append positional rows under the current header.

        Rows shorter than the header are padded with empty strings;
        rows wider than the header are rejected.
        """
        if not rows:
            return 0
        header = self.get_header_row(table)
        width = len(header)
        padded = []
        for row in rows:
            if len(row) > width:
                raise SinkWriteError(
                    f"Row has {len(row)} values but {table!r} has {width} columns"
                )
            padded.append([("" if v is None else str(v)) for v in row] + [""] * (width - len(row)))

        columns = ", ".join(_quote(c) for c in header)
        placeholders = ", ".join("?" for _ in header)
        with self._writing(f"Appending {len(rows)} row(s) to {table!r}") as conn:
            conn.executemany(
                f"INSERT INTO {_quote(table)} ({columns}) VALUES ({placeholders})",
                padded,
            )
        return len(padded)

    def read_rows(self, table: str) -> list[dict]:
        """Return every row of a table as dicts, in insertion order."""
        header = self.get_header_row(table)
        if not header:
            return []
        columns = ", ".join(_quote(c) for c in header)
        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT {columns} FROM {_quote(table)} ORDER BY {_ROW_ID}"
            ).fetchall()
        return [dict(r) for r in rows]

    def list_tables(self, include_internal: bool = False) -> list[str]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            ).fetchall()
        names = [r["name"] for r in rows]
        if include_internal:
            return names
        return [n for n in names if n not in RESERVED_TABLES]

    def table_frame(self, table: str) -> pd.DataFrame:
        """Return a table as a DataFrame with its header as columns."""
        return pd.DataFrame(self.read_rows(table), columns=self.get_header_row(table))

    # -----------------------------------------------------------------------
    # Rule table
    # -----------------------------------------------------------------------

    def load_rule_rows(self) -> list[dict]:
        return self.read_rows(RULES_TABLE)

    def replace_rules(self, frame: pd.DataFrame) -> int:
        """Replace the rule table with the rows of a DataFrame."""
        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Rule file is missing column(s): {', '.join(missing)}")

        frame = frame[list(REQUIRED_COLUMNS)].fillna("")
        rows = [[str(v) for v in r] for r in frame.itertuples(index=False, name=None)]

        columns = ", ".join(_quote(c) for c in REQUIRED_COLUMNS)
        placeholders = ", ".join("?" for _ in REQUIRED_COLUMNS)
        with self._writing("Replacing rule table") as conn:
            conn.execute(f"DELETE FROM {RULES_TABLE}")
            conn.executemany(
                f"INSERT INTO {RULES_TABLE} ({columns}) VALUES ({placeholders})",
                rows,
            )
        logger.info("Replaced rule table with %d rule(s).", len(rows))
        return len(rows)

    def import_rules_csv(self, source) -> int:
        """Load rules from a CSV path or file-like object."""
        # keep_default_na: "NA" or "null" in a regex must stay text
        frame = pd.read_csv(source, dtype=str, keep_default_na=False)
        frame.columns = [str(c).strip() for c in frame.columns]
        return self.replace_rules(frame)

    # -----------------------------------------------------------------------
    # App settings (persisted key-value pairs)
    # -----------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        """Return a setting value or None if not set."""
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Upsert a setting."""
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )

    def delete_setting(self, key: str) -> None:
        """Remove a setting."""
        with self.get_connection() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
