"""
Pytest configuration and shared fixtures.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

# Add project root to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Set up test environment variables before importing any modules
os.environ.setdefault("SUBJECT_KEY_LENGTH", "30")
os.environ.setdefault("SCAN_BATCH_SIZE", "20")

from scanner.database import SinkWriteError
from scanner.mailbox import MailSourceError
from scanner.models import EmailMessage, MailThread

FIXED_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
RECEIVED = datetime(2026, 10, 18, 14, 7, tzinfo=timezone.utc)

EXAMPLE_RULE = {
    "Bank": "ExampleBank",
    "Subject": "Transaction Alert",
    "Sender": "alerts@examplebank.test",
    "BodyRegex": r"Rs\.(\d+\.\d{2}) debited.*Ref (\w+)",
    "MatchGroups": "Amount,RefNo",
}


class MemorySink:
    """In-memory tabular store with the same surface as SqliteSink."""

    def __init__(self, rules=None, fail_on_append=False):
        self.rules = list(rules or [])
        self.tables: dict[str, dict] = {}
        self.fail_on_append = fail_on_append
        self.append_calls: list[tuple[str, int]] = []

    def load_rule_rows(self):
        return list(self.rules)

    def get_or_create(self, table):
        self.tables.setdefault(table, {"header": [], "rows": []})
        return table

    def get_header_row(self, table):
        return list(self.tables[table]["header"])

    def append_header_column(self, table, name):
        self.tables[table]["header"].append(name)

    def append_row(self, table, row):
        self.append_rows(table, [row])

    def append_rows(self, table, rows):
        if self.fail_on_append:
            raise SinkWriteError(f"Appending {len(rows)} row(s) to {table!r} failed: disk full")
        self.append_calls.append((table, len(rows)))
        self.tables[table]["rows"].extend(list(r) for r in rows)
        return len(rows)

    def records(self, table):
        """Rows of a table as dicts keyed by header, short rows padded."""
        header = self.tables[table]["header"]
        return [dict(zip(header, row + [""] * (len(header) - len(row)))) for row in self.tables[table]["rows"]]


class PagedSource:
    """Mail source serving a fixed list of threads, page_size threads per page."""

    def __init__(self, threads, fail_at_offset=None):
        self.threads = list(threads)
        self.fail_at_offset = fail_at_offset
        self.calls: list[tuple[str, int, int]] = []

    def search(self, query, page_offset, page_size):
        self.calls.append((query, page_offset, page_size))
        if self.fail_at_offset is not None and page_offset >= self.fail_at_offset:
            raise MailSourceError("connection reset by peer")
        return self.threads[page_offset:page_offset + page_size]


def build_message(
    body,
    subject="Transaction Alert",
    sender="Example Bank <alerts@examplebank.test>",
    msg_id="<msg-1@examplebank.test>",
    received_at=RECEIVED,
):
    return EmailMessage(
        id=msg_id,
        received_at=received_at,
        from_header=sender,
        subject=subject,
        body=body,
        observed_at=FIXED_NOW,
    )


def single_threads(*messages):
    return [MailThread(id=m.id, messages=(m,)) for m in messages]


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def example_rule():
    return dict(EXAMPLE_RULE)


@pytest.fixture
def make_message():
    return build_message


@pytest.fixture
def memory_sink(example_rule):
    return MemorySink(rules=[example_rule])
