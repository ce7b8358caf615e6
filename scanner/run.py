"""
One scan over the mailbox.

    build rules -> page through search results -> extract each message
    -> route the result to its table -> flush buffers

The rule index is built before any mail is fetched, so a bad rule
aborts the run without touching the mailbox. Every run gets a fresh
ScanContext; nothing is cached between runs.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from scanner.buffer import BATCH_SIZE, RowBuffer
from scanner.database import RESERVED_TABLES, SinkWriteError
from scanner.extractor import Extractor, bare_address
from scanner.mailbox import MailSourceError
from scanner.models import EmailMessage, Matched, RecognizedNoMatch, RuleNotFound, RunSummary
from scanner.patterns import SUBJECT_KEY_LENGTH, ConfigurationError, PatternIndex
from scanner.schema import ColumnSchema

logger = logging.getLogger(__name__)

RECOGNIZED_TABLE = "Recognized"
UNRECOGNIZED_TABLE = "Unrecognized"
BODY_PREVIEW_CHARS = 2000


@dataclass
class RunSettings:
    query: str = "UNFLAGGED"
    page_size: int = 50
    batch_size: int = BATCH_SIZE
    subject_length: int = SUBJECT_KEY_LENGTH

    @classmethod
    def from_env(cls) -> "RunSettings":
        return cls(
            query=os.getenv("SCAN_QUERY", "UNFLAGGED"),
            page_size=int(os.getenv("SCAN_PAGE_SIZE", "50")),
            batch_size=int(os.getenv("SCAN_BATCH_SIZE", str(BATCH_SIZE))),
            subject_length=int(os.getenv("SUBJECT_KEY_LENGTH", str(SUBJECT_KEY_LENGTH))),
        )


def build_index(rows, subject_length: int = SUBJECT_KEY_LENGTH) -> PatternIndex:
    """Build the rule index and check that its banks can become tables.

    SQLite compares table and column names without regard to case, so
    bank names and per-bank capture names are checked after casefolding.
    """
    index = PatternIndex.build(rows, subject_length)
    reserved = {t.casefold() for t in RESERVED_TABLES | {RECOGNIZED_TABLE, UNRECOGNIZED_TABLE}}
    banks: dict[str, str] = {}
    columns: dict[str, dict[str, str]] = {}
    for rule in index.rules():
        folded = rule.bank.casefold()
        if folded in reserved:
            raise ConfigurationError(f"Bank name {rule.bank!r} clashes with a reserved table name.")
        seen = banks.setdefault(folded, rule.bank)
        if seen != rule.bank:
            raise ConfigurationError(
                f"Bank names {seen!r} and {rule.bank!r} differ only by case and would share a table."
            )
        names = columns.setdefault(folded, {})
        for name in rule.capture_names:
            known = names.setdefault(name.casefold(), name)
            if known != name:
                raise ConfigurationError(
                    f"Bank {rule.bank!r}: capture names {known!r} and {name!r} differ only by case "
                    f"and would share a column."
                )
    return index


@dataclass
class ScanContext:
    """State owned by a single run."""

    index: PatternIndex
    extractor: Extractor
    schema: ColumnSchema
    buffer: RowBuffer

    @classmethod
    def create(cls, sink, settings: RunSettings, clock: Optional[Callable[[], datetime]] = None):
        index = build_index(sink.load_rule_rows(), settings.subject_length)
        return cls(
            index=index,
            extractor=Extractor(index, clock),
            schema=ColumnSchema(sink),
            buffer=RowBuffer(sink, settings.batch_size),
        )


def _quarantine_row(message: EmailMessage, process_time: datetime, bank: str = "") -> dict:
    row = {}
    if bank:
        row["Bank"] = bank
    row.update({
        "MessageID": message.id,
        "EmailDateTime": message.received_at.isoformat() if message.received_at else "",
        "ProcessTime": process_time.isoformat(),
        "From": message.from_header,
        "Subject": message.subject,
        "Body": message.body[:BODY_PREVIEW_CHARS],
    })
    return row


def route(context: ScanContext, message: EmailMessage, summary: RunSummary) -> None:
    """Extract one message and buffer the resulting row."""
    result = context.extractor.extract(message)

    if isinstance(result, Matched):
        table, row = result.bank, result.fields
        summary.matched += 1
    elif isinstance(result, RecognizedNoMatch):
        table = RECOGNIZED_TABLE
        row = _quarantine_row(message, context.extractor.clock(), bank=result.bank)
        summary.recognized += 1
        logger.info("Recognized non-transaction email from %s: %r", result.bank, message.subject)
    elif isinstance(result, RuleNotFound):
        table = UNRECOGNIZED_TABLE
        row = _quarantine_row(message, context.extractor.clock())
        summary.unrecognized += 1
        logger.info(
            "Unrecognized email from %s: %r", bare_address(message.from_header), message.subject,
        )
    else:
        raise TypeError(f"Unexpected extraction result: {result!r}")

    context.schema.ensure_columns(table, row)
    context.buffer.add(table, context.schema.to_positional_row(table, row))


def run_scan(
    source,
    sink,
    settings: Optional[RunSettings] = None,
    on_progress: Optional[Callable[[str, str], None]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RunSummary:
    """Scan every page of the query and write results to the sink.

    Raises ConfigurationError before reading any mail if the rule table
    is invalid. MailSourceError and SinkWriteError abort the run.
    """
    def _progress(step: str, detail: str = ""):
        if on_progress:
            on_progress(step, detail)

    settings = settings or RunSettings.from_env()
    _progress("rules", "Loading extraction rules...")
    context = ScanContext.create(sink, settings, clock)

    summary = RunSummary()
    offset = 0
    try:
        while True:
            threads = source.search(settings.query, offset, settings.page_size)
            if not threads:
                break
            summary.pages += 1
            logger.debug("Page %d at offset %d: %d thread(s)", summary.pages, offset, len(threads))

            for thread in threads:
                summary.threads += 1
                for message in thread.messages:
                    summary.messages += 1
                    route(context, message, summary)

            _progress(
                "scan",
                f"Page {summary.pages}: {summary.messages} message(s), "
                f"{summary.matched} transaction(s) so far",
            )
            offset += settings.page_size
    except MailSourceError as e:
        logger.error("Mailbox error on page %d: %s", summary.pages + 1, e)
        # keep what was already extracted before giving up
        context.buffer.flush_all()
        raise
    except SinkWriteError as e:
        logger.error("Write failed, aborting run: %s", e)
        raise

    try:
        context.buffer.flush_all()
    except SinkWriteError as e:
        logger.error("Final flush failed: %s", e)
        raise

    summary.rows_written = dict(context.buffer.written)
    logger.info(
        "Scan done: %d page(s), %d message(s); %d matched, %d recognized, "
        "%d unrecognized; %d row(s) written.",
        summary.pages, summary.messages, summary.matched, summary.recognized,
        summary.unrecognized, summary.total_rows,
    )
    _progress(
        "done",
        f"Done: {summary.matched} transaction(s) from {summary.messages} email(s) "
        f"({summary.recognized} recognized, {summary.unrecognized} unrecognized)",
    )
    return summary
