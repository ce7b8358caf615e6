"""
Data carried between the mailbox, the extractor and the sink.

A run reads each message once into an immutable EmailMessage, hands it
to the Extractor and receives exactly one of three outcomes:

    Matched            -- a rule's body regex matched and produced fields
    RecognizedNoMatch  -- a rule with no capture names matched the body
                          (a known, monitored, non-transactional email)
    RuleNotFound       -- no candidate rule matched the body
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class EmailMessage:
    """One email as read from the mail source."""

    id: str
    received_at: Optional[datetime]
    from_header: str
    subject: str
    body: str
    observed_at: datetime


@dataclass(frozen=True)
class MailThread:
    """A conversation: an ordered group of messages."""

    id: str
    messages: tuple = ()


@dataclass
class Matched:
    fields: dict
    bank: str
    message: EmailMessage


@dataclass
class RecognizedNoMatch:
    bank: str
    message: EmailMessage


@dataclass
class RuleNotFound:
    message: EmailMessage


ExtractionResult = Union[Matched, RecognizedNoMatch, RuleNotFound]


@dataclass
class RunSummary:
    """Counts collected over one scan."""

    pages: int = 0
    threads: int = 0
    messages: int = 0
    matched: int = 0
    recognized: int = 0
    unrecognized: int = 0
    rows_written: dict = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return sum(self.rows_written.values())
