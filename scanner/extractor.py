"""
Turn one email into an extraction result using the rule index.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

from scanner.models import EmailMessage, ExtractionResult, Matched, RecognizedNoMatch, RuleNotFound
from scanner.patterns import PatternIndex

logger = logging.getLogger(__name__)

# "Example Bank <alerts@examplebank.test>" -> alerts@examplebank.test
_ANGLE_ADDRESS = re.compile(r"<([^<>]*)>")


def bare_address(from_header: str) -> str:
    """Extract the bare email address from a raw From header.

    Without angle brackets the whole header is taken as the address.
    """
    header = from_header or ""
    match = _ANGLE_ADDRESS.search(header)
    if match:
        return match.group(1).strip()
    return header.strip()


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Extractor:
    """Match messages against the rules of one PatternIndex."""

    def __init__(self, index: PatternIndex, clock: Optional[Callable[[], datetime]] = None):
        self.index = index
        self.clock = clock or _utcnow

    def extract(self, message: EmailMessage) -> ExtractionResult:
        sender = bare_address(message.from_header)
        candidates = self.index.lookup(message.subject, sender)

        for rule in candidates:
            match = rule.body_regex.search(message.body)
            if not match:
                continue

            if not rule.capture_names:
                return RecognizedNoMatch(bank=rule.bank, message=message)

            fields = {
                name: match.group(i) or ""
                for i, name in enumerate(rule.capture_names, start=1)
            }
            fields["Bank"] = rule.bank
            fields["MessageID"] = message.id
            fields["EmailDateTime"] = _iso(message.received_at)
            fields["ProcessTime"] = _iso(self.clock())
            return Matched(fields=fields, bank=rule.bank, message=message)

        if candidates:
            logger.debug(
                "No body match among %d rule(s) for %r from %s",
                len(candidates), message.subject, sender,
            )
        return RuleNotFound(message=message)
