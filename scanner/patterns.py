"""
Extraction rules and the lookup index that buckets them.

Each row of the rule table describes one bank email layout:

    Bank        -- name of the bank (also the destination table)
    Subject     -- literal subject line, or a wildcard entry
    Sender      -- literal sender address, or a wildcard entry
    BodyRegex   -- regex applied to the full plain-text body
    MatchGroups -- comma-separated names for the regex capture groups

Rules are filed under a lookup key built from a truncated subject and
the sender address, so a message only has to be tried against the
handful of rules sharing its key instead of the whole table. A Subject
or Sender value starting with a wildcard marker opts the rule out of
exact keying; such rules share one reserved bucket that is consulted
when a message has no literal-key entry.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Bank", "Subject", "Sender", "BodyRegex", "MatchGroups")

SUBJECT_KEY_LENGTH = int(os.getenv("SUBJECT_KEY_LENGTH", "30"))
KEY_SEPARATOR = "|"
WILDCARD_KEY = "*"
WILDCARD_MARKERS = ("^", "/")

# Added to every matched row after the captured fields
FIXED_FIELDS = ("Bank", "MessageID", "EmailDateTime", "ProcessTime")
_FIXED_FOLDED = {f.casefold() for f in FIXED_FIELDS}


class ConfigurationError(ValueError):
    """Raised when a rule row cannot be turned into a usable rule."""


@dataclass(frozen=True)
class ExtractionRule:
    bank: str
    subject_pattern: str
    sender_pattern: str
    body_regex: re.Pattern
    capture_names: tuple

    @property
    def is_wildcard(self) -> bool:
        return is_wildcard(self.subject_pattern) or is_wildcard(self.sender_pattern)


def is_wildcard(value: str) -> bool:
    """Return True if a Subject/Sender value is marked as a wildcard."""
    return value.startswith(WILDCARD_MARKERS)


def lookup_key(subject: str, sender: str, subject_length: int = SUBJECT_KEY_LENGTH) -> str:
    """Derive the bucket key for a subject/sender pair.

    Pure and deterministic: the same inputs always give the same key,
    whether computed from a rule row or from an incoming message.
    """
    prefix = (subject or "").strip()[:subject_length]
    address = (sender or "").strip().lower()
    return f"{prefix}{KEY_SEPARATOR}{address}"


def _cell(row: dict, column: str) -> str:
    value = row.get(column)
    if value is None:
        return ""
    # pandas hands back NaN for empty CSV cells
    if isinstance(value, float) and value != value:
        return ""
    return str(value).strip()


def compile_rule(row: dict, row_number: int) -> ExtractionRule:
    """Validate one raw rule row and compile its body regex.

    Raises ConfigurationError naming the row on any problem.
    """
    bank = _cell(row, "Bank")
    if not bank:
        raise ConfigurationError(f"Rule row {row_number}: Bank is empty.")

    pattern = row.get("BodyRegex")
    if pattern is None or not str(pattern).strip():
        raise ConfigurationError(f"Rule row {row_number} ({bank}): BodyRegex is empty.")

    try:
        body_regex = re.compile(str(pattern), re.DOTALL)
    except re.error as e:
        raise ConfigurationError(
            f"Rule row {row_number} ({bank}): BodyRegex does not compile: {e}"
        ) from e

    raw_groups = _cell(row, "MatchGroups")
    names = tuple(n.strip() for n in raw_groups.split(",")) if raw_groups else ()
    if any(not n for n in names):
        raise ConfigurationError(
            f"Rule row {row_number} ({bank}): MatchGroups contains an empty name: {raw_groups!r}"
        )
    folded = [n.casefold() for n in names]
    if len(set(folded)) != len(folded):
        raise ConfigurationError(
            f"Rule row {row_number} ({bank}): MatchGroups repeats a name: {raw_groups!r}"
        )
    clashes = [n for n in names if n.casefold() in _FIXED_FOLDED or n.startswith("_")]
    if clashes:
        raise ConfigurationError(
            f"Rule row {row_number} ({bank}): MatchGroups name(s) {', '.join(clashes)} are reserved "
            f"(fixed fields {', '.join(FIXED_FIELDS)} and names starting with '_')."
        )
    if body_regex.groups != len(names):
        raise ConfigurationError(
            f"Rule row {row_number} ({bank}): BodyRegex has {body_regex.groups} capture "
            f"group(s) but MatchGroups names {len(names)}."
        )

    return ExtractionRule(
        bank=bank,
        subject_pattern=_cell(row, "Subject"),
        sender_pattern=_cell(row, "Sender"),
        body_regex=body_regex,
        capture_names=names,
    )


class PatternIndex:
    """Rules bucketed by lookup key, in rule-table order within a bucket."""

    def __init__(self, subject_length: int = SUBJECT_KEY_LENGTH):
        self.subject_length = subject_length
        self._buckets: dict[str, list[ExtractionRule]] = {}

    @classmethod
    def build(
        cls,
        rows: Iterable[dict],
        subject_length: int = SUBJECT_KEY_LENGTH,
    ) -> "PatternIndex":
        """Compile every rule row into a new index.

        Fails on the first malformed row; a partial rule set would
        quietly misfile later messages as unrecognized.
        """
        index = cls(subject_length)
        for number, row in enumerate(rows, start=1):
            missing = [c for c in REQUIRED_COLUMNS if c not in row]
            if missing:
                raise ConfigurationError(
                    f"Rule row {number}: missing column(s) {', '.join(missing)}."
                )
            index.add(compile_rule(row, number))

        logger.info(
            "Indexed %d rule(s) under %d key(s) (%d wildcard).",
            len(index), len(index._buckets), len(index._buckets.get(WILDCARD_KEY, [])),
        )
        return index

    def key_for(self, rule: ExtractionRule) -> str:
        if rule.is_wildcard:
            return WILDCARD_KEY
        return lookup_key(rule.subject_pattern, rule.sender_pattern, self.subject_length)

    def add(self, rule: ExtractionRule) -> None:
        self._buckets.setdefault(self.key_for(rule), []).append(rule)

    def lookup(self, subject: str, sender: str) -> list[ExtractionRule]:
        """Return the candidate rules for a message, in priority order.

        A literal-key bucket wins outright; the wildcard bucket is only
        consulted when no literal entry exists. An empty list means no
        rule applies.
        """
        key = lookup_key(subject, sender, self.subject_length)
        rules: Optional[list] = self._buckets.get(key)
        if rules is None:
            rules = self._buckets.get(WILDCARD_KEY, [])
        return list(rules)

    def keys(self) -> list[str]:
        return list(self._buckets)

    def rules(self) -> list[ExtractionRule]:
        return [rule for bucket in self._buckets.values() for rule in bucket]

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._buckets.values())
