"""
Tests for the IMAP mail source and message parsing.
"""

import email
import imaplib
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import build_message
from scanner.mailbox import (
    ImapMailSource,
    MailSourceError,
    group_threads,
    parse_message,
    thread_root,
)

PLAIN_ALERT = b"""From: Example Bank <alerts@examplebank.test>
To: me@example.test
Subject: Transaction Alert
Date: Sat, 18 Oct 2026 14:07:00 +0000
Message-ID: <m1@examplebank.test>
Content-Type: multipart/alternative; boundary="b1"

--b1
Content-Type: text/plain; charset="UTF-8"

Rs.1200.50 debited from your account.
Ref AB1234

--b1
Content-Type: text/html; charset="UTF-8"

<html><body><p>Rs.1200.50 debited</p></body></html>

--b1--
"""

HTML_ALERT = b"""From: alerts@mybank.test
Subject: =?UTF-8?B?U3BlbnQg4oK5NDUw?=
Date: not a date
Content-Type: text/html; charset="UTF-8"

<html><head><style>p {color: red}</style></head>
<body><p>You have spent INR 450.00</p><p>at   CAFE</p></body></html>
"""

REPLY = b"""From: Example Bank <alerts@examplebank.test>
Subject: Re: Transaction Alert
Message-ID: <m2@examplebank.test>
In-Reply-To: <m1@examplebank.test>
References: <m1@examplebank.test>
Content-Type: text/plain

Follow-up.
"""


class TestParseMessage:

    def test_plain_text_preferred(self):
        message = parse_message(email.message_from_bytes(PLAIN_ALERT))

        assert message.id == "<m1@examplebank.test>"
        assert message.from_header == "Example Bank <alerts@examplebank.test>"
        assert message.subject == "Transaction Alert"
        assert message.received_at == datetime(2026, 10, 18, 14, 7, tzinfo=timezone.utc)
        assert "Ref AB1234" in message.body
        assert "<p>" not in message.body

    def test_html_only_body_converted(self):
        message = parse_message(email.message_from_bytes(HTML_ALERT), fallback_id="7")

        assert "You have spent INR 450.00" in message.body
        assert "at CAFE" in message.body
        assert "color" not in message.body

    def test_encoded_subject_decoded(self):
        message = parse_message(email.message_from_bytes(HTML_ALERT))
        assert message.subject == "Spent ₹450"

    def test_bad_date_is_none(self):
        assert parse_message(email.message_from_bytes(HTML_ALERT)).received_at is None

    def test_missing_message_id_uses_fallback(self):
        assert parse_message(email.message_from_bytes(HTML_ALERT), fallback_id="7").id == "7"


class TestThreads:

    def test_thread_root_from_references(self):
        assert thread_root(email.message_from_bytes(REPLY)) == "<m1@examplebank.test>"

    def test_thread_root_is_own_id_without_references(self):
        assert thread_root(email.message_from_bytes(PLAIN_ALERT)) == "<m1@examplebank.test>"

    def test_group_threads_keeps_order(self):
        a = build_message("a", msg_id="a")
        b = build_message("b", msg_id="b")
        c = build_message("c", msg_id="c")

        threads = group_threads([("<r1>", a), ("<r2>", b), ("<r1>", c)])

        assert [t.id for t in threads] == ["<r1>", "<r2>"]
        assert threads[0].messages == (a, c)

    def test_group_threads_without_root(self):
        a = build_message("a", msg_id="a")
        assert group_threads([("", a)])[0].id == "a"


@pytest.fixture
def imap():
    raw = {b"1": PLAIN_ALERT, b"2": REPLY, b"3": HTML_ALERT}
    mail = MagicMock()
    mail.select.return_value = ("OK", [b"3"])
    mail.search.return_value = ("OK", [b"3 1 2"])
    mail.fetch.side_effect = lambda seq, spec: ("OK", [(seq + b" (RFC822 {100}", raw[seq]), b")"])
    with patch("scanner.mailbox.imaplib.IMAP4_SSL", return_value=mail) as factory:
        yield factory, mail


class TestImapMailSource:

    def test_pages_through_search_results(self, imap):
        factory, mail = imap
        with ImapMailSource("imap.example.test", 993, "me@example.test", "secret") as source:
            first = source.search("UNFLAGGED", 0, 2)
            second = source.search("UNFLAGGED", 2, 2)
            third = source.search("UNFLAGGED", 4, 2)

        factory.assert_called_once_with("imap.example.test", 993)
        mail.select.assert_called_once_with("INBOX", readonly=True)
        mail.search.assert_called_once_with(None, "UNFLAGGED")
        # messages 1 and 2 share a thread
        assert len(first) == 1
        assert [m.id for m in first[0].messages] == ["<m1@examplebank.test>", "<m2@examplebank.test>"]
        assert [m.id for m in second[0].messages] == ["3"]
        assert third == []
        mail.logout.assert_called_once()

    def test_login_failure(self, imap):
        _, mail = imap
        mail.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
        with pytest.raises(MailSourceError, match="Authentication failed"):
            ImapMailSource("imap.example.test", 993, "me@example.test", "wrong").connect()

    def test_unreachable_host(self, imap):
        factory, _ = imap
        factory.side_effect = OSError("Name or service not known")
        with pytest.raises(MailSourceError, match="Cannot connect"):
            ImapMailSource("nowhere.test", 993, "me@example.test", "secret").connect()

    def test_missing_folder(self, imap):
        _, mail = imap
        mail.select.return_value = ("NO", [b"unknown mailbox"])
        with pytest.raises(MailSourceError, match="folder"):
            ImapMailSource("imap.example.test", 993, "me@example.test", "secret", folder="Bank").connect()

    def test_search_failure(self, imap):
        _, mail = imap
        mail.search.side_effect = imaplib.IMAP4.error("BAD command")
        with ImapMailSource("imap.example.test", 993, "me@example.test", "secret") as source:
            with pytest.raises(MailSourceError):
                source.search("NOT A QUERY", 0, 10)

    def test_fetch_failure(self, imap):
        _, mail = imap
        mail.fetch.side_effect = None
        mail.fetch.return_value = ("NO", [None])
        with ImapMailSource("imap.example.test", 993, "me@example.test", "secret") as source:
            with pytest.raises(MailSourceError):
                source.search("UNFLAGGED", 0, 10)

    def test_search_requires_connection(self):
        with pytest.raises(MailSourceError, match="Not connected"):
            ImapMailSource("imap.example.test", 993, "me@example.test", "secret").search("ALL", 0, 1)
