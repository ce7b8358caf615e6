"""
IMAP mail source.

Connects to a mailbox over IMAP SSL and serves search results a page at
a time as threads of EmailMessage objects. The IMAP SEARCH for a query
runs once and its id list is cached, so page offsets stay stable for
the whole run even though nothing is written back to the mailbox.
"""

import email
import email.errors
import email.message
import imaplib
import logging
import re
from datetime import datetime, timezone
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import Optional

from bs4 import BeautifulSoup

from scanner.models import EmailMessage, MailThread

logger = logging.getLogger(__name__)

# IMAP server presets for popular providers
IMAP_PRESETS = {
    "Gmail": {"host": "imap.gmail.com", "port": 993},
    "Outlook/Hotmail": {"host": "imap-mail.outlook.com", "port": 993},
    "Yahoo": {"host": "imap.mail.yahoo.com", "port": 993},
    "Zoho": {"host": "imap.zoho.com", "port": 993},
    "Custom": {"host": "", "port": 993},
}

_MESSAGE_ID = re.compile(r"<[^<>]+>")


class MailSourceError(RuntimeError):
    """Raised when the IMAP connection, search or fetch fails."""


class ImapMailSource:
    """Paged, read-only access to one IMAP folder."""

    def __init__(
        self,
        host: str,
        port: int,
        email_address: str,
        password: str,
        folder: str = "INBOX",
    ):
        self.host = host
        self.port = port
        self.email_address = email_address
        self.password = password
        self.folder = folder
        self._mail: Optional[imaplib.IMAP4_SSL] = None
        self._search_cache: dict[str, list[bytes]] = {}

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *exc):
        self.close()

    def connect(self) -> None:
        """Establish an IMAP SSL connection, authenticate and select the folder."""
        try:
            mail = imaplib.IMAP4_SSL(self.host, self.port)
            mail.login(self.email_address, self.password)
        except imaplib.IMAP4.error as e:
            raise MailSourceError(
                f"Authentication failed. If using Gmail, make sure you're using "
                f"an App Password (not your regular password). Error: {e}"
            ) from e
        except OSError as e:
            raise MailSourceError(
                f"Cannot connect to {self.host}:{self.port}. Check your settings. Error: {e}"
            ) from e

        status, _ = mail.select(self.folder, readonly=True)
        if status != "OK":
            mail.logout()
            raise MailSourceError(f"Cannot open folder {self.folder!r}.")
        self._mail = mail
        self._search_cache.clear()

    def close(self) -> None:
        """Close the IMAP connection, ignoring errors from a dead socket."""
        if self._mail is None:
            return
        try:
            self._mail.close()
            self._mail.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("Ignoring error while closing IMAP connection: %s", e)
        finally:
            self._mail = None

    def test_connection(self) -> None:
        """Connect and disconnect; raises MailSourceError on failure."""
        self.connect()
        self.close()

    # -----------------------------------------------------------------------
    # Search & fetch
    # -----------------------------------------------------------------------

    def _require_connection(self) -> imaplib.IMAP4_SSL:
        if self._mail is None:
            raise MailSourceError("Not connected. Call connect() first.")
        return self._mail

    def _message_ids(self, query: str) -> list[bytes]:
        if query not in self._search_cache:
            mail = self._require_connection()
            try:
                status, data = mail.search(None, query)
            except imaplib.IMAP4.error as e:
                raise MailSourceError(f"IMAP search {query!r} failed: {e}") from e
            if status != "OK":
                raise MailSourceError(f"IMAP search {query!r} returned {status}")
            ids = data[0].split() if data and data[0] else []
            self._search_cache[query] = sorted(ids, key=int)
            logger.info("IMAP search %r matched %d message(s).", query, len(ids))
        return self._search_cache[query]

    def search(self, query: str, page_offset: int, page_size: int) -> list[MailThread]:
        """Return one page of matching messages grouped into threads.

        An empty list means the query is exhausted.
        """
        ids = self._message_ids(query)
        page = ids[page_offset:page_offset + page_size]
        messages = [self._fetch(seq_id) for seq_id in page]
        return group_threads(messages)

    def _fetch(self, seq_id: bytes) -> tuple[str, EmailMessage]:
        mail = self._require_connection()
        try:
            status, msg_data = mail.fetch(seq_id, "(RFC822)")
        except imaplib.IMAP4.error as e:
            raise MailSourceError(f"IMAP fetch of message {seq_id!r} failed: {e}") from e
        if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
            raise MailSourceError(f"IMAP fetch of message {seq_id!r} returned {status}")

        msg = email.message_from_bytes(msg_data[0][1])
        return thread_root(msg), parse_message(msg, fallback_id=seq_id.decode())


# ---------------------------------------------------------------------------
# Message parsing
# ---------------------------------------------------------------------------

def parse_message(
    msg: email.message.Message,
    fallback_id: str = "",
    observed_at: Optional[datetime] = None,
) -> EmailMessage:
    """Build an EmailMessage from a parsed RFC 822 message."""
    return EmailMessage(
        id=_header_to_str(msg.get("Message-ID", "")).strip() or fallback_id,
        received_at=_get_email_date(msg),
        from_header=_header_to_str(msg.get("From", "")),
        subject=_header_to_str(msg.get("Subject", "")),
        body=_get_email_body(msg),
        observed_at=observed_at or datetime.now(timezone.utc),
    )


def thread_root(msg: email.message.Message) -> str:
    """Return the Message-ID of the conversation's first message.

    Taken from the first entry of References, then In-Reply-To, then
    the message's own id.
    """
    for header in ("References", "In-Reply-To", "Message-ID"):
        ids = _MESSAGE_ID.findall(_header_to_str(msg.get(header, "")))
        if ids:
            return ids[0]
    return ""


def group_threads(messages: list[tuple[str, EmailMessage]]) -> list[MailThread]:
    """Group (root, message) pairs into threads, keeping first-seen order."""
    threads: dict[str, list[EmailMessage]] = {}
    for root, message in messages:
        threads.setdefault(root or message.id, []).append(message)
    return [MailThread(id=root, messages=tuple(msgs)) for root, msgs in threads.items()]


def _header_to_str(value) -> str:
    """Safely convert an email header value to a plain string.

    Strings containing MIME encoded-words (=?charset?encoding?...?=)
    are decoded via decode_header, not returned as-is.
    """
    if value is None:
        return ""
    raw = value
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        decoded_parts = decode_header(str(raw))
    except email.errors.HeaderParseError:
        return str(raw)

    parts = []
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                parts.append(part.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                parts.append(part.decode("utf-8", errors="replace"))
        else:
            parts.append(part)
    return "".join(parts)


def _get_email_date(msg: email.message.Message) -> Optional[datetime]:
    """Parse the Date header; None if missing or unparseable."""
    date_str = _header_to_str(msg.get("Date", ""))
    if not date_str:
        return None
    try:
        return parsedate_to_datetime(date_str)
    except (TypeError, ValueError):
        return None


def _decode_part(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _get_email_body(msg: email.message.Message) -> str:
    """Extract the plain-text body, converting HTML only when no text part exists."""
    text_parts = []
    html_parts = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        # Skip attachments
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            text_parts.append(_decode_part(part))
        elif content_type == "text/html":
            html_parts.append(_html_to_text(_decode_part(part)))

    return "\n".join(p for p in (text_parts or html_parts) if p)


def _html_to_text(html: str) -> str:
    """Convert HTML to plain text, keeping line breaks between blocks."""
    soup = BeautifulSoup(html, "html.parser")

    # Remove script and style elements
    for tag in soup(["script", "style"]):
        tag.decompose()

    text = soup.get_text(separator="\n", strip=True)
    return re.sub(r"[ \t]+", " ", text)
