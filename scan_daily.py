#!/usr/bin/env python3
"""
Headless mailbox scan.

Runs without Streamlit. Designed to be called by cron:
    0 20 * * * cd ~/bank-alert-scanner && ./venv/bin/python scan_daily.py

Uses the IMAP credentials saved from the web app (Scan > Mailbox
Configuration) and the rule table in the same database.
"""

import json
import logging
import os
import sys

import requests
from dotenv import load_dotenv

# Ensure the project root is on the path
sys.path.insert(0, os.path.dirname(__file__))
load_dotenv()

from scanner.database import MAILBOX_CONFIG_KEY, SinkWriteError, SqliteSink
from scanner.mailbox import ImapMailSource, MailSourceError
from scanner.patterns import ConfigurationError
from scanner.run import RunSettings, run_scan

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ntfy.sh configuration
NTFY_TOPIC = os.getenv("NTFY_TOPIC", "")
NTFY_SERVER = os.getenv("NTFY_SERVER", "https://ntfy.sh")


def load_mailbox_config(sink: SqliteSink) -> dict:
    """Load IMAP config from the database settings table."""
    raw = sink.get_setting(MAILBOX_CONFIG_KEY)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}


def send_notification(title: str, message: str) -> None:
    """Send a push notification via ntfy.sh."""
    if not NTFY_TOPIC:
        logger.info("NTFY_TOPIC not set -- skipping notification.")
        logger.info("Notification would be: %s -- %s", title, message)
        return

    try:
        resp = requests.post(
            f"{NTFY_SERVER}/{NTFY_TOPIC}",
            data=message.encode("utf-8"),
            headers={"Title": title},
            timeout=10,
        )
        if resp.status_code == 200:
            logger.info("Notification sent successfully.")
        else:
            logger.warning("ntfy returned %d: %s", resp.status_code, resp.text[:200])
    except requests.RequestException as e:
        logger.warning("Failed to send notification: %s", e)


def main() -> int:
    """Scan the mailbox once. Returns the process exit code."""
    sink = SqliteSink()
    sink.init_db()

    config = load_mailbox_config(sink)
    if not config or not config.get("host") or not config.get("email") or not config.get("password"):
        logger.error(
            "Mailbox config not found. Set it up in the web app first "
            "(Scan > Mailbox Configuration)."
        )
        return 1

    settings = RunSettings.from_env()
    logger.info("Scanning %s for %r...", config["email"], settings.query)

    source = ImapMailSource(
        host=config["host"],
        port=config.get("port", 993),
        email_address=config["email"],
        password=config["password"],
        folder=config.get("folder", "INBOX"),
    )

    try:
        with source:
            summary = run_scan(
                source, sink, settings,
                on_progress=lambda step, detail: logger.info("[%s] %s", step, detail),
            )
    except ConfigurationError as e:
        logger.error("Rule table is invalid: %s", e)
        send_notification("Bank Alert Scanner: Bad Rule", str(e))
        return 2
    except (MailSourceError, SinkWriteError) as e:
        logger.error("Scan aborted: %s", e)
        send_notification("Bank Alert Scanner: Scan Failed", str(e))
        return 1

    title = f"Bank Alert Scanner: {summary.matched} new transaction(s)"
    body = f"{summary.messages} email(s) scanned"
    if summary.unrecognized:
        body += f"\n{summary.unrecognized} unrecognized email(s) need a rule"
    if summary.recognized:
        body += f"\n{summary.recognized} recognized non-transaction email(s)"
    send_notification(title, body)
    return 0


if __name__ == "__main__":
    sys.exit(main())
