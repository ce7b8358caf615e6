"""Scan page -- configure the mailbox and run a scan with live progress."""

import json

import pandas as pd
import streamlit as st

from scanner.database import MAILBOX_CONFIG_KEY, SinkWriteError, SqliteSink
from scanner.mailbox import IMAP_PRESETS, ImapMailSource, MailSourceError
from scanner.patterns import ConfigurationError
from scanner.run import RunSettings, run_scan


def render():
    st.header("Scan Mailbox")
    st.caption(
        "Read bank alert emails over IMAP, extract transactions with the rule table, "
        "and file anything the rules don't cover into the review tables."
    )

    sink = SqliteSink()

    # Restore saved config into session state on first load
    _restore_saved_config(sink)

    _render_mailbox_config(sink)

    if not _has_valid_config():
        return

    st.divider()

    defaults = RunSettings.from_env()
    col1, col2 = st.columns([3, 1])
    with col1:
        query = st.text_input(
            "IMAP search query",
            value=defaults.query,
            help="IMAP SEARCH criteria, e.g. UNFLAGGED or FROM \"alerts@examplebank.test\"",
            key="scan_query",
        )
    with col2:
        page_size = st.number_input(
            "Page size", min_value=1, max_value=500, value=defaults.page_size, key="scan_page_size",
        )

    if st.button("Run Scan", type="primary", use_container_width=True):
        settings = RunSettings(
            query=query or defaults.query,
            page_size=int(page_size),
            batch_size=defaults.batch_size,
            subject_length=defaults.subject_length,
        )
        _scan_and_display(sink, settings)

    if st.session_state.get("last_summary"):
        _render_summary(st.session_state["last_summary"])


# ---------------------------------------------------------------------------
# Config persistence helpers
# ---------------------------------------------------------------------------

def _restore_saved_config(sink: SqliteSink):
    """Load saved mailbox config from DB into session state (once per session)."""
    if "mailbox_config_restored" in st.session_state:
        return

    st.session_state["mailbox_config_restored"] = True

    raw = sink.get_setting(MAILBOX_CONFIG_KEY)
    if not raw:
        return

    try:
        saved = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return

    saved_host = saved.get("host", "")
    matched_provider = "Custom"
    for name, preset in IMAP_PRESETS.items():
        if preset.get("host") == saved_host and name != "Custom":
            matched_provider = name
            break

    st.session_state.setdefault("email_provider", matched_provider)
    st.session_state.setdefault("email_address", saved.get("email", ""))
    st.session_state.setdefault("email_password", saved.get("password", ""))
    st.session_state.setdefault("email_folder", saved.get("folder", "INBOX"))
    if matched_provider == "Custom":
        st.session_state.setdefault("imap_host", saved_host)

    st.session_state["mailbox_config"] = saved


def _clear_saved_config(sink: SqliteSink) -> None:
    """Remove saved mailbox config from the database."""
    sink.delete_setting(MAILBOX_CONFIG_KEY)
    for key in ["mailbox_config", "email_provider", "email_address",
                "email_password", "email_folder", "imap_host",
                "mailbox_config_restored"]:
        st.session_state.pop(key, None)


def _render_mailbox_config(sink: SqliteSink):
    """Render the mailbox configuration form in an expander."""
    is_configured = _has_valid_config()
    label = "Mailbox Configuration (connected)" if is_configured else "Mailbox Configuration (setup required)"

    with st.expander(label, expanded=not is_configured):
        st.info(
            "**Gmail users:** Use an [App Password](https://myaccount.google.com/apppasswords) "
            "instead of your regular password. You must have 2-Step Verification enabled."
        )

        col1, col2 = st.columns([2, 1])
        with col1:
            provider = st.selectbox("Email Provider", list(IMAP_PRESETS.keys()), key="email_provider")

        preset = IMAP_PRESETS[provider]
        with col2:
            if provider == "Custom":
                imap_host = st.text_input("IMAP Host", key="imap_host")
            else:
                imap_host = preset["host"]
                st.text_input("IMAP Host", value=imap_host, disabled=True, key="imap_host_display")

        email_address = st.text_input("Email Address", placeholder="you@gmail.com", key="email_address")
        password = st.text_input("Password / App Password", type="password", key="email_password")
        folder = st.text_input(
            "IMAP Folder",
            value="INBOX",
            help="Usually INBOX. Gmail labels can be accessed as e.g. '[Gmail]/All Mail'",
            key="email_folder",
        )

        if email_address and password:
            config = {
                "host": imap_host,
                "port": preset["port"],
                "email": email_address,
                "password": password,
                "folder": folder or "INBOX",
            }
            st.session_state["mailbox_config"] = config

            btn_col1, btn_col2 = st.columns(2)
            with btn_col1:
                if st.button("Save & Test Connection", key="test_email_conn"):
                    sink.set_setting(MAILBOX_CONFIG_KEY, json.dumps(config))
                    _test_connection(config)
            with btn_col2:
                if is_configured and st.button("Forget Saved Credentials", key="clear_email_config"):
                    _clear_saved_config(sink)
                    st.success("Saved credentials removed.")
                    st.rerun()


def _has_valid_config() -> bool:
    config = st.session_state.get("mailbox_config")
    return bool(config and config.get("host") and config.get("email") and config.get("password"))


def _source_from(config: dict) -> ImapMailSource:
    return ImapMailSource(
        host=config["host"],
        port=config.get("port", 993),
        email_address=config["email"],
        password=config["password"],
        folder=config.get("folder", "INBOX"),
    )


def _test_connection(config: dict):
    with st.spinner("Testing connection..."):
        try:
            _source_from(config).test_connection()
            st.success("Connection successful! Your email credentials are valid.")
        except MailSourceError as e:
            st.error(f"Connection failed: {e}")


# ---------------------------------------------------------------------------
# Scan (synchronous with live progress)
# ---------------------------------------------------------------------------

def _scan_and_display(sink: SqliteSink, settings: RunSettings):
    config = st.session_state.get("mailbox_config", {})
    status_container = st.status("Scanning mailbox", expanded=True)
    progress_text = status_container.empty()

    def _on_progress(step: str, detail: str):
        progress_text.text(detail)

    try:
        with _source_from(config) as source:
            summary = run_scan(source, sink, settings, on_progress=_on_progress)
    except ConfigurationError as e:
        status_container.update(label="Rule table is invalid", state="error", expanded=False)
        st.error(f"Fix the rule table before scanning: {e}")
        return
    except MailSourceError as e:
        status_container.update(label="Mailbox error", state="error", expanded=False)
        st.error(f"Mailbox error: {e}")
        return
    except SinkWriteError as e:
        status_container.update(label="Write failed", state="error", expanded=False)
        st.error(f"Could not write results: {e}")
        return

    status_container.update(
        label=f"Scanned {summary.messages} email(s)", state="complete", expanded=False,
    )
    st.session_state["last_summary"] = summary


def _render_summary(summary):
    st.subheader("Last Scan")
    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Emails", summary.messages)
    m2.metric("Transactions", summary.matched)
    m3.metric("Recognized", summary.recognized)
    m4.metric("Unrecognized", summary.unrecognized)

    if summary.rows_written:
        written = pd.DataFrame(
            [{"Table": t, "Rows": n} for t, n in sorted(summary.rows_written.items())]
        )
        st.dataframe(written, use_container_width=True, hide_index=True)
