"""Rules page -- view, validate and replace the extraction rule table."""

import streamlit as st

from scanner.database import RULES_TABLE, SinkWriteError, SqliteSink
from scanner.patterns import REQUIRED_COLUMNS, ConfigurationError
from scanner.run import RunSettings, build_index


def render():
    st.header("Extraction Rules")
    st.caption(
        "One row per email layout. Subject/Sender starting with ^ or / match any "
        "message without a more specific rule. MatchGroups names the BodyRegex "
        "capture groups in order; leave it empty for known non-transaction emails."
    )

    sink = SqliteSink()
    rows = sink.load_rule_rows()

    if rows:
        _render_validation(rows)
        frame = sink.table_frame(RULES_TABLE)
        frame.index = range(1, len(frame) + 1)
        st.dataframe(frame, use_container_width=True, height=400)
    else:
        st.info("No rules yet. Upload a CSV to get started.")

    st.divider()
    _render_upload(sink)


def _render_validation(rows: list[dict]):
    try:
        index = build_index(rows, RunSettings.from_env().subject_length)
    except ConfigurationError as e:
        st.error(f"Rule table is invalid, scans will not run: {e}")
        return
    st.success(f"{len(index)} rule(s) valid, filed under {len(index.keys())} key(s).")


def _render_upload(sink: SqliteSink):
    st.subheader("Replace Rules")
    uploaded = st.file_uploader(
        "Rule CSV",
        type=["csv"],
        help=f"Required columns: {', '.join(REQUIRED_COLUMNS)}",
        key="rules_upload",
    )
    if not uploaded:
        return

    if st.button("Replace Rule Table", type="primary", key="rules_replace"):
        try:
            count = sink.import_rules_csv(uploaded)
        except (ValueError, SinkWriteError) as e:
            st.error(str(e))
            return
        st.success(f"Loaded **{count}** rule(s).")
        st.rerun()
