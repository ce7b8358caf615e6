"""Tables page -- browse extracted transactions and the review tables."""

import streamlit as st

from scanner.database import SqliteSink
from scanner.run import RECOGNIZED_TABLE, UNRECOGNIZED_TABLE

_REVIEW_TABLES = (UNRECOGNIZED_TABLE, RECOGNIZED_TABLE)


def render():
    st.header("Tables")

    sink = SqliteSink()
    tables = sink.list_tables()
    if not tables:
        st.info("Nothing scanned yet. Run a scan from the Scan page.")
        return

    # Bank tables first, review tables last
    ordered = [t for t in tables if t not in _REVIEW_TABLES] + [t for t in _REVIEW_TABLES if t in tables]

    table = st.selectbox(
        "Table",
        ordered,
        format_func=lambda t: f"{t} (review)" if t in _REVIEW_TABLES else t,
        key="tables_selected",
    )

    frame = sink.table_frame(table)

    if table == UNRECOGNIZED_TABLE:
        st.caption("Emails no rule matched. Add a rule for each layout you want extracted.")
    elif table == RECOGNIZED_TABLE:
        st.caption("Emails matched by a rule with no MatchGroups (known, non-transactional).")

    search = st.text_input("Filter", placeholder="Text to find in any column", key="tables_filter")
    if search and not frame.empty:
        mask = frame.apply(
            lambda col: col.astype(str).str.contains(search, case=False, regex=False)
        ).any(axis=1)
        frame = frame[mask]

    st.caption(f"{len(frame)} row(s)")
    frame.index = range(1, len(frame) + 1)
    st.dataframe(frame, use_container_width=True, height=500)

    if not frame.empty:
        st.download_button(
            "Download CSV",
            frame.to_csv(index=False).encode("utf-8"),
            file_name=f"{table}.csv",
            mime="text/csv",
        )
