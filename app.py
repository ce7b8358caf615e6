import streamlit as st
from dotenv import load_dotenv

load_dotenv()

from scanner.database import SqliteSink

APP_TITLE = "Bank Alert Scanner"

# Initialize database on first run
SqliteSink().init_db()

st.set_page_config(
    page_title=APP_TITLE,
    page_icon="🏦",
    layout="wide",
    initial_sidebar_state="expanded",
)

# --- Password protection (for cloud deployment) ---
def _check_password() -> bool:
    """Return True if password is correct or not configured."""
    try:
        app_password = st.secrets["APP_PASSWORD"]
    except (KeyError, FileNotFoundError):
        return True  # no password configured, allow access

    if not app_password:
        return True

    if st.session_state.get("authenticated"):
        return True

    st.title(APP_TITLE)
    pwd = st.text_input("Enter password to continue", type="password", key="login_pwd")
    if st.button("Login", type="primary"):
        if pwd == app_password:
            st.session_state["authenticated"] = True
            st.rerun()
        else:
            st.error("Incorrect password.")
    return False

if not _check_password():
    st.stop()

st.sidebar.title(APP_TITLE)

_PAGES = ["Scan", "Tables", "Rules"]

# --- Restore navigation from URL on first load ---
if "nav_restored" not in st.session_state:
    st.session_state["nav_restored"] = True
    saved_page = st.query_params.get("page", "")
    if saved_page in _PAGES:
        st.session_state["page"] = saved_page

page = st.sidebar.radio("Navigate", _PAGES, key="page")

# Persist to URL
st.query_params.update({"page": page})

if page == "Scan":
    from views.scan import render
    render()
elif page == "Tables":
    from views.tables import render
    render()
elif page == "Rules":
    from views.rules import render
    render()
