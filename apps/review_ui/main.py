# apps/review_ui/main.py
import streamlit as st

# --- 1. Page Config ---
st.set_page_config(layout="wide", page_title="Packet Review Console")

from apps.review_ui.adapters import GatewayAdapter, GatewayError
from apps.common.settings import load_settings

SETTINGS = load_settings()

BADGES = {
    "verified": "✅ Verified",
    "mismatch": "❌ ID Mismatch",
    "not_found": "⚠️ Not in DB",
    "unknown": "🛡️ No DB",
}


# --- Helper Functions ---
@st.cache_resource
def get_adapter():
    return GatewayAdapter(SETTINGS.gateway_url)


def guarded(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except GatewayError as e:
        st.error(str(e))
        st.stop()


# --- Main App ---
adapter = get_adapter()
st.title("📄 Packet Review Console")

# Sidebar: queue + settings + reference table
st.sidebar.header("Queue")
uploads = st.sidebar.file_uploader("Upload packets", type=["pdf"], accept_multiple_files=True)
if uploads and st.sidebar.button("➕ Add to queue"):
    res = guarded(adapter.upload, [(u.name, u.getvalue()) for u in uploads])
    dups = [f["name"] for f in res["files"] if f["duplicate"]]
    if dups:
        st.sidebar.warning(f"Already in history: {', '.join(dups)}")
    st.rerun()

state = guarded(adapter.files)
st.sidebar.markdown(f"**Review Queue:** {state['review_queue']}")
st.sidebar.json(state["summary"], expanded=False)

if st.sidebar.button("▶️ Process queue", disabled=state["is_running"]):
    with st.spinner("Processing..."):
        summary = guarded(adapter.process)
    st.session_state.last_run = summary
    if summary.get("review_filter"):
        st.session_state.review_filter = summary["review_filter"]
    st.rerun()

st.sidebar.header("Settings")
cur = guarded(adapter.settings)
with st.sidebar.form("settings"):
    modes = ["by_date", "by_original", "flatten"]
    output_mode = st.selectbox("Output mode", modes, index=modes.index(cur["output_mode"]))
    include_original = st.checkbox("Include original", value=cur["include_original"])
    manual = st.checkbox("Manual review mode", value=cur["manual_review_mode"])
    min_conf = st.slider("Min confidence", 0.0, 1.0, float(cur["min_confidence"]), 0.05)
    model_type = st.radio("Model", ["flash", "pro"], index=["flash", "pro"].index(cur["model_type"]))
    if st.form_submit_button("Save settings"):
        guarded(
            adapter.update_settings,
            output_mode=output_mode,
            include_original=include_original,
            manual_review_mode=manual,
            min_confidence=min_conf,
            model_type=model_type,
        )
        st.rerun()

st.sidebar.header("Reference table")
ref = guarded(adapter.reference_table)
st.sidebar.markdown(f"**Records:** {ref['count']}")
ref_file = st.sidebar.file_uploader("Upload reference JSON", type=["json"])
if ref_file and st.sidebar.button("Replace table"):
    count = guarded(adapter.load_reference_table, ref_file.getvalue())
    st.sidebar.success(f"Loaded {count} records")
if ref["count"] and st.sidebar.button("Clear table"):
    guarded(adapter.clear_reference_table)
    st.rerun()

st.sidebar.download_button("⬇️ master_log.csv", data=guarded(adapter.history_csv), file_name="master_log.csv")

# Last run
last = st.session_state.get("last_run")
if last:
    st.info(
        f"Processed {last['processed']} · done {last['done']} · review {last['waiting_review']} · "
        f"errors {last['errors']}" + (" · batch limit reached" if last["stopped_at_cap"] else "")
    )
    if last.get("archive"):
        st.download_button(
            "⬇️ Download batch archive",
            data=guarded(adapter.download, last["archive"]["download"]),
            file_name=last["archive"]["name"],
        )

# Files table
with st.expander("Files", expanded=False):
    for f in state["files"]:
        cols = st.columns([4, 2, 4, 1])
        cols[0].write(f"{'🔁 ' if f['duplicate'] else ''}{f['name']}")
        cols[1].write(f["status"])
        cols[2].write(f["error"] or "; ".join(f["warnings"]) or "")
        if cols[3].button("🗑️", key=f"rm_{f['id']}"):
            guarded(adapter.remove_file, f["id"])
            st.rerun()

# --- Review Workspace ---
if state["review_queue"] == 0:
    st.success("Review queue is empty.")
    st.stop()

if "review_open" not in st.session_state:
    st.session_state.review_open = False

if not st.session_state.review_open:
    if st.button("📝 Open review", type="primary"):
        guarded(adapter.open_session, st.session_state.get("review_filter"))
        st.session_state.review_open = True
        st.rerun()
    st.stop()

session = guarded(adapter.session)
filter_mode = st.radio(
    "Show", ["all", "flagged"], index=["all", "flagged"].index(session["filter"]), horizontal=True
)
if filter_mode != session["filter"]:
    session = guarded(adapter.set_filter, filter_mode)

st.caption(f"{session['total']} item(s), {session['flagged']} flagged")

for card in adapter.cards(session):
    with st.container(border=True):
        head = st.columns([5, 2, 2, 1])
        head[0].markdown(f"**{card.file_name}** · pages {card.pages}")
        head[1].write(BADGES.get(card.verification_status, card.verification_status))
        head[2].write(f"confidence {card.confidence:.2f}")
        if card.flagged and card.review_reason:
            st.warning(card.review_reason)

        new_name = st.text_input("Filename (.pdf is added)", value=card.filename, key=f"name_{card.id}")
        if new_name != card.filename:
            guarded(adapter.rename, card.id, new_name)

        act = st.columns([1, 1, 6])
        act[0].download_button("👁️ PDF", data=guarded(adapter.item_pdf, card.id),
                               file_name=f"{card.filename}.pdf", key=f"pdf_{card.id}")
        if act[1].button("🗑️ Remove", key=f"del_{card.id}"):
            guarded(adapter.delete, card.id)
            st.rerun()

col_save, col_cancel, _ = st.columns([2, 1, 5])
if col_save.button("💾 Save & build archive", type="primary"):
    outcome = guarded(adapter.save)
    st.session_state.review_open = False
    st.session_state.pop("review_filter", None)
    st.session_state.last_review = outcome
    st.rerun()
if col_cancel.button("Cancel"):
    st.session_state.review_open = False
    st.rerun()

saved = st.session_state.get("last_review")
if saved and saved.download_path:
    st.download_button(
        "⬇️ Download reviewed archive",
        data=guarded(adapter.download, saved.download_path),
        file_name=saved.archive_name,
    )
