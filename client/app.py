import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Iterator
from urllib.parse import urlencode

import requests
import streamlit as st
from websocket import WebSocketTimeoutException, create_connection


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("tickrelay.streamlit")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "client.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()
EXECUTOR = ThreadPoolExecutor(max_workers=2)

# How long to keep reading the viewer socket once the tick request has returned.
DRAIN_TIMEOUT_SECONDS = 1.0


def viewer_url(base_url: str, session_id: str, organization_id: str, speed_ms: int) -> str:
    ws_base = base_url.replace("https://", "wss://").replace("http://", "ws://").rstrip("/")
    query = urlencode({"organizationId": organization_id, "speed": speed_ms})
    return f"{ws_base}/ws/sessions/{session_id}?{query}"


def post_tick(base_url: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Submit a tick and return the decoded response body (success or failure)."""
    resp = requests.post(f"{base_url.rstrip('/')}/onTick", json=payload, timeout=120)
    try:
        body = resp.json()
    except ValueError:
        body = {"success": False, "error": resp.text or f"HTTP {resp.status_code}"}
    LOGGER.info("Tick finished status=%s body=%s", resp.status_code, body)
    return body


def transcript_stream(
    base_url: str,
    payload: dict[str, Any],
    speed_ms: int,
    on_typewriter: Callable[[str], None],
    on_error: Callable[[str], None],
) -> Iterator[str]:
    """Watch the session while the tick runs and yield the text it appends to the transcript.

    The viewer socket is opened before the tick is posted. Its first transcript
    event is the baseline (the fragment already stored); only text past that
    baseline is yielded.
    """
    url = viewer_url(base_url, payload["sessionId"], payload["organizationId"], speed_ms)
    LOGGER.info("Connecting viewer url=%s", url)
    ws = create_connection(url, timeout=60)
    tick: Future | None = None
    try:
        baseline: str | None = None
        emitted = 0
        while True:
            if tick is not None and tick.done():
                ws.settimeout(DRAIN_TIMEOUT_SECONDS)
            try:
                raw = ws.recv()
            except WebSocketTimeoutException:
                break
            if not raw:
                break
            event = json.loads(raw)
            kind = event.get("type")

            if kind == "transcript":
                text = event.get("transcript") or ""
                if baseline is None:
                    baseline = text
                    emitted = len(text)
                    tick = EXECUTOR.submit(post_tick, base_url, payload)
                    continue
                if len(text) > emitted:
                    yield text[emitted:]
                    emitted = len(text)
            elif kind == "typewriter":
                on_typewriter(event.get("text") or "")
            elif kind == "error":
                LOGGER.error("Viewer error: %s", event)
                if event.get("kind") == "not_found" and tick is None:
                    # New session: the tick creates it.
                    baseline = ""
                    tick = EXECUTOR.submit(post_tick, base_url, payload)
                    continue
                on_error(event.get("message") or "Unknown error")
                return
    finally:
        ws.close()

    if tick is not None:
        result = tick.result()
        if not result.get("success"):
            on_error(result.get("error") or "Tick failed")


st.set_page_config(page_title="Tick Relay", page_icon="📡", layout="centered")

st.title("Tick Relay")

with st.sidebar:
    st.subheader("Connection")
    base_url = st.text_input("Server URL", value="http://localhost:8000")
    session_id = st.text_input("Session ID", value=st.session_state.get("session_id", "streamlit-demo"))
    organization_id = st.text_input("Organization ID", value=st.session_state.get("organization_id", "demo-org"))
    user_id = st.text_input("User ID", value=st.session_state.get("user_id", "demo-user"))
    speed_ms = st.slider("Typewriter speed (ms/char)", min_value=1, max_value=100, value=20)
    st.session_state["session_id"] = session_id
    st.session_state["organization_id"] = organization_id
    st.session_state["user_id"] = user_id
    st.markdown("---")
    st.caption("Latest fragment")
    fragment_box = st.empty()
    if st.button("Clear chat"):
        st.session_state["messages"] = []

if "messages" not in st.session_state:
    st.session_state["messages"] = []

for m in st.session_state["messages"]:
    with st.chat_message(m["role"]):
        st.markdown(m["content"])

prompt = st.chat_input("Send a prompt to the session…")
if prompt:
    st.session_state["messages"].append({"role": "user", "content": prompt})
    with st.chat_message("user"):
        st.markdown(prompt)

    errors: list[str] = []
    payload = {
        "sessionId": session_id,
        "prompt": prompt,
        "organizationId": organization_id,
        "userId": user_id,
    }
    with st.chat_message("assistant"):
        try:
            full = st.write_stream(
                transcript_stream(base_url, payload, speed_ms, fragment_box.code, errors.append)
            )
        except Exception as e:
            LOGGER.exception("Viewer failed: %s", e)
            errors.append(str(e))
            full = ""
        for err in errors:
            st.error(f"Error: {err}")

    st.session_state["messages"].append({"role": "assistant", "content": full or "\n".join(errors)})
