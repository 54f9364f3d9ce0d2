# streamlit_app.py
import json
import time
from typing import Dict, Any, List, Optional

import pandas as pd
import requests
import streamlit as st

st.set_page_config(page_title="Mentioned: AI Visibility", layout="wide")

# Sidebar: configure FastAPI base URL
api_base = st.sidebar.text_input("FastAPI base URL", value="http://localhost:8000")
st.sidebar.markdown("Make sure the API is running (uvicorn mentioned.main:app --reload).")
poll_secs = st.sidebar.number_input("Poll interval (seconds)", min_value=1, max_value=30, value=3)

def api_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path

def submit_scan(base_url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    # inline scans run inside this request, so allow the full scan budget
    resp = requests.post(api_url(base_url, "/scan"), json=payload, timeout=660)
    resp.raise_for_status()
    return resp.json()

def get_json(base_url: str, path: str) -> Dict[str, Any]:
    resp = requests.get(api_url(base_url, path), timeout=30)
    resp.raise_for_status()
    return resp.json()

def split_lines(text: str) -> List[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]

def wait_for_scan(base_url: str, scan_id: str) -> Dict[str, Any]:
    progress = st.progress(0, text="queued")
    while True:
        status = get_json(base_url, f"/scan/{scan_id}/status")
        progress.progress(min(100, status.get("progress", 0)),
                          text=f"{status['status']} ({status.get('stage') or '-'})")
        if status["status"] in ("complete", "failed", "strategy_failed"):
            return get_json(base_url, f"/scan/{scan_id}")
        time.sleep(poll_secs)

def show_result(result: Dict[str, Any]):
    status = result.get("status")
    if status == "failed":
        st.error(f"Scan failed during **{result.get('failed_phase')}**: {result.get('error')}")
        return
    if status == "strategy_failed":
        st.warning(f"Score is ready but the strategy plan failed: {result.get('error')}")

    breakdown = result.get("breakdown") or {}
    deltas = result.get("deltas") or {}
    overall_delta = (deltas.get("overall") or {}).get("delta")
    cols = st.columns(4)
    cols[0].metric("Visibility score", result.get("score"),
                   delta=None if overall_delta is None else round(overall_delta))
    cols[1].metric("Mention rate", f"{breakdown.get('mention_rate', 0):.0%}")
    cols[2].metric("Cross-model consistency", f"{breakdown.get('cross_model_consistency', 0):.2f}")
    cols[3].metric("Queries asked", result.get("query_count", 0))

    providers = breakdown.get("provider_scores") or []
    if providers:
        st.markdown("### Providers")
        st.dataframe(pd.DataFrame(providers), use_container_width=True)
    comparison = result.get("provider_comparison") or {}
    for insight in comparison.get("insights") or []:
        st.markdown(f"- {insight}")

    competitors = result.get("competitors") or []
    if competitors:
        st.markdown("### Competitors")
        df = pd.DataFrame(competitors)[["competitor_name", "mention_count", "best_position",
                                        "avg_position", "visibility_estimate", "trend"]]
        st.dataframe(df, use_container_width=True)

    sov = result.get("share_of_voice") or {}
    if sov.get("brands"):
        st.markdown(f"### Share of voice (your rank: #{sov.get('your_rank')})")
        rows = [{"brand": b["name"], "mentions": b["total_mentions"], "share_pct": b["share_pct"]}
                for b in sov["brands"]]
        st.bar_chart(pd.DataFrame(rows).set_index("brand")["share_pct"])

    strategy = result.get("strategy")
    if strategy:
        st.markdown("### Strategy")
        st.write(strategy.get("executive_summary"))
        st.dataframe(pd.DataFrame(strategy.get("actions") or []), use_container_width=True)

def show_history(base_url: str, brand_id: str):
    history = get_json(base_url, f"/brands/{brand_id}/competitors")
    if not history:
        st.info("No competitor history yet.")
        return
    df = pd.DataFrame(history)
    pivot = df.pivot_table(index="recorded_at", columns="competitor_name",
                           values="mention_count", aggfunc="sum")
    st.line_chart(pivot)

def pretty_download_button(data: Dict[str, Any], filename: str = "scan_result.json"):
    s = json.dumps(data, indent=2, ensure_ascii=False)
    st.download_button("Download JSON", s, file_name=filename, mime="application/json")

def show_error(e: requests.HTTPError):
    resp: Optional[requests.Response] = e.response
    if resp is None:
        st.error(f"HTTP error: {e}")
        return
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = resp.text
    if resp.status_code == 400 and isinstance(detail, dict):
        for issue in detail.get("issues", []):
            st.error(f"{issue['field']}: {issue['message']}")
    elif resp.status_code == 403 and isinstance(detail, dict):
        st.warning(f"Scan not allowed on plan {detail.get('plan')}: {detail.get('reason')}")
    else:
        st.error(f"API error: {resp.status_code}: {detail}")

# Page body
st.title("Mentioned: AI answer visibility")
st.markdown("Describe your product and press **Scan**. The API asks several AI assistants buyer "
            "questions and reports how often, and how high, your brand is recommended.")

tab_scan, tab_history = st.tabs(["New scan", "Competitor history"])

with tab_scan:
    with st.form("scan_form"):
        brand_name = st.text_input("Brand name", max_chars=80)
        website_url = st.text_input("Website URL (e.g. https://cal.com)", max_chars=512)
        category = st.text_input("Category (optional, e.g. scheduling software)")
        core_problem = st.text_area("Core problem your product solves", max_chars=300)
        target_buyer = st.text_input("Target buyer", max_chars=150)
        differentiators = st.text_area("Differentiators (optional)", max_chars=300)
        competitors = st.text_area("Competitors (one per line, max 5)")
        buyer_questions = st.text_area("Buyer questions (optional, one per line)")
        user_email = st.text_input("Your email (optional)")
        submitted = st.form_submit_button("Scan")

    if submitted:
        payload = {
            "brand_name": brand_name,
            "website_url": website_url,
            "category": category or None,
            "core_problem": core_problem,
            "target_buyer": target_buyer,
            "differentiators": differentiators or None,
            "competitors": split_lines(competitors),
            "buyer_questions": split_lines(buyer_questions),
            "user_id": user_email or None,
            "user_email": user_email or None,
        }
        try:
            with st.spinner("Submitting scan..."):
                accepted = submit_scan(api_base, payload)
            result = accepted.get("result") or wait_for_scan(api_base, accepted["scan_id"])
            show_result(result)
            pretty_download_button(result, filename=f"scan_{accepted['scan_id']}.json")
            with st.expander("Raw JSON"):
                st.json(result)
        except requests.HTTPError as e:
            show_error(e)
        except requests.RequestException as e:
            st.error(f"Could not reach the API: {e}")

with tab_history:
    brand_id = st.text_input("Brand id (the registered domain, e.g. cal.com)")
    if st.button("Load history") and brand_id:
        try:
            show_history(api_base, brand_id)
        except requests.HTTPError as e:
            show_error(e)
        except requests.RequestException as e:
            st.error(f"Could not reach the API: {e}")

st.markdown("---")
st.caption("This UI only talks to the FastAPI service.")
