import time
from datetime import timedelta

import pandas as pd
import plotly.express as px
import streamlit as st

from config import get_settings, setup_logging
from database import Stores
from models import CrawlStatus
from orchestrator import CrawlOrchestrator
import reports

st.set_page_config(layout="wide", page_title="Site Audit Crawler")

SCHEDULES = ["manual", "daily", "weekly", "monthly"]
HEALTH_LABELS = {"good": "🟢", "warning": "🟠", "critical": "🔴"}


@st.cache_resource
def get_orchestrator():
    """One orchestrator per server process; abandoned crawls are failed on startup."""
    settings = get_settings()
    setup_logging()
    orchestrator = CrawlOrchestrator.from_settings(settings, stores=Stores())
    orchestrator.reconcile_stale_crawls(timedelta(minutes=settings.stale_grace_minutes))
    return orchestrator


def crawl_history_frame(pairs):
    return pd.DataFrame([
        {
            "Website": website.name,
            "URL": crawl.website_url,
            "Status": crawl.status,
            "Pages": f"{crawl.pages_crawled or 0} / {crawl.pages_found or 0}",
            "404 Errors": len(crawl.errors_404 or []),
            "301 Redirects": len(crawl.redirects_301 or []),
            "SEO Issues": len(crawl.seo_issues or []),
            "Started": crawl.created_date,
            "Crawl ID": crawl.id,
        } for crawl, website in pairs
    ])


def show_crawl_history(crawls, websites):
    st.subheader("Crawl History")
    pairs = reports.recent_crawls_with_website(crawls, websites)
    if not pairs:
        st.info("No crawls yet.")
        return
    st.dataframe(crawl_history_frame(pairs), use_container_width=True, hide_index=True)


def crawler_page(orchestrator, settings):
    st.title("Website Crawler")
    st.write("Analyze your websites for broken links, redirects, and SEO optimization opportunities.")

    with st.form("crawl_form"):
        url = st.text_input("Website URL:", "https://toscrape.com/")
        name = st.text_input("Website name (optional):", "")
        schedule = st.selectbox("Crawl schedule:", SCHEDULES)
        submitted = st.form_submit_button("Start Crawling")

    if submitted:
        try:
            orchestrator.start_crawl_in_background(url, name=name or None, schedule=schedule)
        except ValueError as e:
            st.error(str(e))
        else:
            st.success(f"Crawl of {url} started.")
            time.sleep(0.5)
            st.rerun()

    websites = orchestrator.stores.websites.list()
    crawls = orchestrator.stores.crawls.list(limit=settings.crawler_crawl_limit)

    active = reports.active_crawls(crawls)
    if active:
        st.subheader("Active Crawls")
        for crawl in active:
            label = "Crawling..." if crawl.status == CrawlStatus.CRAWLING.value else "Pending"
            found = crawl.pages_found or "?"
            st.write(f"**{crawl.website_url}** ({label}) {crawl.pages_crawled or 0} / {found} pages")
            st.progress(int(reports.progress_percent(crawl)))
            if st.button("Cancel", key=f"cancel-{crawl.id}"):
                orchestrator.cancel(crawl.id)

    show_crawl_history(crawls, websites)

    if active:
        # Poll until the active crawls settle.
        time.sleep(settings.refresh_interval)
        st.rerun()


def dashboard_page(orchestrator, settings):
    st.title("Crawl Dashboard")
    st.write("Monitor your websites for broken links, redirects, and SEO optimization opportunities.")

    websites = orchestrator.stores.websites.list()
    crawls = orchestrator.stores.crawls.list(limit=settings.dashboard_crawl_limit)
    summary = reports.summarize(websites, crawls)

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Total Websites", summary.total_websites)
    col2.metric("404 Errors Found", summary.total_404s)
    col3.metric("301 Redirects Found", summary.total_301s)
    col4.metric("SEO Issues Found", summary.total_seo_issues)

    left, right = st.columns([2, 1])
    with left:
        rollup = reports.summarize_by_website(crawls)
        names = {w.id: w.name for w in websites}
        if rollup:
            df = pd.DataFrame([
                {"Website": names.get(website_id, str(website_id)), "Issue": label, "Count": count}
                for website_id, stats in rollup.items()
                for label, count in (("404 Errors", stats.errors_404),
                                     ("301 Redirects", stats.redirects_301),
                                     ("SEO Issues", stats.seo_issues))
            ])
            fig = px.bar(df, x="Website", y="Count", color="Issue", title="Issues by Website")
            st.plotly_chart(fig, use_container_width=True)
        show_crawl_history(crawls, websites)

    with right:
        st.subheader("Website Health")
        health = reports.website_health(websites, crawls, limit=3)
        if not health:
            st.info("No completed crawls yet.")
        for website, score in health:
            st.write(f"{HEALTH_LABELS[reports.health_band(score)]} **{website.name}**: {score}%")
            st.progress(score)


def sync_crawl_param(selection):
    """Rewrite ?crawl_id= to match what is actually shown."""
    current = st.query_params.get("crawl_id")
    if selection.crawl_id is None:
        if "crawl_id" in st.query_params:
            del st.query_params["crawl_id"]
    elif current != selection.crawl_id:
        st.query_params["crawl_id"] = selection.crawl_id


def findings_frame(rows, columns):
    return pd.DataFrame(rows or [], columns=columns)


def reports_page(orchestrator, settings):
    st.title("Website Reports")
    st.write("Detailed analysis of your website crawl results and optimization opportunities.")

    websites = orchestrator.stores.websites.list()
    crawls = reports.completed_crawls(
        orchestrator.stores.crawls.list(status=CrawlStatus.COMPLETED.value))

    if not crawls:
        st.subheader("No Reports Available")
        st.write("There are no completed website crawls to generate reports. Please start a website crawl first.")
        sync_crawl_param(reports.Selection())
        return

    selection = reports.select_report(st.query_params.get("crawl_id"), crawls, websites)
    sync_crawl_param(selection)

    choices = reports.report_websites(websites, crawls)
    col1, col2 = st.columns(2)
    website_ids = [w.id for w in choices]
    names = {w.id: w.name for w in choices}
    selected_website_id = col1.selectbox(
        "Select Website", website_ids, format_func=lambda wid: names[wid],
        index=website_ids.index(selection.website.id) if selection.website and selection.website.id in website_ids else 0,
    )
    if selection.website is None:
        selection = reports.select_website(selected_website_id, crawls, websites)
        sync_crawl_param(selection)
    elif selected_website_id != selection.website.id:
        selection = reports.select_website(selected_website_id, crawls, websites)
        sync_crawl_param(selection)
        st.rerun()

    website_crawls = reports.website_crawls(selection.website, crawls)
    crawl_ids = [c.id for c in website_crawls]
    dates = {c.id: c.created_date.strftime("%B %d, %Y at %I:%M %p") for c in website_crawls}
    selected_crawl_id = col2.selectbox(
        "Select Crawl Date", crawl_ids, format_func=lambda cid: dates[cid],
        index=crawl_ids.index(selection.crawl.id) if selection.crawl is not None else 0,
        disabled=not crawl_ids,
    )
    if selection.crawl is not None and selected_crawl_id != selection.crawl.id:
        selection = reports.select_crawl(selected_crawl_id, selection, crawls, websites)
        sync_crawl_param(selection)
        st.rerun()

    crawl = selection.crawl
    if crawl is None:
        st.write("No crawls available for the selected website. Please select another website or perform a crawl.")
        return

    stats = reports.crawl_stats(crawl)
    c1, c2, c3 = st.columns(3)
    c1.metric("404 Errors", stats.errors_404, help="Broken links found")
    c2.metric("301 Redirects", stats.redirects_301, help="Redirects detected")
    c3.metric("SEO Issues", stats.seo_issues, help="Optimization opportunities")

    tables = [
        ("404 Errors", "errors_404", findings_frame(crawl.errors_404, ["url", "source_page", "link_text"])),
        ("301 Redirects", "redirects_301", findings_frame(crawl.redirects_301, ["from_url", "to_url", "source_page"])),
        ("SEO Issues", "seo_issues", findings_frame(crawl.seo_issues, ["url", "issue_type", "description"])),
    ]
    for title, key, df in tables:
        st.subheader(title)
        if df.empty:
            st.write("None found.")
            continue
        st.dataframe(df, use_container_width=True, hide_index=True)
        st.download_button(
            f"Export {title} (CSV)", df.to_csv(index=False).encode("utf-8"),
            file_name=f"crawl_{crawl.id}_{key}.csv", mime="text/csv", key=f"export-{key}",
        )


PAGES = {
    "Crawler": crawler_page,
    "Dashboard": dashboard_page,
    "Reports": reports_page,
}


def main():
    settings = get_settings()
    orchestrator = get_orchestrator()

    page = st.sidebar.radio("Navigate", list(PAGES), index=1)
    PAGES[page](orchestrator, settings)


if __name__ == "__main__":
    main()
