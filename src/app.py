"""
Portfolio Import - Streamlit UI

The product taxonomy snapshot is stored next to the app (taxonomy_reference/).
Agents upload a client's clearing-house export and get normalized products back.

Run with:
    streamlit run src/app.py
"""

import streamlit as st

from importer import WorkbookParseError, import_portfolio, read_workbook
from logging_config import setup_logging
from matcher import (
    TIER_DIRECT_NUMBER,
    TIER_GLOBAL_FALLBACK,
    TIER_NO_MATCH,
    TIER_SCOPED_FUZZY,
    TIER_SCOPED_NUMBER,
)
from report import (
    build_export_workbook,
    filter_products,
    insurance_to_frame,
    products_to_frame,
    savings_to_frame,
    unique_values,
)
from taxonomy import (
    ProductTaxonomy,
    delete_taxonomy,
    load_taxonomy,
    save_taxonomy,
    taxonomy_exists,
)

setup_logging()

# ---------------------------------------------------------------------------
# Page config
# ---------------------------------------------------------------------------
st.set_page_config(
    page_title="Portfolio Import",
    page_icon="📂",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.title("📂 Client Portfolio Import")
st.markdown("**Import a clearing-house export and match every holding to the product taxonomy**")

TIER_LABELS = {
    TIER_DIRECT_NUMBER: "🟢 Product number",
    TIER_SCOPED_NUMBER: "🟢 Number in track name",
    TIER_SCOPED_FUZZY: "🟡 Category + company",
    TIER_GLOBAL_FALLBACK: "🟠 Track only",
    TIER_NO_MATCH: "🔴 No match",
}

# ---------------------------------------------------------------------------
# Sidebar: taxonomy admin
# ---------------------------------------------------------------------------
st.sidebar.header("⚙️ Settings")

product_type = st.sidebar.radio(
    "Import products as",
    options=["current", "recommended"],
    format_func=lambda v: "Current state" if v == "current" else "Recommended",
)

st.sidebar.divider()

with st.sidebar.expander("Admin: Product Taxonomy"):
    if taxonomy_exists():
        loaded = load_taxonomy()
        if loaded is not None:
            st.caption(f"Current snapshot: {loaded[1].get('final', len(loaded[0])):,} tracks")
        if st.button("Delete taxonomy snapshot"):
            delete_taxonomy()
            st.cache_resource.clear()
            st.rerun()

    taxonomy_upload = st.file_uploader("Upload taxonomy Excel", type=["xlsx"], key="taxonomy_admin")
    if taxonomy_upload is not None and st.button("Save taxonomy"):
        new_taxonomy, new_stats = ProductTaxonomy.from_excel(taxonomy_upload)
        save_taxonomy(new_taxonomy, new_stats)
        for warning in new_stats['warnings']:
            st.warning(warning)
        st.cache_resource.clear()
        st.rerun()


@st.cache_resource(show_spinner="Loading product taxonomy...")
def load_product_taxonomy():
    """Load the saved taxonomy snapshot once per process."""
    return load_taxonomy()


loaded = load_product_taxonomy()
if loaded is None:
    st.error(
        "Product taxonomy not found. "
        "Use the Admin panel in the sidebar to upload the taxonomy Excel."
    )
    st.stop()

taxonomy, taxonomy_stats = loaded
st.success(
    f"Taxonomy: **{len(taxonomy):,}** tracks "
    f"({len(taxonomy.get_all_categories())} categories, {len(taxonomy.get_all_companies())} companies)"
)

# ---------------------------------------------------------------------------
# Upload + import
# ---------------------------------------------------------------------------
st.subheader("📤 Upload Client Export")
portfolio_upload = st.file_uploader(
    "📁 Clearing-house export (.xlsx or .csv)",
    type=["xlsx", "csv"],
    key="portfolio_upload",
    help="Sheets without a 'סוג מוצר' column (cover pages, summaries) are skipped",
)

if portfolio_upload is not None:
    try:
        workbook = read_workbook(portfolio_upload)
        result = import_portfolio(workbook, taxonomy, product_type=product_type)
    except WorkbookParseError:
        st.error("שגיאה בעיבוד הקובץ. אנא וודא שהקובץ תקין וכולל את הנתונים הנדרשים.")
        st.stop()

    if not result.savings and not result.insurance:
        st.warning("No product rows found. Make sure the export has a 'סוג מוצר' header row.")
        st.stop()

    kpis = result.kpis
    ca, cb, cc = st.columns(3)
    ca.metric("Savings products", kpis.savings_product_count)
    cb.metric("Total accumulation", f"₪{kpis.total_accumulation:,.0f}")
    cc.metric("Avg accumulation fee", f"{kpis.avg_accumulation_fee:.2f}%")
    cd, ce, cf = st.columns(3)
    cd.metric("Avg deposit fee", f"{kpis.avg_deposit_fee:.2f}%")
    ce.metric("Insurance policies", kpis.insurance_policy_count)
    cf.metric("Monthly premium", f"₪{kpis.total_monthly_premium:,.0f}")

    st.caption(
        f"{len(result.stats.sheets_ingested)} sheet(s) read, "
        f"{len(result.stats.sheets_skipped)} skipped, "
        f"{result.stats.rows_dropped} row(s) without a manufacturer dropped"
    )

    # --- Filters ---
    all_rows = result.savings + result.insurance
    f1, f2, f3 = st.columns(3)
    search = f1.text_input("🔍 Search")
    manufacturer = f2.selectbox("Manufacturer", ["all"] + unique_values(all_rows, "manufacturer"))
    category = f3.selectbox("Product type", ["all"] + unique_values(all_rows, "product_type"))

    savings_tab, insurance_tab, resolved_tab = st.tabs(["💰 Savings", "🛡️ Insurance", "🎯 Matched Products"])
    with savings_tab:
        rows = filter_products(result.savings, search, manufacturer, category)
        st.dataframe(savings_to_frame(rows), use_container_width=True, hide_index=True)
    with insurance_tab:
        rows = filter_products(result.insurance, search, manufacturer, category)
        st.dataframe(insurance_to_frame(rows), use_container_width=True, hide_index=True)
    with resolved_tab:
        df_resolved = products_to_frame(result.resolved)
        df_resolved.insert(0, "match", df_resolved["match_tier"].map(TIER_LABELS))
        st.dataframe(df_resolved, use_container_width=True, hide_index=True)

    st.divider()
    st.download_button(
        label="📥 Download Normalized Portfolio",
        data=build_export_workbook(result),
        file_name="portfolio_import.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        type="primary",
        use_container_width=True,
    )
