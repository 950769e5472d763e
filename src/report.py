"""
Tabular views and Excel export of an import result, for the review UI and downstream reports.
"""

import io
from dataclasses import asdict, fields
from typing import List, Sequence

import pandas as pd

from importer import (
    ImportResult,
    InsuranceProduct,
    NormalizedProduct,
    PortfolioKPIs,
    SavingsProduct,
)
from matcher import comparison_key

# Column labels used in the exported workbook
KPI_LABELS = {
    'savings_product_count': 'Savings products',
    'total_accumulation': 'Total accumulation',
    'avg_accumulation_fee': 'Avg accumulation fee (weighted) %',
    'avg_deposit_fee': 'Avg deposit fee %',
    'insurance_policy_count': 'Insurance policies',
    'total_monthly_premium': 'Total monthly premium',
}


def filter_products(rows: Sequence, search: str = '', manufacturer: str = 'all', product_type: str = 'all') -> List:
    """
    Filter canonical rows by free-text search, manufacturer and product type.

    'all' disables a filter. The search looks at manufacturer, product name and
    product type together, case-insensitively.
    """
    search_key = comparison_key(search)
    result = []
    for row in rows:
        if manufacturer != 'all' and row.manufacturer != manufacturer:
            continue
        if product_type != 'all' and row.product_type != product_type:
            continue
        if search_key:
            haystack = comparison_key(f"{row.manufacturer} {row.product_name} {row.product_type}")
            if search_key not in haystack:
                continue
        result.append(row)
    return result


def unique_values(rows: Sequence, attr: str) -> List[str]:
    """Distinct non-empty values of an attribute, first-seen order (filter dropdowns)."""
    seen = []
    for row in rows:
        value = getattr(row, attr, '')
        if value and value not in seen:
            seen.append(value)
    return seen


def _frame(rows: Sequence, row_type) -> pd.DataFrame:
    columns = [f.name for f in fields(row_type)]
    return pd.DataFrame([asdict(r) for r in rows], columns=columns)


def savings_to_frame(rows: Sequence[SavingsProduct]) -> pd.DataFrame:
    return _frame(rows, SavingsProduct)


def insurance_to_frame(rows: Sequence[InsuranceProduct]) -> pd.DataFrame:
    return _frame(rows, InsuranceProduct)


def products_to_frame(products: Sequence[NormalizedProduct]) -> pd.DataFrame:
    return _frame(products, NormalizedProduct)


def kpis_to_frame(kpis: PortfolioKPIs) -> pd.DataFrame:
    values = asdict(kpis)
    return pd.DataFrame(
        [{'Metric': KPI_LABELS.get(k, k), 'Value': v} for k, v in values.items()]
    )


def build_export_workbook(result: ImportResult) -> bytes:
    """
    Write the import result to an .xlsx file (in memory).

    Sheets: Summary (KPIs + ingest counts), Savings, Insurance, Normalized Products.
    """
    summary = kpis_to_frame(result.kpis)
    ingest_rows = pd.DataFrame([
        {'Metric': 'Sheets ingested', 'Value': len(result.stats.sheets_ingested)},
        {'Metric': 'Sheets skipped', 'Value': len(result.stats.sheets_skipped)},
        {'Metric': 'Rows read', 'Value': result.stats.rows_read},
        {'Metric': 'Rows dropped', 'Value': result.stats.rows_dropped},
    ])
    summary = pd.concat([summary, ingest_rows], ignore_index=True)

    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        summary.to_excel(writer, sheet_name='Summary', index=False)
        savings_to_frame(result.savings).to_excel(writer, sheet_name='Savings', index=False)
        insurance_to_frame(result.insurance).to_excel(writer, sheet_name='Insurance', index=False)
        products_to_frame(result.resolved).to_excel(writer, sheet_name='Normalized Products', index=False)
    output.seek(0)
    return output.getvalue()
