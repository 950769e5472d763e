"""
Tests for workbook ingestion, reconciliation, KPIs and product assembly.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import io
import itertools

import pandas as pd
import pytest

from importer import (
    IngestStats,
    InsuranceProduct,
    RawRow,
    ReconciliationState,
    SavingsProduct,
    WorkbookParseError,
    assemble_product,
    calculate_kpis,
    detect_columns,
    find_header_row,
    import_portfolio,
    ingest_workbook,
    iter_raw_rows,
    merge_states,
    parse_amount,
    read_workbook,
    reconcile,
    reconcile_row,
)
from matcher import TIER_DIRECT_NUMBER, TIER_NO_MATCH, TIER_SCOPED_FUZZY, NoMatch, ScopedFuzzyMatch


def pension_row(accumulation, investment_track='', **overrides):
    values = dict(
        product_type='פנסיה',
        manufacturer='הראל',
        product_name='מסלול כללי',
        accumulation=accumulation,
        investment_track=investment_track,
    )
    values.update(overrides)
    return RawRow(**values)


# ---------------------------------------------------------------------------
# Header detection
# ---------------------------------------------------------------------------

def test_detect_columns_hebrew_with_exclusions():
    columns = detect_columns(['סוג מוצר', 'שם מוצר', 'דמי ניהול מצבירה', 'צבירה'])
    assert columns == {
        'product_type': 0,
        'product_name': 1,
        'accumulation_fee': 2,
        'accumulation': 3,
    }


def test_detect_columns_english():
    columns = detect_columns(['Product Type', 'Manufacturer', 'Product', 'Balance', 'Policy Number'])
    assert columns['product_type'] == 0
    assert columns['manufacturer'] == 1
    assert columns['product_name'] == 2
    assert columns['accumulation'] == 3
    assert columns['policy_number'] == 4


def test_detect_columns_skips_product_number_for_name():
    columns = detect_columns(['סוג מוצר', 'יצרן', 'מספר מוצר', 'שם מוצר', 'צבירה'])
    assert columns['product_name'] == 3
    assert detect_columns(['Product Number', 'Product Name'])['product_name'] == 1


def test_detect_columns_ignores_blank_headers():
    columns = detect_columns([None, '', 'יצרן'])
    assert columns == {'manufacturer': 2}


def test_find_header_row_within_scan_window():
    header = ['סוג מוצר', 'יצרן']
    rows = [['title']] * 19 + [header]
    assert find_header_row(rows) == 19
    assert find_header_row([['title']] * 20 + [header]) == -1


def test_sheet_without_marker_is_skipped():
    stats = IngestStats()
    rows = list(iter_raw_rows([['סיכום'], ['יצרן', 'צבירה'], ['הראל', '100']], stats, 'Summary'))
    assert rows == []
    assert stats.sheets_skipped == ['Summary']
    assert stats.sheets_ingested == []


# ---------------------------------------------------------------------------
# Raw rows
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("value,expected", [
    ('₪ 150,000', 150000.0),
    ('0.25%', 0.25),
    ('$1,000.50', 1000.5),
    (1200, 1200.0),
    (0.7, 0.7),
    ('', 0.0),
    (None, 0.0),
    ('abc', 0.0),
    ('-', 0.0),
    (float('nan'), 0.0),
    (True, 0.0),
])
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_row_without_manufacturer_is_droppable():
    assert RawRow(product_type='קרן פנסיה', accumulation=5.0).is_droppable
    assert RawRow().is_droppable
    assert not RawRow(manufacturer='הראל').is_droppable


def test_rows_without_manufacturer_are_counted_as_dropped(export_grid):
    stats = IngestStats()
    rows = list(iter_raw_rows(export_grid, stats, 'Products'))
    assert len(rows) == 4
    assert stats.rows_read == 5
    assert stats.rows_dropped == 1
    assert stats.sheets_ingested == ['Products']


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def test_duplicate_rows_merge_balance_and_track():
    state = reconcile([pension_row(100000.0, 'מניות'), pension_row(150000.0)])
    products = state.savings_products()
    assert len(products) == 1
    assert products[0].accumulation == 150000.0
    assert products[0].investment_track == 'מניות'


def test_merge_is_order_independent():
    forward = reconcile([pension_row(100000.0, 'מניות'), pension_row(150000.0)])
    backward = reconcile([pension_row(150000.0), pension_row(100000.0, 'מניות')])
    assert forward.savings_products() == backward.savings_products()


def test_conflicting_values_merge_the_same_in_both_orders():
    a = pension_row(100000.0, 'מניות', accumulation_fee=0.2, plan_name='תוכנית ב')
    b = pension_row(150000.0, 'אג"ח', accumulation_fee=0.5, plan_name='תוכנית א')

    forward = reconcile([a, b]).savings_products()
    backward = reconcile([b, a]).savings_products()

    assert forward == backward
    assert forward[0].accumulation == 150000.0
    assert forward[0].investment_track == 'אג"ח'
    assert forward[0].accumulation_fee == 0.2
    assert forward[0].plan_name == 'תוכנית א'


def test_merge_of_three_rows_ignores_arrival_order():
    rows = [
        pension_row(100.0, 'מניות', deposit_fee=1.0),
        pension_row(200.0, '', deposit_fee=0.0, accumulation_fee=0.4),
        pension_row(150.0, 'כללי', deposit_fee=2.0, accumulation_fee=0.3),
    ]
    results = [reconcile(list(order)).savings_products() for order in itertools.permutations(rows)]
    assert all(result == results[0] for result in results)
    merged = results[0][0]
    assert merged.accumulation == 200.0
    assert merged.deposit_fee == 1.0
    assert merged.accumulation_fee == 0.3


def test_fees_fill_only_when_empty():
    state = reconcile([
        pension_row(10.0, accumulation_fee=0.0, deposit_fee=1.5),
        pension_row(20.0, accumulation_fee=0.3, deposit_fee=2.0),
    ])
    product = state.savings_products()[0]
    assert product.accumulation_fee == 0.3
    assert product.deposit_fee == 1.5


def test_policy_number_separates_products():
    state = reconcile([pension_row(10.0, policy_number='1'), pension_row(20.0, policy_number='2')])
    assert len(state.savings) == 2


def test_row_with_balance_and_premium_goes_to_both():
    state = reconcile_row(ReconciliationState(), pension_row(5000.0, premium=120.0))
    assert len(state.savings) == 1
    assert len(state.insurance) == 1
    assert state.insurance_products()[0].premium == 120.0


def test_row_without_amounts_is_ignored():
    state = reconcile_row(ReconciliationState(), pension_row(0.0))
    assert state.savings == {}
    assert state.insurance == {}


def test_insurance_premium_takes_max():
    rows = [RawRow(product_type='ביטוח חיים', manufacturer='כלל', premium=p) for p in (250.0, 300.0, 100.0)]
    products = reconcile(rows).insurance_products()
    assert [p.premium for p in products] == [300.0]


def test_merge_states_does_not_mutate_inputs():
    first = reconcile([pension_row(100000.0)])
    second = reconcile([pension_row(150000.0, 'מניות'), pension_row(10.0, product_name='אחר')])

    merged = merge_states(first, second)

    assert len(merged.savings) == 2
    combined = merged.savings_products()[0]
    assert combined.accumulation == 150000.0
    assert combined.investment_track == 'מניות'
    assert first.savings_products()[0].accumulation == 100000.0
    assert first.savings_products()[0].investment_track == ''


# ---------------------------------------------------------------------------
# Workbooks
# ---------------------------------------------------------------------------

def test_ingest_workbook_across_sheets(export_grid):
    workbook = {'Cover': [['שלום']], 'Products': export_grid}
    state, stats = ingest_workbook(workbook)
    assert stats.sheets_total == 2
    assert stats.sheets_skipped == ['Cover']
    assert len(state.savings) == 2
    assert len(state.insurance) == 1


def test_ingest_workbook_from_dataframe(export_grid):
    state, stats = ingest_workbook({'Products': pd.DataFrame(export_grid)})
    assert len(state.savings) == 2
    assert len(state.insurance) == 1
    assert stats.rows_dropped == 1


def test_same_product_on_two_sheets_is_merged(export_grid):
    state, _ = ingest_workbook({'A': export_grid, 'B': export_grid})
    assert len(state.savings) == 2
    assert state.savings_products()[0].accumulation == 150000.0


@pytest.mark.parametrize("workbook", [
    [['סוג מוצר']],
    'not a workbook',
    None,
    {'Products': 42},
    {'Products': ['סוג מוצר', 'יצרן']},
])
def test_ingest_workbook_rejects_malformed_input(workbook):
    with pytest.raises(WorkbookParseError):
        ingest_workbook(workbook)


def test_workbook_parse_error_is_value_error():
    assert issubclass(WorkbookParseError, ValueError)


def test_read_workbook_garbage_bytes():
    with pytest.raises(WorkbookParseError):
        read_workbook(io.BytesIO(b'definitely not a spreadsheet'))


def test_read_workbook_xlsx(tmp_path, export_grid):
    path = tmp_path / "client.xlsx"
    pd.DataFrame(export_grid).to_excel(path, sheet_name='Products', header=False, index=False)
    workbook = read_workbook(str(path))
    assert list(workbook) == ['Products']
    state, _ = ingest_workbook(workbook)
    assert len(state.savings) == 2


def test_read_workbook_csv(tmp_path):
    path = tmp_path / "client.csv"
    path.write_text("סוג מוצר,יצרן,שם מוצר,צבירה\nקרן פנסיה,הראל,פנסיה,1000\n", encoding="utf-8")
    workbook = read_workbook(str(path))
    assert list(workbook) == ['client']
    state, _ = ingest_workbook(workbook)
    assert state.savings_products()[0].accumulation == 1000.0


# ---------------------------------------------------------------------------
# KPIs
# ---------------------------------------------------------------------------

def test_calculate_kpis():
    savings = [
        SavingsProduct('קרן פנסיה', 'הראל', 'א', 150000.0, deposit_fee=1.5, accumulation_fee=0.2),
        SavingsProduct('קרן השתלמות', 'מגדל', 'ב', 50000.0, accumulation_fee=0.5),
    ]
    insurance = [InsuranceProduct('ביטוח חיים', 'כלל', 'ריסק', 250.0)]
    kpis = calculate_kpis(savings, insurance)
    assert kpis.savings_product_count == 2
    assert kpis.total_accumulation == 200000.0
    assert kpis.avg_accumulation_fee == pytest.approx(0.275)
    assert kpis.avg_deposit_fee == pytest.approx(0.75)
    assert kpis.insurance_policy_count == 1
    assert kpis.total_monthly_premium == 250.0


def test_calculate_kpis_empty():
    kpis = calculate_kpis([], [])
    assert kpis.total_accumulation == 0.0
    assert kpis.avg_accumulation_fee == 0.0
    assert kpis.avg_deposit_fee == 0.0


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def test_assemble_falls_back_to_raw_text():
    row = SavingsProduct('קרן פנסיה', 'הראל', 'פנסיה', 1000.0, investment_track='מניות', policy_number='77')
    product = assemble_product(row, NoMatch(), 'recommended', 'savings-1')
    assert product.category == 'קרן פנסיה'
    assert product.company == 'הראל'
    assert product.sub_category is None
    assert product.investment_track == 'מניות'
    assert product.notes == '77'
    assert product.type == 'recommended'
    assert product.match_tier == TIER_NO_MATCH
    assert not product.include_exposure_data


def test_assemble_uses_resolution_and_exposure():
    row = InsuranceProduct('ביטוח', 'הראל', 'ריסק', 99.0)
    resolved = ScopedFuzzyMatch(category='קרן פנסיה', company='הראל', sub_category='כללי', exposure_bonds=10.0)
    product = assemble_product(row, resolved)
    assert product.category == 'קרן פנסיה'
    assert product.sub_category == 'כללי'
    assert product.source == 'insurance'
    assert product.amount == 99.0
    assert product.management_fee_on_accumulation == 0.0
    assert product.include_exposure_data
    assert product.exposure_bonds == 10.0


def test_assemble_rejects_unknown_type():
    row = InsuranceProduct('ביטוח', 'הראל', 'ריסק', 99.0)
    with pytest.raises(ValueError):
        assemble_product(row, NoMatch(), 'future')


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_import_portfolio(export_grid, taxonomy):
    result = import_portfolio({'Products': export_grid}, taxonomy)

    assert [p.id for p in result.resolved] == ['savings-1', 'savings-2', 'insurance-1']
    assert result.kpis.total_accumulation == 200000.0
    assert result.kpis.avg_accumulation_fee == pytest.approx(0.275)

    harel, migdal, risk = result.resolved
    assert harel.match_tier == TIER_SCOPED_FUZZY
    assert harel.sub_category == 'הראל פנסיה מניות'
    assert harel.product_number == '1234'
    assert harel.amount == 150000.0
    assert harel.management_fee_on_deposit == 1.5
    assert harel.include_exposure_data

    assert migdal.match_tier == TIER_DIRECT_NUMBER
    assert migdal.category == 'קרן השתלמות'
    assert migdal.product_number == '5555'
    assert migdal.exposure_bonds == 85.0

    assert risk.match_tier == TIER_NO_MATCH
    assert risk.category == 'ביטוח חיים'
    assert risk.company == 'כלל'
    assert risk.amount == 250.0
    assert risk.source == 'insurance'


def test_import_starts_fresh_each_time(export_grid, taxonomy):
    first = import_portfolio({'Products': export_grid}, taxonomy)
    second = import_portfolio({'Products': export_grid}, taxonomy)
    assert first.savings == second.savings
    assert len(second.resolved) == 3


def test_import_without_product_sheets_is_empty(taxonomy):
    result = import_portfolio({'Cover': [['שלום'], ['עמוד 1']]}, taxonomy)
    assert result.savings == []
    assert result.insurance == []
    assert result.resolved == []
    assert result.kpis.savings_product_count == 0
    assert result.stats.sheets_skipped == ['Cover']


def test_import_empty_workbook(taxonomy):
    result = import_portfolio({}, taxonomy)
    assert result.resolved == []
    assert result.stats.sheets_total == 0
