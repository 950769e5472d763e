"""
Portfolio import pipeline: clearing-house workbook -> canonical rows -> normalized products.

Steps:
    1. read_workbook():   decode .xlsx / .csv into sheet grids (pandas)
    2. ingest_sheet():    find the header row holding the "סוג מוצר" marker within
                          the first HEADER_SCAN_ROWS rows, map headers to fields by
                          keyword containment, stream data rows into RawRow values
    3. reconcile_row():   dedupe rows into savings / insurance products keyed by
                          (product type, manufacturer, product name, policy number)
    4. resolve_row():     taxonomy resolution (matcher.resolve_product)
    5. assemble_product(): canonical row + resolution -> NormalizedProduct

Every import starts from an empty ReconciliationState; importing the same file
twice yields two independent results.
"""

import dataclasses
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Union

import pandas as pd

from config import FUZZY_MATCH_THRESHOLD, HEADER_SCAN_ROWS
from matcher import (
    EXPOSURE_FIELDS,
    TIER_NO_MATCH,
    ResolvedMatch,
    TaxonomySource,
    comparison_key,
    normalize_text,
    resolve_product,
)

logger = logging.getLogger(__name__)


class WorkbookParseError(ValueError):
    """The uploaded file could not be parsed as a workbook at all."""


# ---------------------------------------------------------------------------
# Column role detection
# ---------------------------------------------------------------------------

# A header row is the first row with a cell containing one of these
MARKER_KEYWORDS = ['סוג מוצר', 'product type']

# field -> (keywords, exclude keywords). A header belongs to a field if it contains
# any keyword and none of the exclude keywords; first matching header wins.
FIELD_KEYWORDS = {
    'product_type': (['סוג מוצר', 'product type'], []),
    'manufacturer': (['יצרן', 'manufacturer'], []),
    'product_name': (['מוצר', 'product'], ['סוג', 'type', 'מספר', 'number']),
    'plan_name': (['שם תוכנית', 'שם תכנית', 'plan name'], []),
    'accumulation': (['צבירה', 'accumulation', 'balance'], ['דמי ניהול', 'fee']),
    'premium': (['פרמיה', 'premium'], []),
    'deposit_fee': (['דמי ניהול מהפקדה', 'deposit fee'], []),
    'accumulation_fee': (['דמי ניהול מצבירה', 'accumulation fee'], []),
    'investment_track': (['מסלולי השקעה', 'מסלול השקעה', 'investment track'], []),
    'policy_number': (['פוליסה', 'חשבון', 'policy', 'account'], []),
}

NUMERIC_FIELDS = {'accumulation', 'premium', 'deposit_fee', 'accumulation_fee'}

# Currency symbols, thousands separators, percent signs and whitespace
_NUMBER_NOISE = re.compile(r"[₪$€,%\s]")

PRODUCT_TYPES = ('current', 'recommended')

Grid = Sequence[Sequence]
Workbook = Mapping[str, Union[pd.DataFrame, Grid]]


def _header_matches(header_key: str, keywords: List[str], exclude: List[str]) -> bool:
    if not header_key:
        return False
    if any(comparison_key(ex) in header_key for ex in exclude):
        return False
    return any(comparison_key(kw) in header_key for kw in keywords)


def detect_columns(headers: Sequence) -> Dict[str, int]:
    """
    Map semantic fields to column indexes. Fields with no matching header are absent.

    Example:
        ['סוג מוצר', 'יצרן', 'שם מוצר', 'צבירה', 'דמי ניהול מצבירה']
        -> {'product_type': 0, 'manufacturer': 1, 'product_name': 2,
            'accumulation': 3, 'accumulation_fee': 4}
    """
    keys = [comparison_key(h) for h in headers]
    columns = {}
    for field_name, (keywords, exclude) in FIELD_KEYWORDS.items():
        for idx, key in enumerate(keys):
            if _header_matches(key, keywords, exclude):
                columns[field_name] = idx
                break
    return columns


def find_header_row(rows: Sequence[Sequence], scan_rows: int = HEADER_SCAN_ROWS) -> int:
    """Index of the first row (within scan_rows) holding the marker header, or -1."""
    for i, row in enumerate(rows[:scan_rows]):
        if not row:
            continue
        for cell in row:
            if isinstance(cell, str) and _header_matches(comparison_key(cell), MARKER_KEYWORDS, []):
                return i
    return -1


# ---------------------------------------------------------------------------
# Raw rows
# ---------------------------------------------------------------------------

def parse_amount(value) -> float:
    """
    Parse a money / percent cell. Never raises.

    '₪ 150,000' -> 150000.0, '0.25%' -> 0.25, '' / None / 'abc' -> 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        s = _NUMBER_NOISE.sub('', normalize_text(value))
        try:
            number = float(s)
        except ValueError:
            return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


@dataclass(frozen=True)
class RawRow:
    product_type: str = ''
    manufacturer: str = ''
    product_name: str = ''
    plan_name: str = ''
    accumulation: float = 0.0
    premium: float = 0.0
    deposit_fee: float = 0.0
    accumulation_fee: float = 0.0
    investment_track: str = ''
    policy_number: str = ''

    @property
    def key(self) -> str:
        return row_key(self.product_type, self.manufacturer, self.product_name, self.policy_number)

    @property
    def is_droppable(self) -> bool:
        """No identifying text at all, or no manufacturer."""
        if not (self.product_type or self.manufacturer or self.product_name):
            return True
        return not self.manufacturer


def row_key(product_type, manufacturer, product_name, policy_number) -> str:
    return "|".join(normalize_text(v) for v in (product_type, manufacturer, product_name, policy_number))


def _cell(row: Sequence, idx: Optional[int]):
    if idx is None or idx < 0 or idx >= len(row):
        return None
    return row[idx]


def build_raw_row(row: Sequence, columns: Dict[str, int]) -> RawRow:
    values = {}
    for field_name in FIELD_KEYWORDS:
        cell = _cell(row, columns.get(field_name))
        if field_name in NUMERIC_FIELDS:
            values[field_name] = parse_amount(cell)
        else:
            values[field_name] = normalize_text(cell)
    return RawRow(**values)


# ---------------------------------------------------------------------------
# Canonical rows + reconciliation
# ---------------------------------------------------------------------------

@dataclass
class SavingsProduct:
    product_type: str
    manufacturer: str
    product_name: str
    accumulation: float
    plan_name: str = ''
    deposit_fee: float = 0.0
    accumulation_fee: float = 0.0
    investment_track: str = ''
    policy_number: str = ''

    @property
    def key(self) -> str:
        return row_key(self.product_type, self.manufacturer, self.product_name, self.policy_number)

    def merge(self, other: "SavingsProduct") -> None:
        """Max the balance; text / fee fields are filled from whichever side has them."""
        self.accumulation = max(self.accumulation, other.accumulation)
        self.investment_track = _fill(self.investment_track, other.investment_track)
        self.plan_name = _fill(self.plan_name, other.plan_name)
        self.deposit_fee = _fill(self.deposit_fee, other.deposit_fee)
        self.accumulation_fee = _fill(self.accumulation_fee, other.accumulation_fee)


def _fill(current, incoming):
    """
    Empty / zero loses to a value. Two different values settle on the smaller
    one, so the merged row does not depend on the order rows arrive in.
    """
    if not current:
        return incoming
    if not incoming:
        return current
    return min(current, incoming)


@dataclass
class InsuranceProduct:
    product_type: str
    manufacturer: str
    product_name: str
    premium: float
    policy_number: str = ''

    @property
    def key(self) -> str:
        return row_key(self.product_type, self.manufacturer, self.product_name, self.policy_number)

    def merge(self, other: "InsuranceProduct") -> None:
        self.premium = max(self.premium, other.premium)


CanonicalRow = Union[SavingsProduct, InsuranceProduct]


@dataclass
class IngestStats:
    sheets_total: int = 0
    sheets_ingested: List[str] = field(default_factory=list)
    sheets_skipped: List[str] = field(default_factory=list)
    rows_read: int = 0
    rows_dropped: int = 0

    def absorb(self, other: "IngestStats") -> None:
        self.sheets_total += other.sheets_total
        self.sheets_ingested.extend(other.sheets_ingested)
        self.sheets_skipped.extend(other.sheets_skipped)
        self.rows_read += other.rows_read
        self.rows_dropped += other.rows_dropped


@dataclass
class ReconciliationState:
    """Canonical rows of one import, keyed by row_key(). Insertion order is kept."""

    savings: Dict[str, SavingsProduct] = field(default_factory=dict)
    insurance: Dict[str, InsuranceProduct] = field(default_factory=dict)

    def savings_products(self) -> List[SavingsProduct]:
        return list(self.savings.values())

    def insurance_products(self) -> List[InsuranceProduct]:
        return list(self.insurance.values())


def _upsert(collection: Dict[str, CanonicalRow], product: CanonicalRow) -> None:
    existing = collection.get(product.key)
    if existing is None:
        collection[product.key] = product
    else:
        existing.merge(product)


def reconcile_row(state: ReconciliationState, raw: RawRow) -> ReconciliationState:
    """
    Fold one raw row into the state and return it.

    A row goes to savings when accumulation > 0 and to insurance when premium > 0
    (both is possible). Rows without a manufacturer never get here.
    """
    if raw.accumulation > 0:
        _upsert(state.savings, SavingsProduct(
            product_type=raw.product_type,
            manufacturer=raw.manufacturer,
            product_name=raw.product_name,
            accumulation=raw.accumulation,
            plan_name=raw.plan_name,
            deposit_fee=raw.deposit_fee,
            accumulation_fee=raw.accumulation_fee,
            investment_track=raw.investment_track,
            policy_number=raw.policy_number,
        ))
    if raw.premium > 0:
        _upsert(state.insurance, InsuranceProduct(
            product_type=raw.product_type,
            manufacturer=raw.manufacturer,
            product_name=raw.product_name,
            premium=raw.premium,
            policy_number=raw.policy_number,
        ))
    return state


def reconcile(rows: Sequence[RawRow], state: Optional[ReconciliationState] = None) -> ReconciliationState:
    state = state if state is not None else ReconciliationState()
    for raw in rows:
        if raw.is_droppable:
            continue
        state = reconcile_row(state, raw)
    return state


def merge_states(first: ReconciliationState, second: ReconciliationState) -> ReconciliationState:
    """Combine two states (e.g. one per sheet) without mutating either."""
    merged = ReconciliationState()
    for state in (first, second):
        for product in state.savings.values():
            _upsert(merged.savings, dataclasses.replace(product))
        for product in state.insurance.values():
            _upsert(merged.insurance, dataclasses.replace(product))
    return merged


# ---------------------------------------------------------------------------
# Sheet / workbook ingestion
# ---------------------------------------------------------------------------

def _grid_rows(sheet) -> List[Sequence]:
    """Turn a DataFrame (read with header=None) or a list of lists into row lists."""
    if isinstance(sheet, pd.DataFrame):
        df = sheet.astype(object).where(pd.notna(sheet), None)
        return df.values.tolist()
    if isinstance(sheet, (list, tuple)):
        rows = []
        for row in sheet:
            if row is None:
                rows.append([])
            elif isinstance(row, (list, tuple)):
                rows.append(list(row))
            else:
                raise WorkbookParseError(f"Sheet rows must be sequences of cells, got {type(row).__name__}")
        return rows
    raise WorkbookParseError(f"Unsupported sheet type: {type(sheet).__name__}")


def iter_raw_rows(
    sheet,
    stats: Optional[IngestStats] = None,
    sheet_name: str = '',
    scan_rows: int = HEADER_SCAN_ROWS,
) -> Iterator[RawRow]:
    """
    Yield the kept raw rows of one sheet. Sheets without the marker header yield nothing.
    Dropped rows are only counted in `stats`.
    """
    stats = stats if stats is not None else IngestStats()
    rows = _grid_rows(sheet)
    header_idx = find_header_row(rows, scan_rows)
    if header_idx < 0:
        stats.sheets_skipped.append(sheet_name)
        logger.debug("Sheet '%s' has no product-type header; skipped", sheet_name,
                     extra={"sheet": sheet_name})
        return

    stats.sheets_ingested.append(sheet_name)
    columns = detect_columns(rows[header_idx])
    for row in rows[header_idx + 1:]:
        if not row or all(normalize_text(c) == "" for c in row):
            continue
        stats.rows_read += 1
        raw = build_raw_row(row, columns)
        if raw.is_droppable:
            stats.rows_dropped += 1
            continue
        yield raw


def ingest_sheet(sheet, sheet_name: str = '', stats: Optional[IngestStats] = None) -> ReconciliationState:
    """Reconcile one sheet into its own fresh state."""
    return reconcile(list(iter_raw_rows(sheet, stats, sheet_name)))


def ingest_workbook(workbook: Workbook) -> tuple:
    """
    Ingest every sheet of a decoded workbook.

    Returns (ReconciliationState, IngestStats). Raises WorkbookParseError when the
    value is not a sheet-name -> grid mapping.
    """
    if not isinstance(workbook, Mapping):
        raise WorkbookParseError(f"Expected a mapping of sheet name to grid, got {type(workbook).__name__}")

    stats = IngestStats()
    state = ReconciliationState()
    for sheet_name, sheet in workbook.items():
        sheet_stats = IngestStats(sheets_total=1)
        sheet_state = ingest_sheet(sheet, str(sheet_name), sheet_stats)
        state = merge_states(state, sheet_state)
        stats.absorb(sheet_stats)

    logger.info(
        "Ingested %d/%d sheets: %d savings, %d insurance rows (%d rows read, %d dropped)",
        len(stats.sheets_ingested), stats.sheets_total,
        len(state.savings), len(state.insurance), stats.rows_read, stats.rows_dropped,
        extra={"rows_dropped": stats.rows_dropped},
    )
    return state, stats


def read_workbook(file) -> Dict[str, pd.DataFrame]:
    """
    Decode an uploaded .xlsx or .csv into sheet grids (DataFrames read with header=None).

    A CSV becomes a single sheet named after the file. Raises WorkbookParseError if
    the file cannot be parsed at all.
    """
    file_name = str(getattr(file, 'name', file if isinstance(file, str) else ''))
    try:
        if file_name.lower().endswith('.csv'):
            df = pd.read_csv(file, header=None, dtype=object, skip_blank_lines=False)
            sheet_name = os.path.splitext(os.path.basename(file_name))[0] or 'Sheet 1'
            return {sheet_name: df}
        return pd.read_excel(file, sheet_name=None, header=None, dtype=object)
    except Exception as e:
        raise WorkbookParseError(f"Could not parse workbook '{file_name}': {e}") from e


# ---------------------------------------------------------------------------
# KPIs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PortfolioKPIs:
    savings_product_count: int = 0
    total_accumulation: float = 0.0
    avg_accumulation_fee: float = 0.0
    avg_deposit_fee: float = 0.0
    insurance_policy_count: int = 0
    total_monthly_premium: float = 0.0


def calculate_kpis(savings: Sequence[SavingsProduct], insurance: Sequence[InsuranceProduct]) -> PortfolioKPIs:
    """Totals, accumulation-weighted accumulation fee, and plain average deposit fee."""
    total_accumulation = sum(p.accumulation for p in savings)
    weighted_fee = sum(p.accumulation_fee * p.accumulation for p in savings) / (total_accumulation or 1)
    avg_deposit_fee = sum(p.deposit_fee for p in savings) / (len(savings) or 1)
    return PortfolioKPIs(
        savings_product_count=len(savings),
        total_accumulation=total_accumulation,
        avg_accumulation_fee=weighted_fee,
        avg_deposit_fee=avg_deposit_fee,
        insurance_policy_count=len(insurance),
        total_monthly_premium=sum(p.premium for p in insurance),
    )


# ---------------------------------------------------------------------------
# Resolution + assembly
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NormalizedProduct:
    id: str
    category: str
    sub_category: Optional[str]
    company: str
    amount: float
    management_fee_on_deposit: float
    management_fee_on_accumulation: float
    investment_track: str
    notes: str
    type: str
    include_exposure_data: bool
    source: str
    match_tier: str
    product_number: Optional[str] = None
    exposure_stocks: Optional[float] = None
    exposure_bonds: Optional[float] = None
    exposure_foreign_currency: Optional[float] = None
    exposure_foreign_investments: Optional[float] = None
    exposure_israel: Optional[float] = None
    exposure_illiquid_assets: Optional[float] = None
    asset_composition: Optional[str] = None


def resolve_row(
    taxonomy: TaxonomySource,
    row: CanonicalRow,
    threshold: int = FUZZY_MATCH_THRESHOLD,
) -> ResolvedMatch:
    """
    Resolve a canonical row. The product name stands in for a missing product type;
    savings rows use their investment track (or plan name) as the sub-category text.
    """
    category = row.product_type or row.product_name
    if isinstance(row, SavingsProduct):
        sub_category = row.investment_track or row.plan_name
    else:
        sub_category = ''
    return resolve_product(taxonomy, category, sub_category, row.manufacturer, threshold=threshold)


def assemble_product(
    row: CanonicalRow,
    resolved: ResolvedMatch,
    product_type: str = 'current',
    product_id: str = '',
) -> NormalizedProduct:
    """
    Combine a canonical row with its resolution. Raw text fills in an unresolved
    category or company; the sub-category has no raw fallback.
    """
    if product_type not in PRODUCT_TYPES:
        raise ValueError(f"product_type must be one of {PRODUCT_TYPES}, got '{product_type}'")

    if isinstance(row, SavingsProduct):
        source = 'savings'
        amount = row.accumulation
        deposit_fee = row.deposit_fee or 0.0
        accumulation_fee = row.accumulation_fee or 0.0
        investment_track = row.investment_track or ''
    else:
        source = 'insurance'
        amount = row.premium
        deposit_fee = 0.0
        accumulation_fee = 0.0
        investment_track = ''

    exposure = {name: getattr(resolved, name) for name in EXPOSURE_FIELDS}
    return NormalizedProduct(
        id=product_id,
        category=resolved.category or row.product_type,
        sub_category=resolved.sub_category,
        company=resolved.company or row.manufacturer,
        amount=amount,
        management_fee_on_deposit=deposit_fee,
        management_fee_on_accumulation=accumulation_fee,
        investment_track=investment_track,
        notes=row.policy_number or '',
        type=product_type,
        include_exposure_data=resolved.has_exposure,
        source=source,
        match_tier=resolved.tier,
        product_number=resolved.product_number,
        asset_composition=resolved.asset_composition,
        **exposure,
    )


@dataclass(frozen=True)
class ImportResult:
    savings: List[SavingsProduct]
    insurance: List[InsuranceProduct]
    resolved: List[NormalizedProduct]
    kpis: PortfolioKPIs
    stats: IngestStats


def import_portfolio(
    workbook: Workbook,
    taxonomy: TaxonomySource,
    product_type: str = 'current',
    threshold: int = FUZZY_MATCH_THRESHOLD,
) -> ImportResult:
    """
    Run the whole pipeline on a decoded workbook. Always starts from a fresh state.

    A workbook without any marker header gives an empty result, not an error.
    """
    state, stats = ingest_workbook(workbook)
    savings = state.savings_products()
    insurance = state.insurance_products()

    resolved = []
    for i, row in enumerate(savings, start=1):
        match = resolve_row(taxonomy, row, threshold)
        resolved.append(assemble_product(row, match, product_type, f"savings-{i}"))
    for i, row in enumerate(insurance, start=1):
        match = resolve_row(taxonomy, row, threshold)
        resolved.append(assemble_product(row, match, product_type, f"insurance-{i}"))

    matched = sum(1 for p in resolved if p.match_tier != TIER_NO_MATCH)
    logger.info("Resolved %d/%d products against the taxonomy", matched, len(resolved))

    return ImportResult(
        savings=savings,
        insurance=insurance,
        resolved=resolved,
        kpis=calculate_kpis(savings, insurance),
        stats=stats,
    )
