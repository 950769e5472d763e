"""
Product taxonomy: category -> company -> sub-category (track), with asset exposure.

The taxonomy is the read-only reference every imported row is resolved against.
It is loaded from the taxonomy Excel sheet (one row per track) or from the
parquet snapshot saved next to the app, and indexed for the lookups the
resolver needs:

    - by product number (authoritative)
    - by company + track name (current and former track names)
    - category / company / sub-category lists for the fuzzy matchers
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Dict, List, Optional, Tuple

import pandas as pd

from config import TAXONOMY_DIR
from matcher import EXPOSURE_FIELDS, comparison_key, normalize_text

logger = logging.getLogger(__name__)

# Column order of the taxonomy Excel sheet (header row is skipped)
TAXONOMY_COLUMNS = [
    'company',
    'category',
    'old_track_name',
    'track_name',
    'product_number',
    'policy_change',
    'track_merger',
    'exposure_foreign_currency',
    'exposure_foreign_investments',
    'exposure_israel',
    'exposure_stocks',
    'exposure_bonds',
    'exposure_illiquid_assets',
    'asset_composition',
]


@dataclass(frozen=True)
class TaxonomyEntry:
    company: str
    category: str
    track_name: str = ''
    old_track_name: str = ''
    product_number: str = ''
    policy_change: str = ''
    track_merger: str = ''
    exposure_stocks: Optional[float] = None
    exposure_bonds: Optional[float] = None
    exposure_foreign_currency: Optional[float] = None
    exposure_foreign_investments: Optional[float] = None
    exposure_israel: Optional[float] = None
    exposure_illiquid_assets: Optional[float] = None
    asset_composition: str = ''


def parse_percent(value) -> Optional[float]:
    """'12.5%' -> 12.5. Blank or unparseable cells -> None (no exposure data)."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return None if pd.isna(value) else float(value)
    s = normalize_text(value).replace('%', '').replace(',', '').strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Loading / cleaning
# ---------------------------------------------------------------------------

def load_and_clean_taxonomy(df_raw: pd.DataFrame) -> Tuple[pd.DataFrame, Dict]:
    """
    Clean a raw taxonomy table:
        1. Normalize text columns, parse exposure percentages
        2. Drop rows without company or category
        3. Fall back to the old track name where the new one is blank
        4. Warn about product numbers listed more than once

    Returns:
        - Cleaned DataFrame with TAXONOMY_COLUMNS
        - Stats dict (includes 'warnings' list)
    """
    df = df_raw.copy()
    warnings = []
    original_count = len(df)

    for col in TAXONOMY_COLUMNS:
        if col not in df.columns:
            df[col] = None
    df = df[TAXONOMY_COLUMNS].copy()

    exposure_cols = list(EXPOSURE_FIELDS)
    text_cols = [c for c in TAXONOMY_COLUMNS if c not in exposure_cols]
    for col in text_cols:
        df[col] = df[col].map(normalize_text)
    for col in exposure_cols:
        df[col] = df[col].map(parse_percent).astype(object)

    missing_mask = (df['company'] == '') | (df['category'] == '')
    df = df[~missing_mask].copy()
    missing_dropped = int(missing_mask.sum())

    blank_track = df['track_name'] == ''
    df.loc[blank_track, 'track_name'] = df.loc[blank_track, 'old_track_name']

    numbered = df[df['product_number'] != '']
    dup_counts = numbered['product_number'].value_counts()
    duplicate_numbers = dup_counts[dup_counts > 1].index.tolist()
    if duplicate_numbers:
        warnings.append(f"Found {len(duplicate_numbers)} product numbers listed more than once")
        for number in duplicate_numbers[:5]:
            warnings.append(f"  Product {number}: {int(dup_counts[number])} rows (first row is used)")

    stats = {
        'original': original_count,
        'missing_dropped': missing_dropped,
        'final': len(df),
        'warnings': warnings,
    }
    return df.reset_index(drop=True), stats


def parse_taxonomy_sheet(file, sheet_name=0) -> pd.DataFrame:
    """Read the taxonomy Excel sheet into a raw DataFrame with TAXONOMY_COLUMNS."""
    df = pd.read_excel(file, sheet_name=sheet_name, header=None, skiprows=1, dtype=object)
    df = df.iloc[:, :len(TAXONOMY_COLUMNS)]
    df.columns = TAXONOMY_COLUMNS[:len(df.columns)]
    return df


# ---------------------------------------------------------------------------
# Taxonomy index
# ---------------------------------------------------------------------------

class ProductTaxonomy:
    """In-memory taxonomy implementing the resolver's read-only query interface."""

    def __init__(self, entries: List[TaxonomyEntry]):
        self._entries: List[TaxonomyEntry] = []
        self._by_number: Dict[str, TaxonomyEntry] = {}
        self._by_company_track: Dict[Tuple[str, str], List[TaxonomyEntry]] = {}
        categories = set()
        companies = set()
        sub_categories: Dict[str, set] = {}

        for entry in entries:
            if not entry.company or not entry.category:
                continue
            self._entries.append(entry)
            categories.add(entry.category)
            companies.add(entry.company)

            if entry.track_name:
                sub_categories.setdefault(entry.category, set()).add(entry.track_name)

            if entry.product_number:
                self._by_number.setdefault(entry.product_number, entry)

            for track in {entry.track_name, entry.old_track_name}:
                if track:
                    key = (comparison_key(entry.company), comparison_key(track))
                    self._by_company_track.setdefault(key, []).append(entry)

        self._categories = sorted(categories)
        self._companies = sorted(companies)
        self._sub_categories = sub_categories

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[TaxonomyEntry]:
        return list(self._entries)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ProductTaxonomy":
        """Build from a cleaned DataFrame (see load_and_clean_taxonomy)."""
        names = {f.name for f in fields(TaxonomyEntry)}
        entries = []
        for _, row in df.iterrows():
            values = {k: row[k] for k in row.index if k in names}
            for col in EXPOSURE_FIELDS:
                if col in values:
                    values[col] = parse_percent(values[col])
            for col in names - set(EXPOSURE_FIELDS):
                if col in values:
                    values[col] = normalize_text(values[col])
            entries.append(TaxonomyEntry(**values))
        return cls(entries)

    @classmethod
    def from_excel(cls, file, sheet_name=0) -> Tuple["ProductTaxonomy", Dict]:
        df_clean, stats = load_and_clean_taxonomy(parse_taxonomy_sheet(file, sheet_name))
        for warning in stats['warnings']:
            logger.warning(warning)
        logger.info("Loaded taxonomy: %d entries (%d dropped without company/category)",
                    stats['final'], stats['missing_dropped'])
        return cls.from_dataframe(df_clean), stats

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(e) for e in self._entries], columns=TAXONOMY_COLUMNS)

    # --- Queries used by the resolver ---

    def get_all_categories(self) -> List[str]:
        return list(self._categories)

    def get_all_companies(self) -> List[str]:
        return list(self._companies)

    def get_all_sub_categories(self) -> List[str]:
        all_subs = set()
        for subs in self._sub_categories.values():
            all_subs.update(subs)
        return sorted(all_subs)

    def get_companies_for_category(self, category: str) -> List[str]:
        return sorted({e.company for e in self._entries if e.category == category})

    def get_sub_categories_for_category_and_company(self, category: str, company: str) -> List[str]:
        return sorted({
            e.track_name for e in self._entries
            if e.category == category and e.company == company and e.track_name
        })

    def get_exposure_data(
        self,
        company: Optional[str] = None,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        product_number: Optional[str] = None,
    ) -> Optional[TaxonomyEntry]:
        """
        Best-effort lookup with a partial key.

        Order:
            1. product number
            2. company + track name (current or former)
            3. first entry whose track name matches and whose category / company
               match when those are given
        """
        number = normalize_text(product_number)
        if number and number in self._by_number:
            return self._by_number[number]

        sub_key = comparison_key(sub_category)
        if not sub_key:
            return None

        company_key = comparison_key(company)
        if company_key:
            by_track = self._by_company_track.get((company_key, sub_key))
            if by_track:
                return by_track[0]

        category_key = comparison_key(category)
        for entry in self._entries:
            if sub_key not in (comparison_key(entry.track_name), comparison_key(entry.old_track_name)):
                continue
            if company_key and comparison_key(entry.company) != company_key:
                continue
            if category_key and comparison_key(entry.category) != category_key:
                continue
            return entry
        return None


# ---------------------------------------------------------------------------
# Taxonomy persistence: load once, reuse across app restarts
# ---------------------------------------------------------------------------

def _taxonomy_paths(directory: str) -> Tuple[str, str]:
    return (os.path.join(directory, "taxonomy.parquet"),
            os.path.join(directory, "taxonomy_meta.json"))


def save_taxonomy(taxonomy: ProductTaxonomy, stats: Dict, directory: str = TAXONOMY_DIR) -> None:
    """Save the taxonomy snapshot (parquet) and its load stats (JSON)."""
    data_path, meta_path = _taxonomy_paths(directory)
    os.makedirs(directory, exist_ok=True)
    df_save = taxonomy.to_dataframe()
    for col in EXPOSURE_FIELDS:
        df_save[col] = pd.to_numeric(df_save[col], errors='coerce')
    df_save.to_parquet(data_path, index=False, engine='pyarrow')
    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2, ensure_ascii=False, default=str)


def load_taxonomy(directory: str = TAXONOMY_DIR) -> Optional[Tuple[ProductTaxonomy, Dict]]:
    """Load a previously saved taxonomy. Returns None if not found."""
    if not taxonomy_exists(directory):
        return None
    data_path, meta_path = _taxonomy_paths(directory)
    df = pd.read_parquet(data_path, engine='pyarrow')
    with open(meta_path, "r", encoding="utf-8") as f:
        stats = json.load(f)
    return ProductTaxonomy.from_dataframe(df), stats


def taxonomy_exists(directory: str = TAXONOMY_DIR) -> bool:
    return all(os.path.exists(p) for p in _taxonomy_paths(directory))


def delete_taxonomy(directory: str = TAXONOMY_DIR) -> None:
    for path in _taxonomy_paths(directory):
        if os.path.exists(path):
            os.remove(path)
