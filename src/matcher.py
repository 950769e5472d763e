"""
Core matching engine for resolving imported portfolio rows against the product taxonomy.

Matching Approach:
    - Every string comparison goes through normalize_text() / comparison_key() so that
      case, RTL direction marks, quote marks and spacing never cause false negatives
    - Fund / track numbers are pulled out of free text first: clearing-house exports
      usually write them in parentheses, e.g. "כללי (123456)"
    - Category, company and sub-category are matched with a small cascade:
      exact key -> containment -> rapidfuzz token_set_ratio above a threshold

Resolution Tiers (first success wins):
    1. DIRECT NUMBER:  any candidate number is a known product number -> that entry,
       regardless of what the raw category/company text says
    2. SCOPED NUMBER:  category + company resolve, and a candidate number appears
       inside one of that pair's sub-category names
    3. SCOPED FUZZY:   category + company resolve; best sub-category from that
       pair's list (never empty, since the list is not empty)
    4. GLOBAL:         category or company did not resolve, or the pair lists no
       tracks; sub-category matched against the whole taxonomy, exposure
       lookup fills in what it can

Failure Handling:
    - A miss at every tier is a NoMatch, not an error; callers fall back to raw text
    - Exceptions raised by the taxonomy source are logged and treated as a tier miss
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, ClassVar, Iterable, List, Optional, Protocol

from rapidfuzz import fuzz, process

from config import FUZZY_MATCH_THRESHOLD

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TIER_DIRECT_NUMBER = "direct_number"
TIER_SCOPED_NUMBER = "scoped_number"
TIER_SCOPED_FUZZY = "scoped_fuzzy"
TIER_GLOBAL_FALLBACK = "global_fallback"
TIER_NO_MATCH = "no_match"

EXPOSURE_FIELDS = (
    "exposure_stocks",
    "exposure_bonds",
    "exposure_foreign_currency",
    "exposure_foreign_investments",
    "exposure_israel",
    "exposure_illiquid_assets",
)

# Track names that count as "the default track" when the row names no track
GENERIC_TRACK_TERMS = ("כללי", "רגיל", "סטנדרטי", "בסיסי", "general")

# LRM, RLM, LRE/RLE/PDF/LRO/RLO, LRI/RLI/FSI/PDI, ALM
_DIRECTION_MARKS = re.compile("[\u200e\u200f\u202a-\u202e\u2066-\u2069\u061c]")
_QUOTE_MARKS = re.compile("['\"\u05f3\u05f4\u2018\u2019\u201c\u201d]")
_WHITESPACE = re.compile(r"\s+")

_PAREN_NUMBER = re.compile(r"\(\s*(\d+)\s*\)")
_NUMBER_RUN = re.compile(r"\d+")


# ---------------------------------------------------------------------------
# Text normalization
# ---------------------------------------------------------------------------

def normalize_text(value) -> str:
    """
    Normalize a raw cell value for storage and display.

    Steps:
        1. None / NaN -> ""
        2. Non-strings are stringified (integral floats lose the ".0", so an
           Excel cell holding 90210.0 becomes "90210")
        3. Remove bidirectional control marks
        4. Collapse whitespace runs to a single space and trim

    Idempotent: normalize_text(normalize_text(x)) == normalize_text(x).
    """
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            value = int(value)
    if not isinstance(value, str):
        value = str(value)

    s = _DIRECTION_MARKS.sub("", value)
    s = _WHITESPACE.sub(" ", s).strip()
    return s


def comparison_key(value) -> str:
    """Lowercased, quote-free form of normalize_text() used for equality checks."""
    s = _QUOTE_MARKS.sub("", normalize_text(value)).lower()
    return _WHITESPACE.sub(" ", s).strip()


def _unique(values: Iterable[str]) -> List[str]:
    """Drop duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result


# ---------------------------------------------------------------------------
# Identifier extraction
# ---------------------------------------------------------------------------

def extract_numbers(text) -> List[str]:
    """
    Pull candidate product / fund numbers out of free text, most confident first.

    Parenthesized numbers come first in order of appearance, then the remaining
    bare numeric runs longest-first (a longer number is a more specific id than a
    short code). Duplicates are dropped.

    Examples:
        'כללי (123456)'                   -> ['123456']
        'מסלול מניות (555) עם 2024 שנים'  -> ['555', '2024']
        'קרן 12 מסלול 7788'               -> ['7788', '12']
    """
    s = normalize_text(text)
    if not s:
        return []
    in_parens = _PAREN_NUMBER.findall(s)
    bare = sorted(_NUMBER_RUN.findall(s), key=len, reverse=True)
    return _unique(in_parens + bare)


def collect_candidate_numbers(
    sub_category=None,
    product_type=None,
    product_number=None,
    company=None,
) -> List[str]:
    """
    Collect candidate numbers across the fields of a row, in field priority order:
    sub-category / track text, product type, explicit product number, company.
    """
    numbers: List[str] = []
    for field in (sub_category, product_type, product_number, company):
        numbers.extend(extract_numbers(field))
    return _unique(numbers)


# ---------------------------------------------------------------------------
# Dimension matching (category / company / sub-category)
# ---------------------------------------------------------------------------

def _keyed_candidates(candidates: Iterable[str]) -> List[tuple]:
    keyed = []
    for cand in candidates or []:
        key = comparison_key(cand)
        if key:
            keyed.append((cand, key))
    return keyed


def match_dimension(
    raw,
    candidates: Iterable[str],
    threshold: int = FUZZY_MATCH_THRESHOLD,
) -> Optional[str]:
    """
    Match raw text against one taxonomy dimension.

    Cascade:
        1. exact comparison key
        2. first candidate containing the raw text, or contained by it
        3. highest rapidfuzz token_set_ratio at or above `threshold`
           (first listed candidate wins ties)

    Returns the candidate as listed in the taxonomy, or None. Never raises.
    """
    key = comparison_key(raw)
    if not key:
        return None
    keyed = _keyed_candidates(candidates)
    if not keyed:
        return None

    for cand, cand_key in keyed:
        if cand_key == key:
            return cand

    for cand, cand_key in keyed:
        if key in cand_key or cand_key in key:
            return cand

    best = process.extractOne(
        key, [k for _, k in keyed], scorer=fuzz.token_set_ratio, score_cutoff=threshold
    )
    if best is None:
        return None
    return keyed[best[2]][0]


def match_category(raw, categories: Iterable[str], threshold: int = FUZZY_MATCH_THRESHOLD) -> Optional[str]:
    return match_dimension(raw, categories, threshold)


def match_company(raw, companies: Iterable[str], threshold: int = FUZZY_MATCH_THRESHOLD) -> Optional[str]:
    return match_dimension(raw, companies, threshold)


def match_sub_category(raw, sub_categories: Iterable[str], threshold: int = FUZZY_MATCH_THRESHOLD) -> Optional[str]:
    return match_dimension(raw, sub_categories, threshold)


def pick_sub_category(raw, sub_categories: Iterable[str], threshold: int = FUZZY_MATCH_THRESHOLD) -> Optional[str]:
    """
    Always pick a sub-category from a non-empty scoped list.

    Uses match_dimension() first; below the threshold the best scorer is taken
    anyway. With no raw text, the first generic ("כללי") track is preferred,
    else the first listed one. Returns None only for an empty list.
    """
    keyed = _keyed_candidates(sub_categories)
    if not keyed:
        return None

    key = comparison_key(raw)
    if not key:
        for cand, cand_key in keyed:
            if any(term in cand_key for term in GENERIC_TRACK_TERMS):
                return cand
        return keyed[0][0]

    matched = match_dimension(raw, [c for c, _ in keyed], threshold)
    if matched is not None:
        return matched

    best = process.extractOne(key, [k for _, k in keyed], scorer=fuzz.token_set_ratio, score_cutoff=0)
    return keyed[best[2]][0] if best is not None else keyed[0][0]


# ---------------------------------------------------------------------------
# Taxonomy source contract
# ---------------------------------------------------------------------------

class TaxonomySource(Protocol):
    """Read-only taxonomy queries used by the resolver (see taxonomy.ProductTaxonomy)."""

    def get_all_categories(self) -> List[str]: ...

    def get_all_companies(self) -> List[str]: ...

    def get_sub_categories_for_category_and_company(self, category: str, company: str) -> List[str]: ...

    def get_all_sub_categories(self) -> List[str]: ...

    def get_exposure_data(self, company=None, category=None, sub_category=None, product_number=None): ...


# ---------------------------------------------------------------------------
# Resolution results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedMatch:
    """Base result of resolve_product(). Any field may be None."""

    category: Optional[str] = None
    sub_category: Optional[str] = None
    company: Optional[str] = None
    product_number: Optional[str] = None
    exposure_stocks: Optional[float] = None
    exposure_bonds: Optional[float] = None
    exposure_foreign_currency: Optional[float] = None
    exposure_foreign_investments: Optional[float] = None
    exposure_israel: Optional[float] = None
    exposure_illiquid_assets: Optional[float] = None
    asset_composition: Optional[str] = None

    tier: ClassVar[str] = TIER_NO_MATCH

    @property
    def has_exposure(self) -> bool:
        return any(getattr(self, f) is not None for f in EXPOSURE_FIELDS)

    @classmethod
    def build(cls, entry=None, **fields) -> "ResolvedMatch":
        """Create a result, copying exposure data from a taxonomy entry when given."""
        if entry is not None:
            for name in EXPOSURE_FIELDS:
                fields.setdefault(name, getattr(entry, name, None))
            fields.setdefault("asset_composition", getattr(entry, "asset_composition", None) or None)
        return cls(**fields)


@dataclass(frozen=True)
class DirectNumberMatch(ResolvedMatch):
    tier: ClassVar[str] = TIER_DIRECT_NUMBER


@dataclass(frozen=True)
class ScopedNumberMatch(ResolvedMatch):
    tier: ClassVar[str] = TIER_SCOPED_NUMBER


@dataclass(frozen=True)
class ScopedFuzzyMatch(ResolvedMatch):
    tier: ClassVar[str] = TIER_SCOPED_FUZZY


@dataclass(frozen=True)
class GlobalFallback(ResolvedMatch):
    tier: ClassVar[str] = TIER_GLOBAL_FALLBACK


@dataclass(frozen=True)
class NoMatch(ResolvedMatch):
    tier: ClassVar[str] = TIER_NO_MATCH


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

def _safe_query(label: str, fn: Callable, *args, default=None):
    """Call a taxonomy query; any exception is logged and becomes `default`."""
    try:
        result = fn(*args)
    except Exception:
        logger.warning("Taxonomy query %s%r failed; treating as a miss", label, args, exc_info=True)
        return default
    return default if result is None else result


def _entry_value(entry, name: str) -> Optional[str]:
    value = normalize_text(getattr(entry, name, None))
    return value or None


def _try_direct_number(taxonomy: TaxonomySource, numbers: List[str]) -> Optional[ResolvedMatch]:
    for number in numbers:
        entry = _safe_query("get_exposure_data", taxonomy.get_exposure_data, None, None, None, number)
        if entry is None:
            continue
        logger.debug("Tier 1 hit: product number %s", number, extra={"tier": TIER_DIRECT_NUMBER})
        return DirectNumberMatch.build(
            entry,
            category=_entry_value(entry, "category"),
            sub_category=_entry_value(entry, "track_name"),
            company=_entry_value(entry, "company"),
            product_number=_entry_value(entry, "product_number") or number,
        )
    return None


def resolve_product(
    taxonomy: TaxonomySource,
    category,
    sub_category,
    company,
    product_number=None,
    threshold: int = FUZZY_MATCH_THRESHOLD,
) -> ResolvedMatch:
    """
    Resolve a raw (category, sub-category, company, product number) against the taxonomy.

    Returns one of DirectNumberMatch, ScopedNumberMatch, ScopedFuzzyMatch,
    GlobalFallback or NoMatch. See the module docstring for the tier order.
    """
    numbers = collect_candidate_numbers(sub_category, category, product_number, company)
    first_number = numbers[0] if numbers else None

    # --- Tier 1: direct number lookup ---
    direct = _try_direct_number(taxonomy, numbers)
    if direct is not None:
        return direct
    if numbers:
        logger.debug("No taxonomy entry for numbers %s", ", ".join(numbers))

    categories = _safe_query("get_all_categories", taxonomy.get_all_categories, default=[])
    companies = _safe_query("get_all_companies", taxonomy.get_all_companies, default=[])
    matched_category = match_category(category, categories, threshold)
    matched_company = match_company(company, companies, threshold)

    scoped = []
    if matched_category and matched_company:
        scoped = _safe_query(
            "get_sub_categories_for_category_and_company",
            taxonomy.get_sub_categories_for_category_and_company,
            matched_category, matched_company,
            default=[],
        )
        if not scoped:
            logger.debug("No tracks listed for %s / %s; searching all tracks",
                         matched_category, matched_company)

    if scoped:
        # --- Tier 2: candidate number inside a scoped sub-category name ---
        for number in numbers:
            for sub in scoped:
                if number in normalize_text(sub):
                    entry = _safe_query(
                        "get_exposure_data", taxonomy.get_exposure_data,
                        matched_company, matched_category, sub, number,
                    )
                    logger.debug("Tier 2 hit: '%s' contains %s", sub, number,
                                 extra={"tier": TIER_SCOPED_NUMBER})
                    return ScopedNumberMatch.build(
                        entry,
                        category=matched_category,
                        sub_category=sub,
                        company=matched_company,
                        product_number=number,
                    )

        # --- Tier 3: best sub-category within the scope ---
        matched_sub = pick_sub_category(sub_category, scoped, threshold)
        entry = _safe_query(
            "get_exposure_data", taxonomy.get_exposure_data,
            matched_company, matched_category, matched_sub, first_number,
        )
        logger.debug("Tier 3: %s / %s -> '%s'", matched_category, matched_company, matched_sub,
                     extra={"tier": TIER_SCOPED_FUZZY})
        return ScopedFuzzyMatch.build(
            entry,
            category=matched_category,
            sub_category=matched_sub,
            company=matched_company,
            product_number=_entry_value(entry, "product_number") if entry is not None else None,
        )

    # --- Tier 4: global sub-category fallback ---
    all_subs = _safe_query("get_all_sub_categories", taxonomy.get_all_sub_categories, default=[])
    matched_sub = match_sub_category(sub_category, all_subs, threshold)
    entry = None
    if matched_sub is not None or matched_company or matched_category:
        entry = _safe_query(
            "get_exposure_data", taxonomy.get_exposure_data,
            matched_company, matched_category, matched_sub, first_number,
        )

    result_category = matched_category or (_entry_value(entry, "category") if entry is not None else None)
    result_company = matched_company or (_entry_value(entry, "company") if entry is not None else None)

    if not (result_category or result_company or matched_sub):
        logger.debug("No match for category=%r company=%r sub_category=%r",
                     category, company, sub_category, extra={"tier": TIER_NO_MATCH})
        return NoMatch()

    logger.debug("Tier 4: category=%s company=%s sub_category=%s",
                 result_category, result_company, matched_sub, extra={"tier": TIER_GLOBAL_FALLBACK})
    return GlobalFallback.build(
        entry,
        category=result_category,
        sub_category=matched_sub,
        company=result_company,
        product_number=_entry_value(entry, "product_number") if entry is not None else None,
    )
