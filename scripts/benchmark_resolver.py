"""
Micro-benchmark for the portfolio import pipeline.

Tests:
1. normalize_text() / extract_numbers() hot path
2. resolve_product() per tier on a synthetic taxonomy
3. import_portfolio() end-to-end on a synthetic export

Usage:
    python scripts/benchmark_resolver.py
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
import time
import numpy as np
import pandas as pd
from importer import import_portfolio
from matcher import extract_numbers, normalize_text, resolve_product
from taxonomy import ProductTaxonomy, load_and_clean_taxonomy

CATEGORIES = ['קרן פנסיה', 'קרן השתלמות', 'קופת גמל', 'ביטוח מנהלים']
COMPANIES = ['הראל', 'מגדל', 'כלל', 'הפניקס', 'מנורה מבטחים', 'אלטשולר שחם', 'מיטב', 'מור']
TRACKS = ['מסלול כללי', 'מסלול מניות', 'מסלול אג"ח', 'מסלול שקלי טווח קצר', 'מסלול הלכה', 'מסלול S&P500']

rng = np.random.default_rng(42)


def generate_synthetic_taxonomy(n_rows: int = 5000) -> pd.DataFrame:
    """Synthetic taxonomy: one row per (category, company, track, number)."""
    data = []
    for i in range(n_rows):
        stocks = float(rng.uniform(0, 100))
        data.append({
            'company': rng.choice(COMPANIES),
            'category': rng.choice(CATEGORIES),
            'track_name': f"{rng.choice(TRACKS)} {i}",
            'product_number': str(100000 + i),
            'exposure_stocks': round(stocks, 2),
            'exposure_bonds': round(100 - stocks, 2),
            'exposure_foreign_currency': round(float(rng.uniform(0, 40)), 2),
            'exposure_foreign_investments': round(float(rng.uniform(0, 60)), 2),
        })
    return pd.DataFrame(data)


def generate_synthetic_export(n_rows: int = 1000, n_taxonomy: int = 5000) -> dict:
    """Synthetic clearing-house export: title row, header row, data rows."""
    grid = [['דוח ריכוז מוצרים'], ['סוג מוצר', 'יצרן', 'שם מוצר', 'צבירה', 'דמי ניהול מצבירה', 'מסלולי השקעה', 'מספר פוליסה']]
    for i in range(n_rows):
        track = rng.choice(TRACKS)
        if rng.random() < 0.4:
            track = f"{track} ({100000 + int(rng.integers(0, n_taxonomy))})"
        grid.append([
            rng.choice(CATEGORIES),
            rng.choice(COMPANIES),
            f"מוצר {i}",
            f"₪{int(rng.integers(1000, 900000)):,}",
            f"{rng.uniform(0, 1.5):.2f}%",
            track,
            str(int(rng.integers(10000000, 99999999))),
        ])
    return {'Products': grid}


def benchmark_function(func, *args, **kwargs):
    """Benchmark a function and return (result, elapsed_ms)."""
    start = time.perf_counter()
    result = func(*args, **kwargs)
    end = time.perf_counter()
    elapsed_ms = (end - start) * 1000
    return result, elapsed_ms


def benchmark_text(n_iterations: int = 10000):
    """Benchmark normalize_text() and extract_numbers()."""
    test_strings = [
        "מסלול מניות (555) עם 2024 שנים",
        "‏קרן   השתלמות‎  כללי (123456)",
        "הראל פנסיה מסלול לבני 50 ומטה",
    ]

    print("\n" + "="*70)
    print("BENCHMARK: normalize_text() / extract_numbers()")
    print("="*70)

    for func in (normalize_text, extract_numbers):
        for test_str in test_strings:
            start = time.perf_counter()
            for _ in range(n_iterations):
                _ = func(test_str)
            elapsed_ms = (time.perf_counter() - start) * 1000
            print(f"\n{func.__name__}: {normalize_text(test_str)}")
            print(f"  Per call: {elapsed_ms * 1000 / n_iterations:.2f}μs")


def benchmark_resolver(taxonomy: ProductTaxonomy):
    """Benchmark resolve_product() inputs that stop at each tier."""
    print("\n" + "="*70)
    print("BENCHMARK: resolve_product() per tier")
    print("="*70)

    cases = [
        ('tier 1', ('קרן פנסיה', 'כללי (100007)', 'הראל')),
        ('tier 2/3', ('קרן פנסיה', 'מסלול מניות', 'הראל')),
        ('tier 4', ('מוצר לא מוכר', 'מסלול כללי', 'חברה לא מוכרת')),
    ]
    n_iterations = 200
    for label, args in cases:
        start = time.perf_counter()
        for _ in range(n_iterations):
            result = resolve_product(taxonomy, *args)
        elapsed_ms = (time.perf_counter() - start) * 1000
        print(f"\n{label}: {args} -> {result.tier}")
        print(f"  Per call: {elapsed_ms / n_iterations:.2f}ms")


def benchmark_import(taxonomy: ProductTaxonomy):
    """Benchmark import_portfolio() end-to-end on 1k rows."""
    print("\n" + "="*70)
    print("BENCHMARK: import_portfolio() - 1k row export")
    print("="*70)

    workbook = generate_synthetic_export(1000, len(taxonomy))
    result, elapsed = benchmark_function(import_portfolio, workbook, taxonomy)
    print(f"  Import time: {elapsed:.2f}ms")
    print(f"  Per-row time: {elapsed / max(len(result.resolved), 1):.2f}ms")

    tiers = pd.Series([p.match_tier for p in result.resolved]).value_counts()
    print(f"\nMatch tiers:")
    for tier, count in tiers.items():
        print(f"  {tier}: {count} ({count/len(result.resolved)*100:.1f}%)")


def main():
    """Run all benchmarks."""
    print("="*70)
    print("PORTFOLIO IMPORT PERFORMANCE BENCHMARK")
    print("="*70)

    df_raw = generate_synthetic_taxonomy(5000)
    (df_clean, _), clean_time = benchmark_function(load_and_clean_taxonomy, df_raw)
    taxonomy, index_time = benchmark_function(ProductTaxonomy.from_dataframe, df_clean)
    print(f"\nTaxonomy: {len(taxonomy):,} tracks (clean {clean_time:.2f}ms, index {index_time:.2f}ms)")

    benchmark_text(10000)
    benchmark_resolver(taxonomy)
    benchmark_import(taxonomy)

    print("\n" + "="*70)
    print("BENCHMARK COMPLETE")
    print("="*70)


if __name__ == '__main__':
    main()
