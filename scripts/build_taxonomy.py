"""Rebuild the taxonomy snapshot (parquet) from the taxonomy Excel file.

Usage:
    python scripts/build_taxonomy.py path/to/products_taxonomy.xlsx [output_dir]
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
from pathlib import Path

from config import TAXONOMY_DIR
from taxonomy import ProductTaxonomy, save_taxonomy


def main(argv):
    if len(argv) < 2:
        print(__doc__)
        return 1

    taxonomy_file = Path(argv[1])
    output_dir = argv[2] if len(argv) > 2 else TAXONOMY_DIR

    if not taxonomy_file.exists():
        print(f"[ERROR] File not found: {taxonomy_file}")
        return 1

    print("=== REBUILDING PRODUCT TAXONOMY ===\n")
    print(f"Loading taxonomy from: {taxonomy_file}")

    taxonomy, stats = ProductTaxonomy.from_excel(taxonomy_file)

    print(f"Loaded {stats['final']:,} tracks ({stats['missing_dropped']} rows without company/category dropped)")
    for warning in stats['warnings']:
        print(f"  [WARN] {warning}")

    print("\nSample tracks:")
    for entry in taxonomy.entries[:5]:
        print(f"  {entry.product_number or '-':>8}  {entry.company} / {entry.category} / {entry.track_name}")

    save_taxonomy(taxonomy, stats, output_dir)

    print("\n" + "="*70)
    print("SUCCESS!")
    print("="*70)
    print(f"""
Taxonomy snapshot written to {output_dir}
- Tracks: {len(taxonomy):,}
- Categories: {len(taxonomy.get_all_categories())}
- Companies: {len(taxonomy.get_all_companies())}
- Sub-categories: {len(taxonomy.get_all_sub_categories())}
""")
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
