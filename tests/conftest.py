"""
Shared pytest fixtures: a small product taxonomy and a clearing-house export grid.
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from taxonomy import ProductTaxonomy, TaxonomyEntry


@pytest.fixture
def taxonomy():
    """Two companies, two categories, one unnumbered track."""
    return ProductTaxonomy([
        TaxonomyEntry(
            company='הראל', category='קרן פנסיה', track_name='הראל פנסיה כללי',
            product_number='90210', exposure_stocks=40.0, exposure_bonds=50.0,
            asset_composition='מניות 40%, אג"ח 50%',
        ),
        TaxonomyEntry(
            company='הראל', category='קרן פנסיה', track_name='הראל פנסיה מניות',
            old_track_name='הראל מניות ישן', product_number='1234', exposure_stocks=95.0,
        ),
        TaxonomyEntry(
            company='הראל', category='קרן פנסיה', track_name='מסלול 777 לבני 50',
            exposure_stocks=60.0,
        ),
        TaxonomyEntry(
            company='מגדל', category='קרן השתלמות', track_name='מגדל השתלמות אג"ח',
            product_number='5555', exposure_bonds=85.0, exposure_israel=70.0,
        ),
    ])


@pytest.fixture
def export_grid():
    """One clearing-house sheet: title rows, then the header row, then products."""
    return [
        ['דוח ריכוז מוצרים פיננסיים'],
        [],
        ['סוג מוצר', 'יצרן', 'שם מוצר', 'צבירה', 'פרמיה חודשית',
         'דמי ניהול מהפקדה', 'דמי ניהול מצבירה', 'מסלולי השקעה', 'מספר פוליסה'],
        ['קרן פנסיה', 'הראל', 'הראל פנסיה', '₪100,000', '', '1.5%', '0.2%', 'מניות', '111'],
        ['קרן פנסיה', 'הראל', 'הראל פנסיה', '₪150,000', '', '', '', '', '111'],
        ['קרן השתלמות', 'מגדל', 'מגדל השתלמות', '50,000', '', '', '0.5%', 'כללי (5555)', '222'],
        ['ביטוח חיים', 'כלל', 'ריסק', '', '₪250', '', '', '', '333'],
        ['סה"כ', '', '', '300,000', '', '', '', '', ''],
    ]
