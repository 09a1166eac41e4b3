"""
Pytest configuration and fixtures for xelhua tests.
"""

import re
import zipfile
from pathlib import Path
from xml.sax.saxutils import escape

import pytest
from openpyxl import Workbook
from openpyxl.worksheet.datavalidation import DataValidation

from xelhua.config import Settings


def inject_cached_values(path: Path, values: dict, sheet_number: int = 1):
    """
    Store cached results in the formula cells of a saved workbook.

    openpyxl writes formula cells with an empty <v> element, as if the file
    had never been calculated. This fills them in the way Excel would, so
    data_only loads see the values.
    """
    member = f"xl/worksheets/sheet{sheet_number}.xml"
    with zipfile.ZipFile(path) as zf:
        entries = [(info, zf.read(info.filename)) for info in zf.infolist()]

    rewritten = []
    for info, data in entries:
        if info.filename == member:
            xml = data.decode('utf-8')
            for coord, value in values.items():
                if isinstance(value, bool):
                    type_attr, text = ' t="b"', '1' if value else '0'
                elif isinstance(value, (int, float)):
                    type_attr, text = '', repr(value)
                elif value.startswith('#'):
                    type_attr, text = ' t="e"', value
                else:
                    type_attr, text = ' t="str"', escape(value)

                pattern = re.compile(
                    rf'(<c r="{coord}")((?: s="\d+")?>\s*<f>[^<]*</f>\s*)<v\s*(?:/>|>\s*</v>)'
                )
                xml, count = pattern.subn(
                    lambda m: f'{m.group(1)}{type_attr}{m.group(2)}<v>{text}</v>', xml
                )
                assert count == 1, f"Formula cell {coord} not found in {member}"
            data = xml.encode('utf-8')
        rewritten.append((info, data))

    with zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED) as zf:
        for info, data in rewritten:
            zf.writestr(info, data)


@pytest.fixture
def settings():
    """Settings with default evaluation behaviour."""
    return Settings()


@pytest.fixture
def model_path(tmp_path):
    """
    Two-sheet cost model saved with Excel-style cached values.

    Inputs: line items in A/B, totals in B5:B8, a Yes/No dropdown on C2:C4
    and a merged notes header D1:E1.
    Summary: formulas over Inputs.
    """
    wb = Workbook()
    inputs = wb.active
    inputs.title = 'Inputs'
    inputs['A1'] = 'Item'
    inputs['B1'] = 'Amount'
    inputs['A2'], inputs['B2'] = 'Rent', 1200
    inputs['A3'], inputs['B3'] = 'Power', 300.5
    inputs['A4'], inputs['B4'] = 'Staff', 2500
    inputs['B5'] = '=SUM(B2:B4)'
    inputs['B6'] = '=B5*0.2'
    inputs['B7'] = '=IF(B5>3000,"high","low")'
    inputs['B8'] = '=B2/0'
    inputs['C2'] = 'Yes'
    inputs['D1'] = 'Notes'
    inputs.merge_cells('D1:E1')

    dv = DataValidation(type='list', formula1='"Yes,No"', allow_blank=True)
    inputs.add_data_validation(dv)
    dv.add('C2:C4')

    summary = wb.create_sheet('Summary')
    summary['A1'] = 'Total'
    summary['B1'] = '=Inputs!B5+Inputs!B6'
    summary['A2'] = 'Check'
    summary['B2'] = '=B1>4000'
    summary['A3'] = '=UPPER(A1)'

    path = tmp_path / 'model.xlsx'
    wb.save(path)
    inject_cached_values(path, {'B5': 4000.5, 'B6': 800.1, 'B7': 'high', 'B8': '#DIV/0!'},
                         sheet_number=1)
    inject_cached_values(path, {'B1': 4800.6, 'B2': True, 'A3': 'TOTAL'}, sheet_number=2)
    return path


@pytest.fixture
def circular_path(tmp_path):
    """Workbook with a two-cell circular reference (A1 = B1*0.1+10, B1 = A1)."""
    wb = Workbook()
    ws = wb.active
    ws.title = 'Loop'
    ws['A1'] = '=B1*0.1+10'
    ws['B1'] = '=A1'
    ws['C1'] = '=A1*2'

    path = tmp_path / 'circular.xlsx'
    wb.save(path)
    inject_cached_values(path, {'A1': 100 / 9, 'B1': 100 / 9, 'C1': 200 / 9})
    return path


@pytest.fixture
def mock_circular_cells():
    """Mock circular reference data for solver tests."""
    return {
        'Sheet1!A1': {
            'formula': '=B1+1',
            'depends_on': ['Sheet1!B1'],
        },
        'Sheet1!B1': {
            'formula': '=A1/2',
            'depends_on': ['Sheet1!A1'],
        }
    }
