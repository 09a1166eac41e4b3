"""
xelhua - helpers for reading, writing, styling and evaluating Excel workbooks.

The package wraps openpyxl (OOXML) and xlrd (legacy .xls import). The most
used helpers are re-exported here:

    from xelhua import create_workbook, get_sheet, get_cell, write, write_out
"""

from typing import Dict

from openpyxl.workbook.workbook import Workbook

from xelhua.evaluation_service import ExcelError, FormulaEvaluator
from xelhua.excel_base import (
    CellType, Row, auto_width, create_sheet, create_workbook, get_cell,
    get_cell_by_header, get_cell_or_none, get_cell_type, get_row, get_row_or_none,
    get_sheet, get_sheet_or_none, get_workbook, merge_cells, read_boolean, read_comment,
    read_date, read_datetime, read_numeric, read_string, set_default_height,
    set_default_width, set_height, set_width, write, write_formula, write_out,
)
from xelhua.exceptions import (
    CellTypeError, CircularReferenceError, FormulaError, FormulaSyntaxError,
    HeaderNotFoundError, MergeRegionError, StreamingError, WorkbookFormatError, XelhuaError,
)
from xelhua.formula_service import FormulaParser
from xelhua.storage import open_workbook, save_workbook
from xelhua.style_service import (
    BorderStyle, CellStyle, CellStyleBuilder, FillPattern, FontBuilder,
    HorizontalAlignment, IndexedColor, StyleRegistry, VerticalAlignment,
)

__title__ = "xelhua"
__version__ = "1.1.0"
__vendor__ = "ELEX co.,pte."
__module_name__ = "com.elex_project.dwarf"


def get_manifest() -> Dict[str, str]:
    """Manifest attributes published with the package."""
    return {
        "Implementation-Title": __title__,
        "Implementation-Version": __version__,
        "Implementation-Vendor": __vendor__,
        "Automatic-Module-Name": __module_name__,
    }


__all__ = [
    'Workbook', 'get_manifest',
    'open_workbook', 'save_workbook', 'get_workbook', 'create_workbook', 'write_out',
    'CellType', 'Row', 'get_sheet', 'get_sheet_or_none', 'create_sheet',
    'get_row', 'get_row_or_none', 'get_cell', 'get_cell_or_none', 'get_cell_by_header',
    'get_cell_type', 'read_string', 'read_numeric', 'read_boolean', 'read_datetime',
    'read_date', 'read_comment', 'write', 'write_formula', 'merge_cells',
    'set_width', 'set_height', 'set_default_width', 'set_default_height', 'auto_width',
    'FontBuilder', 'CellStyle', 'CellStyleBuilder', 'StyleRegistry', 'IndexedColor',
    'FillPattern', 'HorizontalAlignment', 'VerticalAlignment', 'BorderStyle',
    'FormulaParser', 'FormulaEvaluator', 'ExcelError',
    'XelhuaError', 'CellTypeError', 'HeaderNotFoundError', 'MergeRegionError',
    'WorkbookFormatError', 'FormulaError', 'FormulaSyntaxError', 'CircularReferenceError',
    'StreamingError',
]
