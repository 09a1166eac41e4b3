"""
Base helpers for manipulating Excel workbooks.

Thin, get-or-create style helpers over openpyxl's workbook model. Rows and
columns are zero-based everywhere in this module; openpyxl's one-based
indices are converted at the boundary.

Typical use:

    workbook = create_workbook()
    sheet = get_sheet(workbook, "Report")
    cell = get_cell(sheet, 0, 0)
    write(cell, "Hello")
    write_out(workbook, "build/report")   # -> build/report.xlsx
"""

import logging
import unicodedata
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional, Union

from openpyxl.cell.cell import Cell, MergedCell
from openpyxl.comments import Comment
from openpyxl.styles.numbers import is_date_format
from openpyxl.utils import get_column_letter
from openpyxl.utils.datetime import CALENDAR_WINDOWS_1900, from_excel, to_excel
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from xelhua.config import Settings, get_settings
from xelhua.evaluation_service import ExcelError, FormulaEvaluator
from xelhua.exceptions import CellTypeError, FormulaError, HeaderNotFoundError, MergeRegionError
from xelhua.storage import create_workbook, open_workbook, save_workbook, stored_cells

logger = logging.getLogger(__name__)

MAX_WIDTH_CHARS = 255
MAX_HEIGHT_POINTS = 409


class CellType(Enum):
    """Kind of content held by a cell."""

    NUMERIC = 'numeric'
    STRING = 'string'
    FORMULA = 'formula'
    BOOLEAN = 'boolean'
    BLANK = 'blank'
    ERROR = 'error'


class Row:
    """
    Handle to one zero-based row of a worksheet.

    openpyxl has no row object; a row exists while it holds a cell or a
    row dimension entry.
    """

    def __init__(self, sheet: Worksheet, index: int):
        if index < 0:
            raise ValueError(f"Row number must be non-negative: {index}")
        self.sheet = sheet
        self.index = index

    @property
    def row_num(self) -> int:
        """One-based row number as shown in Excel."""
        return self.index + 1

    def cell(self, col: int) -> Cell:
        return get_cell(self, col)

    def cell_or_none(self, col: int) -> Optional[Cell]:
        return get_cell_or_none(self, col)

    def __iter__(self) -> Iterator[Cell]:
        cells = stored_cells(self.sheet)
        for key in sorted(k for k in cells if k[0] == self.row_num):
            yield cells[key]

    @property
    def height(self) -> Optional[float]:
        """Row height in points, or None when the sheet default applies."""
        dimension = self.sheet.row_dimensions.get(self.row_num)
        return None if dimension is None else dimension.height

    @height.setter
    def height(self, points: float):
        set_height(self, points)

    def __eq__(self, other) -> bool:
        return isinstance(other, Row) and other.sheet is self.sheet and other.index == self.index

    def __hash__(self) -> int:
        return hash((id(self.sheet), self.index))

    def __repr__(self) -> str:
        return f"<Row {self.sheet.title!r}:{self.row_num}>"


# ============================================================================
# Sheets
# ============================================================================

def get_sheet(workbook: Workbook, key: Union[str, int]) -> Worksheet:
    """
    Get a sheet by name or zero-based index, or create a new one.

    A missing name creates a sheet with that name; an out-of-range index
    creates a sheet with a default name.
    """
    sheet = get_sheet_or_none(workbook, key)
    if sheet is not None:
        return sheet
    if isinstance(key, int):
        sheet = workbook.create_sheet()
    else:
        sheet = workbook.create_sheet(key)
    logger.debug(f"Created sheet {sheet.title!r}")
    return sheet


def get_sheet_or_none(workbook: Workbook, key: Union[str, int]) -> Optional[Worksheet]:
    """Get a sheet by name or zero-based index, or return None."""
    if isinstance(key, int):
        sheets = workbook.worksheets
        if 0 <= key < len(sheets):
            return sheets[key]
        return None
    if key in workbook.sheetnames:
        return workbook[key]
    return None


def create_sheet(workbook: Workbook, name: Optional[str] = None) -> Worksheet:
    """Create a new sheet at the end of the workbook."""
    return workbook.create_sheet(name)


# ============================================================================
# Rows and cells
# ============================================================================

def get_row(sheet: Worksheet, row_num: int) -> Row:
    """Get a row from sheet, or create a new one."""
    row = get_row_or_none(sheet, row_num)
    if row is not None:
        return row
    row = Row(sheet, row_num)
    # Accessing the dimension registers the row in the sheet
    sheet.row_dimensions[row.row_num]
    return row


def get_row_or_none(sheet: Worksheet, row_num: int) -> Optional[Row]:
    """Get a row from sheet, or None if it holds nothing."""
    if row_num < 0:
        raise ValueError(f"Row number must be non-negative: {row_num}")
    target = row_num + 1
    if target in sheet.row_dimensions or any(r == target for r, _ in stored_cells(sheet)):
        return Row(sheet, row_num)
    return None


def get_cell(target: Union[Row, Worksheet], *args) -> Cell:
    """
    Get a cell, or create a new one.

    Forms:
        get_cell(row, col_num)
        get_cell(sheet, row_num, col_num)
        get_cell(row, "Header name", header_row)
    """
    if isinstance(target, Worksheet):
        row_num, col_num = args
        return get_cell(get_row(target, row_num), col_num)

    if len(args) == 2 and isinstance(args[0], str):
        return get_cell_by_header(target, args[0], args[1])

    (col_num,) = args
    if col_num < 0:
        raise ValueError(f"Column number must be non-negative: {col_num}")
    return target.sheet.cell(row=target.row_num, column=col_num + 1)


def get_cell_or_none(row: Row, col_num: int) -> Optional[Cell]:
    """Get a cell from row, or None."""
    if col_num < 0:
        raise ValueError(f"Column number must be non-negative: {col_num}")
    return stored_cells(row.sheet).get((row.row_num, col_num + 1))


def header_name(cell: Cell) -> str:
    """Column name a header cell stands for."""
    cell_type = get_cell_type(cell)
    if cell_type == CellType.NUMERIC:
        return str(read_numeric(cell))
    if cell_type == CellType.STRING:
        return str(cell.value)
    if cell_type == CellType.BOOLEAN:
        return 'true' if cell.value else 'false'
    if cell_type == CellType.FORMULA:
        result = evaluate(cell)
        return result if isinstance(result, str) else ''
    return ''


def get_cell_by_header(row: Row, name: str, header_row: Row) -> Cell:
    """
    Get a cell of row by the name of its column in a header row.

    Args:
        row: row to get a cell from
        name: column name in the header row
        header_row: header row with names

    Returns:
        the matching cell, created if needed

    Raises:
        HeaderNotFoundError: no header cell carries that name
    """
    for header_cell in header_row:
        try:
            column_name = header_name(header_cell)
        except (CellTypeError, FormulaError) as e:
            logger.debug(f"Skipping header cell {header_cell.coordinate}: {e}")
            continue
        if column_name == name:
            return get_cell(row, header_cell.column - 1)
    raise HeaderNotFoundError(name)


# ============================================================================
# Reading
# ============================================================================

def get_cell_type(cell: Cell) -> CellType:
    """Return the kind of content held by a cell."""
    data_type = cell.data_type
    if data_type == 'f':
        return CellType.FORMULA
    if data_type == 'b':
        return CellType.BOOLEAN
    if data_type == 'e':
        return CellType.ERROR
    if data_type in ('s', 'inlineStr'):
        return CellType.STRING if cell.value is not None else CellType.BLANK
    if cell.value is None:
        return CellType.BLANK
    return CellType.NUMERIC


def evaluate(cell: Cell):
    """Evaluate a formula cell with the native evaluator."""
    workbook = cell.parent.parent
    evaluator = FormulaEvaluator(workbook)
    return evaluator.evaluate_cell(f"{cell.parent.title}!{cell.coordinate}")


def _epoch(cell: Cell):
    return getattr(cell.parent.parent, 'epoch', CALENDAR_WINDOWS_1900)


def _type_error(expected: str, found: str, cell: Cell) -> CellTypeError:
    return CellTypeError(f"Cannot get a {expected} value from a {found} cell",
                         cell=f"{cell.parent.title}!{cell.coordinate}")


def read_string(cell: Cell) -> str:
    """
    Read string value from a cell.

    Blank cells read as ''. Formula cells are evaluated.

    Raises:
        CellTypeError: the cell holds a number, boolean or error
    """
    cell_type = get_cell_type(cell)
    if cell_type == CellType.STRING:
        return str(cell.value)
    if cell_type == CellType.BLANK:
        return ''
    if cell_type == CellType.FORMULA:
        result = evaluate(cell)
        if isinstance(result, str):
            return result
        raise _type_error('STRING', f"{_result_kind(result)} formula", cell)
    raise _type_error('STRING', cell_type.name, cell)


def read_numeric(cell: Cell) -> float:
    """
    Read numeric value as float from a cell.

    Blank cells read as 0.0 and date cells as their Excel serial number.
    Formula cells are evaluated.

    Raises:
        CellTypeError: the cell holds text, a boolean or an error
    """
    cell_type = get_cell_type(cell)
    if cell_type == CellType.NUMERIC:
        value = cell.value
        if isinstance(value, (datetime, date, time)):
            return float(to_excel(value, _epoch(cell)))
        return float(value)
    if cell_type == CellType.BLANK:
        return 0.0
    if cell_type == CellType.FORMULA:
        result = evaluate(cell)
        if isinstance(result, (int, float)) and not isinstance(result, bool):
            return float(result)
        raise _type_error('NUMERIC', f"{_result_kind(result)} formula", cell)
    raise _type_error('NUMERIC', cell_type.name, cell)


def read_boolean(cell: Cell) -> bool:
    """
    Read boolean value from a cell.

    Raises:
        CellTypeError: the cell holds a number, text or an error
    """
    cell_type = get_cell_type(cell)
    if cell_type == CellType.BOOLEAN:
        return bool(cell.value)
    if cell_type == CellType.BLANK:
        return False
    if cell_type == CellType.FORMULA:
        result = evaluate(cell)
        if isinstance(result, bool):
            return result
        raise _type_error('BOOLEAN', f"{_result_kind(result)} formula", cell)
    raise _type_error('BOOLEAN', cell_type.name, cell)


def _result_kind(result) -> str:
    if isinstance(result, bool):
        return 'BOOLEAN'
    if isinstance(result, ExcelError):
        return 'ERROR'
    if isinstance(result, str):
        return 'STRING'
    return 'NUMERIC'


def read_datetime(cell: Cell) -> datetime:
    """
    Read a date-time from a date-formatted cell.

    Raises:
        CellTypeError: the cell is not formatted as a date
    """
    value = cell.value
    if cell.data_type == 'f' and is_date_format(cell.number_format):
        value = from_excel(read_numeric(cell), _epoch(cell))
    elif not cell.is_date:
        raise CellTypeError("Cell is not formatted as a date.",
                            cell=f"{cell.parent.title}!{cell.coordinate}")

    if isinstance(value, (int, float)):
        value = from_excel(value, _epoch(cell))
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, time):
        return datetime.combine(date(1899, 12, 31), value)
    raise CellTypeError("Cell is not formatted as a date.",
                        cell=f"{cell.parent.title}!{cell.coordinate}",
                        details=f"value {value!r}")


def read_date(cell: Cell) -> date:
    """Read a date from a date-formatted cell."""
    return read_datetime(cell).date()


def read_comment(cell: Cell) -> Optional[Comment]:
    """Read the comment attached to a cell, if any."""
    return cell.comment


# ============================================================================
# Writing
# ============================================================================

def write(cell: Cell, value, number_format: Optional[str] = None,
          settings: Optional[Settings] = None):
    """
    Write a value to a cell.

    Dates and date-times get a date number format, by default the
    configured DEFAULT_DATE_FORMAT / DEFAULT_DATETIME_FORMAT. Strings
    are always stored as text, even when they start with '='; use
    write_formula() for formulas. None clears the cell.

    Args:
        cell: cell
        value: str, bool, int, float, Decimal, date, datetime, time or None
        number_format: optional Excel number format code

    Raises:
        CellTypeError: unsupported value type or read-only merged cell
    """
    if isinstance(cell, MergedCell):
        raise CellTypeError("Cell is covered by a merged region and cannot be written",
                            cell=cell.coordinate)

    settings = settings or get_settings()

    if isinstance(value, str):
        cell.value = value
        # openpyxl turns text starting with '=' into a formula
        cell.data_type = 's'
    elif value is None or isinstance(value, (bool, int, float, Decimal)):
        cell.value = value
    elif isinstance(value, datetime):
        cell.value = value
        number_format = number_format or settings.DEFAULT_DATETIME_FORMAT
    elif isinstance(value, date):
        cell.value = value
        number_format = number_format or settings.DEFAULT_DATE_FORMAT
    elif isinstance(value, time):
        cell.value = value
        number_format = number_format or 'hh:mm:ss'
    else:
        raise CellTypeError(f"Unsupported value type: {type(value).__name__}",
                            cell=cell.coordinate)

    if number_format:
        cell.number_format = number_format


def write_formula(cell: Cell, formula: str):
    """Write a formula; the leading '=' is optional."""
    if isinstance(cell, MergedCell):
        raise CellTypeError("Cell is covered by a merged region and cannot be written",
                            cell=cell.coordinate)
    if not formula.startswith('='):
        formula = '=' + formula
    cell.value = formula


# ============================================================================
# Layout
# ============================================================================

def merge_cells(sheet: Worksheet, first_row: int, last_row: int,
                first_col: int, last_col: int) -> str:
    """
    Merge cells (all bounds zero-based and inclusive).

    Returns:
        the merged range in A1 notation

    Raises:
        MergeRegionError: inverted bounds, single cell, or overlap with an
            existing merged region
    """
    if min(first_row, last_row, first_col, last_col) < 0:
        raise MergeRegionError("Merged region bounds must be non-negative")
    if first_row > last_row or first_col > last_col:
        raise MergeRegionError("Merged region bounds are inverted",
                               f"rows {first_row}-{last_row}, cols {first_col}-{last_col}")
    if first_row == last_row and first_col == last_col:
        raise MergeRegionError("Merged region must contain 2 or more cells")

    for existing in sheet.merged_cells.ranges:
        if not (last_row + 1 < existing.min_row or first_row + 1 > existing.max_row
                or last_col + 1 < existing.min_col or first_col + 1 > existing.max_col):
            raise MergeRegionError("Merged region overlaps an existing merged region",
                                   existing.coord)

    sheet.merge_cells(start_row=first_row + 1, start_column=first_col + 1,
                      end_row=last_row + 1, end_column=last_col + 1)
    merged = (f"{get_column_letter(first_col + 1)}{first_row + 1}:"
              f"{get_column_letter(last_col + 1)}{last_row + 1}")
    logger.debug(f"Merged {sheet.title}!{merged}")
    return merged


def _column_of(col: Union[int, Cell]) -> int:
    if isinstance(col, (Cell, MergedCell)):
        return col.column - 1
    if col < 0:
        raise ValueError(f"Column number must be non-negative: {col}")
    return col


def set_width(sheet: Worksheet, col: Union[int, Cell], chars: float):
    """Set a column width in characters (0-255)."""
    if not 0 <= chars <= MAX_WIDTH_CHARS:
        raise ValueError(f"Column width must be between 0 and {MAX_WIDTH_CHARS} characters: {chars}")
    sheet.column_dimensions[get_column_letter(_column_of(col) + 1)].width = chars


def set_height(target: Union[Row, Cell, Worksheet], *args):
    """
    Set a row height in points (0-409).

    Forms:
        set_height(row, points)
        set_height(cell, points)
        set_height(sheet, row_num, points)
    """
    if isinstance(target, Worksheet):
        row_num, points = args
        sheet, row_index = target, row_num + 1
    elif isinstance(target, Row):
        (points,) = args
        sheet, row_index = target.sheet, target.row_num
    else:
        (points,) = args
        sheet, row_index = target.parent, target.row

    if not 0 <= points <= MAX_HEIGHT_POINTS:
        raise ValueError(f"Row height must be between 0 and {MAX_HEIGHT_POINTS} points: {points}")
    sheet.row_dimensions[row_index].height = points


def set_default_width(sheet: Worksheet, chars: int):
    """Set the default width of columns in a sheet, in characters."""
    if not 0 <= chars <= MAX_WIDTH_CHARS:
        raise ValueError(f"Column width must be between 0 and {MAX_WIDTH_CHARS} characters: {chars}")
    sheet.sheet_format.baseColWidth = int(chars)


def set_default_height(sheet: Worksheet, points: float):
    """Set the default height of rows in a sheet, in points."""
    if not 0 <= points <= MAX_HEIGHT_POINTS:
        raise ValueError(f"Row height must be between 0 and {MAX_HEIGHT_POINTS} points: {points}")
    sheet.sheet_format.defaultRowHeight = points
    sheet.sheet_format.customHeight = True


def _text_width(text: str) -> int:
    width = 0
    for char in text:
        width += 2 if unicodedata.east_asian_width(char) in ('W', 'F') else 1
    return width


def display_text(cell: Cell) -> str:
    """Approximate the text Excel renders for a cell."""
    value = cell.value
    if value is None:
        return ''
    if cell.data_type == 'f':
        try:
            value = evaluate(cell)
        except FormulaError:
            return str(value)
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, ExcelError):
        return value.code
    if isinstance(value, (datetime, date, time)) or cell.is_date:
        fmt = cell.number_format.replace('\\', '').replace('"', '')
        return 'x' * len(fmt)
    if isinstance(value, (int, float, Decimal)):
        fmt = cell.number_format or 'General'
        number = float(value)
        if '%' in fmt:
            number *= 100
        decimals = 0
        if '.' in fmt:
            decimals = len(fmt.split('.', 1)[1].split(';')[0].rstrip('%').rstrip('_)'))
        if fmt == 'General':
            text = str(int(number)) if number.is_integer() else format(number, '.10g')
        elif ',' in fmt:
            text = f"{number:,.{decimals}f}"
        else:
            text = f"{number:.{decimals}f}"
        return text + ('%' if '%' in fmt else '')
    return str(value)


def _font_factor(cell: Cell) -> float:
    size = cell.font.sz if cell.font is not None and cell.font.sz else 11
    factor = float(size) / 11
    if cell.font is not None and cell.font.b:
        factor *= 1.1
    return factor


def auto_width(sheet: Worksheet, col: Union[int, Cell, None] = None,
               settings: Optional[Settings] = None) -> Optional[float]:
    """
    Resize a column to fit its content.

    Cells inside merged regions are ignored. Without a column, every
    column that has a cell in the first row is resized.

    Returns:
        the new width in characters, or None when nothing was measured
    """
    settings = settings or get_settings()

    if col is None:
        first_row = get_row_or_none(sheet, 0)
        if first_row is None:
            return None
        for cell in first_row:
            auto_width(sheet, cell, settings)
        return None

    col_index = _column_of(col) + 1
    merged = list(sheet.merged_cells.ranges)
    widest = 0.0
    for (row, column), cell in stored_cells(sheet).items():
        if column != col_index or cell.value is None:
            continue
        if any(cell.coordinate in rng for rng in merged):
            continue
        lines = display_text(cell).split('\n')
        measured = max(_text_width(line) for line in lines) * _font_factor(cell)
        widest = max(widest, measured)

    if widest <= 0:
        return None

    width = min(widest + settings.AUTO_WIDTH_PADDING, settings.MAX_COLUMN_WIDTH)
    sheet.column_dimensions[get_column_letter(col_index)].width = width
    logger.debug(f"Auto width for {sheet.title} column {get_column_letter(col_index)}: {width:.2f}")
    return width


# ============================================================================
# Workbook I/O aliases
# ============================================================================

get_workbook = open_workbook
write_out = save_workbook

__all__ = [
    'CellType', 'Row', 'stored_cells',
    'get_workbook', 'create_workbook', 'write_out',
    'get_sheet', 'get_sheet_or_none', 'create_sheet',
    'get_row', 'get_row_or_none', 'get_cell', 'get_cell_or_none', 'get_cell_by_header',
    'header_name', 'get_cell_type', 'evaluate', 'read_string', 'read_numeric', 'read_boolean',
    'read_datetime', 'read_date', 'read_comment', 'write', 'write_formula',
    'merge_cells', 'set_width', 'set_height', 'set_default_width', 'set_default_height',
    'display_text', 'auto_width',
]
