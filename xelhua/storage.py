"""
Storage Service - Workbook container reading and writing.

This module opens OOXML workbooks (.xlsx/.xlsm) through openpyxl, imports
legacy binary workbooks (.xls) through xlrd into an openpyxl model, and
saves workbooks back to disk or to a stream.
"""

import hashlib
import io
import logging
import zipfile
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Tuple, Union

import xlrd
from openpyxl import Workbook, load_workbook
from openpyxl.cell.cell import Cell
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from xelhua.config import Settings, get_settings
from xelhua.exceptions import WorkbookFormatError

logger = logging.getLogger(__name__)

OOXML_EXTENSIONS = ('.xlsx', '.xlsm')
LEGACY_EXTENSION = '.xls'

Source = Union[BinaryIO, bytes]


def _as_stream(source: Source) -> BinaryIO:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source)
    return source


def stored_cells(sheet: Worksheet) -> Dict[Tuple[int, int], Cell]:
    """
    Cells that physically exist in a sheet, keyed by one-based (row, col).

    openpyxl creates a cell on every ws.cell() or ws[...] access, so
    existence checks have to look at the underlying store.
    """
    return sheet._cells


def open_workbook(path: Union[str, Path], data_only: bool = False,
                  keep_vba: bool = False, read_only: bool = False) -> Workbook:
    """
    Open a workbook from a file.

    Files ending in .xls are imported through xlrd; everything else is
    loaded through openpyxl.

    Args:
        path: Path to the workbook
        data_only: Load cached values instead of formulas (OOXML only)
        keep_vba: Preserve the VBA project of .xlsm files
        read_only: Open in openpyxl's streaming read-only mode

    Returns:
        openpyxl Workbook

    Raises:
        FileNotFoundError: If the file does not exist
        WorkbookFormatError: If the file cannot be parsed
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Workbook not found: {path}")

    logger.debug(f"Opening workbook: {path}")

    if path.suffix.lower() == LEGACY_EXTENSION:
        return load_xls(path.read_bytes(), source_name=str(path))

    try:
        return load_workbook(str(path), data_only=data_only, keep_vba=keep_vba,
                             read_only=read_only)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise WorkbookFormatError("Cannot parse workbook", path=str(path), details=str(e))


def load_xlsx(stream: Source, data_only: bool = False, keep_vba: bool = False) -> Workbook:
    """
    Load an OOXML workbook from a binary stream or bytes.

    Raises:
        WorkbookFormatError: If the content is not a valid OOXML package
    """
    try:
        return load_workbook(_as_stream(stream), data_only=data_only, keep_vba=keep_vba)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise WorkbookFormatError("Cannot parse OOXML workbook", details=str(e))


def load_xls(stream: Source, source_name: Optional[str] = None,
             settings: Optional[Settings] = None) -> Workbook:
    """
    Import a legacy binary workbook into an openpyxl Workbook.

    Cell values, merged regions, column widths and row heights are copied.
    xlrd exposes no formulas, so formula cells arrive as their cached values.

    Args:
        stream: Binary stream or bytes of the .xls file
        source_name: Name used in log and error messages

    Raises:
        WorkbookFormatError: If xlrd cannot read the content
    """
    settings = settings or get_settings()
    content = stream if isinstance(stream, (bytes, bytearray)) else stream.read()

    try:
        book = xlrd.open_workbook(file_contents=content, formatting_info=True)
    except (xlrd.XLRDError, EOFError, ValueError, AssertionError) as e:
        raise WorkbookFormatError("Cannot parse legacy workbook", path=source_name, details=str(e))

    workbook = Workbook()
    workbook.remove(workbook.active)

    for xls_sheet in book.sheets():
        sheet = workbook.create_sheet(xls_sheet.name)
        _copy_legacy_sheet(book, xls_sheet, sheet, settings)
        logger.debug(f"Imported legacy sheet '{xls_sheet.name}': "
                     f"{xls_sheet.nrows} rows x {xls_sheet.ncols} cols")

    logger.info(f"Imported legacy workbook {source_name or '<stream>'} "
                f"with {book.nsheets} sheet(s)")
    return workbook


def _copy_legacy_sheet(book, xls_sheet, sheet, settings: Settings):
    for row in range(xls_sheet.nrows):
        for col in range(xls_sheet.ncols):
            xls_cell = xls_sheet.cell(row, col)
            ctype = xls_cell.ctype
            if ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                continue

            cell = sheet.cell(row=row + 1, column=col + 1)
            if ctype == xlrd.XL_CELL_TEXT:
                cell.value = xls_cell.value
                # Text that looks like a formula stays text
                if cell.data_type == 'f':
                    cell.data_type = 's'
            elif ctype == xlrd.XL_CELL_NUMBER:
                value = xls_cell.value
                cell.value = int(value) if float(value).is_integer() else value
            elif ctype == xlrd.XL_CELL_DATE:
                value = xlrd.xldate_as_datetime(xls_cell.value, book.datemode)
                cell.value = value
                if value.hour or value.minute or value.second:
                    cell.number_format = settings.DEFAULT_DATETIME_FORMAT
                else:
                    cell.number_format = settings.DEFAULT_DATE_FORMAT
            elif ctype == xlrd.XL_CELL_BOOLEAN:
                cell.value = bool(xls_cell.value)
            elif ctype == xlrd.XL_CELL_ERROR:
                cell.value = xlrd.error_text_from_code.get(xls_cell.value, '#N/A')

    for row_lo, row_hi, col_lo, col_hi in xls_sheet.merged_cells:
        # xlrd ranges are half-open
        sheet.merge_cells(start_row=row_lo + 1, start_column=col_lo + 1,
                          end_row=row_hi, end_column=col_hi)

    for col, info in xls_sheet.colinfo_map.items():
        sheet.column_dimensions[get_column_letter(col + 1)].width = info.width / 256

    for row, info in xls_sheet.rowinfo_map.items():
        if info.height_mismatch:
            sheet.row_dimensions[row + 1].height = info.height / 20


def create_workbook() -> Workbook:
    """Create a new workbook with no sheets."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    return workbook


def save_workbook(workbook: Workbook, target: Union[str, Path, BinaryIO]) -> Optional[Path]:
    """
    Write a workbook to a stream or a file.

    A str target gets an .xlsx extension when it does not already end in
    .xlsx or .xlsm, and missing parent directories are created. A Path
    target is written exactly as given. Streams are left open.

    Returns:
        The path written to, or None for streams

    Raises:
        WorkbookFormatError: If the workbook has no sheets
    """
    if not workbook.worksheets:
        raise WorkbookFormatError("Cannot save a workbook without sheets")

    if not isinstance(target, (str, Path)):
        workbook.save(target)
        logger.debug("Saved workbook to stream")
        return None

    if isinstance(target, str):
        if not target.lower().endswith(OOXML_EXTENSIONS):
            target = target + '.xlsx'
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
    else:
        path = target

    workbook.save(str(path))
    logger.info(f"Saved workbook: {path}")
    return path


def compute_file_hash(file_path: Union[str, Path], algorithm: str = 'sha256') -> str:
    """
    Compute hash of a file.

    Args:
        file_path: Path to file
        algorithm: Hash algorithm ('sha256', 'md5', 'sha1')

    Returns:
        Hex digest of file hash
    """
    if algorithm == 'sha256':
        hasher = hashlib.sha256()
    elif algorithm == 'md5':
        hasher = hashlib.md5()
    elif algorithm == 'sha1':
        hasher = hashlib.sha1()
    else:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            hasher.update(byte_block)

    file_hash = hasher.hexdigest()
    logger.debug(f"Computed {algorithm} hash for {file_path}: {file_hash[:16]}...")
    return file_hash
