"""
Streaming Service - Write-only and read-only workbook access.

StreamingWriter appends rows to a write-only workbook so large exports
never hold the whole grid in memory. iter_rows / iter_records read
workbooks in openpyxl's read-only mode and always close the file.
"""

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, Optional, Sequence, Tuple, Union

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.utils import get_column_letter

from xelhua.config import Settings, get_settings
from xelhua.excel_base import header_name
from xelhua.exceptions import StreamingError
from xelhua.storage import open_workbook, save_workbook
from xelhua.style_service import CellStyle

logger = logging.getLogger(__name__)

RowStyle = Union[CellStyle, Sequence[Optional[CellStyle]], None]


class StreamingWriter:
    """
    Row-by-row writer over a write-only workbook.

    Usage:
        with StreamingWriter("out/report") as writer:
            writer.sheet("Data")
            writer.set_width(0, 20)
            writer.append(["Name", "Amount"], style=header_style)
            for record in records:
                writer.append(record)

    The workbook is saved when the block exits normally; an exception
    inside the block discards it.
    """

    def __init__(self, target: Union[str, Path, BinaryIO], settings: Optional[Settings] = None):
        self.target = target
        self.settings = settings or get_settings()
        self.workbook = Workbook(write_only=True)
        self.path: Optional[Path] = None
        self._current = None
        self._rows_in_sheet = 0
        self._total_rows = 0
        self._closed = False

    def __enter__(self) -> 'StreamingWriter':
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._closed = True
            logger.warning(f"Streaming write aborted, workbook not saved: {exc}")
            return False
        self.close()
        return False

    def _check_open(self):
        if self._closed:
            raise StreamingError("Writer is closed")

    def sheet(self, name: Optional[str] = None):
        """Create a sheet and make it the target of append()."""
        self._check_open()
        self._current = self.workbook.create_sheet(name)
        self._rows_in_sheet = 0
        logger.debug(f"Streaming into sheet '{self._current.title}'")
        return self._current

    def set_width(self, col: int, chars: float):
        """Set a zero-based column's width; only allowed before the first row."""
        self._check_open()
        if self._current is None:
            self.sheet()
        if self._rows_in_sheet:
            raise StreamingError("Column widths must be set before the first row is written",
                                 f"sheet '{self._current.title}'")
        if not 0 <= chars <= 255:
            raise ValueError(f"Column width must be between 0 and 255 characters: {chars}")
        self._current.column_dimensions[get_column_letter(col + 1)].width = chars

    def _cell(self, value: Any, style: Optional[CellStyle]):
        if style is None and not isinstance(value, (date, datetime)):
            return value
        cell = WriteOnlyCell(self._current, value=value)
        if style is not None:
            style.apply(cell)
        elif isinstance(value, datetime):
            cell.number_format = self.settings.DEFAULT_DATETIME_FORMAT
        else:
            cell.number_format = self.settings.DEFAULT_DATE_FORMAT
        return cell

    def append(self, values: Sequence[Any], style: RowStyle = None):
        """
        Append one row to the current sheet.

        Args:
            values: Cell values, left to right
            style: One CellStyle for the whole row, or one per cell
        """
        self._check_open()
        if self._current is None:
            self.sheet()

        if style is None or isinstance(style, CellStyle):
            styles = [style] * len(values)
        else:
            styles = list(style) + [None] * (len(values) - len(style))

        self._current.append([self._cell(v, s) for v, s in zip(values, styles)])
        self._rows_in_sheet += 1
        self._total_rows += 1

    def close(self) -> Optional[Path]:
        """Save the workbook; later calls are no-ops."""
        if self._closed:
            return self.path
        if self._current is None:
            self.sheet()
        self._closed = True
        self.path = save_workbook(self.workbook, self.target)
        logger.info(f"Streamed {self._total_rows} rows to {self.path or 'stream'}")
        return self.path


def _select_sheet(workbook, sheet: Union[str, int, None]):
    if sheet is None:
        return workbook.worksheets[0]
    if isinstance(sheet, int):
        return workbook.worksheets[sheet]
    return workbook[sheet]


def iter_rows(path: Union[str, Path], sheet: Union[str, int, None] = None,
              values_only: bool = True, min_row: int = 0, max_row: Optional[int] = None,
              data_only: bool = True) -> Iterator[Tuple]:
    """
    Stream rows from a workbook opened read-only.

    Args:
        path: Workbook path
        sheet: Sheet name or zero-based index; first sheet by default
        values_only: Yield values instead of cells
        min_row: First zero-based row
        max_row: Last zero-based row (inclusive), or None for all

    Yields:
        Tuples of values (or read-only cells)
    """
    workbook = open_workbook(path, data_only=data_only, read_only=True)
    try:
        worksheet = _select_sheet(workbook, sheet)
        for row in worksheet.iter_rows(min_row=min_row + 1,
                                       max_row=None if max_row is None else max_row + 1,
                                       values_only=values_only):
            yield row
    finally:
        workbook.close()


def iter_records(path: Union[str, Path], sheet: Union[str, int, None] = None,
                 header_row: int = 0, stop_at_blank: bool = True) -> Iterator[Dict[str, Any]]:
    """
    Stream rows below a header row as dicts keyed by header names.

    Header cells without a name are ignored. With stop_at_blank the
    iteration ends at the first row whose cells are all empty.
    """
    names = None
    rows = iter_rows(path, sheet=sheet, values_only=False, min_row=header_row)
    try:
        for cells in rows:
            if names is None:
                names = [header_name(cell) for cell in cells]
                logger.debug(f"Record header: {names}")
                continue

            # Unsized sheets (no <dimension>) yield rows without trailing empty cells
            values = [cell.value for cell in cells]
            values += [None] * (len(names) - len(values))
            if all(v is None for v in values):
                if stop_at_blank:
                    return
                continue

            yield {name: value for name, value in zip(names, values) if name}
    finally:
        rows.close()
