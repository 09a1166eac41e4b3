"""
Tests for the workbook helper layer.

Tests cover get-or-create access to sheets, rows and cells, typed reads and
writes, merged regions and column/row sizing.
"""

from datetime import date, datetime

import pytest
from openpyxl.comments import Comment

from xelhua import excel_base as xl
from xelhua.exceptions import CellTypeError, HeaderNotFoundError, MergeRegionError


@pytest.fixture
def workbook():
    return xl.create_workbook()


@pytest.fixture
def sheet(workbook):
    return xl.get_sheet(workbook, 'Report')


class TestSheets:
    """Test sheet lookup and creation."""

    def test_new_workbook_has_no_sheets(self, workbook):
        assert workbook.sheetnames == []

    def test_get_or_create_by_name(self, workbook):
        sheet = xl.get_sheet(workbook, 'Report')
        assert sheet.title == 'Report'
        assert xl.get_sheet(workbook, 'Report') is sheet
        assert workbook.sheetnames == ['Report']

    def test_get_by_index(self, workbook, sheet):
        assert xl.get_sheet_or_none(workbook, 0) is sheet
        assert xl.get_sheet_or_none(workbook, 1) is None

    def test_missing_index_creates_sheet(self, workbook, sheet):
        created = xl.get_sheet(workbook, 3)
        assert created is not sheet
        assert len(workbook.worksheets) == 2

    def test_missing_name(self, workbook):
        assert xl.get_sheet_or_none(workbook, 'Nope') is None


class TestRowsAndCells:
    """Test row and cell access."""

    def test_row_or_none(self, sheet):
        assert xl.get_row_or_none(sheet, 3) is None
        row = xl.get_row(sheet, 3)
        assert row.row_num == 4
        assert xl.get_row_or_none(sheet, 3) == row

    def test_negative_row(self, sheet):
        with pytest.raises(ValueError):
            xl.get_row(sheet, -1)

    def test_cell_coordinates_are_zero_based(self, sheet):
        cell = xl.get_cell(sheet, 2, 1)
        assert cell.coordinate == 'B3'

    def test_cell_or_none(self, sheet):
        row = xl.get_row(sheet, 0)
        assert xl.get_cell_or_none(row, 5) is None
        cell = row.cell(5)
        assert xl.get_cell_or_none(row, 5) is cell

    def test_row_iterates_stored_cells(self, sheet):
        row = xl.get_row(sheet, 0)
        xl.write(row.cell(3), 'd')
        xl.write(row.cell(0), 'a')
        assert [c.value for c in row] == ['a', 'd']

    def test_cell_by_header(self, sheet):
        header = xl.get_row(sheet, 0)
        xl.write(header.cell(0), 'Name')
        xl.write(header.cell(1), 'Amount')
        xl.write(header.cell(2), 2024)
        xl.write_formula(header.cell(3), 'UPPER("total")')

        row = xl.get_row(sheet, 1)
        assert xl.get_cell(row, 'Amount', header).coordinate == 'B2'
        assert xl.get_cell(row, '2024.0', header).coordinate == 'C2'
        assert xl.get_cell_by_header(row, 'TOTAL', header).coordinate == 'D2'

    def test_header_not_found(self, sheet):
        header = xl.get_row(sheet, 0)
        xl.write(header.cell(0), 'Name')
        with pytest.raises(HeaderNotFoundError) as exc_info:
            xl.get_cell(xl.get_row(sheet, 1), 'Missing', header)
        assert isinstance(exc_info.value, LookupError)


class TestReading:
    """Test typed reads."""

    def test_cell_types(self, sheet):
        values = ['text', 1.5, True, None]
        cells = [xl.get_cell(sheet, 0, col) for col in range(len(values))]
        for cell, value in zip(cells, values):
            xl.write(cell, value)
        formula = xl.get_cell(sheet, 0, len(values))
        xl.write_formula(formula, '1+1')

        assert [xl.get_cell_type(c) for c in cells + [formula]] == [
            xl.CellType.STRING, xl.CellType.NUMERIC, xl.CellType.BOOLEAN,
            xl.CellType.BLANK, xl.CellType.FORMULA,
        ]

    def test_read_string(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 'hello')
        assert xl.read_string(cell) == 'hello'

    def test_read_string_of_number(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 42)
        with pytest.raises(CellTypeError, match='Cannot get a STRING value from a NUMERIC cell'):
            xl.read_string(cell)

    def test_read_numeric(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 42)
        assert xl.read_numeric(cell) == 42.0
        assert xl.read_numeric(xl.get_cell(sheet, 5, 5)) == 0.0

    def test_read_formula_result(self, sheet):
        xl.write(xl.get_cell(sheet, 0, 0), 6)
        cell = xl.get_cell(sheet, 0, 1)
        xl.write_formula(cell, 'A1*7')
        assert cell.value == '=A1*7'
        assert xl.read_numeric(cell) == 42.0
        with pytest.raises(CellTypeError):
            xl.read_boolean(cell)

    def test_read_boolean(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, True)
        assert xl.read_boolean(cell) is True

    def test_read_date(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, date(2024, 3, 1))
        assert cell.number_format == 'yyyy-mm-dd'
        assert xl.read_date(cell) == date(2024, 3, 1)
        assert xl.read_datetime(cell) == datetime(2024, 3, 1)
        assert xl.read_numeric(cell) == 45352.0

    def test_read_datetime_of_plain_number(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 45352)
        with pytest.raises(CellTypeError):
            xl.read_datetime(cell)

    def test_read_comment(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        assert xl.read_comment(cell) is None
        cell.comment = Comment('check this', 'reviewer')
        assert xl.read_comment(cell).text == 'check this'


class TestWriting:
    """Test writes."""

    def test_write_datetime_format(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, datetime(2024, 3, 1, 12, 30))
        assert cell.number_format == 'yyyy-mm-dd hh:mm:ss'

    def test_explicit_number_format(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 0.25, number_format='0.0%')
        assert cell.number_format == '0.0%'

    def test_unsupported_type(self, sheet):
        with pytest.raises(CellTypeError):
            xl.write(xl.get_cell(sheet, 0, 0), object())

    def test_merged_cell_is_read_only(self, sheet):
        xl.merge_cells(sheet, 0, 0, 0, 1)
        with pytest.raises(CellTypeError):
            xl.write(sheet['B1'], 'x')

    def test_text_starting_with_equals(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, '=not a formula')
        assert xl.get_cell_type(cell) == xl.CellType.STRING
        assert xl.read_string(cell) == '=not a formula'

    def test_text_starting_with_equals_survives_save(self, workbook, sheet, tmp_path):
        xl.write(xl.get_cell(sheet, 0, 0), '=A2+1')
        xl.write_formula(xl.get_cell(sheet, 0, 1), '=A2+1')
        path = xl.write_out(workbook, str(tmp_path / 'text'))

        reopened = xl.get_sheet(xl.get_workbook(path), 'Report')
        text = xl.get_cell(reopened, 0, 0)
        assert xl.get_cell_type(text) == xl.CellType.STRING
        assert xl.read_string(text) == '=A2+1'
        assert xl.get_cell_type(xl.get_cell(reopened, 0, 1)) == xl.CellType.FORMULA

    def test_write_formula(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write_formula(cell, '=SUM(B1:B2)')
        assert cell.value == '=SUM(B1:B2)'
        assert xl.get_cell_type(cell) == xl.CellType.FORMULA


class TestLayout:
    """Test merging and sizing."""

    def test_merge(self, sheet):
        assert xl.merge_cells(sheet, 0, 1, 0, 2) == 'A1:C2'
        assert [r.coord for r in sheet.merged_cells.ranges] == ['A1:C2']

    def test_merge_overlap(self, sheet):
        xl.merge_cells(sheet, 0, 1, 0, 2)
        with pytest.raises(MergeRegionError):
            xl.merge_cells(sheet, 1, 3, 2, 3)

    def test_merge_invalid(self, sheet):
        with pytest.raises(MergeRegionError):
            xl.merge_cells(sheet, 0, 0, 0, 0)
        with pytest.raises(MergeRegionError):
            xl.merge_cells(sheet, 2, 1, 0, 1)

    def test_width(self, sheet):
        xl.set_width(sheet, 0, 20)
        assert sheet.column_dimensions['A'].width == 20
        xl.set_width(sheet, xl.get_cell(sheet, 0, 2), 12)
        assert sheet.column_dimensions['C'].width == 12
        with pytest.raises(ValueError):
            xl.set_width(sheet, 0, 300)

    def test_height(self, sheet):
        xl.set_height(sheet, 0, 30)
        assert sheet.row_dimensions[1].height == 30

        row = xl.get_row(sheet, 1)
        row.height = 18
        assert row.height == 18

        xl.set_height(xl.get_cell(sheet, 2, 0), 24)
        assert sheet.row_dimensions[3].height == 24

        with pytest.raises(ValueError):
            xl.set_height(sheet, 0, 500)

    def test_defaults(self, sheet):
        xl.set_default_width(sheet, 12)
        xl.set_default_height(sheet, 20)
        assert sheet.sheet_format.baseColWidth == 12
        assert sheet.sheet_format.defaultRowHeight == 20
        assert sheet.sheet_format.customHeight

    def test_auto_width(self, sheet):
        xl.write(xl.get_cell(sheet, 0, 0), 'short')
        xl.write(xl.get_cell(sheet, 1, 0), 'a much longer piece of text')
        assert xl.auto_width(sheet, 0) == 29.0
        assert sheet.column_dimensions['A'].width == 29.0

    def test_auto_width_wide_characters(self, sheet):
        xl.write(xl.get_cell(sheet, 0, 0), '日本')
        assert xl.auto_width(sheet, 0) == 6.0

    def test_auto_width_ignores_merged_cells(self, sheet):
        xl.write(xl.get_cell(sheet, 0, 0), 'a title spanning several columns')
        xl.write(xl.get_cell(sheet, 1, 0), 'abc')
        xl.merge_cells(sheet, 0, 0, 0, 3)
        assert xl.auto_width(sheet, 0) == 5.0

    def test_auto_width_empty_column(self, sheet):
        assert xl.auto_width(sheet, 4) is None

    def test_display_text(self, sheet):
        cell = xl.get_cell(sheet, 0, 0)
        xl.write(cell, 1234.5, number_format='#,##0.00')
        assert xl.display_text(cell) == '1,234.50'


class TestWorkbookIO:
    """Test the workbook load and save aliases."""

    def test_write_out_adds_extension(self, workbook, sheet, tmp_path):
        xl.write(xl.get_cell(sheet, 0, 0), 'saved')
        path = xl.write_out(workbook, str(tmp_path / 'out' / 'report'))
        assert path.name == 'report.xlsx'
        assert path.exists()

        reopened = xl.get_workbook(path)
        assert xl.read_string(xl.get_cell(xl.get_sheet(reopened, 'Report'), 0, 0)) == 'saved'
