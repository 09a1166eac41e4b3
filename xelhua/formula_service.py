"""
Formula service for parsing and analyzing Excel formulas.

This module provides utilities for cell reference conversion, range
parsing, dependency extraction, and formula classification. Tokenizing is
delegated to openpyxl's formula tokenizer so quoting and nested functions
follow Excel's own rules.
"""

import re
from typing import List, Optional, Tuple

from openpyxl.formula.tokenizer import Tokenizer, Token, TokenizerError

from xelhua.exceptions import FormulaSyntaxError

# Excel 2007+ grid limits
MAX_ROWS = 1048576
MAX_COLUMNS = 16384

CELL_PATTERN = re.compile(r'^\$?([A-Za-z]{1,3})\$?(\d+)$')
COLUMN_RANGE_PATTERN = re.compile(r'^\$?([A-Za-z]{1,3}):\$?([A-Za-z]{1,3})$')
ROW_RANGE_PATTERN = re.compile(r'^\$?(\d+):\$?(\d+)$')

TEXT_FUNCTIONS = ['CONCATENATE', 'CONCAT', 'TEXT', 'CHAR', 'LOWER', 'UPPER', 'TRIM',
                  'LEFT', 'RIGHT', 'MID']


def formula_text(formula) -> str:
    # openpyxl ArrayFormula objects keep the expression in .text
    if hasattr(formula, 'text'):
        return formula.text
    if formula is None:
        return ''
    if not isinstance(formula, str):
        return str(formula)
    return formula


class FormulaParser:
    """Parse and analyze Excel formulas."""

    @staticmethod
    def column_to_index(letters: str) -> int:
        """
        Convert column letters to a zero-based column index.

        A=0, B=1, ..., Z=25, AA=26, AB=27, etc.
        """
        if not letters or not letters.isalpha():
            raise ValueError(f"Invalid column letters: {letters!r}")
        col = 0
        for char in letters.upper():
            col = col * 26 + (ord(char) - ord('A') + 1)
        return col - 1

    @staticmethod
    def index_to_column(col: int) -> str:
        """Convert a zero-based column index to column letters."""
        if col < 0:
            raise ValueError(f"Column must be non-negative: col={col}")
        col_letters = ''
        col_num = col + 1
        while col_num > 0:
            col_num -= 1
            col_letters = chr(ord('A') + (col_num % 26)) + col_letters
            col_num //= 26
        return col_letters

    @staticmethod
    def cell_to_coordinates(cell_ref: str) -> Tuple[int, int]:
        """
        Convert cell reference to zero-based row/col coordinates.

        Handles standard Excel cell references (A1, B24, AA100, $C$5, etc.).

        Examples:
            A1 → (0, 0)
            B24 → (23, 1)
            AA100 → (99, 26)
            Sheet1!Z1 → (0, 25)

        Args:
            cell_ref: Cell address, optionally sheet-qualified

        Returns:
            Tuple of (row, col) as zero-based indices

        Raises:
            ValueError: If cell reference format is invalid
        """
        _, cell_ref = FormulaParser.parse_cell_reference(cell_ref)

        match = CELL_PATTERN.match(cell_ref)
        if not match:
            raise ValueError(f"Invalid cell reference: {cell_ref}")

        col_letters, row_str = match.groups()
        row = int(row_str) - 1
        if row < 0:
            raise ValueError(f"Invalid cell reference: {cell_ref}")

        return (row, FormulaParser.column_to_index(col_letters))

    @staticmethod
    def coordinates_to_cell(row: int, col: int) -> str:
        """
        Convert zero-based coordinates to cell reference.

        Examples:
            (0, 0) → A1
            (23, 1) → B24
            (99, 26) → AA100

        Raises:
            ValueError: If row or col are negative
        """
        if row < 0 or col < 0:
            raise ValueError(f"Row and column must be non-negative: row={row}, col={col}")

        return f"{FormulaParser.index_to_column(col)}{row + 1}"

    @staticmethod
    def parse_range(range_ref: str) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """
        Parse range reference to start/end coordinates.

        The result is normalized so that start is the top-left corner even
        when the range is written backwards (B10:A1).

        Examples:
            A1:B10 → ((0, 0), (9, 1))
            C5:C5 → ((4, 2), (4, 2))
            Sheet1!AA1:AB100 → ((0, 26), (99, 27))

        Raises:
            ValueError: If range reference format is invalid
        """
        _, range_ref = FormulaParser.parse_cell_reference(range_ref)

        if ':' not in range_ref:
            raise ValueError(f"Invalid range reference (missing ':'): {range_ref}")

        parts = range_ref.split(':')
        if len(parts) != 2:
            raise ValueError(f"Invalid range reference format: {range_ref}")

        start_row, start_col = FormulaParser.cell_to_coordinates(parts[0])
        end_row, end_col = FormulaParser.cell_to_coordinates(parts[1])

        return ((min(start_row, end_row), min(start_col, end_col)),
                (max(start_row, end_row), max(start_col, end_col)))

    @staticmethod
    def parse_cell_reference(cell_ref: str) -> Tuple[Optional[str], str]:
        """
        Parse a cell reference into sheet name and cell address.

        Examples:
            "A1" → (None, "A1")
            "Sheet1!A1" → ("Sheet1", "A1")
            "'My Sheet'!B5" → ("My Sheet", "B5")
            "'It''s'!C1" → ("It's", "C1")

        Returns:
            Tuple of (sheet_name, cell_address)
            sheet_name is None if not specified
        """
        if '!' not in cell_ref:
            return (None, cell_ref.strip())

        sheet, address = cell_ref.rsplit('!', 1)
        sheet = sheet.strip()
        if len(sheet) >= 2 and sheet.startswith("'") and sheet.endswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
        return (sheet, address.strip())

    @staticmethod
    def make_key(sheet: str, row: int, col: int) -> str:
        """Build the canonical "Sheet!A1" key for zero-based coordinates."""
        return f"{sheet}!{FormulaParser.coordinates_to_cell(row, col)}"

    @staticmethod
    def normalize_reference(cell_ref: str, current_sheet: str) -> str:
        """Canonicalize a cell reference to "Sheet!A1" (no quotes, no $)."""
        sheet, address = FormulaParser.parse_cell_reference(cell_ref)
        row, col = FormulaParser.cell_to_coordinates(address)
        return FormulaParser.make_key(sheet or current_sheet, row, col)

    @staticmethod
    def reference_bounds(address: str, max_row: int = MAX_ROWS,
                         max_col: int = MAX_COLUMNS) -> Optional[Tuple[int, int, int, int]]:
        """
        Resolve an address (no sheet part) to zero-based inclusive bounds.

        Whole-column ranges (A:C) extend to max_row and whole-row ranges
        (2:4) extend to max_col. Returns None when the address is not a
        cell or range, e.g. a defined name.

        Returns:
            (min_row, min_col, max_row, max_col)
        """
        match = CELL_PATTERN.match(address)
        if match:
            row, col = FormulaParser.cell_to_coordinates(address)
            return (row, col, row, col)

        if ':' in address:
            left, _, right = address.partition(':')
            if CELL_PATTERN.match(left) and CELL_PATTERN.match(right):
                (r1, c1), (r2, c2) = FormulaParser.parse_range(address)
                return (r1, c1, r2, c2)

        match = COLUMN_RANGE_PATTERN.match(address)
        if match:
            c1 = FormulaParser.column_to_index(match.group(1))
            c2 = FormulaParser.column_to_index(match.group(2))
            return (0, min(c1, c2), max_row - 1, max(c1, c2))

        match = ROW_RANGE_PATTERN.match(address)
        if match:
            r1, r2 = int(match.group(1)) - 1, int(match.group(2)) - 1
            if r1 < 0 or r2 < 0:
                raise ValueError(f"Invalid row range: {address}")
            return (min(r1, r2), 0, max(r1, r2), max_col - 1)

        return None

    @staticmethod
    def tokenize(formula) -> List[Token]:
        """
        Tokenize a formula with openpyxl's tokenizer.

        Raises:
            FormulaSyntaxError: If the formula is malformed
        """
        formula = formula_text(formula)
        try:
            return Tokenizer(formula).items
        except (TokenizerError, IndexError) as e:
            # Unbalanced closing brackets surface as IndexError
            raise FormulaSyntaxError("Malformed formula", formula=formula, details=str(e))

    @staticmethod
    def extract_dependencies(formula, current_sheet: str,
                             max_cells: Optional[int] = None) -> List[str]:
        """
        Extract cell dependencies from a formula.

        Ranges are expanded to individual cells. Whole-column and whole-row
        ranges, and defined names, need a workbook to be bounded and are
        skipped here; FormulaEvaluator resolves those.

        Args:
            formula: Formula text (e.g., "=SUM(A1:A10)")
            current_sheet: Current sheet name for unqualified references
            max_cells: Optional cap on cells produced by a single range

        Returns:
            Deduplicated list of references in "Sheet!Cell" format, in
            order of first appearance.
        """
        formula = formula_text(formula)
        if not formula or not formula.startswith('='):
            return []

        dependencies = []
        seen = set()
        for token in FormulaParser.tokenize(formula):
            if token.type != Token.OPERAND or token.subtype != Token.RANGE:
                continue
            sheet, address = FormulaParser.parse_cell_reference(token.value)
            sheet = sheet or current_sheet

            if CELL_PATTERN.match(address):
                bounds = FormulaParser.reference_bounds(address)
            elif ':' in address and all(CELL_PATTERN.match(p) for p in address.split(':')):
                bounds = FormulaParser.reference_bounds(address)
            else:
                continue

            min_row, min_col, max_row, max_col = bounds
            size = (max_row - min_row + 1) * (max_col - min_col + 1)
            if max_cells is not None and size > max_cells:
                raise ValueError(f"Range {token.value} has {size} cells, more than {max_cells}")

            for row in range(min_row, max_row + 1):
                for col in range(min_col, max_col + 1):
                    key = FormulaParser.make_key(sheet, row, col)
                    if key not in seen:
                        seen.add(key)
                        dependencies.append(key)

        return dependencies

    @staticmethod
    def is_text_formula(formula) -> bool:
        """
        Detect if formula returns text (e.g., ="" or ="text").

        Args:
            formula: Formula text

        Returns:
            True if formula returns text value
        """
        formula = formula_text(formula)

        if not formula or not formula.startswith('='):
            return False

        if formula.strip() == '=""':
            return True

        if re.match(r'^="[^"]*"$', formula.strip()):
            return True

        formula_upper = formula.upper()
        for func in TEXT_FUNCTIONS:
            if re.search(rf'(?<![A-Z0-9_]){func}\(', formula_upper):
                return True

        return False
