"""
Pydantic schemas for workbook summaries and validation reports.

These are the structured results returned by WorkbookInspector and
ValidationService, and what the CLI prints with --json.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

Scalar = Union[bool, float, str, None]


class CellSnapshot(BaseModel):
    """Everything the inspector learns about one non-empty cell."""

    # Identification
    sheet_name: str = Field(..., description="Worksheet name")
    cell: str = Field(..., description="Cell address (e.g., A1, B24)")
    row_num: int = Field(..., description="One-based row number")
    col_letter: str = Field(..., description="Column letter(s)")

    # Cell content
    cell_type: str = Field(..., description="Cell type: value, formula, formula_text")
    data_type: str = Field(..., description="Data type: number, text, date, boolean, error, empty")
    raw_value: Optional[float] = Field(None, description="Cached numeric value")
    raw_text: Optional[str] = Field(None, description="Cached text value")
    formula: Optional[str] = Field(None, description="Formula text")

    # Dependencies and validation
    depends_on: List[str] = Field(default_factory=list, description="Cell dependencies")
    is_circular: bool = Field(False, description="Part of circular reference")
    has_validation: bool = Field(False, description="Has data validation")
    validation_type: Optional[str] = Field(None, description="Data validation type, e.g. list")
    validation_options: List[str] = Field(default_factory=list, description="List options or source range")

    style: Dict[str, Any] = Field(default_factory=dict, description="Font, border, fill and number format digest")

    class Config:
        json_schema_extra = {
            "example": {
                "sheet_name": "Summary",
                "cell": "B24",
                "row_num": 24,
                "col_letter": "B",
                "cell_type": "formula",
                "data_type": "number",
                "raw_value": 100.5,
                "raw_text": None,
                "formula": "=SUM(B2:B23)",
                "depends_on": ["Summary!B2", "Summary!B23"],
                "is_circular": False,
                "has_validation": False,
                "validation_type": None,
                "validation_options": [],
                "style": {"bold": True, "number_format": "0.00"}
            }
        }


class SheetSummary(BaseModel):
    """Per-sheet dimensions and layout."""

    name: str = Field(..., description="Worksheet name")
    max_row: int = Field(..., description="Last used row (one-based)")
    max_column: int = Field(..., description="Last used column (one-based)")
    merged_ranges: List[str] = Field(default_factory=list, description="Merged regions in A1 notation")
    dropdown_cells: List[str] = Field(default_factory=list, description="Ranges with list validation")


class WorkbookStats(BaseModel):
    """Cell counts collected while inspecting."""

    total_cells: int = 0
    value_cells: int = 0
    formula_cells: int = 0
    formula_text_cells: int = 0
    dropdown_cells: int = 0
    circular_references: int = 0


class WorkbookSummary(BaseModel):
    """Result of WorkbookInspector.inspect()."""

    path: str = Field(..., description="Inspected file")
    file_hash: str = Field(..., description="SHA-256 of the file")
    sheets: List[SheetSummary] = Field(default_factory=list)
    cells: List[CellSnapshot] = Field(default_factory=list)
    stats: WorkbookStats = Field(default_factory=WorkbookStats)
    circular_groups: List[List[str]] = Field(default_factory=list, description="Strongly connected formula groups")
    inspected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MismatchCell(BaseModel):
    """A formula whose recalculated result differs from the cached one."""

    cell_ref: str = Field(..., description="Sheet-qualified cell reference")
    formula: Optional[str] = None
    expected: Scalar = Field(None, description="Value cached by Excel")
    actual: Scalar = Field(None, description="Value computed natively")
    diff: Optional[float] = Field(None, description="Absolute numeric difference")
    type: Optional[str] = Field(None, description="Comparison kind: numeric, text, boolean, error")
    error: Optional[str] = Field(None, description="Evaluation error, if any")


class ValidationReport(BaseModel):
    """Result of ValidationService.validate_workbook()."""

    status: str = Field(..., description="passed, failed or partial")
    total: int = 0
    matches: int = 0
    mismatches: int = 0
    errors: int = 0
    no_cached_value: int = 0
    tolerance: float = 1e-6
    mismatch_cells: List[MismatchCell] = Field(default_factory=list)
    circular_cells: Dict[str, str] = Field(default_factory=dict, description="Solver status per circular cell")
