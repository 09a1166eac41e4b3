"""
Inspection Service - Workbook structure and cell summary.

This module walks a workbook and describes every non-empty cell: cached
value, formula, dependencies, data validation and a style digest. It also
reports per-sheet layout and circular reference groups.
"""

import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from xelhua.config import Settings, get_settings
from xelhua.evaluation_service import ERROR_CODES, FormulaEvaluator
from xelhua.exceptions import FormulaError
from xelhua.formula_service import FormulaParser, formula_text
from xelhua.schemas import CellSnapshot, SheetSummary, WorkbookStats, WorkbookSummary
from xelhua.storage import compute_file_hash, open_workbook, stored_cells

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, str], None]


def _dropdown_ranges(worksheet: Worksheet) -> List[str]:
    ranges = []
    for dv in worksheet.data_validations.dataValidation:
        if dv.type == 'list':
            for coord in str(dv.sqref).split():
                ranges.append(f"{worksheet.title}!{coord}")
    return ranges


def _validation_for(worksheet: Worksheet, coordinate: str):
    for dv in worksheet.data_validations.dataValidation:
        if coordinate in dv.sqref:
            options = []
            if dv.formula1:
                if dv.formula1.startswith('"'):
                    # Quoted list: "Option1,Option2,Option3"
                    options = [opt.strip() for opt in dv.formula1.strip('"').split(',')]
                else:
                    options = [dv.formula1]
            return dv.type, options
    return None, []


def _style_digest(cell) -> Dict:
    style = {}
    if cell.font:
        style['font_size'] = cell.font.sz
        style['bold'] = bool(cell.font.b)
        style['italic'] = bool(cell.font.i)
    if cell.border and cell.border.left:
        style['border_style'] = cell.border.left.style
    fg = getattr(cell.fill, 'fgColor', None)
    if getattr(cell.fill, 'patternType', None) and fg is not None and fg.type == 'rgb':
        style['bg_color'] = fg.rgb
    elif getattr(cell.fill, 'patternType', None) and fg is not None and fg.type == 'indexed':
        style['bg_color_index'] = fg.indexed
    style['number_format'] = cell.number_format
    return style


def _data_type(value) -> str:
    if value is None:
        return 'empty'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, (datetime, date, time)):
        return 'date'
    if isinstance(value, str) and value in ERROR_CODES:
        return 'error'
    return 'text'


class WorkbookInspector:
    """
    Describe a workbook's sheets and cells.

    The workbook is loaded twice: once with formulas and once with the
    values Excel cached when it last saved the file.
    """

    def __init__(self, progress_callback: Optional[ProgressCallback] = None,
                 settings: Optional[Settings] = None):
        """
        Initialize the inspector.

        Args:
            progress_callback: Optional callback for progress updates
                              Signature: callback(stage: str, percent: float, message: str)
        """
        self.progress_callback = progress_callback or (lambda *args: None)
        self.settings = settings or get_settings()

    def _emit_progress(self, stage: str, percent: float, message: str):
        """Emit progress update via callback."""
        self.progress_callback(stage, percent, message)
        logger.info(f"Progress: {stage} ({percent:.1f}%) - {message}")

    def inspect(self, path: Union[str, Path]) -> WorkbookSummary:
        """
        Inspect a workbook file.

        Returns:
            WorkbookSummary with sheets, cell snapshots, stats and
            circular reference groups
        """
        path = Path(path)
        self._emit_progress('hashing', 5, 'Computing file hash...')
        file_hash = compute_file_hash(path)

        wb_formulas = open_workbook(path, data_only=False)
        wb_values = open_workbook(path, data_only=True)
        evaluator = FormulaEvaluator(wb_formulas, self.settings)

        summary = WorkbookSummary(path=str(path), file_hash=file_hash)
        stats = WorkbookStats()

        total_sheets = len(wb_formulas.worksheets) or 1
        for sheet_idx, ws_formulas in enumerate(wb_formulas.worksheets):
            sheet_name = ws_formulas.title
            ws_values = wb_values[sheet_name]

            sheet_progress = 10 + (60 * (sheet_idx / total_sheets))
            self._emit_progress('parsing', sheet_progress, f"Processing sheet: {sheet_name}")

            dropdowns = _dropdown_ranges(ws_formulas)
            summary.sheets.append(SheetSummary(
                name=sheet_name,
                max_row=ws_formulas.max_row,
                max_column=ws_formulas.max_column,
                merged_ranges=[rng.coord for rng in ws_formulas.merged_cells.ranges],
                dropdown_cells=dropdowns,
            ))

            for (row, col), cell in sorted(stored_cells(ws_formulas).items()):
                if cell.value is None and cell.data_type != 'f':
                    continue
                value_cell = stored_cells(ws_values).get((row, col))
                snapshot = self._snapshot(cell, value_cell, ws_formulas, evaluator, stats)
                summary.cells.append(snapshot)
                if snapshot.has_validation and snapshot.validation_type == 'list':
                    stats.dropdown_cells += 1

        self._emit_progress('dependencies', 75, 'Building dependency graph...')
        graph = evaluator.dependency_graph()
        summary.circular_groups = graph.circular_groups
        stats.circular_references = sum(len(group) for group in graph.circular_groups)
        for snapshot in summary.cells:
            snapshot.is_circular = graph.is_circular(f"{snapshot.sheet_name}!{snapshot.cell}")

        summary.stats = stats
        self._emit_progress('complete', 100, 'Inspection complete')
        logger.info(f"Inspected {len(summary.sheets)} sheets, {stats.total_cells} cells, "
                    f"{len(summary.circular_groups)} circular groups")
        return summary

    def _snapshot(self, cell, value_cell, worksheet: Worksheet,
                  evaluator: FormulaEvaluator, stats: WorkbookStats) -> CellSnapshot:
        sheet_name = worksheet.title
        col_letter = get_column_letter(cell.column)
        address = f"{col_letter}{cell.row}"

        formula = formula_text(cell.value) if cell.data_type == 'f' else None
        stats.total_cells += 1
        if formula:
            if FormulaParser.is_text_formula(formula):
                cell_type = 'formula_text'
                stats.formula_text_cells += 1
            else:
                cell_type = 'formula'
                stats.formula_cells += 1
        else:
            cell_type = 'value'
            stats.value_cells += 1

        cached = value_cell.value if value_cell is not None else None
        raw_value = None
        raw_text = None
        if isinstance(cached, bool):
            raw_value = float(cached)
        elif isinstance(cached, (int, float)):
            raw_value = float(cached)
        elif isinstance(cached, str):
            raw_text = cached
        elif isinstance(cached, (datetime, date, time)):
            raw_text = cached.isoformat()

        depends_on = []
        if formula:
            try:
                depends_on = evaluator.dependencies(formula, sheet_name)
            except FormulaError as e:
                logger.warning(f"Could not extract dependencies of {sheet_name}!{address}: {e}")

        validation_type, validation_options = _validation_for(worksheet, cell.coordinate)

        return CellSnapshot(
            sheet_name=sheet_name,
            cell=address,
            row_num=cell.row,
            col_letter=col_letter,
            cell_type=cell_type,
            data_type=_data_type(cached),
            raw_value=raw_value,
            raw_text=raw_text,
            formula=formula,
            depends_on=depends_on,
            has_validation=validation_type is not None,
            validation_type=validation_type,
            validation_options=validation_options,
            style=_style_digest(cell),
        )
