"""
Validation Service - Recalculate formulas and compare with cached values.

This module verifies the native formula engine against the values Excel
stored in the file when it was last calculated.
"""

import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from openpyxl.utils.datetime import to_excel

from xelhua.config import Settings, get_settings
from xelhua.evaluation_service import ERROR_CODES, ExcelError, FormulaEvaluator
from xelhua.exceptions import FormulaError
from xelhua.formula_service import FormulaParser
from xelhua.schemas import MismatchCell, ValidationReport
from xelhua.storage import open_workbook, stored_cells

logger = logging.getLogger(__name__)

# Mismatches listed in a report; the counters cover all of them
MAX_REPORTED_MISMATCHES = 100


def _reportable(value, epoch) -> Any:
    if isinstance(value, ExcelError):
        return value.code
    if isinstance(value, (datetime, date, time)):
        return float(to_excel(value, epoch))
    return value


class ValidationService:
    """
    Validates all formula cells by comparing natively calculated values
    against Excel's cached values.
    """

    def __init__(
        self,
        tolerance: Optional[float] = None,
        progress_callback: Optional[Callable[[str, float, str], None]] = None,
        settings: Optional[Settings] = None
    ):
        """
        Initialize validation service.

        Args:
            tolerance: Tolerance for numeric comparison (default: settings.TOLERANCE)
            progress_callback: Optional callback for progress updates
                              Signature: callback(stage: str, percent: float, message: str)
        """
        self.settings = settings or get_settings()
        self.tolerance = self.settings.TOLERANCE if tolerance is None else tolerance
        self.progress_callback = progress_callback or (lambda *args: None)

    def _emit_progress(self, stage: str, percent: float, message: str):
        """Emit progress update via callback."""
        self.progress_callback(stage, percent, message)
        logger.info(f"Validation progress: {stage} ({percent:.1f}%) - {message}")

    def validate_workbook(self, path: Union[str, Path]) -> ValidationReport:
        """
        Validate all formula cells in a workbook.

        Args:
            path: Workbook path

        Returns:
            ValidationReport with status 'passed', 'failed' or 'partial'
        """
        logger.info(f"Starting validation for {path}")
        self._emit_progress('starting', 0, 'Initializing validation...')

        self._emit_progress('loading', 10, 'Loading workbook...')
        wb_formulas = open_workbook(path, data_only=False)
        wb_values = open_workbook(path, data_only=True)
        evaluator = FormulaEvaluator(wb_formulas, self.settings)

        formula_cells = list(evaluator.formula_cells())
        total = len(formula_cells)
        logger.info(f"Found {total} formula cells to validate")

        report = ValidationReport(status='passed', total=total, tolerance=self.tolerance)
        mismatch_cells = []

        for idx, (key, formula) in enumerate(formula_cells):
            if idx % 50 == 0:
                progress = 10 + (80 * (idx / total))
                self._emit_progress('validating', progress, f"Validating cell {idx}/{total}")

            sheet, address = FormulaParser.parse_cell_reference(key)
            row, col = FormulaParser.cell_to_coordinates(address)
            value_cell = stored_cells(wb_values[sheet]).get((row + 1, col + 1))
            expected = value_cell.value if value_cell is not None else None

            try:
                actual = evaluator.evaluate_cell(key)
            except FormulaError as e:
                logger.error(f"Error evaluating {key}: {e}")
                report.errors += 1
                mismatch_cells.append(MismatchCell(
                    cell_ref=key, formula=formula,
                    expected=_reportable(expected, evaluator.epoch), error=str(e)))
                continue

            if expected is None:
                report.no_cached_value += 1
                continue

            status, diff, kind = self._compare(expected, actual, evaluator.epoch)
            if status == 'match':
                report.matches += 1
            else:
                report.mismatches += 1
                logger.debug(f"Mismatch at {key}: expected {expected!r}, got {actual!r}")
                mismatch_cells.append(MismatchCell(
                    cell_ref=key, formula=formula,
                    expected=_reportable(expected, evaluator.epoch),
                    actual=_reportable(actual, evaluator.epoch),
                    diff=diff, type=kind))

        self._emit_progress('finalizing', 95, 'Finalizing validation report...')

        if report.mismatches == 0 and report.errors == 0:
            report.status = 'passed'
        elif report.matches > 0:
            report.status = 'partial'
        else:
            report.status = 'failed'

        report.mismatch_cells = mismatch_cells[:MAX_REPORTED_MISMATCHES]
        report.circular_cells = {key: status for key, (status, _) in evaluator.solver_results.items()}

        self._emit_progress('complete', 100, 'Validation complete')
        logger.info(f"Validation complete: {report.status} ({report.matches} matches, "
                    f"{report.mismatches} mismatches, {report.errors} errors, "
                    f"{report.no_cached_value} without cached value)")
        return report

    def _compare(self, expected, actual, epoch) -> Tuple[str, Optional[float], str]:
        """
        Compare a cached value with a computed one.

        Returns:
            (status, diff, type) where status is 'match' or 'mismatch'
        """
        if isinstance(expected, str) and expected in ERROR_CODES:
            matched = isinstance(actual, ExcelError) and actual.code == expected
            return ('match' if matched else 'mismatch'), None, 'error'

        if isinstance(actual, ExcelError):
            return 'mismatch', None, 'error'

        if isinstance(expected, bool):
            matched = isinstance(actual, bool) and actual == expected
            return ('match' if matched else 'mismatch'), None, 'boolean'

        if isinstance(expected, (datetime, date, time)):
            expected = float(to_excel(expected, epoch))

        if isinstance(expected, (int, float)):
            if isinstance(actual, bool) or not isinstance(actual, (int, float)):
                return 'mismatch', None, 'numeric'
            diff = abs(float(expected) - float(actual))
            return ('match' if diff <= self.tolerance else 'mismatch'), diff, 'numeric'

        if isinstance(actual, str) and actual == expected:
            return 'match', 0.0, 'text'
        if isinstance(actual, str):
            return 'mismatch', float(abs(len(actual) - len(expected))), 'text'
        return 'mismatch', None, 'text'

    @staticmethod
    def summarize(report: ValidationReport) -> Dict[str, Any]:
        """Compact dict of a report's counters, for logs and CLI output."""
        return report.model_dump(exclude={'mismatch_cells', 'circular_cells'})
