"""
Custom exceptions for xelhua.

Every error raised by the library derives from XelhuaError, so callers can
catch the whole family at once. Where a built-in exception carries the same
meaning (ValueError, LookupError) the subclass inherits from it as well.
"""

from typing import Optional


class XelhuaError(Exception):
    """Base exception for all xelhua errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class CellTypeError(XelhuaError, ValueError):
    """Raised when a cell's content cannot be read or written as the requested type."""

    def __init__(self, message: str, cell: Optional[str] = None, details: Optional[str] = None):
        self.cell = cell
        super().__init__(message, details)

    def __str__(self) -> str:
        base = super().__str__()
        if self.cell:
            return f"{base} (cell {self.cell})"
        return base


class HeaderNotFoundError(XelhuaError, LookupError):
    """Raised when a header row has no column with the requested name."""

    def __init__(self, name: str, details: Optional[str] = None):
        self.name = name
        super().__init__("Couldn't find a cell with that name in header row.", details or f"'{name}'")


class MergeRegionError(XelhuaError, ValueError):
    """Raised for invalid or overlapping merged regions."""


class WorkbookFormatError(XelhuaError):
    """Raised when a file cannot be parsed as a spreadsheet container."""

    def __init__(self, message: str, path: Optional[str] = None, details: Optional[str] = None):
        self.path = path
        super().__init__(message, details)


class FormulaError(XelhuaError):
    """Base class for formula parsing and evaluation failures."""


class FormulaSyntaxError(FormulaError):
    """Raised when a formula cannot be tokenized or parsed."""

    def __init__(self, message: str, formula: Optional[str] = None, details: Optional[str] = None):
        self.formula = formula
        super().__init__(message, details)


class CircularReferenceError(FormulaError):
    """Raised when a circular reference is met and iterative calculation is disabled."""

    def __init__(self, cell: str, details: Optional[str] = None):
        self.cell = cell
        super().__init__(f"Circular reference at {cell}", details)


class StreamingError(XelhuaError):
    """Raised when a streaming writer is used out of order."""
