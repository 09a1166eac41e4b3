"""
Evaluation Service - Native formula evaluation for openpyxl workbooks.

This module contains the dependency graph, the iterative solver for
circular references, and a formula evaluator that parses openpyxl tokens
into an expression tree and computes it with Excel semantics.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP
from typing import Any, Callable, Container, Dict, Iterator, List, Optional, Set, Tuple

import networkx as nx
from openpyxl.formula.tokenizer import Token
from openpyxl.utils.datetime import CALENDAR_WINDOWS_1900, to_excel
from openpyxl.workbook.workbook import Workbook

from xelhua.config import Settings, get_settings
from xelhua.exceptions import CircularReferenceError, FormulaError, FormulaSyntaxError
from xelhua.formula_service import FormulaParser
from xelhua.storage import stored_cells

logger = logging.getLogger(__name__)


class ExcelError:
    """An Excel error value such as #DIV/0!. Errors are values, not exceptions."""

    __slots__ = ('code',)

    def __init__(self, code: str):
        self.code = code

    def __eq__(self, other) -> bool:
        return isinstance(other, ExcelError) and other.code == self.code

    def __hash__(self) -> int:
        return hash(self.code)

    def __repr__(self) -> str:
        return f"ExcelError({self.code!r})"

    def __str__(self) -> str:
        return self.code


NULL = ExcelError('#NULL!')
DIV0 = ExcelError('#DIV/0!')
VALUE = ExcelError('#VALUE!')
REF = ExcelError('#REF!')
NAME = ExcelError('#NAME?')
NUM = ExcelError('#NUM!')
NA = ExcelError('#N/A')

ERROR_CODES = {e.code: e for e in (NULL, DIV0, VALUE, REF, NAME, NUM, NA)}


class _Propagate(Exception):
    """Carries an ExcelError up to the nearest function or formula boundary."""

    def __init__(self, error: ExcelError):
        self.error = error
        super().__init__(error.code)


# ============================================================================
# Dependency graph and circular solver
# ============================================================================

class DependencyGraph:
    """Track formula dependencies and detect circular references."""

    def __init__(self):
        # Edges point from a cell to the cells it depends on
        self.graph = nx.DiGraph()
        self.circular_groups: List[List[str]] = []
        self._group_index: Dict[str, int] = {}

    def add_dependency(self, cell: str, depends_on: List[str]):
        """Add a cell and its dependencies to the graph."""
        self.graph.add_node(cell)
        for dep in depends_on:
            self.graph.add_edge(cell, dep)

    def detect_cycles(self) -> List[List[str]]:
        """
        Detect all circular reference groups.

        Returns list of circular reference groups: strongly connected
        components with more than one cell, plus cells that reference
        themselves.
        """
        groups = []
        for component in nx.strongly_connected_components(self.graph):
            if len(component) > 1:
                groups.append(sorted(component))
            else:
                node = next(iter(component))
                if self.graph.has_edge(node, node):
                    groups.append([node])

        self.circular_groups = sorted(groups)
        self._group_index = {}
        for idx, group in enumerate(self.circular_groups):
            for cell in group:
                self._group_index[cell] = idx

        logger.info(f"Detected {len(self.circular_groups)} circular reference groups")
        for i, group in enumerate(self.circular_groups):
            logger.debug(f"Circular group {i+1}: {group}")

        return self.circular_groups

    def is_circular(self, cell: str) -> bool:
        """Check if a cell is part of a circular reference."""
        return cell in self._group_index

    def group_of(self, cell: str) -> Optional[List[str]]:
        """Return the circular group containing a cell, if any."""
        idx = self._group_index.get(cell)
        return None if idx is None else self.circular_groups[idx]

    def precedents(self, cell: str, exclude: Optional[Container[str]] = None) -> Set[str]:
        """
        All cells the given cell depends on, directly or transitively.

        Cells in exclude are left out and not followed any further.
        """
        if cell not in self.graph:
            return set()
        if exclude is None:
            return nx.descendants(self.graph, cell)

        found: Set[str] = set()
        stack = [cell]
        while stack:
            for dep in self.graph.successors(stack.pop()):
                if dep not in found and dep not in exclude:
                    found.add(dep)
                    stack.append(dep)
        return found

    def dependents(self, cell: str) -> Set[str]:
        """All cells that depend on the given cell, directly or transitively."""
        if cell not in self.graph:
            return set()
        return nx.ancestors(self.graph, cell)

    def evaluation_batches(self) -> List[List[str]]:
        """
        Order non-circular cells so dependencies come first.

        Cells in the same batch have no dependencies on each other.
        """
        acyclic = self.graph.subgraph(
            n for n in self.graph.nodes if n not in self._group_index
        )
        batches = [sorted(generation)
                   for generation in nx.topological_generations(acyclic.reverse(copy=False))]
        logger.info(f"Topological sort: {len(batches)} evaluation batches")
        return batches

    def evaluation_order(self, cells: Optional[Set[str]] = None) -> List[List[str]]:
        """
        Order cells so dependencies come first, circular groups included.

        Each entry is a single cell or a whole circular group, which has
        to be solved together.

        Args:
            cells: Restrict the order to these cells (default: all)
        """
        graph = self.graph if cells is None else self.graph.subgraph(
            n for n in cells if n in self.graph
        )
        condensed = nx.condensation(graph)
        return [sorted(condensed.nodes[node]['members'])
                for node in reversed(list(nx.topological_sort(condensed)))]


class CircularSolver:
    """Iterative solver for circular references."""

    def __init__(self, max_iterations: int = 100, threshold: float = 1e-6):
        self.max_iterations = max_iterations
        self.threshold = threshold

    def solve(self, circular_cells: List[str],
              evaluate_func: Callable[[str, Dict[str, Any]], Any],
              initial: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], str, int]:
        """
        Iteratively solve circular references.

        Every cell in the group is re-evaluated on each pass against the
        previous pass's values, until the largest numeric change drops
        below the threshold. A failed evaluation yields None; stale values
        are never carried over as results.

        Args:
            circular_cells: Cells of one circular group
            evaluate_func: callback(cell_ref, values) -> new value
            initial: Optional starting values (default 0.0)

        Returns: (results_dict, status, iterations)
            status: 'converged' or 'max_iterations'
        """
        logger.info(f"Starting iterative solver for {len(circular_cells)} circular cells")

        values = {cell_ref: 0.0 for cell_ref in circular_cells}
        if initial:
            values.update(initial)

        for iteration in range(self.max_iterations):
            new_values = {}
            max_change = 0.0

            for cell_ref in circular_cells:
                try:
                    result = evaluate_func(cell_ref, values)
                except FormulaError as e:
                    logger.error(f"Error evaluating circular cell {cell_ref}: {e}")
                    result = None

                new_values[cell_ref] = result
                previous = values.get(cell_ref)

                if _is_number(result) and _is_number(previous):
                    max_change = max(max_change, abs(result - previous))
                elif result != previous:
                    max_change = math.inf

            values = new_values
            logger.debug(f"Iteration {iteration + 1}: max_change={max_change:.2e}")

            if max_change < self.threshold:
                logger.info(f"Converged after {iteration + 1} iterations")
                return values, 'converged', iteration + 1

        logger.warning(f"Max iterations ({self.max_iterations}) reached without full convergence")
        return values, 'max_iterations', self.max_iterations


# ============================================================================
# Expression tree
# ============================================================================

@dataclass
class Literal:
    value: Any


@dataclass
class Ref:
    text: str


@dataclass
class Missing:
    """An omitted function argument, as in IF(A1,,1)."""


@dataclass
class UnaryOp:
    op: str
    operand: Any


@dataclass
class BinaryOp:
    op: str
    left: Any
    right: Any


@dataclass
class Call:
    name: str
    args: List[Any] = field(default_factory=list)


COMPARISON_OPS = ('=', '<>', '<', '<=', '>', '>=')
INTERSECT = ' '


class _ExpressionParser:
    """Recursive-descent parser over openpyxl formula tokens."""

    def __init__(self, formula: str):
        self.formula = formula
        self.tokens = self._significant(FormulaParser.tokenize(formula))
        self.pos = 0

    @staticmethod
    def _ends_operand(token: Token) -> bool:
        return (token.type == Token.OPERAND
                or (token.type in (Token.PAREN, Token.FUNC) and token.subtype == Token.CLOSE))

    @staticmethod
    def _starts_operand(token: Token) -> bool:
        return (token.type == Token.OPERAND
                or (token.type in (Token.PAREN, Token.FUNC) and token.subtype == Token.OPEN))

    def _significant(self, tokens: List[Token]) -> List[Token]:
        # Whitespace between two references is the intersection operator
        result = []
        for idx, token in enumerate(tokens):
            if token.type != Token.WSPACE:
                result.append(token)
                continue
            prev_token = result[-1] if result else None
            next_token = next((t for t in tokens[idx + 1:] if t.type != Token.WSPACE), None)
            if (prev_token is not None and next_token is not None
                    and self._ends_operand(prev_token) and self._starts_operand(next_token)):
                result.append(Token(INTERSECT, Token.OP_IN))
        return result

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise FormulaSyntaxError("Unexpected end of formula", formula=self.formula)
        self.pos += 1
        return token

    def _error(self, message: str) -> FormulaSyntaxError:
        return FormulaSyntaxError(message, formula=self.formula, details=f"token {self.pos}")

    def _is_op(self, token: Optional[Token], values) -> bool:
        return token is not None and token.type == Token.OP_IN and token.value in values

    def parse(self):
        if not self.tokens:
            raise self._error("Empty formula")
        if self.tokens[0].type == Token.LITERAL:
            # Tokenizer returns plain values (no leading '=') as one literal
            return Literal(self.tokens[0].value)
        node = self._comparison()
        if self._peek() is not None:
            raise self._error(f"Unexpected token {self._peek().value!r}")
        return node

    def _binary_level(self, operators, next_level):
        node = next_level()
        while self._is_op(self._peek(), operators):
            op = self._next().value
            node = BinaryOp(op, node, next_level())
        return node

    def _comparison(self):
        return self._binary_level(COMPARISON_OPS, self._concat)

    def _concat(self):
        return self._binary_level(('&',), self._additive)

    def _additive(self):
        return self._binary_level(('+', '-'), self._multiplicative)

    def _multiplicative(self):
        return self._binary_level(('*', '/'), self._power)

    def _power(self):
        return self._binary_level(('^',), self._percent)

    def _percent(self):
        node = self._unary()
        while True:
            token = self._peek()
            if token is not None and token.type == Token.OP_POST and token.value == '%':
                self._next()
                node = UnaryOp('%', node)
            else:
                return node

    def _unary(self):
        token = self._peek()
        if token is not None and token.type == Token.OP_PRE:
            self._next()
            return UnaryOp(token.value, self._unary())
        return self._reference()

    def _reference(self):
        return self._binary_level((':', INTERSECT, ','), self._primary)

    def _primary(self):
        token = self._next()

        if token.type == Token.OPERAND:
            if token.subtype == Token.NUMBER:
                return Literal(float(token.value))
            if token.subtype == Token.TEXT:
                return Literal(token.value[1:-1].replace('""', '"'))
            if token.subtype == Token.LOGICAL:
                return Literal(token.value.upper() == 'TRUE')
            if token.subtype == Token.ERROR:
                return Literal(ERROR_CODES.get(token.value.upper(), ExcelError(token.value.upper())))
            return Ref(token.value)

        if token.type == Token.PAREN and token.subtype == Token.OPEN:
            node = self._comparison()
            closing = self._next()
            if closing.type != Token.PAREN or closing.subtype != Token.CLOSE:
                raise self._error("Expected ')'")
            return node

        if token.type == Token.FUNC and token.subtype == Token.OPEN:
            name = token.value[:-1].upper()
            if name.startswith('_XLFN.'):
                name = name[len('_XLFN.'):]
            return Call(name, self._arguments())

        raise self._error(f"Unexpected token {token.value!r}")

    def _arguments(self) -> List[Any]:
        args = []
        token = self._peek()
        if token is not None and token.type == Token.FUNC and token.subtype == Token.CLOSE:
            self._next()
            return args

        while True:
            token = self._peek()
            if token is None:
                raise self._error("Unterminated function call")
            if token.type == Token.SEP and token.subtype == Token.ARG:
                args.append(Missing())
            elif token.type == Token.FUNC and token.subtype == Token.CLOSE:
                args.append(Missing())
            else:
                args.append(self._comparison())

            token = self._next()
            if token.type == Token.SEP and token.subtype == Token.ARG:
                continue
            if token.type == Token.FUNC and token.subtype == Token.CLOSE:
                return args
            raise self._error(f"Expected ',' or ')' but got {token.value!r}")


def parse_formula(formula: str):
    """Parse a formula ("=..." or a plain value) into an expression tree."""
    return _ExpressionParser(formula).parse()


# ============================================================================
# Values and coercion
# ============================================================================

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RangeRef:
    """A rectangular block of cells on one sheet (zero-based, inclusive)."""

    def __init__(self, evaluator: 'FormulaEvaluator', sheet: str,
                 min_row: int, min_col: int, max_row: int, max_col: int):
        self.evaluator = evaluator
        self.sheet = sheet
        self.min_row = min_row
        self.min_col = min_col
        self.max_row = max_row
        self.max_col = max_col

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.max_row - self.min_row + 1, self.max_col - self.min_col + 1)

    @property
    def size(self) -> int:
        rows, cols = self.shape
        return rows * cols

    def keys(self) -> Iterator[str]:
        for row in range(self.min_row, self.max_row + 1):
            for col in range(self.min_col, self.max_col + 1):
                yield FormulaParser.make_key(self.sheet, row, col)

    def values(self) -> Iterator[Any]:
        for row in range(self.min_row, self.max_row + 1):
            for col in range(self.min_col, self.max_col + 1):
                yield self.evaluator.cell_value(self.sheet, row, col)

    def rows(self) -> List[List[Any]]:
        return [[self.evaluator.cell_value(self.sheet, row, col)
                 for col in range(self.min_col, self.max_col + 1)]
                for row in range(self.min_row, self.max_row + 1)]

    def __repr__(self) -> str:
        start = FormulaParser.coordinates_to_cell(self.min_row, self.min_col)
        end = FormulaParser.coordinates_to_cell(self.max_row, self.max_col)
        return f"RangeRef({self.sheet}!{start}:{end})"


def _raise_if_error(value):
    if isinstance(value, ExcelError):
        raise _Propagate(value)
    return value


def _scalar(value):
    """Reduce a range to a single value; multi-cell ranges are #VALUE!."""
    if isinstance(value, RangeRef):
        if value.size != 1:
            raise _Propagate(VALUE)
        return next(value.values())
    return value


def to_number(value) -> float:
    value = _raise_if_error(_scalar(value))
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.endswith('%'):
                return float(text[:-1]) / 100
            return float(text)
        except ValueError:
            raise _Propagate(VALUE)
    raise _Propagate(VALUE)


def to_text(value) -> str:
    value = _raise_if_error(_scalar(value))
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if _is_number(value):
        value = float(value)
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return format(value, '.15g')
    return str(value)


def to_bool(value) -> bool:
    value = _raise_if_error(_scalar(value))
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0
    if isinstance(value, str):
        if value.upper() == 'TRUE':
            return True
        if value.upper() == 'FALSE':
            return False
    raise _Propagate(VALUE)


def _type_rank(value) -> int:
    if isinstance(value, bool):
        return 2
    if isinstance(value, str):
        return 1
    return 0


def compare(left, right) -> int:
    """Compare two scalars the way Excel does: numbers < text < booleans."""
    if left is None:
        left = '' if isinstance(right, str) else (False if isinstance(right, bool) else 0.0)
    if right is None:
        right = '' if isinstance(left, str) else (False if isinstance(left, bool) else 0.0)

    left_rank, right_rank = _type_rank(left), _type_rank(right)
    if left_rank != right_rank:
        return -1 if left_rank < right_rank else 1
    if isinstance(left, str):
        left, right = left.lower(), right.lower()
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def _round(number: float, digits: float, rounding) -> float:
    quantum = Decimal(1).scaleb(-int(digits))
    try:
        return float(Decimal(repr(number)).quantize(quantum, rounding=rounding))
    except InvalidOperation:
        # More digits than Decimal's context precision: nothing to round
        return number


# ============================================================================
# Built-in functions
# ============================================================================

def _numbers(args) -> Iterator[float]:
    """Numbers from arguments: ranges contribute numeric cells only."""
    for arg in args:
        if isinstance(arg, RangeRef):
            for value in arg.values():
                _raise_if_error(value)
                if _is_number(value):
                    yield float(value)
        elif isinstance(arg, Missing) or arg is None:
            continue
        else:
            yield to_number(arg)


def _all_values(args) -> Iterator[Any]:
    for arg in args:
        if isinstance(arg, RangeRef):
            yield from arg.values()
        elif not isinstance(arg, Missing):
            yield arg


def _wildcard_pattern(text: str):
    """Excel wildcards: * any run, ? one char, ~ escapes the next char."""
    parts = []
    escaped = False
    for char in text:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == '~':
            escaped = True
        elif char == '*':
            parts.append('.*')
        elif char == '?':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.IGNORECASE | re.DOTALL)


def _criteria_matcher(criteria) -> Callable[[Any], bool]:
    criteria = _raise_if_error(_scalar(criteria))
    if not isinstance(criteria, str):
        target = criteria
        return lambda v: v is not None and not isinstance(v, ExcelError) and compare(v, target) == 0

    op = '='
    for candidate in ('<>', '<=', '>=', '<', '>', '='):
        if criteria.startswith(candidate):
            op, criteria = candidate, criteria[len(candidate):]
            break

    operand: Any = criteria
    try:
        operand = float(criteria)
    except ValueError:
        if criteria.upper() in ('TRUE', 'FALSE'):
            operand = criteria.upper() == 'TRUE'

    if isinstance(operand, str) and op in ('=', '<>') and any(ch in operand for ch in '*?'):
        pattern = _wildcard_pattern(operand)

        def wildcard(v) -> bool:
            matched = isinstance(v, str) and bool(pattern.fullmatch(v))
            return matched if op == '=' else not matched
        return wildcard

    def match(v) -> bool:
        if isinstance(v, ExcelError):
            return False
        if op == '=' and operand == '':
            return v is None or v == ''
        if op == '<>' and operand == '':
            return v is not None and v != ''
        if v is None:
            return op == '<>'
        if isinstance(operand, float) and isinstance(v, str):
            try:
                v = float(v)
            except ValueError:
                return op == '<>'
        if _type_rank(v) != _type_rank(operand):
            return op == '<>'
        result = compare(v, operand)
        return {'=': result == 0, '<>': result != 0, '<': result < 0,
                '<=': result <= 0, '>': result > 0, '>=': result >= 0}[op]
    return match


def fn_sum(args):
    return math.fsum(_numbers(args))


def fn_average(args):
    numbers = list(_numbers(args))
    if not numbers:
        raise _Propagate(DIV0)
    return math.fsum(numbers) / len(numbers)


def fn_min(args):
    numbers = list(_numbers(args))
    return min(numbers) if numbers else 0.0


def fn_max(args):
    numbers = list(_numbers(args))
    return max(numbers) if numbers else 0.0


def fn_product(args):
    numbers = list(_numbers(args))
    if not numbers:
        return 0.0
    return float(math.prod(numbers))


def fn_count(args):
    count = 0
    for arg in args:
        if isinstance(arg, RangeRef):
            count += sum(1 for v in arg.values() if _is_number(v))
        elif isinstance(arg, (ExcelError, Missing)) or arg is None:
            continue
        else:
            try:
                to_number(arg)
                count += 1
            except _Propagate:
                pass
    return float(count)


def fn_counta(args):
    count = 0
    for arg in args:
        if isinstance(arg, RangeRef):
            count += sum(1 for v in arg.values() if v is not None)
        elif not isinstance(arg, Missing):
            count += 1
    return float(count)


def fn_countblank(args):
    if len(args) != 1 or not isinstance(args[0], RangeRef):
        raise _Propagate(VALUE)
    return float(sum(1 for v in args[0].values() if v is None or v == ''))


def fn_sumproduct(args):
    if not args:
        raise _Propagate(VALUE)
    blocks = []
    for arg in args:
        if isinstance(arg, RangeRef):
            blocks.append([v for row in arg.rows() for v in row])
        else:
            blocks.append([_scalar(arg)])
    length = len(blocks[0])
    if any(len(block) != length for block in blocks):
        raise _Propagate(VALUE)
    total = 0.0
    for items in zip(*blocks):
        product = 1.0
        for item in items:
            _raise_if_error(item)
            product *= float(item) if _is_number(item) else 0.0
        total += product
    return total


def fn_sumif(args):
    if len(args) not in (2, 3) or not isinstance(args[0], RangeRef):
        raise _Propagate(VALUE)
    matcher = _criteria_matcher(args[1])
    criteria_values = [v for row in args[0].rows() for v in row]
    if len(args) == 3 and not isinstance(args[2], Missing):
        if not isinstance(args[2], RangeRef):
            raise _Propagate(VALUE)
        sum_range = args[2]
        rows, cols = args[0].shape
        sum_range = RangeRef(sum_range.evaluator, sum_range.sheet, sum_range.min_row,
                             sum_range.min_col, sum_range.min_row + rows - 1,
                             sum_range.min_col + cols - 1)
        sum_values = [v for row in sum_range.rows() for v in row]
    else:
        sum_values = criteria_values
    total = 0.0
    for criteria_value, value in zip(criteria_values, sum_values):
        if matcher(criteria_value) and _is_number(value):
            total += float(value)
    return total


def fn_countif(args):
    if len(args) != 2 or not isinstance(args[0], RangeRef):
        raise _Propagate(VALUE)
    matcher = _criteria_matcher(args[1])
    return float(sum(1 for v in args[0].values() if matcher(v)))


def fn_and(args):
    flags = _logical_values(args)
    return all(flags)


def fn_or(args):
    flags = _logical_values(args)
    return any(flags)


def _logical_values(args) -> List[bool]:
    flags = []
    for arg in args:
        if isinstance(arg, RangeRef):
            for value in arg.values():
                _raise_if_error(value)
                if isinstance(value, bool) or _is_number(value):
                    flags.append(bool(value))
        elif isinstance(arg, Missing):
            flags.append(False)
        else:
            flags.append(to_bool(arg))
    if not flags:
        raise _Propagate(VALUE)
    return flags


def fn_not(args):
    _expect_args(args, 1)
    return not to_bool(args[0])


def _first_value(args):
    _expect_args(args, 1)
    arg = args[0]
    if isinstance(arg, RangeRef):
        return next(arg.values()) if arg.size == 1 else VALUE
    return None if isinstance(arg, Missing) else arg


def fn_isblank(args):
    return _first_value(args) is None


def fn_isnumber(args):
    return _is_number(_first_value(args))


def fn_istext(args):
    return isinstance(_first_value(args), str)


def fn_iserror(args):
    return isinstance(_first_value(args), ExcelError)


def _expect_args(args, minimum: int, maximum: Optional[int] = None):
    maximum = minimum if maximum is None else maximum
    if not minimum <= len(args) <= maximum:
        raise _Propagate(VALUE)


def _optional_number(args, idx: int, default: float) -> float:
    if len(args) <= idx or isinstance(args[idx], Missing):
        return default
    return to_number(args[idx])


def fn_abs(args):
    _expect_args(args, 1)
    return abs(to_number(args[0]))


def fn_round(args):
    _expect_args(args, 1, 2)
    return _round(to_number(args[0]), _optional_number(args, 1, 0), ROUND_HALF_UP)


def fn_roundup(args):
    _expect_args(args, 1, 2)
    return _round(to_number(args[0]), _optional_number(args, 1, 0), ROUND_UP)


def fn_rounddown(args):
    _expect_args(args, 1, 2)
    return _round(to_number(args[0]), _optional_number(args, 1, 0), ROUND_DOWN)


def fn_int(args):
    _expect_args(args, 1)
    return float(math.floor(to_number(args[0])))


def fn_mod(args):
    _expect_args(args, 2)
    number, divisor = to_number(args[0]), to_number(args[1])
    if divisor == 0:
        raise _Propagate(DIV0)
    return number - divisor * math.floor(number / divisor)


def fn_power(args):
    _expect_args(args, 2)
    return _power(to_number(args[0]), to_number(args[1]))


def fn_sqrt(args):
    _expect_args(args, 1)
    number = to_number(args[0])
    if number < 0:
        raise _Propagate(NUM)
    return math.sqrt(number)


def fn_pi(args):
    _expect_args(args, 0)
    return math.pi


def fn_true(args):
    _expect_args(args, 0)
    return True


def fn_false(args):
    _expect_args(args, 0)
    return False


def fn_concatenate(args):
    if any(isinstance(arg, RangeRef) and arg.size != 1 for arg in args):
        raise _Propagate(VALUE)
    return ''.join(to_text(arg) for arg in args if not isinstance(arg, Missing))


def fn_concat(args):
    return ''.join(to_text(v) for v in _all_values(args))


def fn_len(args):
    _expect_args(args, 1)
    return float(len(to_text(args[0])))


def fn_upper(args):
    _expect_args(args, 1)
    return to_text(args[0]).upper()


def fn_lower(args):
    _expect_args(args, 1)
    return to_text(args[0]).lower()


def fn_trim(args):
    _expect_args(args, 1)
    # Only spaces are collapsed; tabs and newlines are kept
    return ' '.join(part for part in to_text(args[0]).split(' ') if part)


def fn_left(args):
    _expect_args(args, 1, 2)
    count = _optional_number(args, 1, 1)
    if count < 0:
        raise _Propagate(VALUE)
    return to_text(args[0])[:int(count)]


def fn_right(args):
    _expect_args(args, 1, 2)
    count = int(_optional_number(args, 1, 1))
    if count < 0:
        raise _Propagate(VALUE)
    text = to_text(args[0])
    return text[len(text) - count:] if count else ''


def fn_mid(args):
    _expect_args(args, 3)
    text = to_text(args[0])
    start, count = int(to_number(args[1])), int(to_number(args[2]))
    if start < 1 or count < 0:
        raise _Propagate(VALUE)
    return text[start - 1:start - 1 + count]


FUNCTIONS: Dict[str, Callable[[List[Any]], Any]] = {
    'SUM': fn_sum,
    'AVERAGE': fn_average,
    'MIN': fn_min,
    'MAX': fn_max,
    'COUNT': fn_count,
    'COUNTA': fn_counta,
    'COUNTBLANK': fn_countblank,
    'PRODUCT': fn_product,
    'SUMPRODUCT': fn_sumproduct,
    'SUMIF': fn_sumif,
    'COUNTIF': fn_countif,
    'AND': fn_and,
    'OR': fn_or,
    'NOT': fn_not,
    'ISBLANK': fn_isblank,
    'ISNUMBER': fn_isnumber,
    'ISTEXT': fn_istext,
    'ISERROR': fn_iserror,
    'ABS': fn_abs,
    'ROUND': fn_round,
    'ROUNDUP': fn_roundup,
    'ROUNDDOWN': fn_rounddown,
    'INT': fn_int,
    'MOD': fn_mod,
    'POWER': fn_power,
    'SQRT': fn_sqrt,
    'PI': fn_pi,
    'TRUE': fn_true,
    'FALSE': fn_false,
    'CONCATENATE': fn_concatenate,
    'CONCAT': fn_concat,
    'LEN': fn_len,
    'UPPER': fn_upper,
    'LOWER': fn_lower,
    'TRIM': fn_trim,
    'LEFT': fn_left,
    'RIGHT': fn_right,
    'MID': fn_mid,
}

# Functions that receive unevaluated argument nodes
LAZY_FUNCTIONS = {'IF', 'IFERROR'}


def _power(base: float, exponent: float) -> float:
    if base == 0 and exponent < 0:
        raise _Propagate(DIV0)
    if base == 0 and exponent == 0:
        raise _Propagate(NUM)
    try:
        result = base ** exponent
    except OverflowError:
        raise _Propagate(NUM)
    if isinstance(result, complex):
        raise _Propagate(NUM)
    return float(result)


# ============================================================================
# Evaluator
# ============================================================================

class FormulaEvaluator:
    """
    Evaluate formulas of an openpyxl workbook loaded with data_only=False.

    Results are memoized per cell. Before a cell is computed, the
    DependencyGraph of everything it reaches is built and its precedents
    are evaluated dependency-first. Circular groups are solved iteratively
    with CircularSolver (or rejected when iterative calculation is disabled).
    """

    def __init__(self, workbook: Workbook, settings: Optional[Settings] = None):
        self.workbook = workbook
        self.settings = settings or get_settings()
        self.epoch = getattr(workbook, 'epoch', CALENDAR_WINDOWS_1900)

        self._cache: Dict[str, Any] = {}
        self._trees: Dict[str, Any] = {}
        self._in_progress: Set[str] = set()
        self._overrides: Dict[str, Any] = {}
        self._graph: Optional[DependencyGraph] = None
        self._expanded: Set[str] = set()
        self.solver_results: Dict[str, Tuple[str, int]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate_cell(self, ref: str, sheet: Optional[str] = None):
        """
        Evaluate a cell by reference ("B2" or "Sheet1!B2").

        Args:
            ref: Cell reference
            sheet: Sheet used when ref is unqualified (default: active sheet)

        Returns:
            float, str, bool, None (empty cell) or ExcelError
        """
        ref_sheet, address = FormulaParser.parse_cell_reference(ref)
        sheet_name = ref_sheet or sheet or self.workbook.active.title
        row, col = FormulaParser.cell_to_coordinates(address)
        self._prepare([FormulaParser.make_key(sheet_name, row, col)])
        return self.cell_value(sheet_name, row, col)

    def evaluate(self, formula: str, sheet: Optional[str] = None):
        """Evaluate an ad hoc formula in the context of a sheet."""
        sheet_name = sheet or self.workbook.active.title
        if not formula.startswith('='):
            formula = '=' + formula
        tree = parse_formula(formula)
        self._prepare(self.dependencies(formula, sheet_name))
        return self._finalize(self._run(tree, sheet_name))

    def recalculate(self) -> Dict[str, Any]:
        """
        Evaluate every formula cell in the workbook.

        Returns:
            Mapping of "Sheet!A1" to evaluated value
        """
        keys = [key for key, _ in self.formula_cells()]
        self._prepare(keys)
        results = {key: self.evaluate_cell(key) for key in keys}
        logger.info(f"Recalculated {len(results)} formula cells")
        return results

    def formula_cells(self) -> Iterator[Tuple[str, str]]:
        """Yield (key, formula) for every formula cell, sheet by sheet."""
        for ws in self.workbook.worksheets:
            for (row, col), cell in sorted(stored_cells(ws).items()):
                if cell.data_type == 'f':
                    yield FormulaParser.make_key(ws.title, row - 1, col - 1), _formula_of(cell)

    def dependency_graph(self) -> DependencyGraph:
        """Dependency graph of every formula cell in the workbook."""
        return self._expand([key for key, _ in self.formula_cells()])

    def _expand(self, keys: List[str]) -> DependencyGraph:
        """Add the formula cells reachable from keys to the dependency graph."""
        if self._graph is None:
            self._graph = DependencyGraph()
        graph = self._graph

        added = False
        pending = [key for key in keys if key not in self._expanded]
        while pending:
            key = pending.pop()
            if key in self._expanded:
                continue
            self._expanded.add(key)
            cell = self._stored_cell(key)
            if cell is None or cell.data_type != 'f':
                continue

            sheet, _ = FormulaParser.parse_cell_reference(key)
            try:
                depends_on = self.dependencies(_formula_of(cell), sheet)
            except FormulaError as e:
                logger.warning(f"Could not extract dependencies of {key}: {e}")
                depends_on = []
            graph.add_dependency(key, depends_on)
            pending.extend(dep for dep in depends_on if dep not in self._expanded)
            added = True

        if added:
            graph.detect_cycles()
        return graph

    def _prepare(self, keys: List[str]):
        """
        Evaluate the uncached cells behind keys, dependencies first.

        Every formula then only reads values that are already cached, so
        long reference chains never nest evaluations.
        """
        graph = self._expand(keys)
        pending: Set[str] = set()
        for key in keys:
            if key not in self._cache:
                pending.add(key)
                pending |= graph.precedents(key, exclude=self._cache.keys())
        if not pending:
            return

        for members in graph.evaluation_order(pending):
            for key in members:
                if key not in self._cache:
                    sheet, address = FormulaParser.parse_cell_reference(key)
                    row, col = FormulaParser.cell_to_coordinates(address)
                    self.cell_value(sheet, row, col)

    def _stored_cell(self, key: str):
        sheet, address = FormulaParser.parse_cell_reference(key)
        if sheet not in self.workbook.sheetnames:
            return None
        row, col = FormulaParser.cell_to_coordinates(address)
        return stored_cells(self.workbook[sheet]).get((row + 1, col + 1))

    def dependencies(self, formula: str, sheet: str) -> List[str]:
        """Cells referenced by a formula, including through defined names."""
        deps: List[str] = []
        seen = set()
        for ref in self._collect_refs(self._tree(formula), sheet):
            for key in ref.keys():
                if key not in seen:
                    seen.add(key)
                    deps.append(key)
        return deps

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    def cell_value(self, sheet: str, row: int, col: int):
        """Value of a zero-based cell, evaluating formulas as needed."""
        key = FormulaParser.make_key(sheet, row, col)

        if key in self._overrides:
            return self._overrides[key]
        if key in self._cache:
            return self._cache[key]

        if sheet not in self.workbook.sheetnames:
            return REF
        ws = self.workbook[sheet]
        # Read without creating: ws.cell() would add an empty cell
        cell = stored_cells(ws).get((row + 1, col + 1))
        if cell is None:
            return None

        if cell.data_type != 'f':
            return self._plain_value(cell)

        if self._graph is not None and self._graph.is_circular(key):
            if not self.settings.ITERATIVE_CALCULATION:
                raise CircularReferenceError(key)
            self._solve_group(self._graph.group_of(key))
            return self._cache[key]

        if key in self._in_progress:
            raise CircularReferenceError(key)

        self._in_progress.add(key)
        try:
            value = self._compute(key, _formula_of(cell), sheet)
        finally:
            self._in_progress.discard(key)

        self._cache[key] = value
        return value

    def _plain_value(self, cell):
        value = cell.value
        if cell.data_type == 'e':
            return ERROR_CODES.get(str(value).upper(), ExcelError(str(value)))
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float, Decimal)):
            return float(value)
        if isinstance(value, (datetime, date, time, timedelta)):
            return float(to_excel(value, self.epoch))
        if value is None:
            return None
        return str(value)

    # ------------------------------------------------------------------
    # Evaluation internals
    # ------------------------------------------------------------------

    def _tree(self, formula: str):
        tree = self._trees.get(formula)
        if tree is None:
            tree = parse_formula(formula)
            self._trees[formula] = tree
        return tree

    def _compute(self, key: str, formula: str, sheet: str):
        logger.debug(f"Evaluating {key}: {formula}")
        return self._finalize(self._run(self._tree(formula), sheet))

    def _run(self, tree, sheet: str):
        try:
            return self._eval(tree, sheet)
        except _Propagate as e:
            return e.error

    def _finalize(self, value):
        if isinstance(value, RangeRef):
            try:
                value = _scalar(value)
            except _Propagate as e:
                return e.error
        if value is None:
            return 0.0
        if _is_number(value) and not isinstance(value, float):
            return float(value)
        return value

    def _solve_group(self, group: List[str]):
        if all(key in self._cache for key in group):
            return

        solver = CircularSolver(self.settings.MAX_CIRCULAR_ITERATIONS,
                                self.settings.CONVERGENCE_THRESHOLD)
        formulas = {}
        initial = {}
        for key in group:
            sheet, address = FormulaParser.parse_cell_reference(key)
            row, col = FormulaParser.cell_to_coordinates(address)
            formula = _formula_of(stored_cells(self.workbook[sheet])[(row + 1, col + 1)])
            formulas[key] = (formula, sheet)
            if FormulaParser.is_text_formula(formula):
                initial[key] = ''

        def evaluate_func(cell_ref, values):
            saved = self._overrides
            self._overrides = {**saved, **values}
            try:
                formula, sheet = formulas[cell_ref]
                return self._compute(cell_ref, formula, sheet)
            finally:
                self._overrides = saved

        results, status, iterations = solver.solve(group, evaluate_func, initial)
        for key in group:
            self.solver_results[key] = (status, iterations)
        self._cache.update(results)

    def _resolve_ref(self, text: str, sheet: str):
        ref_sheet, address = FormulaParser.parse_cell_reference(text)
        target = ref_sheet or sheet

        if ref_sheet is not None and ref_sheet not in self.workbook.sheetnames:
            raise _Propagate(REF)

        ws = self.workbook[target] if target in self.workbook.sheetnames else None
        max_row = ws.max_row if ws is not None else 1
        max_col = ws.max_column if ws is not None else 1
        try:
            bounds = FormulaParser.reference_bounds(address, max_row=max_row, max_col=max_col)
        except ValueError:
            raise _Propagate(REF)

        if bounds is None:
            return self._resolve_name(address, target)

        ref = RangeRef(self, target, *bounds)
        if ref.size > self.settings.MAX_RANGE_CELLS:
            raise FormulaError(f"Range {text} has {ref.size} cells",
                               details=f"limit is {self.settings.MAX_RANGE_CELLS}")
        return ref

    def _resolve_name(self, name: str, sheet: str):
        defined = None
        if sheet in self.workbook.sheetnames:
            defined = _lookup_name(getattr(self.workbook[sheet], 'defined_names', None), name)
        if defined is None:
            defined = _lookup_name(self.workbook.defined_names, name)
        if defined is None:
            raise _Propagate(NAME)

        if getattr(defined, 'type', 'RANGE') != 'RANGE':
            # Constant or formula names, e.g. TaxRate = 0.2
            return self._eval(self._tree('=' + defined.attr_text), sheet)

        destinations = list(defined.destinations)
        if len(destinations) != 1:
            raise _Propagate(REF)
        dest_sheet, address = destinations[0]
        return self._resolve_ref(f"'{dest_sheet}'!{address.replace('$', '')}", sheet)

    def _collect_refs(self, node, sheet: str) -> List[RangeRef]:
        refs = []
        if isinstance(node, Ref):
            try:
                resolved = self._resolve_ref(node.text, sheet)
            except _Propagate:
                return refs
            if isinstance(resolved, RangeRef):
                refs.append(resolved)
        elif isinstance(node, UnaryOp):
            refs.extend(self._collect_refs(node.operand, sheet))
        elif isinstance(node, BinaryOp):
            refs.extend(self._collect_refs(node.left, sheet))
            refs.extend(self._collect_refs(node.right, sheet))
        elif isinstance(node, Call):
            for arg in node.args:
                refs.extend(self._collect_refs(arg, sheet))
        return refs

    def _eval(self, node, sheet: str):
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Ref):
            return self._resolve_ref(node.text, sheet)
        if isinstance(node, Missing):
            return None
        if isinstance(node, UnaryOp):
            return self._eval_unary(node, sheet)
        if isinstance(node, BinaryOp):
            return self._eval_binary(node, sheet)
        if isinstance(node, Call):
            return self._eval_call(node, sheet)
        raise FormulaError(f"Unknown expression node: {node!r}")

    def _eval_unary(self, node: UnaryOp, sheet: str):
        operand = to_number(self._eval(node.operand, sheet))
        if node.op == '-':
            return -operand
        if node.op == '%':
            return operand / 100
        return operand

    def _eval_binary(self, node: BinaryOp, sheet: str):
        if node.op in (':', INTERSECT, ','):
            return self._eval_reference_op(node, sheet)

        left = _raise_if_error(_scalar(self._eval(node.left, sheet)))
        right = _raise_if_error(_scalar(self._eval(node.right, sheet)))

        if node.op in COMPARISON_OPS:
            result = compare(left, right)
            return {'=': result == 0, '<>': result != 0, '<': result < 0,
                    '<=': result <= 0, '>': result > 0, '>=': result >= 0}[node.op]
        if node.op == '&':
            return to_text(left) + to_text(right)

        left, right = to_number(left), to_number(right)
        if node.op == '+':
            return left + right
        if node.op == '-':
            return left - right
        if node.op == '*':
            return left * right
        if node.op == '/':
            if right == 0:
                raise _Propagate(DIV0)
            return left / right
        if node.op == '^':
            return _power(left, right)
        raise FormulaError(f"Unsupported operator: {node.op}")

    def _eval_reference_op(self, node: BinaryOp, sheet: str):
        left = self._eval(node.left, sheet)
        right = self._eval(node.right, sheet)
        if not isinstance(left, RangeRef) or not isinstance(right, RangeRef):
            raise _Propagate(VALUE)
        if left.sheet != right.sheet:
            raise _Propagate(REF if node.op == ':' else VALUE)

        if node.op == ':':
            return RangeRef(self, left.sheet,
                            min(left.min_row, right.min_row), min(left.min_col, right.min_col),
                            max(left.max_row, right.max_row), max(left.max_col, right.max_col))
        if node.op == INTERSECT:
            min_row, min_col = max(left.min_row, right.min_row), max(left.min_col, right.min_col)
            max_row, max_col = min(left.max_row, right.max_row), min(left.max_col, right.max_col)
            if min_row > max_row or min_col > max_col:
                raise _Propagate(NULL)
            return RangeRef(self, left.sheet, min_row, min_col, max_row, max_col)
        # Unions are only meaningful as function arguments
        raise _Propagate(VALUE)

    def _eval_call(self, node: Call, sheet: str):
        if node.name in LAZY_FUNCTIONS:
            return self._eval_lazy(node, sheet)

        func = FUNCTIONS.get(node.name)
        if func is None:
            logger.debug(f"Unsupported function {node.name}")
            raise _Propagate(NAME)

        args = []
        for arg in node.args:
            if isinstance(arg, Missing):
                args.append(arg)
            elif isinstance(arg, BinaryOp) and arg.op == ',':
                args.extend(self._union_parts(arg, sheet))
            else:
                args.append(self._run(arg, sheet))
        return func(args)

    def _union_parts(self, node, sheet: str) -> List[Any]:
        if isinstance(node, BinaryOp) and node.op == ',':
            return self._union_parts(node.left, sheet) + self._union_parts(node.right, sheet)
        return [self._run(node, sheet)]

    def _eval_lazy(self, node: Call, sheet: str):
        args = node.args
        if node.name == 'IF':
            _expect_args(args, 1, 3)
            condition = to_bool(self._eval(args[0], sheet))
            if condition:
                return self._eval(args[1], sheet) if len(args) > 1 else True
            if len(args) > 2:
                return self._eval(args[2], sheet)
            return False

        # IFERROR
        _expect_args(args, 2)
        value = self._run(args[0], sheet)
        if isinstance(value, RangeRef):
            try:
                value = _scalar(value)
            except _Propagate as e:
                value = e.error
        if isinstance(value, ExcelError):
            return self._eval(args[1], sheet)
        return value


def _formula_of(cell) -> str:
    value = cell.value
    if hasattr(value, 'text'):
        return value.text
    return str(value)


def _lookup_name(names, name: str):
    """Find a defined name; Excel matches names case-insensitively."""
    if names is None or not hasattr(names, 'get'):
        return None
    defined = names.get(name)
    if defined is not None:
        return defined
    folded = name.upper()
    for key, candidate in names.items():
        if key.upper() == folded:
            return candidate
    return None
