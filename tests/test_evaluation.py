"""
Tests for the native formula engine.

Tests cover the dependency graph, the circular solver, expression parsing
and evaluation against in-memory openpyxl workbooks.
"""

from datetime import date

import pytest
from openpyxl import Workbook
from openpyxl.workbook.defined_name import DefinedName

from xelhua.config import Settings
from xelhua.evaluation_service import (
    CircularSolver, DependencyGraph, ExcelError, FormulaEvaluator, compare, parse_formula,
    to_text,
)
from xelhua.excel_base import read_numeric
from xelhua.exceptions import CircularReferenceError, FormulaSyntaxError
from xelhua.validation_service import ValidationService

from conftest import inject_cached_values


@pytest.fixture
def workbook():
    """Workbook with a small data sheet."""
    wb = Workbook()
    ws = wb.active
    ws.title = 'Data'
    for row, value in enumerate([1, 2, 3, 4], start=1):
        ws.cell(row=row, column=1, value=value)
    ws['B1'] = 'apple'
    ws['B2'] = 'apricot'
    ws['B3'] = 'banana'
    ws['C1'] = 10
    ws['C2'] = 20
    return wb


@pytest.fixture
def evaluator(workbook):
    return FormulaEvaluator(workbook, Settings())


class TestDependencyGraph:
    """Test circular reference detection."""

    def test_detect_simple_cycle(self):
        """Test detection of simple circular reference."""
        graph = DependencyGraph()

        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['A1'])

        cycles = graph.detect_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {'A1', 'B1'}

    def test_detect_complex_cycle(self):
        """Test detection of complex circular reference."""
        graph = DependencyGraph()

        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['C1'])
        graph.add_dependency('C1', ['A1'])

        cycles = graph.detect_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {'A1', 'B1', 'C1'}

    def test_self_reference(self):
        """A cell referring to itself is a one-cell group."""
        graph = DependencyGraph()
        graph.add_dependency('A1', ['A1'])

        assert graph.detect_cycles() == [['A1']]
        assert graph.is_circular('A1')

    def test_no_cycle(self):
        """Test that non-circular dependencies don't create cycles."""
        graph = DependencyGraph()

        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['C1'])
        graph.add_dependency('C1', [])

        cycles = graph.detect_cycles()
        assert len(cycles) == 0
        assert not graph.is_circular('A1')

    def test_precedents_and_dependents(self):
        """Transitive lookups follow the edges both ways."""
        graph = DependencyGraph()
        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['C1'])

        assert graph.precedents('A1') == {'B1', 'C1'}
        assert graph.dependents('C1') == {'A1', 'B1'}
        assert graph.precedents('Z9') == set()

    def test_evaluation_batches(self):
        """Dependencies come before the cells that use them."""
        graph = DependencyGraph()
        graph.add_dependency('A1', ['B1', 'C1'])
        graph.add_dependency('B1', ['C1'])
        graph.add_dependency('X1', ['Y1'])
        graph.add_dependency('Y1', ['X1'])
        graph.detect_cycles()

        batches = graph.evaluation_batches()
        order = [cell for batch in batches for cell in batch]
        assert order.index('C1') < order.index('B1') < order.index('A1')
        assert 'X1' not in order

    def test_evaluation_order(self):
        """Circular groups are ordered as one unit after their inputs."""
        graph = DependencyGraph()
        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['C1'])
        graph.add_dependency('C1', ['B1', 'D1'])
        graph.add_dependency('E1', ['A1'])
        graph.detect_cycles()

        assert graph.evaluation_order() == [['D1'], ['B1', 'C1'], ['A1'], ['E1']]
        assert graph.evaluation_order({'A1', 'E1', 'Z9'}) == [['A1'], ['E1']]

    def test_precedents_exclude(self):
        """Excluded cells are neither returned nor followed."""
        graph = DependencyGraph()
        graph.add_dependency('A1', ['B1'])
        graph.add_dependency('B1', ['C1'])
        graph.add_dependency('C1', ['D1'])

        assert graph.precedents('A1', exclude={'C1'}) == {'B1'}
        assert graph.precedents('A1', exclude=set()) == {'B1', 'C1', 'D1'}


class TestCircularSolver:
    """Test iterative solver for circular references."""

    @staticmethod
    def mock_evaluate(cell_ref, values):
        """A1 = B1 + 1, B1 = A1 / 2."""
        if cell_ref == 'Sheet1!A1':
            return values.get('Sheet1!B1', 0) + 1
        elif cell_ref == 'Sheet1!B1':
            return values.get('Sheet1!A1', 0) / 2
        return 0

    def test_convergence(self, mock_circular_cells):
        """Test that solver converges for circular references."""
        solver = CircularSolver(max_iterations=100, threshold=1e-9)

        results, status, iterations = solver.solve(list(mock_circular_cells), self.mock_evaluate)

        assert status == 'converged'
        assert iterations < 100
        # A1 converges to 2, B1 to 1
        assert results['Sheet1!A1'] == pytest.approx(2.0, abs=1e-6)
        assert results['Sheet1!B1'] == pytest.approx(1.0, abs=1e-6)

    def test_max_iterations(self):
        """A diverging group stops at the iteration limit."""
        solver = CircularSolver(max_iterations=10)

        results, status, iterations = solver.solve(
            ['Sheet1!A1'], lambda ref, values: values['Sheet1!A1'] + 1)

        assert status == 'max_iterations'
        assert iterations == 10
        assert results['Sheet1!A1'] == 10

    def test_initial_values(self):
        """Starting values replace the 0.0 default."""
        solver = CircularSolver(max_iterations=5)
        seen = []

        def evaluate(ref, values):
            seen.append(values[ref])
            return values[ref]

        solver.solve(['Sheet1!A1'], evaluate, initial={'Sheet1!A1': 7.0})
        assert seen[0] == 7.0


class TestParser:
    """Test expression parsing."""

    def test_plain_value(self):
        """Values without '=' parse to a literal."""
        assert parse_formula('hello').value == 'hello'

    def test_incomplete_formula(self):
        """A dangling operator is a syntax error."""
        with pytest.raises(FormulaSyntaxError):
            parse_formula('=1+')

    def test_unclosed_function(self):
        """Missing closing parenthesis is a syntax error."""
        with pytest.raises(FormulaSyntaxError):
            parse_formula('=SUM(1,2')


class TestArithmetic:
    """Test operators and precedence."""

    def test_precedence(self, evaluator):
        assert evaluator.evaluate('=1+2*3') == 7.0
        assert evaluator.evaluate('=(1+2)*3') == 9.0
        assert evaluator.evaluate('=10-2-3') == 5.0

    def test_negation_binds_before_power(self, evaluator):
        """-2^2 is 4 in Excel."""
        assert evaluator.evaluate('=-2^2') == 4.0

    def test_power_is_left_associative(self, evaluator):
        assert evaluator.evaluate('=2^3^2') == 64.0

    def test_percent(self, evaluator):
        assert evaluator.evaluate('=50%') == 0.5
        assert evaluator.evaluate('=200*10%') == 20.0

    def test_concatenation(self, evaluator):
        assert evaluator.evaluate('="a"&"b"&1') == 'ab1'
        assert evaluator.evaluate('="x"&2.5') == 'x2.5'

    def test_comparison(self, evaluator):
        assert evaluator.evaluate('=1=1') is True
        assert evaluator.evaluate('="abc"<"abd"') is True
        assert evaluator.evaluate('="ABC"="abc"') is True
        # Numbers sort before text
        assert evaluator.evaluate('=1<"a"') is True

    def test_text_numbers_coerce(self, evaluator):
        assert evaluator.evaluate('="2"+3') == 5.0

    def test_unparseable_text(self, evaluator):
        assert evaluator.evaluate('="abc"+1') == ExcelError('#VALUE!')


class TestReferences:
    """Test cell, range, sheet and name references."""

    def test_cell_reference(self, evaluator):
        assert evaluator.evaluate('=A1+A2', 'Data') == 3.0

    def test_empty_cell_is_zero(self, evaluator):
        assert evaluator.evaluate('=Z99', 'Data') == 0.0
        assert evaluator.evaluate('=Z99+1', 'Data') == 1.0

    def test_range_functions(self, evaluator):
        assert evaluator.evaluate('=SUM(A1:A4)') == 10.0
        assert evaluator.evaluate('=AVERAGE(A1:A4)') == 2.5
        assert evaluator.evaluate('=MIN(A1:A4)') == 1.0
        assert evaluator.evaluate('=MAX(A1:A4,7)') == 7.0
        assert evaluator.evaluate('=COUNT(A1:B4)') == 4.0
        assert evaluator.evaluate('=COUNTA(A1:B4)') == 7.0

    def test_whole_column(self, evaluator):
        assert evaluator.evaluate('=SUM(A:A)') == 10.0

    def test_cross_sheet(self, workbook):
        report = workbook.create_sheet('My Report')
        report['A1'] = "=Data!A4*2"
        report['A2'] = "='My Report'!A1+1"

        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate_cell("'My Report'!A2") == 9.0

    def test_missing_sheet(self, evaluator):
        assert evaluator.evaluate('=Nowhere!A1') == ExcelError('#REF!')

    def test_defined_range_name(self, workbook):
        workbook.defined_names.add(DefinedName('Rate', attr_text='Data!$C$1'))
        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate('=Rate*2') == 20.0

    def test_defined_name_is_case_insensitive(self):
        wb = Workbook()
        ws = wb.active
        ws.title = 'S'
        ws['A1'] = 5
        wb.defined_names.add(DefinedName('Rate', attr_text="'S'!$A$1"))

        evaluator = FormulaEvaluator(wb, Settings())
        assert evaluator.evaluate('=rate*2', 'S') == 10.0
        assert evaluator.evaluate('=RATE+1', 'S') == 6.0
        assert evaluator.dependencies('=rate', 'S') == ['S!A1']

    def test_sheet_scoped_name_is_case_insensitive(self, workbook):
        workbook['Data'].defined_names.add(DefinedName('Base', attr_text='Data!$C$2'))
        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate('=base/2', 'Data') == 10.0

    def test_defined_constant_name(self, workbook):
        workbook.defined_names.add(DefinedName('TaxRate', attr_text='0.2'))
        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate('=100*TaxRate') == pytest.approx(20.0)

    def test_unknown_name(self, evaluator):
        assert evaluator.evaluate('=NoSuchName+1') == ExcelError('#NAME?')

    def test_dates_are_serials(self, workbook):
        workbook['Data']['D1'] = date(2024, 1, 1)
        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate('=D1+1', 'Data') == 45293.0

    def test_dependencies(self, workbook):
        evaluator = FormulaEvaluator(workbook, Settings())
        deps = evaluator.dependencies('=SUM(A1:A2)*Data!C1', 'Data')
        assert deps == ['Data!A1', 'Data!A2', 'Data!C1']


class TestFunctions:
    """Test built-in functions."""

    def test_if(self, evaluator):
        assert evaluator.evaluate('=IF(A4>3,"big","small")') == 'big'
        assert evaluator.evaluate('=IF(FALSE,1)') is False

    def test_if_skips_unused_branch(self, evaluator):
        assert evaluator.evaluate('=IF(TRUE,1,1/0)') == 1.0

    def test_logical(self, evaluator):
        assert evaluator.evaluate('=AND(TRUE,A1=1)') is True
        assert evaluator.evaluate('=OR(FALSE,0)') is False
        assert evaluator.evaluate('=NOT(0)') is True

    def test_rounding(self, evaluator):
        assert evaluator.evaluate('=ROUND(2.5,0)') == 3.0
        assert evaluator.evaluate('=ROUND(-2.5,0)') == -3.0
        assert evaluator.evaluate('=ROUND(1.005,2)') == 1.01
        assert evaluator.evaluate('=ROUNDUP(1.21,1)') == 1.3
        assert evaluator.evaluate('=ROUNDDOWN(-1.29,1)') == -1.2
        assert evaluator.evaluate('=INT(-1.5)') == -2.0

    def test_math(self, evaluator):
        assert evaluator.evaluate('=MOD(-3,2)') == 1.0
        assert evaluator.evaluate('=POWER(2,10)') == 1024.0
        assert evaluator.evaluate('=SQRT(16)') == 4.0
        assert evaluator.evaluate('=ABS(-3)') == 3.0
        assert evaluator.evaluate('=PRODUCT(A1:A4)') == 24.0

    def test_conditional_aggregates(self, evaluator):
        assert evaluator.evaluate('=SUMIF(A1:A4,">2")') == 7.0
        assert evaluator.evaluate('=SUMIF(B1:B3,"ap*",A1:A3)') == 3.0
        assert evaluator.evaluate('=COUNTIF(B1:B3,"ap*")') == 2.0
        assert evaluator.evaluate('=COUNTIF(A1:A4,2)') == 1.0
        assert evaluator.evaluate('=SUMPRODUCT(A1:A2,C1:C2)') == 50.0

    def test_text(self, evaluator):
        assert evaluator.evaluate('=LEN("hello")') == 5.0
        assert evaluator.evaluate('=MID("abcdef",2,3)') == 'bcd'
        assert evaluator.evaluate('=LEFT("abcdef",2)') == 'ab'
        assert evaluator.evaluate('=RIGHT("abcdef",2)') == 'ef'
        assert evaluator.evaluate('=TRIM("  a   b ")') == 'a b'
        assert evaluator.evaluate('=UPPER(B1)') == 'APPLE'
        assert evaluator.evaluate('=CONCATENATE("x",1,TRUE)') == 'x1TRUE'

    def test_information(self, evaluator):
        assert evaluator.evaluate('=ISBLANK(Z1)') is True
        assert evaluator.evaluate('=ISNUMBER(A1)') is True
        assert evaluator.evaluate('=ISTEXT(B1)') is True
        assert evaluator.evaluate('=ISERROR(1/0)') is True

    def test_unknown_function(self, evaluator):
        assert evaluator.evaluate('=NOSUCHFUNC(1)') == ExcelError('#NAME?')


class TestErrors:
    """Test error values and their propagation."""

    def test_division_by_zero(self, evaluator):
        assert evaluator.evaluate('=1/0') == ExcelError('#DIV/0!')

    def test_errors_propagate(self, evaluator):
        assert evaluator.evaluate('=1/0+1') == ExcelError('#DIV/0!')
        assert evaluator.evaluate('=SUM(1,1/0)') == ExcelError('#DIV/0!')

    def test_iferror(self, evaluator):
        assert evaluator.evaluate('=IFERROR(1/0,5)') == 5.0
        assert evaluator.evaluate('=IFERROR(2,5)') == 2.0

    def test_num_error(self, evaluator):
        assert evaluator.evaluate('=SQRT(-1)') == ExcelError('#NUM!')

    def test_error_cell(self, workbook):
        workbook['Data']['E1'] = '#N/A'
        workbook['Data']['E1'].data_type = 'e'
        evaluator = FormulaEvaluator(workbook, Settings())
        assert evaluator.evaluate('=E1+1', 'Data') == ExcelError('#N/A')


class TestCircularEvaluation:
    """Test circular references inside a workbook."""

    def test_iterative_solution(self):
        wb = Workbook()
        ws = wb.active
        ws['A1'] = '=B1*0.1+10'
        ws['B1'] = '=A1'
        ws['C1'] = '=A1*9'

        evaluator = FormulaEvaluator(wb, Settings())
        assert evaluator.evaluate_cell('C1') == pytest.approx(100.0, abs=1e-4)
        assert evaluator.evaluate_cell('B1') == pytest.approx(100 / 9, abs=1e-5)

        status, iterations = evaluator.solver_results['Sheet!A1']
        assert status == 'converged'
        assert iterations > 1
        assert evaluator.dependency_graph().circular_groups == [['Sheet!A1', 'Sheet!B1']]

    def test_non_converging_self_reference(self):
        wb = Workbook()
        wb.active['A1'] = '=A1+1'

        evaluator = FormulaEvaluator(wb, Settings(MAX_CIRCULAR_ITERATIONS=20))
        assert evaluator.evaluate_cell('A1') == 20.0
        assert evaluator.solver_results['Sheet!A1'] == ('max_iterations', 20)

    def test_iteration_disabled(self):
        wb = Workbook()
        ws = wb.active
        ws['A1'] = '=B1+1'
        ws['B1'] = '=A1'

        evaluator = FormulaEvaluator(wb, Settings(ITERATIVE_CALCULATION=False))
        with pytest.raises(CircularReferenceError):
            evaluator.evaluate_cell('A1')

    def test_recalculate(self, workbook):
        ws = workbook['Data']
        ws['F1'] = '=SUM(A1:A4)'
        ws['F2'] = '=F1*2'

        results = FormulaEvaluator(workbook, Settings()).recalculate()
        assert results == {'Data!F1': 10.0, 'Data!F2': 20.0}

class TestLongChains:
    """Test formulas that reference each other a thousand levels deep."""

    LENGTH = 1000

    @pytest.fixture
    def forward_chain(self):
        """A1 = 1, every later row adds one to the row above."""
        wb = Workbook()
        ws = wb.active
        ws['A1'] = 1
        for row in range(2, self.LENGTH + 1):
            ws[f'A{row}'] = f'=A{row - 1}+1'
        return wb

    @pytest.fixture
    def reverse_chain(self):
        """The last row holds 1, every earlier row adds one to the row below."""
        wb = Workbook()
        ws = wb.active
        ws[f'A{self.LENGTH}'] = 1
        for row in range(1, self.LENGTH):
            ws[f'A{row}'] = f'=A{row + 1}+1'
        return wb

    def test_forward_chain(self, forward_chain):
        evaluator = FormulaEvaluator(forward_chain, Settings())
        assert evaluator.evaluate_cell(f'Sheet!A{self.LENGTH}') == 1000.0
        assert evaluator.evaluate(f'=A{self.LENGTH}*2') == 2000.0

    def test_forward_chain_read_numeric(self, forward_chain):
        cell = forward_chain.active[f'A{self.LENGTH}']
        assert read_numeric(cell) == 1000.0

    def test_reverse_chain(self, reverse_chain):
        results = FormulaEvaluator(reverse_chain, Settings()).recalculate()
        assert len(results) == self.LENGTH - 1
        assert results['Sheet!A1'] == 1000.0
        assert results[f'Sheet!A{self.LENGTH - 1}'] == 2.0

    def test_chain_through_ranges(self):
        wb = Workbook()
        ws = wb.active
        ws['A1'] = 1
        for row in range(2, self.LENGTH + 1):
            ws[f'A{row}'] = f'=SUM(A{row - 1}:A{row - 1})+1'
        assert FormulaEvaluator(wb, Settings()).evaluate_cell(f'A{self.LENGTH}') == 1000.0

    def test_chain_into_circular_group(self, forward_chain):
        ws = forward_chain.active
        ws['B1'] = f'=C1*0.1+A{self.LENGTH}'
        ws['C1'] = '=B1'

        evaluator = FormulaEvaluator(forward_chain, Settings())
        assert evaluator.evaluate_cell('B1') == pytest.approx(10000 / 9, abs=1e-4)
        assert evaluator.solver_results['Sheet!B1'][0] == 'converged'

    def test_validation_of_reverse_chain(self, reverse_chain, tmp_path):
        path = tmp_path / 'chain.xlsx'
        reverse_chain.save(path)
        inject_cached_values(path, {'A1': 1000})

        report = ValidationService(settings=Settings()).validate_workbook(path)
        assert report.errors == 0
        assert report.matches == 1
        assert report.no_cached_value == self.LENGTH - 2
        assert report.status == 'passed'



class TestCoercion:
    """Test value helpers shared by the evaluator and the CLI."""

    def test_to_text(self):
        assert to_text(3.0) == '3'
        assert to_text(2.5) == '2.5'
        assert to_text(True) == 'TRUE'
        assert to_text(None) == ''

    def test_compare_orders_types(self):
        assert compare(100.0, 'a') < 0
        assert compare('z', True) < 0
        assert compare('A', 'a') == 0
