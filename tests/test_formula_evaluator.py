"""
Tests for the restricted formula evaluator.
"""

import math

import pytest

from services.formula_service import FormulaEvaluator
from services.workbook import Cell, Sheet


@pytest.fixture
def evaluator():
    return FormulaEvaluator()


@pytest.fixture
def sheet():
    """
    A: labels, B: amounts (with a text entry), C: zero and blank for
    division edge cases.
    """
    sheet = Sheet.from_rows('Data', [
        ['Item', 'Amount', 'Zero'],
        ['a', 10, 0],
        ['b', 20, None],
        ['c', 30, None],
        ['d', 'n/a', None],
    ])
    return sheet


class TestAggregates:
    """SUBTOTAL and the plain aggregate functions."""

    def test_sum(self, evaluator, sheet):
        assert evaluator.evaluate('=SUM(B2:B5)', sheet) == 60

    def test_average_ignores_text(self, evaluator, sheet):
        assert evaluator.evaluate('=AVERAGE(B2:B5)', sheet) == 20

    def test_count_numeric_only(self, evaluator, sheet):
        assert evaluator.evaluate('=COUNT(B2:B5)', sheet) == 3

    def test_stdev_sample(self, evaluator, sheet):
        assert evaluator.evaluate('=STDEV(B2:B4)', sheet) == pytest.approx(10.0)

    def test_subtotal_codes(self, evaluator, sheet):
        assert evaluator.evaluate('=SUBTOTAL(9,B2:B5)', sheet) == 60
        assert evaluator.evaluate('=SUBTOTAL(109, B2:B5)', sheet) == 60
        assert evaluator.evaluate('=SUBTOTAL(1,B2:B4)', sheet) == 20
        assert evaluator.evaluate('=SUBTOTAL(3,B2:B5)', sheet) == 4
        assert evaluator.evaluate('=SUBTOTAL(7,B2:B4)', sheet) == pytest.approx(10.0)

    def test_unsupported_subtotal_code(self, evaluator, sheet):
        assert evaluator.evaluate('=SUBTOTAL(4,B2:B5)', sheet) is None

    def test_empty_range(self, evaluator, sheet):
        assert evaluator.evaluate('=SUM(F1:F9)', sheet) == 0
        assert evaluator.evaluate('=STDEV(B2:B2)', sheet) == 0

    def test_lowercase_and_absolute_references(self, evaluator, sheet):
        assert evaluator.evaluate('=sum($B$2:$B$4)', sheet) == 60


class TestDivision:
    """Two-cell division and ratios of aggregates."""

    def test_cell_division(self, evaluator, sheet):
        assert evaluator.evaluate('=B3/B2', sheet) == 2.0

    def test_division_by_zero(self, evaluator, sheet):
        assert evaluator.evaluate('=B2/C2', sheet) is None

    def test_division_by_blank(self, evaluator, sheet):
        assert evaluator.evaluate('=B2/C3', sheet) is None

    def test_ratio_of_aggregates(self, evaluator, sheet):
        assert evaluator.evaluate('=SUBTOTAL(9,B2:B3)/SUBTOTAL(9,B2:B4)', sheet) == 0.5
        assert evaluator.evaluate('=SUM(B2:B3)/SUM(C2:C4)', sheet) is None

    def test_follows_referenced_formula(self, evaluator, sheet):
        """A referenced cell's formula is evaluated instead of its cached value."""
        sheet.set(1, 3, Cell(value=None, formula='=SUM(B2:B4)'))
        assert evaluator.evaluate('=D2/B2', sheet) == 6.0

    def test_reference_cycle(self, evaluator, sheet):
        sheet.set(0, 4, Cell(formula='=F1/B2'))
        sheet.set(0, 5, Cell(formula='=E1/B2'))
        assert evaluator.evaluate('=E1/B2', sheet) is None


class TestIfIsError:
    """IF(ISERROR(expr), default, expr)."""

    def test_error_branch_text(self, evaluator, sheet):
        assert evaluator.evaluate('=IF(ISERROR(B2/C2),"n/a",B2/C2)', sheet) == 'n/a'

    def test_error_branch_number(self, evaluator, sheet):
        assert evaluator.evaluate('=IF(ISERROR(B2/C2),0,B2/C2)', sheet) == 0

    def test_value_branch(self, evaluator, sheet):
        assert evaluator.evaluate('=IF(ISERROR(B3/B2),0,B3/B2)', sheet) == 2.0

    def test_plain_if_unsupported(self, evaluator, sheet):
        assert evaluator.evaluate('=IF(B2>5,1,0)', sheet) is None


class TestUnsupported:
    """Anything outside the recognized shapes yields None without raising."""

    @pytest.mark.parametrize('formula', [
        '',
        '=VLOOKUP(A1,B1:C3,2)',
        '=B2+B3',
        '=SUM(B2:B3)*2',
        '=NOW()',
    ])
    def test_returns_none(self, evaluator, sheet, formula):
        assert evaluator.evaluate(formula, sheet) is None

    def test_results_are_finite(self, evaluator, sheet):
        result = evaluator.evaluate('=SUM(B2:B4)/COUNT(B2:B4)', sheet)
        assert result is None or math.isfinite(result)
