"""
Unit tests for FormulaParser cell reference utilities and the
CircularReferenceDetector dependency graph.

Tests cover conversion between Excel cell addresses and zero-based coordinates,
range parsing, argument splitting and reference extraction.
"""

import pytest
from services.formula_service import CircularReferenceDetector, FormulaParser


class TestCellToCoordinates:
    """Test cell_to_coordinates() method."""

    def test_simple_cells(self):
        """Test basic cell references."""
        assert FormulaParser.cell_to_coordinates('A1') == (0, 0)
        assert FormulaParser.cell_to_coordinates('B1') == (0, 1)
        assert FormulaParser.cell_to_coordinates('A2') == (1, 0)
        assert FormulaParser.cell_to_coordinates('Z1') == (0, 25)

    def test_two_letter_columns(self):
        """Test two-letter column references."""
        assert FormulaParser.cell_to_coordinates('AA1') == (0, 26)
        assert FormulaParser.cell_to_coordinates('AZ1') == (0, 51)
        assert FormulaParser.cell_to_coordinates('BA1') == (0, 52)

    def test_absolute_and_sheet_qualified(self):
        """Test $ markers and sheet prefixes are ignored."""
        assert FormulaParser.cell_to_coordinates('$B$24') == (23, 1)
        assert FormulaParser.cell_to_coordinates('Sheet1!A1') == (0, 0)
        assert FormulaParser.cell_to_coordinates('Data!AA100') == (99, 26)

    def test_case_insensitive(self):
        """Test that lowercase letters are handled."""
        assert FormulaParser.cell_to_coordinates('a1') == (0, 0)
        assert FormulaParser.cell_to_coordinates('aa100') == (99, 26)

    def test_invalid_formats(self):
        """Test error handling for invalid formats."""
        with pytest.raises(ValueError):
            FormulaParser.cell_to_coordinates('123')  # No column

        with pytest.raises(ValueError):
            FormulaParser.cell_to_coordinates('ABC')  # No row

        with pytest.raises(ValueError):
            FormulaParser.cell_to_coordinates('A0')  # Rows are 1-based

        with pytest.raises(ValueError):
            FormulaParser.cell_to_coordinates('')  # Empty


class TestCoordinatesToCell:
    """Test coordinates_to_cell() method."""

    def test_simple_coordinates(self):
        """Test basic coordinate conversions."""
        assert FormulaParser.coordinates_to_cell(0, 0) == 'A1'
        assert FormulaParser.coordinates_to_cell(1, 0) == 'A2'
        assert FormulaParser.coordinates_to_cell(0, 26) == 'AA1'
        assert FormulaParser.coordinates_to_cell(0, 702) == 'AAA1'
        assert FormulaParser.coordinates_to_cell(9999, 26) == 'AA10000'

    def test_negative_coordinates(self):
        """Test error handling for negative coordinates."""
        with pytest.raises(ValueError):
            FormulaParser.coordinates_to_cell(-1, 0)

        with pytest.raises(ValueError):
            FormulaParser.coordinates_to_cell(0, -1)


class TestParseRange:
    """Test parse_range() method."""

    def test_simple_ranges(self):
        """Test basic range parsing."""
        assert FormulaParser.parse_range('A1:B10') == ((0, 0), (9, 1))
        assert FormulaParser.parse_range('C5:D15') == ((4, 2), (14, 3))

    def test_reversed_range_is_normalized(self):
        """Test ranges written end-first."""
        assert FormulaParser.parse_range('B10:A1') == ((0, 0), (9, 1))

    def test_range_with_sheet(self):
        """Test range parsing with sheet name."""
        assert FormulaParser.parse_range('Sheet1!A1:B10') == ((0, 0), (9, 1))

    def test_invalid_ranges(self):
        """Test error handling for invalid ranges."""
        with pytest.raises(ValueError):
            FormulaParser.parse_range('A1')  # Missing colon

        with pytest.raises(ValueError):
            FormulaParser.parse_range('A1:B10:C20')  # Too many colons

        with pytest.raises(ValueError):
            FormulaParser.parse_range(':B10')  # Missing start


class TestFormulaText:
    """Test normalization, argument splitting and call unwrapping."""

    def test_normalize(self):
        assert FormulaParser.normalize('=sum($b$2:b4)') == 'SUM(B2:B4)'
        assert FormulaParser.normalize('=IF(a1,"keep Case",0)') == 'IF(A1,"keep Case",0)'

    def test_split_arguments(self):
        """Commas nested in calls or string literals do not split."""
        assert FormulaParser.split_arguments('ISERROR(A1/B1),"n/a",A1/B1') == [
            'ISERROR(A1/B1)', '"n/a"', 'A1/B1'
        ]
        assert FormulaParser.split_arguments('a, "x,y" ,f(1,2)') == ['a', '"x,y"', 'f(1,2)']

    def test_unwrap_call(self):
        assert FormulaParser.unwrap_call('IF(A,B,C)', 'IF') == 'A,B,C'
        assert FormulaParser.unwrap_call('IF(A)+IF(B)', 'IF') is None
        assert FormulaParser.unwrap_call('SUM(A1:A2)', 'IF') is None

    def test_references(self):
        """Ranges and single cells are extracted; function names are not."""
        cells, ranges = FormulaParser.references('=SUM(A1:A3)+B5')
        assert cells == [(4, 1)]
        assert ranges == [((0, 0), (2, 0))]

    def test_references_ignore_string_literals(self):
        cells, ranges = FormulaParser.references('="A1"&B2')
        assert cells == [(1, 1)]
        assert ranges == []


class TestCircularReferenceDetector:
    """Test circular reference detection and evaluation ordering."""

    def test_detect_simple_cycle(self):
        """Test detection of simple circular reference."""
        detector = CircularReferenceDetector()

        detector.add_dependency((0, 0), [(0, 1)])
        detector.add_dependency((0, 1), [(0, 0)])

        cycles = detector.detect_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {(0, 0), (0, 1)}
        assert detector.is_circular((0, 1))

    def test_detect_complex_cycle(self):
        """Test detection of complex circular reference."""
        detector = CircularReferenceDetector()

        detector.add_dependency((0, 0), [(0, 1)])
        detector.add_dependency((0, 1), [(0, 2)])
        detector.add_dependency((0, 2), [(0, 0)])

        cycles = detector.detect_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {(0, 0), (0, 1), (0, 2)}

    def test_self_reference(self):
        """A cell that references itself is its own circular group."""
        detector = CircularReferenceDetector()
        detector.add_dependency((2, 2), [(2, 2)])
        assert detector.detect_cycles() == [[(2, 2)]]

    def test_no_cycle(self):
        """Test that non-circular dependencies don't create cycles."""
        detector = CircularReferenceDetector()

        detector.add_dependency((0, 0), [(0, 1)])
        detector.add_dependency((0, 1), [(0, 2)])

        assert detector.detect_cycles() == []
        assert not detector.is_circular((0, 0))

    def test_evaluation_order_dependencies_first(self):
        detector = CircularReferenceDetector()
        detector.add_dependency((0, 0), [(0, 1)])
        detector.add_dependency((0, 1), [(0, 2)])
        detector.add_dependency((0, 2), [])

        assert detector.evaluation_order() == [(0, 2), (0, 1), (0, 0)]

    def test_evaluation_order_independent_cells_row_major(self):
        detector = CircularReferenceDetector()
        detector.add_dependency((3, 0), [])
        detector.add_dependency((0, 5), [])
        detector.add_dependency((1, 1), [])

        assert detector.evaluation_order() == [(0, 5), (1, 1), (3, 0)]

    def test_evaluation_order_keeps_cycle_members(self):
        """Cycle members are ordered together; nothing is dropped."""
        detector = CircularReferenceDetector()
        detector.add_dependency((0, 0), [(0, 1)])
        detector.add_dependency((0, 1), [(0, 0)])
        detector.add_dependency((5, 0), [(0, 0)])

        assert detector.evaluation_order() == [(0, 0), (0, 1), (5, 0)]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
