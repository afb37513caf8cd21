"""
Unit tests for the in-memory workbook model and spreadsheet loading.
"""

from datetime import date, datetime

import pytest

from services.errors import WorkbookParseError
from services.workbook import (
    Cell, Sheet, Workbook, cell_text, coerce_number, column_letter_to_index,
    load_delimited, load_workbook,
)


class TestValueHelpers:
    """Test number coercion, column letters and text rendering."""

    def test_coerce_number(self):
        assert coerce_number('42') == 42
        assert coerce_number(' 7 ') == 7
        assert coerce_number('3.5') == 3.5
        assert coerce_number('-.5') == -0.5
        assert coerce_number('1e3') == 1000.0
        assert coerce_number('abc') is None
        assert coerce_number('12abc') is None
        assert coerce_number('') is None

    def test_column_letters(self):
        assert column_letter_to_index('A') == 0
        assert column_letter_to_index('c') == 2
        assert column_letter_to_index('AA') == 26
        assert column_letter_to_index('A1') is None
        assert column_letter_to_index('ABCD') is None

    def test_cell_text(self):
        assert cell_text(None) == ''
        assert cell_text(3.0) == '3'
        assert cell_text(2.5) == '2.5'
        assert cell_text(0) == '0'
        assert cell_text(date(2024, 1, 5)) == '2024-01-05'
        assert cell_text(datetime(2024, 1, 5)) == '2024-01-05'
        assert cell_text(datetime(2024, 1, 5, 13, 30)) == '2024-01-05T13:30:00'


class TestSheet:
    """Test sparse grid operations and range bookkeeping."""

    def test_from_rows_range(self):
        sheet = Sheet.from_rows('Data', [['a', 'b', 'c'], [1, None, 3]])
        assert sheet.range.to_ref() == 'A1:C2'
        assert sheet.get(1, 1) is None
        assert sheet.value(1, 2) == 3

    def test_set_widens_range(self):
        sheet = Sheet('Data')
        sheet.set(2, 3, 'x')
        assert sheet.range.to_ref() == 'D3:D3'
        sheet.set(0, 0, 'y')
        assert sheet.range.to_ref() == 'A1:D3'
        assert sheet.range.contains(1, 1)

    def test_empty_sheet_collapses(self):
        sheet = Sheet('Empty')
        assert sheet.range.to_ref() == 'A1:A1'

    def test_delete_row_shifts_up(self):
        sheet = Sheet.from_rows('Data', [['h'], ['r1'], ['r2'], ['r3']])
        assert sheet.delete_row(1) is True
        assert sheet.to_rows() == [['h'], ['r2'], ['r3']]
        assert sheet.row_count == 3

    def test_delete_row_outside_range(self):
        sheet = Sheet.from_rows('Data', [['h'], ['r1']])
        assert sheet.delete_row(5) is False
        assert sheet.row_count == 2

    def test_delete_rows_descending(self):
        """Deleting several rows removes exactly the requested originals."""
        sheet = Sheet.from_rows('Data', [['r0'], ['r1'], ['r2'], ['r3'], ['r4']])
        assert sheet.delete_rows([1, 3, 3]) == 2
        assert sheet.to_rows() == [['r0'], ['r2'], ['r4']]

    def test_delete_columns_renumbers(self):
        """Surviving columns move left by the number of smaller deleted indices."""
        sheet = Sheet.from_rows('Data', [['a', 'b', 'c', 'd', 'e'], [1, 2, 3, 4, 5]])
        removed = sheet.delete_columns([3, 1, 9])
        assert removed == [1, 3]
        assert sheet.to_rows() == [['a', 'c', 'e'], [1, 3, 5]]
        assert sheet.column_count == 3

    def test_delete_all_columns(self):
        sheet = Sheet.from_rows('Data', [['a', 'b']])
        sheet.delete_columns([0, 1])
        assert sheet.cells == {}
        assert sheet.range.to_ref() == 'A1:A1'

    def test_formula_cells_row_major(self):
        sheet = Sheet('Data')
        sheet.set(1, 0, Cell(formula='=B2'))
        sheet.set(0, 1, Cell(formula='=A1'))
        sheet.set(0, 0, Cell(value=1))
        assert [(r, c) for r, c, _ in sheet.formula_cells()] == [(0, 1), (1, 0)]


class TestWorkbook:
    """Test sheet naming and copying."""

    def test_duplicate_sheet_name(self):
        wb = Workbook([Sheet('A')])
        with pytest.raises(ValueError):
            wb.add_sheet(Sheet('A'))

    def test_unique_sheet_name(self):
        wb = Workbook([Sheet('Combined'), Sheet('Combined_1')])
        assert wb.unique_sheet_name('Combined') == 'Combined_2'
        assert wb.unique_sheet_name('Other') == 'Other'

    def test_copy_is_deep(self):
        wb = Workbook([Sheet.from_rows('Data', [['a']])])
        clone = wb.copy()
        clone.get_sheet('Data').set(0, 0, 'changed')
        assert wb.get_sheet('Data').value(0, 0) == 'a'


class TestLoading:
    """Test parsing uploaded buffers."""

    def test_delimited_coerces_numbers(self):
        wb = load_delimited(b"\xef\xbb\xbfName,Age\nJohn,30\nJane,\n")
        sheet = wb.get_sheet('Sheet1')
        assert sheet.value(0, 0) == 'Name'
        assert sheet.value(1, 1) == 30
        assert sheet.value(2, 1) is None

    def test_tsv_by_extension(self):
        wb = load_workbook(b"a\tb\n1\t2\n", 'data.tsv')
        assert wb.get_sheet('Sheet1').to_rows() == [['a', 'b'], [1, 2]]

    def test_empty_buffer(self):
        with pytest.raises(WorkbookParseError, match='File is empty'):
            load_workbook(b'', 'empty.csv')

    def test_corrupt_xlsx(self):
        with pytest.raises(WorkbookParseError):
            load_workbook(b'PK\x03\x04not really a zip', 'broken.xlsx')

    def test_invalid_utf8(self):
        with pytest.raises(WorkbookParseError):
            load_workbook(b'\xff\xfe\xfa', 'bad.csv')

    def test_xlsx_keeps_formulas(self, sales_xlsx):
        wb = load_workbook(sales_xlsx, 'sales.xlsx')
        assert wb.sheet_names == ['Cover', 'Sales 2024']

        sheet = wb.get_sheet('Sales 2024')
        assert sheet.range.to_ref() == 'A1:D5'
        assert sheet.get(4, 1).formula == '=SUM(B2:B4)'
        assert sheet.value(1, 2) == 100
        assert sheet.get(2, 0) is None
