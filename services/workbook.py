"""
Workbook Model - In-memory spreadsheet representation for one job.

A Workbook is an ordered collection of uniquely named Sheets. Each Sheet is
a sparse grid keyed by zero-based (row, col) integer pairs, together with a
CellRange that always encloses every addressed cell. Workbooks are loaded
from .xlsx/.xlsm buffers with openpyxl or from delimited text.
"""

import copy
import csv
import io
import logging
import re
import zipfile
from bisect import bisect_left
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterator, List, Optional, Tuple, Union

import openpyxl
from openpyxl.utils import column_index_from_string, get_column_letter

from services.errors import WorkbookParseError

logger = logging.getLogger(__name__)

CellValue = Union[str, int, float, datetime, date, None]

NUMERIC_PATTERN = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
COLUMN_LETTERS_PATTERN = re.compile(r'^[A-Za-z]{1,3}$')


def coerce_number(text: str) -> Optional[Union[int, float]]:
    """
    Convert numeric-looking text into a number.

    Returns:
        int or float if the trimmed text is a plain decimal/scientific
        literal, None otherwise.
    """
    stripped = text.strip()
    if not stripped or not NUMERIC_PATTERN.match(stripped):
        return None
    if any(ch in stripped for ch in '.eE'):
        return float(stripped)
    return int(stripped)


def column_letter_to_index(letters: str) -> Optional[int]:
    """Convert column letters (A, b, AA) to a zero-based index, None if invalid."""
    if not COLUMN_LETTERS_PATTERN.match(letters.strip()):
        return None
    try:
        return column_index_from_string(letters.strip().upper()) - 1
    except ValueError:
        return None


def column_index_to_letter(index: int) -> str:
    """Convert a zero-based column index to letters (0 -> A)."""
    return get_column_letter(index + 1)


def is_blank(value: CellValue) -> bool:
    """True for None and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    return False


def cell_text(value: CellValue) -> str:
    """
    Render a cell value as text.

    Integral floats drop the trailing '.0', dates render as ISO strings
    (date only when the time part is midnight), None renders empty.
    """
    if value is None:
        return ''
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


@dataclass
class Cell:
    """One spreadsheet cell: value, optional formula text and display format."""

    value: CellValue = None
    formula: Optional[str] = None
    number_format: Optional[str] = None

    def is_empty(self) -> bool:
        return is_blank(self.value)


@dataclass
class CellRange:
    """Inclusive, zero-based occupied range of a sheet."""

    start_row: int = 0
    start_col: int = 0
    end_row: int = 0
    end_col: int = 0

    def to_ref(self) -> str:
        start = f"{column_index_to_letter(self.start_col)}{self.start_row + 1}"
        end = f"{column_index_to_letter(self.end_col)}{self.end_row + 1}"
        return f"{start}:{end}"

    def contains(self, row: int, col: int) -> bool:
        return self.start_row <= row <= self.end_row and self.start_col <= col <= self.end_col

    def collapse(self):
        """Reset to the single-cell minimum A1:A1."""
        self.start_row = self.start_col = self.end_row = self.end_col = 0


class Sheet:
    """A named sparse grid of cells with a tracked occupied range."""

    def __init__(self, name: str, cells: Optional[Dict[Tuple[int, int], Cell]] = None):
        self.name = name
        self.cells: Dict[Tuple[int, int], Cell] = dict(cells or {})
        self.range = CellRange()
        self.recompute_range()

    def __repr__(self):
        return f"<Sheet(name='{self.name}', range='{self.range.to_ref()}', cells={len(self.cells)})>"

    @classmethod
    def from_rows(cls, name: str, rows: List[List[CellValue]]) -> 'Sheet':
        """Build a sheet from row-major values; None entries are left unaddressed."""
        sheet = cls(name)
        for row_index, row in enumerate(rows):
            for col_index, value in enumerate(row):
                if value is not None:
                    sheet.cells[(row_index, col_index)] = Cell(value=value)
        if rows:
            width = max((len(row) for row in rows), default=0)
            sheet.range = CellRange(0, 0, len(rows) - 1, max(width - 1, 0))
        return sheet

    @property
    def row_count(self) -> int:
        return self.range.end_row + 1

    @property
    def column_count(self) -> int:
        return self.range.end_col + 1

    def get(self, row: int, col: int) -> Optional[Cell]:
        return self.cells.get((row, col))

    def value(self, row: int, col: int) -> CellValue:
        cell = self.cells.get((row, col))
        return cell.value if cell else None

    def set(self, row: int, col: int, cell: Union[Cell, CellValue]):
        """Store a cell, widening the range so it stays enclosing."""
        if not isinstance(cell, Cell):
            cell = Cell(value=cell)
        if not self.cells:
            self.range = CellRange(row, col, row, col)
        self.cells[(row, col)] = cell
        r = self.range
        r.start_row = min(r.start_row, row)
        r.start_col = min(r.start_col, col)
        r.end_row = max(r.end_row, row)
        r.end_col = max(r.end_col, col)

    def recompute_range(self):
        """Shrink the range to the occupied cells (A1:A1 when empty)."""
        if not self.cells:
            self.range.collapse()
            return
        rows = [r for r, _ in self.cells]
        cols = [c for _, c in self.cells]
        self.range = CellRange(min(rows), min(cols), max(rows), max(cols))

    def row_values(self, row: int) -> List[CellValue]:
        r = self.range
        return [self.value(row, col) for col in range(r.start_col, r.end_col + 1)]

    def iter_rows(self) -> Iterator[Tuple[int, List[CellValue]]]:
        """Yield (row_index, values) for every row of the range, blanks included."""
        for row in range(self.range.start_row, self.range.end_row + 1):
            yield row, self.row_values(row)

    def to_rows(self, blank_rows: bool = True) -> List[List[CellValue]]:
        rows = []
        for _, values in self.iter_rows():
            if not blank_rows and all(is_blank(v) for v in values):
                continue
            rows.append(values)
        return rows

    def header_row(self) -> List[CellValue]:
        return self.row_values(self.range.start_row)

    def delete_row(self, index: int) -> bool:
        """
        Delete one row, shifting every subsequent row up by one.

        Returns:
            True if the row was inside the range and removed
        """
        if not (self.range.start_row <= index <= self.range.end_row):
            return False

        shifted: Dict[Tuple[int, int], Cell] = {}
        for (row, col), cell in self.cells.items():
            if row < index:
                shifted[(row, col)] = cell
            elif row > index:
                shifted[(row - 1, col)] = cell
        self.cells = shifted

        self.range.end_row -= 1
        if self.range.end_row < self.range.start_row:
            self.range.collapse()
        return True

    def delete_rows(self, indices: List[int]) -> int:
        """Delete rows in descending order so earlier deletions never shift later targets."""
        deleted = 0
        for index in sorted(set(indices), reverse=True):
            if self.delete_row(index):
                deleted += 1
        return deleted

    def delete_columns(self, indices: List[int]) -> List[int]:
        """
        Delete columns in one pass by rebuilding the grid.

        Surviving cells move left by the number of deleted indices smaller
        than their own column.

        Returns:
            Sorted list of the column indices actually removed
        """
        r = self.range
        to_delete = sorted({i for i in indices if r.start_col <= i <= r.end_col})
        if not to_delete:
            return []

        delete_set = set(to_delete)
        rebuilt: Dict[Tuple[int, int], Cell] = {}
        for (row, col), cell in self.cells.items():
            if col in delete_set:
                continue
            shift = bisect_left(to_delete, col)
            rebuilt[(row, col - shift)] = cell
        self.cells = rebuilt

        new_end_col = r.end_col - len(to_delete)
        if new_end_col >= r.start_col:
            r.end_col = new_end_col
        else:
            r.collapse()
        return to_delete

    def formula_cells(self) -> List[Tuple[int, int, Cell]]:
        """Formula-bearing cells in row-major order."""
        found = [(row, col, cell) for (row, col), cell in self.cells.items() if cell.formula]
        found.sort(key=lambda item: (item[0], item[1]))
        return found


class Workbook:
    """Ordered collection of uniquely named sheets."""

    def __init__(self, sheets: Optional[List[Sheet]] = None):
        self._sheets: Dict[str, Sheet] = {}
        for sheet in sheets or []:
            self.add_sheet(sheet)

    def __repr__(self):
        return f"<Workbook(sheets={self.sheet_names})>"

    @property
    def sheet_names(self) -> List[str]:
        return list(self._sheets.keys())

    @property
    def sheets(self) -> List[Sheet]:
        return list(self._sheets.values())

    def first_sheet_name(self) -> Optional[str]:
        return next(iter(self._sheets), None)

    def get_sheet(self, name: Optional[str]) -> Optional[Sheet]:
        if name is None:
            return None
        return self._sheets.get(name)

    def add_sheet(self, sheet: Sheet) -> Sheet:
        if sheet.name in self._sheets:
            raise ValueError(f"Duplicate sheet name: {sheet.name}")
        self._sheets[sheet.name] = sheet
        return sheet

    def unique_sheet_name(self, base: str) -> str:
        """Return base, or base_1, base_2, ... whichever is free."""
        name = base
        counter = 1
        while name in self._sheets:
            name = f"{base}_{counter}"
            counter += 1
        return name

    def copy(self) -> 'Workbook':
        """Deep copy, used as the engine's working copy."""
        return copy.deepcopy(self)


def _normalize_value(value) -> CellValue:
    """Map openpyxl cell values onto the model's value types."""
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, (int, float, str, datetime, date)) or value is None:
        return value
    if isinstance(value, (time, timedelta)):
        return str(value)
    return str(value)


def _formula_text(value) -> Optional[str]:
    """Extract formula text from an openpyxl value (plain string or ArrayFormula)."""
    if hasattr(value, 'text'):
        value = value.text
    if isinstance(value, str) and value.startswith('=') and len(value) > 1:
        return value
    return None


def load_xlsx(buffer: bytes, file_name: str = 'file') -> Workbook:
    """
    Parse an .xlsx/.xlsm buffer.

    The workbook is opened twice: once for formulas and once for the values
    Excel cached at save time, so formula cells keep both.
    """
    try:
        formula_wb = openpyxl.load_workbook(io.BytesIO(buffer), data_only=False)
        cached_wb = openpyxl.load_workbook(io.BytesIO(buffer), data_only=True)
    except (zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        raise WorkbookParseError(file_name, str(e)) from e

    workbook = Workbook()
    for ws in formula_wb.worksheets:
        cached_ws = cached_wb[ws.title]
        sheet = Sheet(ws.title)

        for row in ws.iter_rows():
            for xl_cell in row:
                raw = xl_cell.value
                if raw is None:
                    continue

                formula = _formula_text(raw)
                if formula:
                    value = _normalize_value(cached_ws.cell(row=xl_cell.row, column=xl_cell.column).value)
                else:
                    value = _normalize_value(raw)

                number_format = xl_cell.number_format
                if number_format == 'General':
                    number_format = None

                sheet.set(xl_cell.row - 1, xl_cell.column - 1,
                          Cell(value=value, formula=formula, number_format=number_format))

        workbook.add_sheet(sheet)
        logger.debug(f"Sheet '{sheet.name}' loaded: range={sheet.range.to_ref()}, cells={len(sheet.cells)}")

    formula_wb.close()
    cached_wb.close()
    return workbook


def load_delimited(buffer: bytes, file_name: str = 'file', delimiter: str = ',',
                   sheet_name: str = 'Sheet1') -> Workbook:
    """Parse delimited text into a single-sheet workbook, coercing numeric fields."""
    try:
        text = buffer.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        raise WorkbookParseError(file_name, f"Input is not valid UTF-8 text: {e}") from e

    rows: List[List[CellValue]] = []
    for record in csv.reader(io.StringIO(text), delimiter=delimiter):
        row: List[CellValue] = []
        for field in record:
            if field == '':
                row.append(None)
                continue
            number = coerce_number(field)
            row.append(number if number is not None else field)
        rows.append(row)

    return Workbook([Sheet.from_rows(sheet_name, rows)])


def load_workbook(buffer: bytes, file_name: str = 'file') -> Workbook:
    """
    Load an uploaded buffer into a Workbook.

    Zip-based buffers are read as Excel workbooks; anything else is treated
    as delimited text (tab-delimited for .tsv files).

    Raises:
        WorkbookParseError: If the buffer is empty or unreadable
    """
    if not buffer:
        raise WorkbookParseError(file_name, 'File is empty')

    logger.info(f"Parsing workbook: {file_name} ({len(buffer)} bytes)")

    if buffer[:2] == b'PK':
        workbook = load_xlsx(buffer, file_name)
    else:
        delimiter = '\t' if file_name.lower().endswith('.tsv') else ','
        workbook = load_delimited(buffer, file_name, delimiter=delimiter)

    if not workbook.sheet_names:
        raise WorkbookParseError(file_name, 'Workbook contains no worksheets')

    logger.info(f"Loaded workbook with {len(workbook.sheet_names)} sheets: {workbook.sheet_names}")
    return workbook
