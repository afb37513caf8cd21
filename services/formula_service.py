"""
Formula service for parsing and evaluating a restricted set of Excel formulas.

FormulaParser holds address/range conversion helpers. FormulaEvaluator
recognizes a fixed pattern set (SUBTOTAL, SUM, AVERAGE, STDEV, COUNT, ratios
of aggregates, two-cell division and IF(ISERROR(...))) and returns None for
anything else. The evaluator never raises.
"""

import logging
import math
import re
from datetime import date, datetime
from typing import Iterable, List, Optional, Set, Tuple, Union

import networkx as nx

from services.workbook import Sheet, coerce_number, is_blank

logger = logging.getLogger(__name__)

FormulaResult = Union[int, float, str, None]

RANGE = r'[A-Z]+\d+:[A-Z]+\d+'
CELL = r'[A-Z]+\d+'
AGGREGATE = rf'(?:SUBTOTAL\(\s*\d+\s*,\s*{RANGE}\s*\)|SUM\(\s*{RANGE}\s*\))'
REFERENCE_PATTERN = re.compile(r'\b([A-Z]+\d+)(?::([A-Z]+\d+))?\b(?!\()')


class FormulaParser:
    """Parse Excel addresses, ranges and argument lists."""

    @staticmethod
    def normalize(formula: str) -> str:
        """
        Strip the leading '=' and '$' absolute markers, upper-case references.

        String literals inside the formula keep their original case.
        """
        if hasattr(formula, 'text'):
            formula = formula.text
        text = str(formula).strip()
        if text.startswith('='):
            text = text[1:]
        text = text.replace('$', '')

        # Upper-case everything outside double-quoted literals
        parts = text.split('"')
        for i in range(0, len(parts), 2):
            parts[i] = parts[i].upper()
        return '"'.join(parts).strip()

    @staticmethod
    def cell_to_coordinates(cell_ref: str) -> Tuple[int, int]:
        """
        Convert cell reference to zero-based row/col coordinates.

        Examples:
            A1 → (0, 0)
            B24 → (23, 1)
            AA100 → (99, 26)

        Raises:
            ValueError: If cell reference format is invalid
        """
        if '!' in cell_ref:
            cell_ref = cell_ref.split('!')[-1]

        match = re.match(r'^([A-Z]+)(\d+)$', cell_ref.replace('$', '').upper())
        if not match:
            raise ValueError(f"Invalid cell reference: {cell_ref}")

        col_letters, row_str = match.groups()

        col = 0
        for char in col_letters:
            col = col * 26 + (ord(char) - ord('A') + 1)
        col -= 1

        row = int(row_str) - 1
        if row < 0:
            raise ValueError(f"Invalid cell reference: {cell_ref}")

        return (row, col)

    @staticmethod
    def coordinates_to_cell(row: int, col: int) -> str:
        """
        Convert zero-based coordinates to cell reference.

        Examples:
            (0, 0) → A1
            (99, 26) → AA100

        Raises:
            ValueError: If row or col are negative
        """
        if row < 0 or col < 0:
            raise ValueError(f"Row and column must be non-negative: row={row}, col={col}")

        col_letters = ''
        col_num = col + 1
        while col_num > 0:
            col_num -= 1
            col_letters = chr(ord('A') + (col_num % 26)) + col_letters
            col_num //= 26

        return f"{col_letters}{row + 1}"

    @staticmethod
    def parse_range(range_ref: str) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """
        Parse range reference to normalized start/end coordinates.

        Examples:
            A1:B10 → ((0, 0), (9, 1))
            B10:A1 → ((0, 0), (9, 1))

        Raises:
            ValueError: If range reference format is invalid
        """
        if '!' in range_ref:
            range_ref = range_ref.split('!')[-1]

        if ':' not in range_ref:
            raise ValueError(f"Invalid range reference (missing ':'): {range_ref}")

        parts = range_ref.split(':')
        if len(parts) != 2:
            raise ValueError(f"Invalid range reference format: {range_ref}")

        (r1, c1) = FormulaParser.cell_to_coordinates(parts[0])
        (r2, c2) = FormulaParser.cell_to_coordinates(parts[1])

        return ((min(r1, r2), min(c1, c2)), (max(r1, r2), max(c1, c2)))

    @staticmethod
    def split_arguments(text: str) -> List[str]:
        """
        Split a function argument list on top-level commas.

        Commas nested in parentheses or inside string literals are kept.
        """
        args = []
        depth = 0
        in_string = False
        current = []
        for ch in text:
            if ch == '"':
                in_string = not in_string
            elif not in_string:
                if ch == '(':
                    depth += 1
                elif ch == ')':
                    depth -= 1
                elif ch == ',' and depth == 0:
                    args.append(''.join(current).strip())
                    current = []
                    continue
            current.append(ch)
        args.append(''.join(current).strip())
        return args

    @staticmethod
    def unwrap_call(text: str, name: str) -> Optional[str]:
        """
        Return the argument text of `NAME(...)` when the call spans the whole text.

        Returns:
            Inner text, or None if text is not exactly one call to name
        """
        prefix = f"{name}("
        if not text.startswith(prefix) or not text.endswith(')'):
            return None

        depth = 0
        in_string = False
        for i, ch in enumerate(text[len(name):], start=len(name)):
            if ch == '"':
                in_string = not in_string
            elif not in_string:
                if ch == '(':
                    depth += 1
                elif ch == ')':
                    depth -= 1
                    if depth == 0 and i != len(text) - 1:
                        return None
        return text[len(prefix):-1]

    @staticmethod
    def references(formula: str) -> Tuple[List[Tuple[int, int]], List[Tuple[Tuple[int, int], Tuple[int, int]]]]:
        """
        Extract the single-cell and range references of a formula.

        String literals are ignored.

        Returns:
            Tuple of (cells, ranges) as zero-based coordinates
        """
        text = FormulaParser.normalize(formula)
        code = ''.join(part for i, part in enumerate(text.split('"')) if i % 2 == 0)

        cells = []
        ranges = []
        for match in REFERENCE_PATTERN.finditer(code):
            start, end = match.groups()
            try:
                if end:
                    ranges.append(FormulaParser.parse_range(f"{start}:{end}"))
                else:
                    cells.append(FormulaParser.cell_to_coordinates(start))
            except ValueError:
                continue
        return cells, ranges


class CircularReferenceDetector:
    """Dependency graph between formula cells."""

    def __init__(self):
        self.graph = nx.DiGraph()
        self.circular_groups: List[List[Tuple[int, int]]] = []

    def add_dependency(self, cell: Tuple[int, int], depends_on: Iterable[Tuple[int, int]]):
        """Add a cell and its dependencies to the graph."""
        self.graph.add_node(cell)
        for dep in depends_on:
            self.graph.add_edge(cell, dep)

    def detect_cycles(self) -> List[List[Tuple[int, int]]]:
        """
        Detect all circular reference groups.

        Returns list of circular reference groups (strongly connected
        components, plus cells that reference themselves).
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

        logger.debug(f"Detected {len(self.circular_groups)} circular reference groups")
        return self.circular_groups

    def is_circular(self, cell: Tuple[int, int]) -> bool:
        """Check if a cell is part of a circular reference."""
        return any(cell in group for group in self.circular_groups)

    def evaluation_order(self) -> List[Tuple[int, int]]:
        """
        Order cells so every cell comes after the cells it depends on.

        Members of a circular group are kept together in row-major order.
        Ties are broken by position so the order is deterministic.
        """
        condensed = nx.condensation(self.graph)
        members = nx.get_node_attributes(condensed, 'members')
        order = nx.lexicographical_topological_sort(condensed.reverse(copy=False),
                                                    key=lambda n: min(members[n]))

        cells = []
        for node in order:
            cells.extend(sorted(members[node]))
        return cells


def to_number(value) -> Optional[float]:
    """Numeric view of a cell value, None for blanks, text and dates."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if isinstance(value, (datetime, date)):
        return None
    if isinstance(value, str):
        return coerce_number(value)
    return None


class FormulaEvaluator:
    """
    Evaluate a fixed set of aggregate and arithmetic formula shapes.

    Supported:
        SUBTOTAL(code, range) for codes 1/101 AVERAGE, 3/103 COUNTA,
            7/107 STDEV (sample) and 9/109 SUM
        SUM / AVERAGE / STDEV / COUNT over a single range
        Ratios of two SUBTOTAL or SUM calls
        A1/B2 two-cell division, following referenced cells' formulas
        IF(ISERROR(expr), default, expr)
    """

    SUBTOTAL_PATTERN = re.compile(rf'^SUBTOTAL\(\s*(\d+)\s*,\s*({RANGE})\s*\)$')
    FUNCTION_PATTERN = re.compile(rf'^(SUM|AVERAGE|STDEV|COUNT)\(\s*({RANGE})\s*\)$')
    RATIO_PATTERN = re.compile(rf'^({AGGREGATE})\s*/\s*({AGGREGATE})$')
    DIVISION_PATTERN = re.compile(rf'^({CELL})\s*/\s*({CELL})$')

    AVERAGE_CODES = {1, 101}
    COUNTA_CODES = {3, 103}
    STDEV_CODES = {7, 107}
    SUM_CODES = {9, 109}

    def evaluate(self, formula: str, sheet: Sheet) -> FormulaResult:
        """
        Evaluate formula text against a sheet.

        Args:
            formula: Formula text, with or without leading '='
            sheet: Sheet the formula lives on

        Returns:
            Number, string, or None when the formula is unsupported or
            divides by zero
        """
        if not formula:
            return None
        try:
            return self._evaluate(FormulaParser.normalize(formula), sheet, set())
        except (ValueError, ArithmeticError, RecursionError) as e:
            logger.debug(f"Formula '{formula}' not evaluated: {e}")
            return None

    def _evaluate(self, expr: str, sheet: Sheet, visiting: Set[Tuple[int, int]]) -> FormulaResult:
        inner = FormulaParser.unwrap_call(expr, 'IF')
        if inner is not None:
            return self._evaluate_if_iserror(inner, sheet, visiting)

        match = self.RATIO_PATTERN.match(expr)
        if match:
            numerator = self._evaluate_aggregate(match.group(1), sheet)
            denominator = self._evaluate_aggregate(match.group(2), sheet)
            return self._divide(numerator, denominator)

        match = self.SUBTOTAL_PATTERN.match(expr)
        if match:
            return self.subtotal(int(match.group(1)), match.group(2), sheet)

        match = self.DIVISION_PATTERN.match(expr)
        if match:
            numerator = self._reference_value(match.group(1), sheet, visiting)
            denominator = self._reference_value(match.group(2), sheet, visiting)
            return self._divide(numerator, denominator)

        match = self.FUNCTION_PATTERN.match(expr)
        if match:
            name, range_ref = match.groups()
            if name == 'COUNT':
                return len(self._numeric_values(range_ref, sheet))
            code = {'SUM': 9, 'AVERAGE': 1, 'STDEV': 7}[name]
            return self.subtotal(code, range_ref, sheet)

        return None

    def _evaluate_if_iserror(self, inner: str, sheet: Sheet, visiting: Set[Tuple[int, int]]) -> FormulaResult:
        args = FormulaParser.split_arguments(inner)
        if len(args) != 3 or FormulaParser.unwrap_call(args[0], 'ISERROR') is None:
            return None

        result = self._evaluate(args[2], sheet, visiting)
        if result is None or (isinstance(result, float) and (math.isnan(result) or math.isinf(result))):
            return self._literal(args[1])
        return result

    @staticmethod
    def _literal(text: str) -> FormulaResult:
        """Interpret an IF default argument: quoted text, number, or raw text."""
        text = text.strip()
        if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
            return text[1:-1]
        number = coerce_number(text)
        if number is not None:
            return number
        return text

    def _evaluate_aggregate(self, call: str, sheet: Sheet) -> Optional[float]:
        match = self.SUBTOTAL_PATTERN.match(call)
        if match:
            return self.subtotal(int(match.group(1)), match.group(2), sheet)
        match = self.FUNCTION_PATTERN.match(call)
        if match:
            return self.subtotal(9, match.group(2), sheet)
        return None

    @staticmethod
    def _divide(numerator: FormulaResult, denominator: FormulaResult) -> Optional[float]:
        num = to_number(numerator)
        den = to_number(denominator)
        if num is None or den is None or den == 0:
            return None
        return num / den

    def _reference_value(self, ref: str, sheet: Sheet, visiting: Set[Tuple[int, int]]) -> FormulaResult:
        """Value of a referenced cell, evaluating its own formula first if present."""
        coords = FormulaParser.cell_to_coordinates(ref)
        cell = sheet.get(*coords)
        if cell is None:
            return None
        if not cell.formula:
            return cell.value
        if coords in visiting:
            logger.debug(f"Reference cycle detected at {ref}")
            return None

        visiting.add(coords)
        try:
            return self._evaluate(FormulaParser.normalize(cell.formula), sheet, visiting)
        finally:
            visiting.discard(coords)

    def _range_cells(self, range_ref: str, sheet: Sheet):
        (start_row, start_col), (end_row, end_col) = FormulaParser.parse_range(range_ref)
        for row in range(start_row, end_row + 1):
            for col in range(start_col, end_col + 1):
                yield sheet.value(row, col)

    def _numeric_values(self, range_ref: str, sheet: Sheet) -> List[float]:
        values = []
        for value in self._range_cells(range_ref, sheet):
            number = to_number(value)
            if number is not None:
                values.append(number)
        return values

    def subtotal(self, code: int, range_ref: str, sheet: Sheet) -> Optional[float]:
        """
        Compute SUBTOTAL(code, range).

        An empty numeric set yields 0; STDEV with fewer than two values
        yields 0. Unsupported codes yield None.
        """
        if code in self.COUNTA_CODES:
            return sum(1 for value in self._range_cells(range_ref, sheet) if not is_blank(value))

        values = self._numeric_values(range_ref, sheet)

        if code in self.SUM_CODES:
            return sum(values) if values else 0
        if code in self.AVERAGE_CODES:
            return sum(values) / len(values) if values else 0
        if code in self.STDEV_CODES:
            if len(values) < 2:
                return 0
            mean = sum(values) / len(values)
            variance = sum((v - mean) ** 2 for v in values) / (len(values) - 1)
            return math.sqrt(variance)

        return None
