"""
Rule Engine - Applies an ordered rule list to a workbook.

The engine works on a deep copy of the input workbook and threads the
selected sheet through every rule. The first failing rule halts the run;
the execution log up to that point is kept for diagnosis and no output is
produced.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from services.errors import (
    MutateError, RuleApplicationError, WorkbookParseError, WorksheetNotFoundError,
)
from services.formula_service import CircularReferenceDetector, FormulaEvaluator, FormulaParser
from services.output_service import OutputFormat, RenderedOutput, render_sheet
from services.rules import (
    BaseRule, RuleType, parse_rules,
    SelectWorksheetRule, ValidateColumnsRule, UnmergeAndFillRule, DeleteRowsRule,
    DeleteColumnsRule, CombineWorksheetsRule, EvaluateFormulasRule, ReplaceCharactersRule,
    ColumnIdentifier, RowCondition,
)
from services.workbook import (
    Cell, Sheet, Workbook, cell_text, coerce_number, column_letter_to_index,
    is_blank, load_workbook,
)

logger = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 50
COMBINED_SHEET_NAME = 'Combined'


class ExecutionLog:
    """Ordered, timestamped log of one transformation, mirrored to a logger."""

    def __init__(self, mirror: Optional[logging.Logger] = None):
        self.entries: List[str] = []
        self._mirror = mirror or logger

    def add(self, message: str, level: int = logging.INFO):
        self.entries.append(f"{datetime.utcnow().isoformat()}Z: {message}")
        self._mirror.log(level, message)

    def warning(self, message: str):
        self.add(f"WARNING: {message}", logging.WARNING)

    def to_list(self) -> List[str]:
        return list(self.entries)

    def __len__(self):
        return len(self.entries)


@dataclass
class RuleContext:
    """Mutable state threaded through one engine run."""

    workbook: Workbook
    log: ExecutionLog
    selected_sheet: Optional[str] = None
    history: List[str] = field(default_factory=list)


@dataclass
class RuleEngineResult:
    success: bool
    log: List[str]
    workbook: Optional[Workbook] = None
    selected_sheet: Optional[str] = None
    error: Optional[str] = None
    failed_rule_index: Optional[int] = None


@dataclass
class TransformResult:
    """End-to-end result of buffer -> rules -> rendered output."""

    success: bool
    log: List[str]
    output: Optional[RenderedOutput] = None
    selected_sheet: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def resolve_column(sheet: Sheet, identifier: ColumnIdentifier) -> Optional[int]:
    """
    Resolve a column identifier to a zero-based index.

    Resolution order: 1-based number, header name (first 50 rows,
    case-insensitive, trimmed), then column letters.

    Returns:
        Column index, or None if the identifier cannot be resolved
    """
    if isinstance(identifier, bool):
        return None
    if isinstance(identifier, int):
        return identifier - 1 if identifier >= 1 else None

    text = str(identifier).strip()
    if not text:
        return None

    if text.isdigit():
        number = int(text)
        return number - 1 if number >= 1 else None

    wanted = text.lower()
    r = sheet.range
    last_row = min(r.start_row + HEADER_SCAN_ROWS - 1, r.end_row)
    for row in range(r.start_row, last_row + 1):
        for col in range(r.start_col, r.end_col + 1):
            value = sheet.value(row, col)
            if value is not None and cell_text(value).strip().lower() == wanted:
                return col

    return column_letter_to_index(text)


class RuleEngine:
    """
    Deterministic rule engine.

    Usage:
        engine = RuleEngine()
        result = engine.apply(workbook, rules)
        if result.success:
            sheet = result.workbook.get_sheet(result.selected_sheet)
    """

    HANDLERS: Dict[RuleType, str] = {
        RuleType.SELECT_WORKSHEET: '_select_worksheet',
        RuleType.VALIDATE_COLUMNS: '_validate_columns',
        RuleType.UNMERGE_AND_FILL: '_unmerge_and_fill',
        RuleType.DELETE_ROWS: '_delete_rows',
        RuleType.DELETE_COLUMNS: '_delete_columns',
        RuleType.COMBINE_WORKSHEETS: '_combine_worksheets',
        RuleType.EVALUATE_FORMULAS: '_evaluate_formulas',
        RuleType.REPLACE_CHARACTERS: '_replace_characters',
    }

    def __init__(self, evaluator: Optional[FormulaEvaluator] = None):
        self.evaluator = evaluator or FormulaEvaluator()
        self._handlers: Dict[RuleType, Callable[[Any, int, RuleContext], None]] = {
            rule_type: getattr(self, name) for rule_type, name in self.HANDLERS.items()
        }

    def apply(self, workbook: Workbook, rules: List[Union[BaseRule, Dict[str, Any]]],
              log: Optional[ExecutionLog] = None) -> RuleEngineResult:
        """
        Apply rules in order to a copy of the workbook.

        Args:
            workbook: Input workbook (not mutated)
            rules: Validated rules or raw wire dicts ({id, type, params})
            log: Optional log to append to

        Returns:
            RuleEngineResult with the transformed workbook on success
        """
        log = log if log is not None else ExecutionLog()

        try:
            parsed = parse_rules(rules)
        except RuleApplicationError as e:
            log.add(f"Rule failed: {e}", logging.ERROR)
            return RuleEngineResult(success=False, log=log.to_list(), error=str(e),
                                    failed_rule_index=e.rule_index)

        ctx = RuleContext(workbook=workbook.copy(), log=log)
        ctx.selected_sheet = ctx.workbook.first_sheet_name()

        for index, rule in enumerate(parsed):
            log.add(f"Applying rule {index + 1}/{len(parsed)}: {rule.type}")
            try:
                self._dispatch(rule, index, ctx)
            except RuleApplicationError as e:
                log.add(f"Rule failed: {e.message}", logging.ERROR)
                return RuleEngineResult(success=False, log=log.to_list(), error=str(e),
                                        failed_rule_index=index)
            except MutateError as e:
                error = RuleApplicationError(rule.type, index, str(e))
                log.add(f"Rule failed: {e}", logging.ERROR)
                return RuleEngineResult(success=False, log=log.to_list(), error=str(error),
                                        failed_rule_index=index)
            log.add('Rule completed successfully')

        selected = ctx.selected_sheet or ctx.workbook.first_sheet_name()
        return RuleEngineResult(
            success=True,
            log=log.to_list(),
            workbook=ctx.workbook,
            selected_sheet=selected,
        )

    def transform(self, buffer: bytes, file_name: str,
                  rules: List[Union[BaseRule, Dict[str, Any]]],
                  output_format: Optional[Union[OutputFormat, Dict[str, Any]]] = None,
                  configuration_name: Optional[str] = None,
                  log: Optional[ExecutionLog] = None) -> TransformResult:
        """
        Parse a buffer, apply rules and render the selected sheet.

        Returns:
            TransformResult; on failure `output` is None and `error` is set
        """
        started = time.monotonic()
        log = log if log is not None else ExecutionLog()
        if configuration_name:
            log.add(f"Starting transformation with configuration: {configuration_name}")

        if isinstance(output_format, dict):
            output_format = OutputFormat.model_validate(output_format)

        try:
            workbook = load_workbook(buffer, file_name)
        except WorkbookParseError as e:
            log.add(f"Transformation failed: {e}", logging.ERROR)
            return TransformResult(success=False, log=log.to_list(), error=str(e))

        log.add(f"Loaded workbook with {len(workbook.sheet_names)} sheets: {', '.join(workbook.sheet_names)}")
        for sheet in workbook.sheets:
            log.add(f'Sheet "{sheet.name}" range: {sheet.range.to_ref()}, '
                    f'rows: {sheet.row_count}, cols: {sheet.column_count}')

        result = self.apply(workbook, rules, log=log)
        if not result.success:
            return TransformResult(success=False, log=result.log, error=result.error)

        sheet = result.workbook.get_sheet(result.selected_sheet)
        if sheet is None:
            error = f'Sheet "{result.selected_sheet}" not found in workbook'
            log.add(f"Transformation failed: {error}", logging.ERROR)
            return TransformResult(success=False, log=log.to_list(), error=error)

        log.add(f'Converting sheet "{sheet.name}" to CSV')
        try:
            output = render_sheet(sheet, output_format)
        except MutateError as e:
            log.add(f"Transformation failed: {e}", logging.ERROR)
            return TransformResult(success=False, log=log.to_list(), error=str(e))

        log.add(f"Transformation completed successfully. Output size: {len(output.text)} characters")

        metadata = {
            'sheets_processed': len(result.workbook.sheet_names),
            'rows_processed': sheet.row_count,
            'columns_processed': sheet.column_count,
            'output_rows': output.row_count,
            'output_columns': output.column_count,
            'processing_time_ms': int((time.monotonic() - started) * 1000),
        }
        return TransformResult(success=True, log=log.to_list(), output=output,
                               selected_sheet=sheet.name, metadata=metadata)

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    def _dispatch(self, rule: BaseRule, index: int, ctx: RuleContext):
        try:
            rule_type = RuleType(rule.type)
        except ValueError:
            raise RuleApplicationError(str(rule.type), index, f"Unknown rule type: {rule.type}")
        self._handlers[rule_type](rule, index, ctx)

    @staticmethod
    def _current_sheet(ctx: RuleContext) -> Sheet:
        name = ctx.selected_sheet or ctx.workbook.first_sheet_name()
        sheet = ctx.workbook.get_sheet(name)
        if sheet is None:
            raise WorksheetNotFoundError(name or '', ctx.workbook.sheet_names)
        return sheet

    def _resolve_columns(self, sheet: Sheet, identifiers: List[ColumnIdentifier],
                         ctx: RuleContext) -> List[int]:
        """Resolve identifiers, logging and skipping the unresolvable ones."""
        resolved: List[int] = []
        for identifier in identifiers:
            col = resolve_column(sheet, identifier)
            if col is None:
                ctx.log.warning(f'Could not resolve column "{identifier}", skipping')
                continue
            if col not in resolved:
                resolved.append(col)
        return resolved

    # ------------------------------------------------------------------
    # Rule handlers
    # ------------------------------------------------------------------

    def _select_worksheet(self, rule: SelectWorksheetRule, index: int, ctx: RuleContext):
        names = ctx.workbook.sheet_names
        if not names:
            raise RuleApplicationError(rule.type, index, 'Workbook contains no worksheets')

        mode = rule.params.mode
        value = rule.params.value
        target: Optional[str] = None

        if mode == 'name':
            if str(value) in names:
                target = str(value)
        elif mode == 'index':
            try:
                position = int(str(value).strip())
            except ValueError:
                position = -1
            if 0 <= position < len(names):
                target = names[position]
        elif mode == 'pattern':
            try:
                regex = re.compile(str(value), re.IGNORECASE)
            except re.error as e:
                ctx.log.warning(f'Invalid worksheet pattern "{value}": {e}')
                regex = None
            if regex is not None:
                target = next((name for name in names if regex.search(name)), None)

        if target is None:
            ctx.log.warning(
                f'No worksheet found matching {mode}: "{value}". '
                f'Available worksheets: {", ".join(names)}'
            )
            target = names[0]
            ctx.log.add(f'Falling back to first available worksheet: "{target}"')

        ctx.selected_sheet = target
        if target not in ctx.history:
            ctx.history.append(target)
        ctx.log.add(f'Selected worksheet: "{target}"')

    def _validate_columns(self, rule: ValidateColumnsRule, index: int, ctx: RuleContext):
        sheet = self._current_sheet(ctx)
        expected = rule.params.num_of_columns
        actual = sheet.column_count

        ctx.log.add(f"Validating columns. Expected: {expected}, Actual: {actual}")
        if actual == expected:
            return

        message = f"Column count mismatch. Expected {expected}, found {actual}"
        if rule.params.on_failure == 'stop':
            raise RuleApplicationError(rule.type, index, message)
        if rule.params.on_failure == 'notify':
            ctx.log.warning(message)
        else:
            ctx.log.add(f"INFO: {message} (continuing anyway)")

    def _unmerge_and_fill(self, rule: UnmergeAndFillRule, index: int, ctx: RuleContext):
        sheet = self._current_sheet(ctx)
        direction = rule.params.fill_direction
        columns = self._resolve_columns(sheet, rule.params.columns, ctx)

        ctx.log.add(f"Unmerging and filling columns: {', '.join(str(c) for c in rule.params.columns)} "
                    f"(direction: {direction})")

        rows = range(sheet.range.start_row, sheet.range.end_row + 1)
        if direction == 'up':
            rows = reversed(rows)
        rows = list(rows)

        filled = 0
        for col in columns:
            carry: Optional[Cell] = None
            for row in rows:
                cell = sheet.get(row, col)
                if cell is not None and not cell.is_empty():
                    carry = cell
                elif carry is not None:
                    sheet.set(row, col, Cell(value=carry.value, number_format=carry.number_format))
                    filled += 1

        ctx.log.add(f"Filled {filled} cells across {len(columns)} columns")

    def _row_matches(self, sheet: Sheet, row: int, condition: RowCondition,
                     column: Optional[int], regex: Optional['re.Pattern']) -> bool:
        if column is not None:
            values = [sheet.value(row, column)]
        else:
            values = sheet.row_values(row)

        if condition.kind == 'empty':
            return all(is_blank(v) for v in values)

        texts = [cell_text(v) for v in values]
        if condition.kind == 'contains':
            needle = condition.value.lower()
            return any(needle in text.lower() for text in texts)
        return any(regex.search(text) for text in texts)

    def _delete_rows(self, rule: DeleteRowsRule, index: int, ctx: RuleContext):
        sheet = self._current_sheet(ctx)
        params = rule.params
        r = sheet.range
        to_delete: List[int] = []

        if params.method == 'rows':
            ctx.log.add(f"Deleting specific rows: {', '.join(str(n) for n in params.rows)}")
            to_delete = sorted({n - 1 for n in params.rows if r.start_row <= n - 1 <= r.end_row})
        else:
            condition = params.condition
            regex = None
            if condition.kind == 'pattern':
                try:
                    regex = re.compile(condition.value, re.IGNORECASE)
                except re.error as e:
                    raise RuleApplicationError(rule.type, index,
                                               f'Invalid pattern "{condition.value}": {e}')

            column = None
            if condition.column is not None:
                column = resolve_column(sheet, condition.column)
                if column is None:
                    ctx.log.warning(f'Could not resolve column "{condition.column}", no rows deleted')
                    return

            ctx.log.add(f"Deleting rows matching condition: {condition.kind} "
                        f"in column {condition.column if condition.column is not None else 'ALL'}")
            to_delete = [row for row in range(r.start_row, r.end_row + 1)
                         if self._row_matches(sheet, row, condition, column, regex)]

        to_delete.sort(reverse=True)
        ctx.log.add(f"Found {len(to_delete)} rows to delete: {', '.join(str(n + 1) for n in to_delete)}")

        deleted = sheet.delete_rows(to_delete)
        ctx.log.add(f"Successfully deleted {deleted} rows")

    def _delete_columns(self, rule: DeleteColumnsRule, index: int, ctx: RuleContext):
        sheet = self._current_sheet(ctx)
        ctx.log.add(f"Deleting columns: {', '.join(str(c) for c in rule.params.columns)}")

        resolved = self._resolve_columns(sheet, rule.params.columns, ctx)
        out_of_range = [c for c in resolved if not (sheet.range.start_col <= c <= sheet.range.end_col)]
        for col in out_of_range:
            ctx.log.warning(f"Column index {col + 1} is outside the sheet range, skipping")

        removed = sheet.delete_columns(resolved)
        ctx.log.add(f"Deleted {len(removed)} columns; sheet range is now {sheet.range.to_ref()}")

    def _combine_worksheets(self, rule: CombineWorksheetsRule, index: int, ctx: RuleContext):
        params = rule.params
        sources = list(params.source_sheets or ctx.history)
        if not sources:
            raise RuleApplicationError(
                rule.type, index,
                'No source sheets provided and no prior SELECT_WORKSHEET selections found'
            )

        missing = [name for name in sources if ctx.workbook.get_sheet(name) is None]
        if missing:
            raise RuleApplicationError(rule.type, index,
                                       f"Source sheet(s) not found: {', '.join(missing)}")

        ctx.log.add(f"Combining worksheets: {', '.join(sources)} (operation: {params.operation})")
        sheets = [ctx.workbook.get_sheet(name) for name in sources]

        if params.operation == 'append':
            rows = self._append_rows(sheets)
        else:
            rows = self._merge_rows(sheets)

        name = ctx.workbook.unique_sheet_name(COMBINED_SHEET_NAME)
        ctx.workbook.add_sheet(Sheet.from_rows(name, rows))
        ctx.selected_sheet = name
        if name not in ctx.history:
            ctx.history.append(name)

        ctx.log.add(f'Combined {len(sources)} worksheets into "{name}" ({len(rows)} rows)')

    @staticmethod
    def _append_rows(sheets: List[Sheet]) -> List[List[Any]]:
        """First sheet in full, then every other sheet minus its header row."""
        rows = sheets[0].to_rows(blank_rows=False)
        for sheet in sheets[1:]:
            rows.extend(sheet.to_rows(blank_rows=False)[1:])
        return rows

    @staticmethod
    def _merge_rows(sheets: List[Sheet]) -> List[List[Any]]:
        """Union of headers in first-seen order, each row projected onto it."""
        union: List[str] = []
        records: List[Dict[str, Any]] = []

        for sheet in sheets:
            rows = sheet.to_rows(blank_rows=False)
            if not rows:
                continue

            headers: List[str] = []
            for position, value in enumerate(rows[0]):
                header = cell_text(value).strip() or f"Column {position + 1}"
                base, suffix = header, 1
                while header in headers:
                    header = f"{base}_{suffix}"
                    suffix += 1
                headers.append(header)
                if header not in union:
                    union.append(header)

            for row in rows[1:]:
                records.append({h: row[i] for i, h in enumerate(headers) if i < len(row)})

        merged: List[List[Any]] = [list(union)]
        for record in records:
            merged.append([record.get(h) for h in union])
        return merged

    @staticmethod
    def _formula_dependencies(formula: str, formula_coords: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
        """Formula cells a formula reads, directly or through a range."""
        cells, ranges = FormulaParser.references(formula)
        targets = set(formula_coords)
        deps = [coords for coords in cells if coords in targets]
        for (start_row, start_col), (end_row, end_col) in ranges:
            deps.extend(
                (row, col) for row, col in formula_coords
                if start_row <= row <= end_row and start_col <= col <= end_col
            )
        return deps

    def _evaluate_formulas(self, rule: EvaluateFormulasRule, index: int, ctx: RuleContext):
        if not rule.params.enabled:
            ctx.log.add('Skipping formula evaluation')
            return

        sheet = self._current_sheet(ctx)
        formula_cells = sheet.formula_cells()
        ctx.log.add(f'Evaluating {len(formula_cells)} formulas in worksheet "{sheet.name}"')

        detector = CircularReferenceDetector()
        formula_coords = [(row, col) for row, col, _ in formula_cells]
        for row, col, cell in formula_cells:
            detector.add_dependency((row, col), self._formula_dependencies(cell.formula, formula_coords))

        for group in detector.detect_cycles():
            refs = ', '.join(FormulaParser.coordinates_to_cell(r, c) for r, c in group)
            ctx.log.warning(f"Circular reference between {refs}")

        evaluated = 0
        for coords in detector.evaluation_order():
            cell = sheet.get(*coords)
            result = self.evaluator.evaluate(cell.formula, sheet)
            if result is None:
                continue
            cell.value = result
            cell.formula = None
            evaluated += 1

        ctx.log.add(f"Found {len(formula_cells)} formulas, evaluated {evaluated}")
        unevaluated = len(formula_cells) - evaluated
        if unevaluated:
            ctx.log.warning(f"{unevaluated} formulas could not be evaluated; cached values kept")

    def _replace_characters(self, rule: ReplaceCharactersRule, index: int, ctx: RuleContext):
        sheet = self._current_sheet(ctx)
        total = 0

        for replacement in rule.params.replacements:
            if not replacement.find:
                ctx.log.warning('Skipping replacement with empty search string')
                continue

            columns = None
            rows = None
            if replacement.scope == 'specific_columns':
                columns = set(self._resolve_columns(sheet, replacement.columns or [], ctx))
            elif replacement.scope == 'specific_rows':
                rows = {n - 1 for n in (replacement.rows or [])}

            count = 0
            for (row, col), cell in sorted(sheet.cells.items()):
                if columns is not None and col not in columns:
                    continue
                if rows is not None and row not in rows:
                    continue
                if cell.value is None:
                    continue

                original = cell_text(cell.value)
                updated = original.replace(replacement.find, replacement.replace)
                if updated == original:
                    continue

                number = coerce_number(updated)
                cell.value = number if number is not None else updated
                count += 1

            ctx.log.add(f'Replaced "{replacement.find}" with "{replacement.replace}" '
                        f'in {count} cells (scope: {replacement.scope})')
            total += count

        ctx.log.add(f"Replaced characters in {total} cells")


_missing_handlers = set(RuleType) - set(RuleEngine.HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"Rule types without handlers: {sorted(t.value for t in _missing_handlers)}")
