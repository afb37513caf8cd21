"""
Rule definitions for the transformation pipeline.

Each rule kind is a pydantic model with a literal `type` tag and a typed
`params` block. Wire payloads use camelCase parameter names
(`numOfColumns`, `fillDirection`, `sourceSheets`, ...); snake_case names are
accepted as well. `parse_rules` validates a raw list in one pass and
reports the index of the first malformed rule.
"""

import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from services.errors import RuleApplicationError

ColumnIdentifier = Union[int, str]


class RuleType(str, Enum):
    """The eight rule kinds."""
    SELECT_WORKSHEET = 'SELECT_WORKSHEET'
    VALIDATE_COLUMNS = 'VALIDATE_COLUMNS'
    UNMERGE_AND_FILL = 'UNMERGE_AND_FILL'
    DELETE_ROWS = 'DELETE_ROWS'
    DELETE_COLUMNS = 'DELETE_COLUMNS'
    COMBINE_WORKSHEETS = 'COMBINE_WORKSHEETS'
    EVALUATE_FORMULAS = 'EVALUATE_FORMULAS'
    REPLACE_CHARACTERS = 'REPLACE_CHARACTERS'


class WireModel(BaseModel):
    """Base for rule parameter blocks."""

    class Config:
        populate_by_name = True
        extra = 'ignore'


# ---------------------------------------------------------------------------
# Parameter blocks
# ---------------------------------------------------------------------------

class SelectWorksheetParams(WireModel):
    mode: Literal['name', 'pattern', 'index'] = Field(..., alias='type')
    value: Union[int, str]


class ValidateColumnsParams(WireModel):
    num_of_columns: int = Field(..., alias='numOfColumns', ge=0)
    on_failure: Literal['stop', 'notify', 'continue'] = Field('stop', alias='onFailure')


class UnmergeAndFillParams(WireModel):
    columns: List[ColumnIdentifier] = Field(default_factory=list)
    fill_direction: Literal['down', 'up'] = Field('down', alias='fillDirection')


class RowCondition(WireModel):
    kind: Literal['empty', 'contains', 'pattern'] = Field(..., alias='type')
    column: Optional[ColumnIdentifier] = None
    value: Optional[str] = None

    @model_validator(mode='after')
    def check_value(self):
        if self.kind in ('contains', 'pattern') and not self.value:
            raise ValueError(f"condition '{self.kind}' requires a value")
        if isinstance(self.column, str) and not self.column.strip():
            self.column = None
        return self


class DeleteRowsParams(WireModel):
    method: Literal['rows', 'condition'] = 'condition'
    rows: Optional[List[int]] = None
    condition: Optional[RowCondition] = None

    @model_validator(mode='after')
    def check_method(self):
        if self.method == 'rows' and self.rows is None:
            raise ValueError("method 'rows' requires a rows list")
        if self.method == 'condition' and self.condition is None:
            raise ValueError("method 'condition' requires a condition")
        return self


class DeleteColumnsParams(WireModel):
    columns: List[ColumnIdentifier] = Field(default_factory=list)


class CombineWorksheetsParams(WireModel):
    source_sheets: Optional[List[str]] = Field(None, alias='sourceSheets')
    operation: Literal['append', 'merge'] = 'append'


class EvaluateFormulasParams(WireModel):
    enabled: bool = True


class Replacement(WireModel):
    find: str
    replace: str = ''
    scope: Literal['all', 'specific_columns', 'specific_rows'] = 'all'
    columns: Optional[List[ColumnIdentifier]] = None
    rows: Optional[List[int]] = None


class ReplaceCharactersParams(WireModel):
    replacements: List[Replacement] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def normalize_legacy(cls, data: Any) -> Any:
        """Accept the single {search, replace, columns} form."""
        if isinstance(data, dict) and 'replacements' not in data and 'search' in data:
            columns = data.get('columns') or None
            return {
                'replacements': [{
                    'find': data.get('search') or '',
                    'replace': data.get('replace') or '',
                    'scope': 'specific_columns' if columns else 'all',
                    'columns': columns,
                }]
            }
        return data


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class BaseRule(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    class Config:
        populate_by_name = True


class SelectWorksheetRule(BaseRule):
    type: Literal['SELECT_WORKSHEET']
    params: SelectWorksheetParams


class ValidateColumnsRule(BaseRule):
    type: Literal['VALIDATE_COLUMNS']
    params: ValidateColumnsParams


class UnmergeAndFillRule(BaseRule):
    type: Literal['UNMERGE_AND_FILL']
    params: UnmergeAndFillParams


class DeleteRowsRule(BaseRule):
    type: Literal['DELETE_ROWS']
    params: DeleteRowsParams


class DeleteColumnsRule(BaseRule):
    type: Literal['DELETE_COLUMNS']
    params: DeleteColumnsParams


class CombineWorksheetsRule(BaseRule):
    type: Literal['COMBINE_WORKSHEETS']
    params: CombineWorksheetsParams


class EvaluateFormulasRule(BaseRule):
    type: Literal['EVALUATE_FORMULAS']
    params: EvaluateFormulasParams = Field(default_factory=EvaluateFormulasParams)


class ReplaceCharactersRule(BaseRule):
    type: Literal['REPLACE_CHARACTERS']
    params: ReplaceCharactersParams


Rule = Annotated[
    Union[
        SelectWorksheetRule,
        ValidateColumnsRule,
        UnmergeAndFillRule,
        DeleteRowsRule,
        DeleteColumnsRule,
        CombineWorksheetsRule,
        EvaluateFormulasRule,
        ReplaceCharactersRule,
    ],
    Field(discriminator='type'),
]

_rule_adapter = TypeAdapter(Rule)


def parse_rule(raw: Union[Dict[str, Any], BaseRule], index: int = 0) -> BaseRule:
    """
    Validate one wire-format rule.

    Raises:
        RuleApplicationError: If the rule is malformed or of an unknown kind
    """
    if isinstance(raw, BaseRule):
        return raw

    rule_type = raw.get('type', 'UNKNOWN') if isinstance(raw, dict) else 'UNKNOWN'
    try:
        return _rule_adapter.validate_python(raw)
    except ValidationError as e:
        details = '; '.join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        )
        raise RuleApplicationError(str(rule_type), index, f"Invalid rule definition: {details}") from e


def parse_rules(raw_rules: List[Union[Dict[str, Any], BaseRule]]) -> List[BaseRule]:
    """Validate an ordered rule list, failing on the first malformed entry."""
    return [parse_rule(raw, i) for i, raw in enumerate(raw_rules or [])]


def dump_rules(rules: List[BaseRule]) -> List[Dict[str, Any]]:
    """Serialize rules back to the camelCase wire form."""
    return [rule.model_dump(by_alias=True, mode='json') for rule in rules]
