"""
Output rendering for transformed sheets.

Renders the selected sheet to delimited text according to the
Configuration's output format. Blank rows are dropped; row and column order
is otherwise preserved.
"""

import codecs
import csv
import io
import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from services.errors import ColumnValidationError
from services.workbook import Sheet, cell_text, is_blank

logger = logging.getLogger(__name__)


class OutputFormat(BaseModel):
    """Output format stored on a Configuration (wire form is camelCase)."""

    type: str = Field('CSV', description="Output type; only CSV honors a custom delimiter")
    delimiter: str = Field(',', min_length=1, max_length=1)
    encoding: str = Field('utf-8')
    include_headers: bool = Field(True, alias='includeHeaders')
    expected_columns: Optional[int] = Field(None, alias='expectedColumns', ge=1)

    class Config:
        populate_by_name = True
        extra = 'ignore'

    @field_validator('encoding')
    @classmethod
    def check_encoding(cls, value: str) -> str:
        try:
            codecs.lookup(value)
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {value}") from e
        return value

    @property
    def effective_delimiter(self) -> str:
        return self.delimiter if self.type.upper() == 'CSV' else ','


@dataclass
class RenderedOutput:
    """Rendered delimited text plus its shape."""

    text: str
    data: bytes
    row_count: int
    column_count: int
    content_type: str = 'text/csv'


def sheet_to_rows(sheet: Sheet, include_headers: bool = True) -> List[List[str]]:
    """Text rows of a sheet with blank rows removed."""
    rows = []
    for _, values in sheet.iter_rows():
        if all(is_blank(v) for v in values):
            continue
        rows.append([cell_text(v) for v in values])
    if not include_headers and rows:
        rows = rows[1:]
    return rows


def render_sheet(sheet: Sheet, output_format: Optional[OutputFormat] = None) -> RenderedOutput:
    """
    Render a sheet to delimited text.

    Args:
        sheet: Sheet to render
        output_format: Delimiter, encoding, header and shape settings

    Returns:
        RenderedOutput with text, encoded bytes and row/column counts

    Raises:
        ColumnValidationError: If expected_columns is set and does not match
    """
    output_format = output_format or OutputFormat()
    rows = sheet_to_rows(sheet, include_headers=output_format.include_headers)
    column_count = max((len(row) for row in rows), default=0)

    if output_format.expected_columns is not None and column_count != output_format.expected_columns:
        raise ColumnValidationError(output_format.expected_columns, column_count, sheet.name)

    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=output_format.effective_delimiter,
                        quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
    writer.writerows(rows)

    text = buffer.getvalue()
    if text.endswith('\n'):
        text = text[:-1]

    logger.debug(f"Rendered sheet '{sheet.name}': {len(rows)} rows x {column_count} columns")

    return RenderedOutput(
        text=text,
        data=text.encode(output_format.encoding, errors='replace'),
        row_count=len(rows),
        column_count=column_count,
    )
