"""
Exception types for the transformation pipeline.

Input errors, rule-application errors, infrastructure errors and delivery
errors all derive from MutateError so callers can catch the family at the
job boundary while still branching on the specific kind.
"""

from typing import List, Optional


class MutateError(Exception):
    """Base class for all pipeline errors."""


class WorkbookParseError(MutateError):
    """Uploaded buffer could not be read as a spreadsheet."""

    def __init__(self, file_name: str, message: str):
        self.file_name = file_name
        self.message = message
        super().__init__(f"Failed to parse workbook '{file_name}': {message}")


class WorksheetNotFoundError(MutateError):
    """A referenced worksheet does not exist in the workbook."""

    def __init__(self, sheet_name: str, available_sheets: List[str]):
        self.sheet_name = sheet_name
        self.available_sheets = list(available_sheets)
        available = ', '.join(self.available_sheets) or 'none'
        super().__init__(f'Worksheet "{sheet_name}" not found (available: {available})')


class ColumnValidationError(MutateError):
    """Observed column count does not match the expected shape."""

    def __init__(self, expected: int, actual: int, sheet_name: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.sheet_name = sheet_name
        super().__init__(f"Column count mismatch. Expected {expected}, found {actual}")


class RuleApplicationError(MutateError):
    """A rule failed its preconditions or could not be applied."""

    def __init__(self, rule_type: str, rule_index: int, message: str):
        self.rule_type = rule_type
        self.rule_index = rule_index
        self.message = message
        super().__init__(f"Rule {rule_index + 1} ({rule_type}) failed: {message}")


class ConfigurationNotFoundError(MutateError):
    """Configuration referenced by a job does not exist."""

    def __init__(self, configuration_id: str):
        self.configuration_id = configuration_id
        super().__init__(f"Configuration {configuration_id} not found")


class JobNotFoundError(MutateError):
    """Transformation job record does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class StorageError(MutateError):
    """Blob store operation failed."""

    def __init__(self, op: str, key: str, cause: Optional[BaseException] = None):
        self.op = op
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause else ''
        super().__init__(f"Storage {op} failed for '{key}'{detail}")


class WebhookDeliveryError(MutateError):
    """A single webhook delivery attempt failed."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class WebhookValidationError(MutateError):
    """Webhook target URL is not acceptable."""
