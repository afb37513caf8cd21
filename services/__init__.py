"""
Service layer for the spreadsheet transformation pipeline.

This package contains framework-agnostic business logic (rule engine,
job store, webhook delivery) used by the Celery workers, the API and the CLI.
"""

__version__ = "1.0.0"
