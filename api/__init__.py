"""
FastAPI application for the spreadsheet transformation pipeline.

This package contains the REST API for managing configurations, submitting
transformation jobs and operating webhook deliveries.
"""

__version__ = "1.0.0"
