"""
Pydantic schemas for request/response validation.

This package contains all Pydantic models used for API request validation
and response serialization.
"""

from api.schemas.common import ErrorResponse, HealthCheckResponse
from api.schemas.job_schema import (
    JobStatusEnum, JobProgressResponse, JobStatusResponse, JobCreateResponse,
    JobStatsResponse, QueueCounts
)
from api.schemas.configuration_schema import (
    ConfigurationCreateRequest, ConfigurationUpdateRequest, ConfigurationResponse
)
from api.schemas.webhook_schema import (
    WebhookCreateRequest, WebhookResponse, DeliveryResponse, DeadLetterListResponse,
    ReprocessResponse
)

__all__ = [
    # Common
    'ErrorResponse',
    'HealthCheckResponse',

    # Job
    'JobStatusEnum',
    'JobProgressResponse',
    'JobStatusResponse',
    'JobCreateResponse',
    'JobStatsResponse',
    'QueueCounts',

    # Configuration
    'ConfigurationCreateRequest',
    'ConfigurationUpdateRequest',
    'ConfigurationResponse',

    # Webhook
    'WebhookCreateRequest',
    'WebhookResponse',
    'DeliveryResponse',
    'DeadLetterListResponse',
    'ReprocessResponse',
]
