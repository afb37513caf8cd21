"""Models package for the transformation pipeline."""
from backend.models.schema import Base, Configuration, ConfigurationVersion, OrganizationWebhook
from backend.models.job import JobStatus, TransformationJob, JobProgress, TERMINAL_STATUSES
from backend.models.webhook import DeliveryStatus, WebhookDelivery

__all__ = [
    'Base', 'Configuration', 'ConfigurationVersion', 'OrganizationWebhook',
    'JobStatus', 'TransformationJob', 'JobProgress', 'TERMINAL_STATUSES',
    'DeliveryStatus', 'WebhookDelivery',
]
