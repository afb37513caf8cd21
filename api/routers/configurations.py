"""
Configurations router - Manage versioned rule configurations.

Every save produces a new version; jobs snapshot the version current at
the time they run.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from api.dependencies import get_current_user, get_services
from api.schemas.configuration_schema import (
    ConfigurationCreateRequest, ConfigurationResponse, ConfigurationUpdateRequest
)
from services.container import ServiceContainer
from services.errors import WebhookValidationError
from services.webhook_service import validate_webhook_url

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/configurations', tags=['configurations'])


def _check_callback(services: ServiceContainer, callback_url):
    if not callback_url:
        return callback_url
    try:
        return validate_webhook_url(callback_url, allow_localhost=not services.settings.is_production)
    except WebhookValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _check_webhook(services: ServiceContainer, organization_id: str, webhook_id):
    if not webhook_id:
        return
    webhook = services.job_store.get_webhook(webhook_id)
    if webhook is None or webhook.organization_id != organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook {webhook_id} not found for organization {organization_id}"
        )


@router.post('', response_model=ConfigurationResponse, status_code=status.HTTP_201_CREATED)
async def create_configuration(
    request: ConfigurationCreateRequest,
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """
    Create a configuration (version 1).

    Rules are validated up front; a malformed rule returns 422 naming the
    rule's position.
    """
    logger.info(f"Create configuration '{request.name}' for {request.organization_id} by {current_user}")
    _check_webhook(services, request.organization_id, request.webhook_id)

    configuration = services.job_store.create_configuration(
        organization_id=request.organization_id,
        name=request.name,
        rules=request.rules,
        output_format=request.output_format,
        description=request.description,
        callback_url=_check_callback(services, request.callback_url),
        webhook_id=request.webhook_id,
    )
    return ConfigurationResponse.model_validate(configuration)


@router.put('/{configuration_id}', response_model=ConfigurationResponse)
async def update_configuration(
    configuration_id: str,
    request: ConfigurationUpdateRequest,
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """Save a new version of a configuration."""
    existing = services.job_store.get_configuration(configuration_id)
    _check_webhook(services, existing.organization_id, request.webhook_id)

    changes = request.model_dump(exclude_unset=True)
    if 'callback_url' in changes:
        changes['callback_url'] = _check_callback(services, changes['callback_url'])

    configuration = services.job_store.update_configuration(configuration_id, **changes)
    logger.info(f"Configuration {configuration_id} updated to version {configuration.version} by {current_user}")
    return ConfigurationResponse.model_validate(configuration)


@router.get('/{configuration_id}', response_model=ConfigurationResponse)
async def get_configuration(
    configuration_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """Get the current version of a configuration."""
    return ConfigurationResponse.model_validate(services.job_store.get_configuration(configuration_id))
