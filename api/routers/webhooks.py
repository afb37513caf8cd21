"""
Webhooks router - Organization webhooks, delivery records and the
dead-letter queue.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_current_user, get_services
from api.schemas.webhook_schema import (
    DeadLetterListResponse, DeliveryResponse, ReprocessResponse, WebhookCreateRequest,
    WebhookResponse
)
from services.container import ServiceContainer
from services.errors import WebhookValidationError
from services.webhook_service import validate_webhook_url

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/webhooks', tags=['webhooks'])


def _webhook_response(webhook) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        organization_id=webhook.organization_id,
        name=webhook.name,
        url=webhook.url,
        is_default=bool(webhook.is_default),
        has_secret=bool(webhook.secret),
        last_used_at=webhook.last_used_at,
        created_at=webhook.created_at
    )


@router.post('', response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: WebhookCreateRequest,
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """Register an organization webhook."""
    try:
        url = validate_webhook_url(request.url, allow_localhost=not services.settings.is_production)
    except WebhookValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    webhook = services.job_store.create_webhook(
        organization_id=request.organization_id,
        name=request.name,
        url=url,
        secret=request.secret,
        is_default=request.is_default,
    )
    logger.info(f"Registered webhook {webhook.id} for {request.organization_id} by {current_user}")
    return _webhook_response(webhook)


@router.get('/deliveries/{delivery_id}', response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """Get a webhook delivery record."""
    delivery = services.delivery_store.get_delivery(delivery_id)
    if delivery is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Delivery {delivery_id} not found"
        )
    return DeliveryResponse.model_validate(delivery)


@router.get('/dead-letter', response_model=DeadLetterListResponse)
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries to return"),
    services: ServiceContainer = Depends(get_services)
):
    """List deliveries that exhausted their retries, newest first."""
    items = [DeliveryResponse.model_validate(d) for d in services.delivery_store.list_dead(limit)]
    return DeadLetterListResponse(total=len(items), items=items)


@router.post('/deliveries/{delivery_id}/reprocess', response_model=ReprocessResponse)
async def reprocess_delivery(
    delivery_id: str,
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """
    Reset a dead delivery (attempts 0, error cleared) and enqueue it under a
    fresh task id.
    """
    if services.delivery_store.get_delivery(delivery_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Delivery {delivery_id} not found"
        )

    task_id = services.delivery_worker.reprocess(delivery_id)
    if task_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Delivery {delivery_id} is not in the dead-letter queue"
        )

    logger.info(f"Delivery {delivery_id} reprocessed by {current_user}")
    return ReprocessResponse(requeued=[delivery_id], count=1)


@router.post('/dead-letter/reprocess', response_model=ReprocessResponse)
async def reprocess_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """Reprocess up to `limit` dead deliveries."""
    requeued = services.delivery_worker.reprocess_all_dead(limit)
    logger.info(f"{len(requeued)} dead deliveries reprocessed by {current_user}")
    return ReprocessResponse(requeued=requeued, count=len(requeued))
