"""
Files router - Serve stored blobs behind expiring signed URLs.
"""

import logging
from pathlib import PurePosixPath

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from api.dependencies import get_services
from services.container import ServiceContainer
from services.errors import StorageError

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/files', tags=['files'])

MEDIA_TYPES = {
    '.csv': 'text/csv',
    '.tsv': 'text/tab-separated-values',
    '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}


@router.get('/{key:path}')
async def download_file(
    key: str,
    expires: int = Query(..., description="Expiry as a Unix timestamp"),
    signature: str = Query(..., description="HMAC signature over key and expiry"),
    services: ServiceContainer = Depends(get_services)
):
    """Download a stored file using a signed URL from the job status or webhook."""
    if not services.storage.verify_download(key, expires, signature):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Download link is invalid or has expired"
        )

    try:
        data = services.storage.get(key)
    except StorageError as e:
        logger.warning(f"Signed download for missing file: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    name = PurePosixPath(key).name
    return Response(
        content=data,
        media_type=MEDIA_TYPES.get(PurePosixPath(name).suffix.lower(), 'application/octet-stream'),
        headers={'Content-Disposition': f'attachment; filename="{name}"'}
    )
