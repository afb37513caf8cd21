"""
FastAPI application for the spreadsheet transformation service.

This module creates and configures the FastAPI application, registering
all routers and middleware.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.config import settings
from api.dependencies import get_services
from api.routers import configurations, files, jobs, webhooks
from api.schemas.common import ErrorResponse, HealthCheckResponse
from backend.models.schema import Base
from services.container import ServiceContainer
from services.errors import (
    ConfigurationNotFoundError, JobNotFoundError, MutateError, RuleApplicationError
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT,
    handlers=[
        logging.FileHandler(settings.LOG_FILE),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.API_TITLE} v{settings.API_VERSION}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials
    logger.info(f"Redis: {settings.REDIS_URL}")

    services = app.dependency_overrides.get(get_services, get_services)()

    # Ensure database tables exist
    try:
        Base.metadata.create_all(bind=services.engine)
        logger.info("Database tables verified")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    logger.info(f"Storage directory: {services.storage.storage_dir}")

    yield

    # Shutdown
    logger.info("Shutting down application")
    services.close()


# Create FastAPI application
app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS
)


# Exception handlers

def _error_response(request: Request, status_code: int, error: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            detail=detail,
            path=str(request.url)
        ).model_dump(mode='json')
    )


@app.exception_handler(ConfigurationNotFoundError)
async def configuration_not_found_handler(request: Request, exc: ConfigurationNotFoundError):
    return _error_response(request, status.HTTP_404_NOT_FOUND, str(exc),
                           {"configuration_id": exc.configuration_id})


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    return _error_response(request, status.HTTP_404_NOT_FOUND, str(exc), {"job_id": exc.job_id})


@app.exception_handler(RuleApplicationError)
async def invalid_rule_handler(request: Request, exc: RuleApplicationError):
    """Malformed rules in a configuration."""
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc),
                           {"rule_index": exc.rule_index, "rule_type": exc.rule_type})


@app.exception_handler(MutateError)
async def pipeline_error_handler(request: Request, exc: MutateError):
    logger.warning(f"Request failed: {exc}")
    return _error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error",
                           {"message": str(exc)} if settings.DEBUG else None)


# Register routers with API prefix
app.include_router(jobs.router, prefix=settings.API_PREFIX)
app.include_router(configurations.router, prefix=settings.API_PREFIX)
app.include_router(webhooks.router, prefix=settings.API_PREFIX)
app.include_router(files.router)  # Signed download URLs don't use /api prefix


# Root endpoints

@app.get('/', include_in_schema=False)
async def root():
    """
    Root endpoint - links to docs.
    """
    return {
        'message': f'Welcome to {settings.API_TITLE}',
        'version': settings.API_VERSION,
        'docs': '/docs',
        'redoc': '/redoc',
        'openapi': '/openapi.json'
    }


@app.get('/health', response_model=HealthCheckResponse, tags=['health'])
async def health_check(services: ServiceContainer = Depends(get_services)):
    """
    Health check endpoint.

    Checks connectivity to:
    - Database
    - Redis
    - Celery workers

    **Example:**
    ```bash
    curl http://localhost:8000/health
    ```
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.utcnow(),
        'version': settings.API_VERSION,
        'database': 'unknown',
        'redis': 'unknown',
        'celery': 'unknown'
    }

    # Check database
    try:
        with services.session_factory() as session:
            session.execute(text('SELECT 1'))
        health_status['database'] = 'connected'
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status['database'] = 'disconnected'
        health_status['status'] = 'unhealthy'

    # Check Redis
    try:
        services.redis_client.ping()
        health_status['redis'] = 'connected'
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        health_status['redis'] = 'disconnected'
        health_status['status'] = 'degraded'

    # Check Celery workers
    try:
        from tasks.celery_app import celery_app

        inspect = celery_app.control.inspect(timeout=1.0)
        active_workers = inspect.active()

        if active_workers:
            health_status['celery'] = f'active ({len(active_workers)} workers)'
        else:
            health_status['celery'] = 'no workers'
            health_status['status'] = 'degraded'
    except Exception as e:
        logger.error(f"Celery health check failed: {e}")
        health_status['celery'] = 'unknown'

    return HealthCheckResponse(**health_status)


@app.get('/api/ping', tags=['health'])
async def ping():
    """
    Simple ping endpoint for load balancers.
    """
    return {'ping': 'pong'}


# Middleware for request logging

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} - {response.status_code}")
    return response


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(
        'api.main:app',
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
