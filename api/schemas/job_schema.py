"""
Job-related Pydantic schemas.

This module contains schemas for job status, progress, and results.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime


class JobStatusEnum(str, Enum):
    """Job execution status."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class JobProgressResponse(BaseModel):
    """Latest progress checkpoint."""

    stage: str = Field(..., description="Current stage (e.g., 'configuration', 'transformed')")
    percent: float = Field(..., ge=0, le=100, description="Progress percentage")
    message: str = Field(..., description="Human-readable progress message")
    timestamp: datetime = Field(..., description="Progress update timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "stage": "transformed",
                "percent": 70,
                "message": "Applied 4 rules",
                "timestamp": "2025-10-15T12:30:45Z"
            }
        }


class JobStatusResponse(BaseModel):
    """Comprehensive job status response."""

    job_id: str = Field(..., description="Unique job identifier (also the queue task ID)")
    organization_id: str
    configuration_id: Optional[str] = None
    status: JobStatusEnum = Field(..., description="Current job status")
    original_file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime = Field(..., description="Job creation timestamp")
    started_at: Optional[datetime] = Field(None, description="Job start timestamp")
    completed_at: Optional[datetime] = Field(None, description="Job completion timestamp")
    attempts: int = 0
    max_attempts: int = 3

    # Progress information
    progress: Optional[JobProgressResponse] = Field(None, description="Latest progress update")

    # Results
    output_file_url: Optional[str] = Field(None, description="Signed download URL (if completed)")
    execution_log: List[str] = Field(default_factory=list, description="Ordered execution log")
    error_message: Optional[str] = Field(None, description="Error message (if failed)")
    result_metadata: Optional[Dict[str, Any]] = None

    # Webhook tracking
    webhook_delivered: bool = False
    webhook_attempts: int = 0
    webhook_last_attempt: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "6f1e0a9c-3b2d-4c55-8d4e-1a2b3c4d5e6f",
                "organization_id": "org_123",
                "configuration_id": "0b6c1f4e-5d1a-4a8e-9a53-0f7d2b1c9e21",
                "status": "processing",
                "original_file_name": "report.xlsx",
                "file_size": 20480,
                "created_at": "2025-10-15T12:00:00Z",
                "started_at": "2025-10-15T12:00:05Z",
                "completed_at": None,
                "attempts": 1,
                "max_attempts": 3,
                "progress": {
                    "stage": "configuration",
                    "percent": 30,
                    "message": "Loaded configuration version 2",
                    "timestamp": "2025-10-15T12:00:06Z"
                },
                "execution_log": [],
                "error_message": None
            }
        }


class JobCreateResponse(BaseModel):
    """Response when a job is created."""

    job_id: str = Field(..., description="Unique job identifier")
    status: JobStatusEnum = JobStatusEnum.PENDING
    message: str = Field(default="Transformation job queued", description="Success message")
    status_url: str = Field(..., description="URL to check job status")
    progress_url: str = Field(..., description="URL for the latest progress checkpoint")


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    scheduled: int = 0


class JobStatsResponse(BaseModel):
    """Job and queue statistics."""

    jobs: Dict[str, int] = Field(..., description="Job counts by status")
    deliveries: Dict[str, int] = Field(..., description="Webhook delivery counts by status")
    queues: Dict[str, QueueCounts] = Field(default_factory=dict, description="Per-queue task counts")

    class Config:
        json_schema_extra = {
            "example": {
                "jobs": {"pending": 2, "processing": 1, "completed": 140, "failed": 5},
                "deliveries": {"pending": 0, "success": 138, "dead": 2},
                "queues": {"transformation": {"waiting": 2, "active": 1, "scheduled": 0}}
            }
        }
