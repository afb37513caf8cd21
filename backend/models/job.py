"""
Job tracking models for transformation runs.

This module defines SQLAlchemy models for transformation jobs and their
progress checkpoints.
"""

from enum import Enum
from datetime import datetime
from sqlalchemy import (
    BigInteger, Boolean, Column, Integer, String, TIMESTAMP, ForeignKey, Numeric, Text,
    CheckConstraint, Index, text
)
from sqlalchemy.orm import relationship

from backend.models.schema import Base, JSONType, generate_id


class JobStatus(str, Enum):
    """Transformation job status. Transitions only move forward."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class TransformationJob(Base):
    """
    One execution applying a configuration snapshot to one uploaded file.

    Tracks the lifecycle from enqueue through completion, including blob
    references, the execution log and webhook delivery tracking.
    """

    __tablename__ = 'transformation_jobs'
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='transformation_jobs_status_check'
        ),
        Index('idx_transformation_jobs_status', 'status'),
        Index('idx_transformation_jobs_created_at', 'created_at'),
        Index('idx_transformation_jobs_organization_id', 'organization_id'),
        Index('idx_transformation_jobs_configuration_id', 'configuration_id'),
        {'comment': 'Transformation job executions'}
    )

    id = Column(
        String(36),
        primary_key=True,
        default=generate_id,
        nullable=False
    )
    organization_id = Column(
        String(255),
        nullable=False
    )
    configuration_id = Column(
        String(36),
        ForeignKey('configurations.id', ondelete='SET NULL'),
        nullable=True
    )
    status = Column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default='pending',
        comment='Current job status'
    )
    configuration_snapshot = Column(
        JSONType,
        nullable=True,
        comment='Rules, output format and version captured at execution time'
    )

    # Blob references
    input_file_url = Column(String(2048), nullable=True)
    input_file_key = Column(String(1024), nullable=True)
    output_file_url = Column(String(2048), nullable=True)
    output_file_key = Column(String(1024), nullable=True)
    original_file_name = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)

    # Caller-supplied routing and correlation
    callback_url = Column(
        String(2048),
        nullable=True,
        comment='Explicit webhook URL from the originating request'
    )
    uid = Column(
        String(255),
        nullable=True,
        comment='Caller-provided correlation id'
    )

    # Results
    execution_log = Column(
        JSONType,
        nullable=False,
        default=list
    )
    error_message = Column(
        Text,
        nullable=True
    )
    result_metadata = Column(
        JSONType,
        nullable=True,
        comment='Row/column counts and processing time'
    )

    # Queue redelivery accounting
    attempts = Column(
        Integer,
        nullable=False,
        default=0,
        server_default='0'
    )
    max_attempts = Column(
        Integer,
        nullable=False,
        default=3,
        server_default='3'
    )

    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    # Webhook tracking
    webhook_delivered = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text('false')
    )
    webhook_attempts = Column(
        Integer,
        nullable=False,
        default=0,
        server_default='0'
    )
    webhook_last_attempt = Column(TIMESTAMP, nullable=True)

    # Relationships
    progress = relationship(
        'JobProgress',
        back_populates='job',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='JobProgress.timestamp'
    )

    def __repr__(self):
        return f"<TransformationJob(id='{self.id}', status='{self.status}')>"

    def to_dict(self) -> dict:
        """Convert job to dictionary representation."""
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'configuration_id': self.configuration_id,
            'status': self.status,
            'configuration_version': (self.configuration_snapshot or {}).get('version'),
            'original_file_name': self.original_file_name,
            'file_size': self.file_size,
            'uid': self.uid,
            'output_file_url': self.output_file_url,
            'output_file_key': self.output_file_key,
            'execution_log': self.execution_log or [],
            'error_message': self.error_message,
            'result_metadata': self.result_metadata,
            'attempts': self.attempts,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'webhook_delivered': self.webhook_delivered,
            'webhook_attempts': self.webhook_attempts,
            'webhook_last_attempt': self.webhook_last_attempt.isoformat() if self.webhook_last_attempt else None,
        }

    def duration_seconds(self) -> float:
        """Calculate job duration in seconds."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return delta.total_seconds()
        return 0.0

    def is_complete(self) -> bool:
        """Check if job reached a terminal status."""
        return self.status in TERMINAL_STATUSES


class JobProgress(Base):
    """
    Progress checkpoint for a job.

    Written for observability only; never read back to resume work.
    """

    __tablename__ = 'job_progress'
    __table_args__ = (
        Index('idx_job_progress_job_id', 'job_id'),
        Index('idx_job_progress_timestamp', 'timestamp'),
        {'comment': 'Progress checkpoints for transformation jobs'}
    )

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        nullable=False
    )
    job_id = Column(
        String(36),
        ForeignKey('transformation_jobs.id', ondelete='CASCADE'),
        nullable=False
    )
    stage = Column(
        String(50),
        nullable=False,
        comment='Stage name (e.g., parsing, transforming, uploading)'
    )
    percent = Column(
        Numeric(5, 2),
        nullable=False,
        comment='Progress percentage (0.00 to 100.00)'
    )
    message = Column(
        Text,
        nullable=True
    )
    timestamp = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )

    job = relationship('TransformationJob', back_populates='progress')

    def __repr__(self):
        return f"<JobProgress(job_id='{self.job_id}', stage='{self.stage}', percent={self.percent})>"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'job_id': self.job_id,
            'stage': self.stage,
            'percent': float(self.percent),
            'message': self.message,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None
        }
