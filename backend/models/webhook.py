"""
Webhook delivery tracking model.

One WebhookDelivery row exists per logical event (idempotency key). The row
carries the payload, the latest signature and the attempt bookkeeping used
by the delivery worker and the dead-letter queue.
"""

from enum import Enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, TIMESTAMP, CheckConstraint, Index, text
)

from backend.models.schema import Base, JSONType


class DeliveryStatus(str, Enum):
    """Webhook delivery status."""
    PENDING = 'pending'
    SUCCESS = 'success'
    DEAD = 'dead'


class WebhookDelivery(Base):
    """A tracked set of attempts notifying one URL of one job outcome."""

    __tablename__ = 'webhook_deliveries'
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'success', 'dead')",
            name='webhook_deliveries_status_check'
        ),
        Index('idx_webhook_deliveries_status', 'status'),
        Index('idx_webhook_deliveries_job_id', 'job_id'),
        Index('idx_webhook_deliveries_next_attempt_at', 'next_attempt_at'),
        {'comment': 'Webhook deliveries with retry and dead-letter tracking'}
    )

    id = Column(
        String(36),
        primary_key=True,
        nullable=False,
        comment='Derived from the idempotency key; also the queue task id'
    )
    idempotency_key = Column(
        String(64),
        nullable=False,
        unique=True,
        comment='SHA-256 of organization:configuration:event:job:outcome'
    )
    organization_id = Column(String(255), nullable=False)
    configuration_id = Column(String(36), nullable=True)
    job_id = Column(
        String(36),
        nullable=True,
        comment='Not a foreign key so dead deliveries outlive job cleanup'
    )
    event_type = Column(String(100), nullable=False)
    target_url = Column(String(2048), nullable=False)
    organization_webhook_id = Column(String(36), nullable=True)

    payload = Column(JSONType, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    signature = Column(String(128), nullable=True)
    signed_at = Column(TIMESTAMP, nullable=True)

    status = Column(
        String(20),
        nullable=False,
        default=DeliveryStatus.PENDING.value,
        server_default='pending'
    )
    attempts = Column(
        Integer,
        nullable=False,
        default=0,
        server_default='0'
    )
    max_attempts = Column(
        Integer,
        nullable=False,
        default=5,
        server_default='5'
    )
    last_attempt_at = Column(TIMESTAMP, nullable=True)
    next_attempt_at = Column(TIMESTAMP, nullable=True)
    response_status = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    updated_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    completed_at = Column(TIMESTAMP, nullable=True)

    def __repr__(self):
        return f"<WebhookDelivery(id='{self.id}', status='{self.status}', attempts={self.attempts})>"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'idempotency_key': self.idempotency_key,
            'organization_id': self.organization_id,
            'configuration_id': self.configuration_id,
            'job_id': self.job_id,
            'event_type': self.event_type,
            'target_url': self.target_url,
            'status': self.status,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'response_status': self.response_status,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
