"""
SQLAlchemy models for transformation configurations.

This module defines the declarative Base shared by all models together with
Configuration, its immutable ConfigurationVersion history, and the
organization-level webhook targets used by delivery resolution.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, Integer, String, Text, TIMESTAMP, JSON,
    ForeignKey, Index, UniqueConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, 'postgresql')


def generate_id() -> str:
    return str(uuid.uuid4())


class Configuration(Base):
    """A named, versioned, ordered rule list plus output format."""

    __tablename__ = 'configurations'
    __table_args__ = (
        Index('idx_configurations_organization_id', 'organization_id'),
        Index('idx_configurations_updated_at', 'updated_at'),
        {'comment': 'User-defined transformation rule sets'}
    )

    id = Column(
        String(36),
        primary_key=True,
        default=generate_id,
        nullable=False
    )
    organization_id = Column(
        String(255),
        nullable=False,
        comment='Owning organization'
    )
    name = Column(
        String(255),
        nullable=False,
        comment='User-friendly configuration name'
    )
    description = Column(
        Text,
        nullable=True
    )
    version = Column(
        Integer,
        nullable=False,
        default=1,
        server_default='1',
        comment='Incremented on every save'
    )
    rules = Column(
        JSONType,
        nullable=False,
        default=list,
        comment='Ordered rule list in wire format: [{id, type, params}]'
    )
    output_format = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment='Output settings: type, delimiter, encoding, includeHeaders, expectedColumns'
    )
    callback_url = Column(
        String(2048),
        nullable=True,
        comment='Legacy per-configuration webhook URL'
    )
    webhook_id = Column(
        String(36),
        ForeignKey('organization_webhooks.id', ondelete='SET NULL'),
        nullable=True,
        comment='Selected organization webhook'
    )
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

    # Relationships
    webhook = relationship('OrganizationWebhook')
    versions = relationship(
        'ConfigurationVersion',
        back_populates='configuration',
        cascade='all, delete-orphan',
        order_by='ConfigurationVersion.version'
    )

    def __repr__(self):
        return f"<Configuration(id='{self.id}', name='{self.name}', version={self.version})>"

    def snapshot(self) -> dict:
        """Frozen copy of the parts a job executes with."""
        return {
            'configuration_id': self.id,
            'name': self.name,
            'version': self.version,
            'rules': list(self.rules or []),
            'output_format': dict(self.output_format or {}),
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'name': self.name,
            'description': self.description,
            'version': self.version,
            'rules': self.rules,
            'output_format': self.output_format,
            'callback_url': self.callback_url,
            'webhook_id': self.webhook_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class ConfigurationVersion(Base):
    """Immutable record of a Configuration as it was saved."""

    __tablename__ = 'configuration_versions'
    __table_args__ = (
        UniqueConstraint('configuration_id', 'version', name='uq_configuration_versions_version'),
        Index('idx_configuration_versions_configuration_id', 'configuration_id'),
        {'comment': 'Version history of configurations'}
    )

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        nullable=False
    )
    configuration_id = Column(
        String(36),
        ForeignKey('configurations.id', ondelete='CASCADE'),
        nullable=False
    )
    version = Column(
        Integer,
        nullable=False
    )
    rules = Column(
        JSONType,
        nullable=False,
        default=list
    )
    output_format = Column(
        JSONType,
        nullable=False,
        default=dict
    )
    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )

    configuration = relationship('Configuration', back_populates='versions')

    def __repr__(self):
        return f"<ConfigurationVersion(configuration_id='{self.configuration_id}', version={self.version})>"


class OrganizationWebhook(Base):
    """A named webhook target owned by an organization."""

    __tablename__ = 'organization_webhooks'
    __table_args__ = (
        Index('idx_organization_webhooks_organization_id', 'organization_id'),
        {'comment': 'Webhook endpoints registered by organizations'}
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
    name = Column(
        String(255),
        nullable=False
    )
    url = Column(
        String(2048),
        nullable=False
    )
    secret = Column(
        String(255),
        nullable=True,
        comment='HMAC signing secret'
    )
    is_default = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text('false'),
        comment='Organization-wide fallback target'
    )
    last_used_at = Column(
        TIMESTAMP,
        nullable=True
    )
    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )

    def __repr__(self):
        return f"<OrganizationWebhook(id='{self.id}', name='{self.name}', default={self.is_default})>"
