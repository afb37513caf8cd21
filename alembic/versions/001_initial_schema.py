"""Initial schema for the transformation pipeline

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-11-03

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create organization_webhooks table
    op.create_table(
        'organization_webhooks',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('url', sa.String(length=2048), nullable=False),
        sa.Column('secret', sa.String(length=255), nullable=True, comment='HMAC signing secret'),
        sa.Column('is_default', sa.Boolean(), server_default=sa.text('false'), nullable=False,
                  comment='Organization-wide fallback target'),
        sa.Column('last_used_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        comment='Webhook endpoints registered by organizations'
    )
    op.create_index('idx_organization_webhooks_organization_id', 'organization_webhooks', ['organization_id'])

    # Create configurations table
    op.create_table(
        'configurations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=255), nullable=False, comment='Owning organization'),
        sa.Column('name', sa.String(length=255), nullable=False, comment='User-friendly configuration name'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False,
                  comment='Incremented on every save'),
        sa.Column('rules', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  comment='Ordered rule list in wire format: [{id, type, params}]'),
        sa.Column('output_format', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  comment='Output settings: type, delimiter, encoding, includeHeaders, expectedColumns'),
        sa.Column('callback_url', sa.String(length=2048), nullable=True,
                  comment='Legacy per-configuration webhook URL'),
        sa.Column('webhook_id', sa.String(length=36), nullable=True, comment='Selected organization webhook'),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['webhook_id'], ['organization_webhooks.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        comment='User-defined transformation rule sets'
    )
    op.create_index('idx_configurations_organization_id', 'configurations', ['organization_id'])
    op.create_index('idx_configurations_updated_at', 'configurations', ['updated_at'])

    # Create configuration_versions table
    op.create_table(
        'configuration_versions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('configuration_id', sa.String(length=36), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('rules', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('output_format', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['configuration_id'], ['configurations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('configuration_id', 'version', name='uq_configuration_versions_version'),
        comment='Version history of configurations'
    )
    op.create_index('idx_configuration_versions_configuration_id', 'configuration_versions',
                    ['configuration_id'])

    # Create transformation_jobs table
    op.create_table(
        'transformation_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=255), nullable=False),
        sa.Column('configuration_id', sa.String(length=36), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False,
                  comment='Current job status'),
        sa.Column('configuration_snapshot', postgresql.JSONB(astext_type=sa.Text()), nullable=True,
                  comment='Rules, output format and version captured at execution time'),
        sa.Column('input_file_url', sa.String(length=2048), nullable=True),
        sa.Column('input_file_key', sa.String(length=1024), nullable=True),
        sa.Column('output_file_url', sa.String(length=2048), nullable=True),
        sa.Column('output_file_key', sa.String(length=1024), nullable=True),
        sa.Column('original_file_name', sa.String(length=255), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('callback_url', sa.String(length=2048), nullable=True,
                  comment='Explicit webhook URL from the originating request'),
        sa.Column('uid', sa.String(length=255), nullable=True, comment='Caller-provided correlation id'),
        sa.Column('execution_log', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True,
                  comment='Row/column counts and processing time'),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='3', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('webhook_delivered', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('webhook_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('webhook_last_attempt', sa.TIMESTAMP(), nullable=True),
        sa.ForeignKeyConstraint(['configuration_id'], ['configurations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='transformation_jobs_status_check'
        ),
        comment='Transformation job executions'
    )
    op.create_index('idx_transformation_jobs_status', 'transformation_jobs', ['status'])
    op.create_index('idx_transformation_jobs_created_at', 'transformation_jobs', ['created_at'])
    op.create_index('idx_transformation_jobs_organization_id', 'transformation_jobs', ['organization_id'])
    op.create_index('idx_transformation_jobs_configuration_id', 'transformation_jobs', ['configuration_id'])

    # Create job_progress table
    op.create_table(
        'job_progress',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(length=36), nullable=False),
        sa.Column('stage', sa.String(length=50), nullable=False,
                  comment='Stage name (e.g., parsing, transforming, uploading)'),
        sa.Column('percent', sa.Numeric(precision=5, scale=2), nullable=False,
                  comment='Progress percentage (0.00 to 100.00)'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['transformation_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        comment='Progress checkpoints for transformation jobs'
    )
    op.create_index('idx_job_progress_job_id', 'job_progress', ['job_id'])
    op.create_index('idx_job_progress_timestamp', 'job_progress', ['timestamp'])

    # Create webhook_deliveries table (no FK to jobs so dead deliveries outlive job cleanup)
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.String(length=36), nullable=False,
                  comment='Derived from the idempotency key; also the queue task id'),
        sa.Column('idempotency_key', sa.String(length=64), nullable=False,
                  comment='SHA-256 of organization:configuration:event:job:outcome'),
        sa.Column('organization_id', sa.String(length=255), nullable=False),
        sa.Column('configuration_id', sa.String(length=36), nullable=True),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('target_url', sa.String(length=2048), nullable=False),
        sa.Column('organization_webhook_id', sa.String(length=36), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=False),
        sa.Column('signature', sa.String(length=128), nullable=True),
        sa.Column('signed_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='5', nullable=False),
        sa.Column('last_attempt_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('next_attempt_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'dead')",
            name='webhook_deliveries_status_check'
        ),
        comment='Webhook deliveries with retry and dead-letter tracking'
    )
    op.create_index('idx_webhook_deliveries_status', 'webhook_deliveries', ['status'])
    op.create_index('idx_webhook_deliveries_job_id', 'webhook_deliveries', ['job_id'])
    op.create_index('idx_webhook_deliveries_next_attempt_at', 'webhook_deliveries', ['next_attempt_at'])


def downgrade() -> None:
    op.drop_table('webhook_deliveries')
    op.drop_table('job_progress')
    op.drop_table('transformation_jobs')
    op.drop_table('configuration_versions')
    op.drop_table('configurations')
    op.drop_table('organization_webhooks')
