"""Create tenant, conversation and training pipeline tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

Statuses are stored as VARCHAR rather than native enums so new states do
not need ALTER TYPE migrations.

Two partial unique indexes back the pipeline's concurrency rules:
- uq_fine_tune_jobs_tenant_in_flight: one pending/uploading/running job
  per tenant
- uq_fine_tune_models_tenant_provider_active: one active model per
  (tenant, provider)
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]
    if updated:
        cols.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()'))
        )
    return cols


def upgrade() -> None:
    """Create all pipeline tables."""

    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
    )
    op.create_index('ix_tenants_slug', 'tenants', ['slug'], unique=True)

    op.create_table(
        'conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('provider', sa.String(32), nullable=True),
        sa.Column('model', sa.String(200), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_conversations_tenant_id', 'conversations', ['tenant_id'])
    op.create_index('ix_conversations_user_id', 'conversations', ['user_id'])
    op.create_index('ix_conversations_tenant_updated', 'conversations', ['tenant_id', 'updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('quality_score', sa.Float(), nullable=True),
        sa.Column('feedback_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('included_in_training', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_tenant_id', 'messages', ['tenant_id'])
    op.create_index('ix_messages_conversation_seq', 'messages', ['conversation_id', 'sequence_number'])
    op.create_index('ix_messages_tenant_role_created', 'messages', ['tenant_id', 'role', 'created_at'])

    op.create_table(
        'message_feedback',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reaction', sa.String(16), nullable=False),
        sa.Column('reason', sa.String(50), nullable=True),
        sa.Column('comment', sa.String(500), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_message_feedback_message_user'),
    )
    op.create_index('ix_message_feedback_message_id', 'message_feedback', ['message_id'])
    op.create_index('ix_message_feedback_message_reaction', 'message_feedback', ['message_id', 'reaction'])

    op.create_table(
        'tenant_vector_stores',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False, server_default='openai'),
        sa.Column('remote_id', sa.String(128), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_tenant_vector_stores_tenant_id', 'tenant_vector_stores', ['tenant_id'])
    op.create_index(
        'ix_tenant_vector_stores_tenant_default', 'tenant_vector_stores', ['tenant_id', 'is_default']
    )

    op.create_table(
        'provider_preferences',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('default_model', sa.String(200), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'provider', name='uq_provider_preferences_tenant_provider'),
    )
    op.create_index('ix_provider_preferences_tenant_id', 'provider_preferences', ['tenant_id'])

    op.create_table(
        'training_examples',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.String(32), nullable=False, server_default='conversation'),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=True, unique=True),
        sa.Column('input_text', sa.Text(), nullable=False),
        sa.Column('output_text', sa.Text(), nullable=False),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('vector_status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('vector_file_id', sa.String(128), nullable=True),
        sa.Column('vector_uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_training_examples_tenant_id', 'training_examples', ['tenant_id'])
    op.create_index(
        'ix_training_examples_tenant_vector_status', 'training_examples', ['tenant_id', 'vector_status']
    )

    op.create_table(
        'fine_tune_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False, server_default='openai'),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('dataset_file_id', sa.String(128), nullable=True),
        sa.Column('remote_job_id', sa.String(128), nullable=True),
        sa.Column('base_model', sa.String(200), nullable=True),
        sa.Column('resulting_model', sa.String(200), nullable=True),
        sa.Column('example_count', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_fine_tune_jobs_tenant_id', 'fine_tune_jobs', ['tenant_id'])
    op.create_index('ix_fine_tune_jobs_tenant_status', 'fine_tune_jobs', ['tenant_id', 'status'])
    op.create_index('ix_fine_tune_jobs_tenant_created', 'fine_tune_jobs', ['tenant_id', 'created_at'])
    op.create_index(
        'uq_fine_tune_jobs_tenant_in_flight',
        'fine_tune_jobs',
        ['tenant_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'uploading', 'running')"),
    )

    op.create_table(
        'fine_tune_models',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False, server_default='openai'),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('model_id', sa.String(200), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['job_id'], ['fine_tune_jobs.id'], ondelete='SET NULL'),
        sa.UniqueConstraint(
            'tenant_id', 'provider', 'model_id', name='uq_fine_tune_models_tenant_provider_model'
        ),
    )
    op.create_index('ix_fine_tune_models_tenant_id', 'fine_tune_models', ['tenant_id'])
    op.create_index('ix_fine_tune_models_tenant_provider', 'fine_tune_models', ['tenant_id', 'provider'])
    op.create_index(
        'uq_fine_tune_models_tenant_provider_active',
        'fine_tune_models',
        ['tenant_id', 'provider'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    """Drop all pipeline tables."""
    op.drop_table('fine_tune_models')
    op.drop_table('fine_tune_jobs')
    op.drop_table('training_examples')
    op.drop_table('provider_preferences')
    op.drop_table('tenant_vector_stores')
    op.drop_table('message_feedback')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('tenants')
