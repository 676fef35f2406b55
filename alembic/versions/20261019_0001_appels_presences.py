"""appels, presences and automation failure log

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = set(inspector.get_table_names())

    if 'appels' not in tables:
        op.create_table(
            'appels',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('label', sa.String(length=180), nullable=False, server_default=''),
            sa.Column('scheduled_start', sa.DateTime(), nullable=False),
            sa.Column('scheduled_end', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
            sa.Column('closed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_appels_id', 'appels', ['id'])
        op.create_index('ix_appels_scheduled_start', 'appels', ['scheduled_start'])
        op.create_index('ix_appels_expires_at', 'appels', ['expires_at'])
        op.create_index('ix_appels_status_expires_at', 'appels', ['status', 'expires_at'])

    if 'presences' not in tables:
        op.create_table(
            'presences',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('appel_id', sa.Integer(), sa.ForeignKey('appels.id', ondelete='CASCADE'), nullable=False),
            sa.Column('learner_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('signed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('appel_id', 'learner_id', name='uq_presences_appel_learner'),
        )
        op.create_index('ix_presences_id', 'presences', ['id'])
        op.create_index('ix_presences_appel_id', 'presences', ['appel_id'])
        op.create_index('ix_presences_learner_id', 'presences', ['learner_id'])
        op.create_index('ix_presences_appel_status', 'presences', ['appel_id', 'status'])

    if 'automation_failure_logs' not in tables:
        op.create_table(
            'automation_failure_logs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('job_name', sa.String(length=80), nullable=False),
            sa.Column('entity_type', sa.String(length=50), nullable=False, server_default=''),
            sa.Column('entity_id', sa.Integer(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=False, server_default=''),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_automation_failure_logs_id', 'automation_failure_logs', ['id'])
        op.create_index('ix_automation_failure_logs_job_name', 'automation_failure_logs', ['job_name'])
        op.create_index('ix_automation_failure_logs_entity_type', 'automation_failure_logs', ['entity_type'])
        op.create_index('ix_automation_failure_logs_entity_id', 'automation_failure_logs', ['entity_id'])
        op.create_index('ix_automation_failure_logs_created_at', 'automation_failure_logs', ['created_at'])
        op.create_index('ix_automation_failure_logs_job_created', 'automation_failure_logs', ['job_name', 'created_at'])


def downgrade() -> None:
    op.drop_table('automation_failure_logs')
    op.drop_table('presences')
    op.drop_table('appels')
