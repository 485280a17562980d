"""initial schema - node plans, plan jobs, state transitions

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('node_plan',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('node_id', sa.Text(), nullable=False),
        sa.Column('source_file', sa.Text(), nullable=False),
        sa.Column('start_at', sa.BigInteger(), nullable=False),
        sa.Column('stop_at', sa.BigInteger(), nullable=False),
        sa.Column('invoice_amount', sa.Float(), nullable=False),
        sa.Column('compute_class', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('stop_at >= start_at', name='ck_node_plan_window'),
    )
    op.create_index('idx_node_plan_status', 'node_plan', ['status'])
    op.create_index('idx_node_plan_node', 'node_plan', ['node_id'])
    op.create_index('idx_node_plan_source', 'node_plan', ['source_file'])


    op.create_table('node_plan_job',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('node_id', sa.Text(), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False),
        sa.Column('start_at', sa.BigInteger(), nullable=False),
        sa.Column('duration_ms', sa.BigInteger(), nullable=False),
        sa.Column('invoice_amount', sa.Float(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['plan_id'], ['node_plan.id']),
        sa.UniqueConstraint('plan_id', 'order_index', name='uq_node_plan_job_order'),
        sa.CheckConstraint('duration_ms > 0', name='ck_node_plan_job_duration'),
    )
    op.create_index('idx_node_plan_job_window', 'node_plan_job', ['start_at', 'duration_ms'])


    op.create_table('state_transitions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('entity_type', sa.Text(), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.Text(), nullable=True),
        sa.Column('to_status', sa.Text(), nullable=False),
        sa.Column('trigger', sa.Text(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_transitions_entity', 'state_transitions', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('state_transitions')
    op.drop_table('node_plan_job')
    op.drop_table('node_plan')
