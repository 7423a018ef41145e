"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create agents table
    op.create_table(
        'agents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_id', sa.String(256), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('strategy_id', sa.String(64), nullable=False),
        sa.Column('symbols', postgresql.JSON(), nullable=False),
        sa.Column('timeframe', sa.String(8), nullable=False),
        sa.Column('schedule', sa.String(128), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('risk_parameters', postgresql.JSON(), nullable=False),
        sa.Column('min_confidence', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('max_runtime_seconds', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active_run_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_agents_owner_id', 'agents', ['owner_id'])
    op.create_index('ix_agents_status_next_run', 'agents', ['status', 'next_run_at'])

    # Create agent_runs table
    op.create_table(
        'agent_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('trigger', sa.String(20), nullable=False, server_default='schedule'),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('generated_signal_ids', postgresql.JSON(), nullable=False),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_agent_runs_agent_id', 'agent_runs', ['agent_id'])
    op.create_index('ix_agent_runs_outcome_scheduled', 'agent_runs', ['outcome', 'scheduled_for'])

    # Create agent_logs table
    op.create_table(
        'agent_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('level', sa.String(10), nullable=False, server_default='info'),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('context', postgresql.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['run_id'], ['agent_runs.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_agent_logs_agent_id', 'agent_logs', ['agent_id'])
    op.create_index('ix_agent_logs_run_id', 'agent_logs', ['run_id'])


def downgrade() -> None:
    op.drop_index('ix_agent_logs_run_id', table_name='agent_logs')
    op.drop_index('ix_agent_logs_agent_id', table_name='agent_logs')
    op.drop_table('agent_logs')

    op.drop_index('ix_agent_runs_outcome_scheduled', table_name='agent_runs')
    op.drop_index('ix_agent_runs_agent_id', table_name='agent_runs')
    op.drop_table('agent_runs')

    op.drop_index('ix_agents_status_next_run', table_name='agents')
    op.drop_index('ix_agents_owner_id', table_name='agents')
    op.drop_table('agents')
