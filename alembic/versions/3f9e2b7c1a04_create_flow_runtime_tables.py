"""create flow runtime tables

Revision ID: 3f9e2b7c1a04
Revises:
Create Date: 2026-10-17 09:12:41.204518

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9e2b7c1a04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=True),
        sa.Column('nodes', sa.JSON(), nullable=False),
        sa.Column('connections', sa.JSON(), nullable=False),
        sa.Column('evolution_instance_id', sa.String(), nullable=True),
        sa.Column('chatwoot_instance_id', sa.String(), nullable=True),
        sa.Column('dialogy_instance_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_workspaces_organization_id'), 'workspaces', ['organization_id'], unique=False)

    op.create_table(
        'channel_instances',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('base_url', sa.String(), nullable=False),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('instance_name', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'capabilities',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('workspace_id', sa.String(length=36), nullable=True),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('input_schema', sa.JSON(), nullable=True),
        sa.Column('execution_config', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_capabilities_workspace_id'), 'capabilities', ['workspace_id'], unique=False)
    op.create_index(op.f('ix_capabilities_slug'), 'capabilities', ['slug'], unique=False)

    op.create_table(
        'flow_sessions',
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('workspace_id', sa.String(length=36), nullable=False),
        sa.Column('current_node_id', sa.String(), nullable=True),
        sa.Column('flow_variables', sa.JSON(), nullable=False),
        sa.Column('awaiting_input_type', sa.String(), nullable=True),
        sa.Column('awaiting_input_details', sa.JSON(), nullable=True),
        sa.Column('flow_context', sa.String(), nullable=True),
        sa.Column('session_timeout_seconds', sa.Integer(), nullable=False),
        sa.Column('steps', sa.JSON(), nullable=False),
        sa.Column('last_interaction_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('session_id')
    )
    op.create_index(op.f('ix_flow_sessions_session_id'), 'flow_sessions', ['session_id'], unique=False)
    op.create_index(op.f('ix_flow_sessions_workspace_id'), 'flow_sessions', ['workspace_id'], unique=False)

    op.create_table(
        'flow_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('workspace_id', sa.String(length=36), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('node_id', sa.String(), nullable=True),
        sa.Column('log_type', sa.String(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_flow_logs_id'), 'flow_logs', ['id'], unique=False)
    op.create_index(op.f('ix_flow_logs_workspace_id'), 'flow_logs', ['workspace_id'], unique=False)
    op.create_index(op.f('ix_flow_logs_session_id'), 'flow_logs', ['session_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_flow_logs_session_id'), table_name='flow_logs')
    op.drop_index(op.f('ix_flow_logs_workspace_id'), table_name='flow_logs')
    op.drop_index(op.f('ix_flow_logs_id'), table_name='flow_logs')
    op.drop_table('flow_logs')
    op.drop_index(op.f('ix_flow_sessions_workspace_id'), table_name='flow_sessions')
    op.drop_index(op.f('ix_flow_sessions_session_id'), table_name='flow_sessions')
    op.drop_table('flow_sessions')
    op.drop_index(op.f('ix_capabilities_slug'), table_name='capabilities')
    op.drop_index(op.f('ix_capabilities_workspace_id'), table_name='capabilities')
    op.drop_table('capabilities')
    op.drop_table('channel_instances')
    op.drop_index(op.f('ix_workspaces_organization_id'), table_name='workspaces')
    op.drop_table('workspaces')
