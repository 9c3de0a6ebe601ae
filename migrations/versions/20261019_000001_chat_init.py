# migrations/versions/20261019_000001_chat_init.py
"""chat relay initial tables

Revision ID: 20261019_000001_chat_init
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_000001_chat_init'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'agents',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('avatar', sa.String(length=512), nullable=True),
        sa.Column('tag', sa.String(length=64), nullable=True),
        sa.Column('latest_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        'agent_versions',
        sa.Column('agent_id', sa.String(length=64), sa.ForeignKey('agents.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('version', sa.Integer(), primary_key=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )

    op.create_table(
        'threads',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('agent_id', sa.String(length=64), nullable=False),
        sa.Column('agent_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('is_debug', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
    )
    op.create_index('ix_threads_user_id', 'threads', ['user_id'])
    op.create_index('ix_threads_agent_id', 'threads', ['agent_id'])
    op.create_index('ix_threads_updated_at', 'threads', ['updated_at'])
    op.create_index(
        'uq_threads_debug_agent', 'threads', ['agent_id'], unique=True,
        sqlite_where=sa.text('is_debug = 1'), postgresql_where=sa.text('is_debug'),
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('thread_id', sa.String(length=64), sa.ForeignKey('threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('token', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.CheckConstraint("role in ('user','assistant')", name='ck_messages_role'),
    )
    op.create_index('ix_messages_thread_id', 'messages', ['thread_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_messages_created_at', table_name='messages')
    op.drop_index('ix_messages_thread_id', table_name='messages')
    op.drop_table('messages')

    op.drop_index('uq_threads_debug_agent', table_name='threads')
    op.drop_index('ix_threads_updated_at', table_name='threads')
    op.drop_index('ix_threads_agent_id', table_name='threads')
    op.drop_index('ix_threads_user_id', table_name='threads')
    op.drop_table('threads')

    op.drop_table('agent_versions')
    op.drop_table('agents')
