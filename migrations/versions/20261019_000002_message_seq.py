# migrations/versions/20261019_000002_message_seq.py
"""per-thread message sequence

Revision ID: 20261019_000002_message_seq
Revises: 20261019_000001_chat_init
Create Date: 2026-10-19

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_000002_message_seq'
down_revision = '20261019_000001_chat_init'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('messages') as batch:
        batch.add_column(sa.Column('seq', sa.Integer(), nullable=False, server_default='0'))
    # number existing rows in their current order
    op.execute(
        "UPDATE messages SET seq = ("
        " SELECT COUNT(*) FROM messages AS m2"
        " WHERE m2.thread_id = messages.thread_id"
        " AND (m2.created_at < messages.created_at"
        " OR (m2.created_at = messages.created_at AND m2.id <= messages.id)))"
    )
    op.create_index('ix_messages_thread_seq', 'messages', ['thread_id', 'seq'])


def downgrade() -> None:
    op.drop_index('ix_messages_thread_seq', table_name='messages')
    with op.batch_alter_table('messages') as batch:
        batch.drop_column('seq')
