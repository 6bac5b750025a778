"""Initial schema

Revision ID: 5b3e91c4a7d2
Revises: 
Create Date: 2026-10-17 10:42:08.513207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b3e91c4a7d2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    """Upgrade schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # Create document table
    op.create_table('document',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('raw_text', sa.Text(), nullable=False),
        sa.Column('addressable_markup', sa.Text(), nullable=False, server_default=''),
        sa.Column('raw_path', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create fragment table (embedding column added below as pgvector type)
    op.create_table('fragment',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.Column('ordinal', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('start_offset', sa.Integer(), nullable=False),
        sa.Column('end_offset', sa.Integer(), nullable=False),
        sa.Column('page', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['document_id'], ['document.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.execute(f'ALTER TABLE fragment ADD COLUMN embedding vector({EMBEDDING_DIMENSIONS})')

    # Create conversation table
    op.create_table('conversation',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create message table
    op.create_table('message',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('conversation_id', sa.Text(), nullable=False),
        sa.Column('role', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('clock_timestamp()'), nullable=False),
        sa.CheckConstraint("role IN ('USER', 'ASSISTANT')", name='ck_message_role'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversation.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Documents attached to a user message
    op.create_table('message_file',
        sa.Column('message_id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['message.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['document_id'], ['document.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('message_id', 'document_id')
    )

    # Documents an assistant message was grounded on
    op.create_table('message_source',
        sa.Column('message_id', sa.Text(), nullable=False),
        sa.Column('document_id', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['message.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['document_id'], ['document.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('message_id', 'document_id')
    )

    # Create indexes
    op.create_index('idx_document_owner_id', 'document', ['owner_id'])
    op.create_index('idx_fragment_document_id', 'fragment', ['document_id'])
    op.create_index('idx_conversation_owner_id', 'conversation', ['owner_id'])
    op.create_index('idx_message_conversation_id', 'message', ['conversation_id', 'created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_message_conversation_id', table_name='message')
    op.drop_index('idx_conversation_owner_id', table_name='conversation')
    op.drop_index('idx_fragment_document_id', table_name='fragment')
    op.drop_index('idx_document_owner_id', table_name='document')

    op.drop_table('message_source')
    op.drop_table('message_file')
    op.drop_table('message')
    op.drop_table('conversation')
    op.drop_table('fragment')
    op.drop_table('document')
