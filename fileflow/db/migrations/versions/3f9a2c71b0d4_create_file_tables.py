"""create_file_tables

Revision ID: 3f9a2c71b0d4
Revises:
Create Date: 2026-10-19 10:12:31.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9a2c71b0d4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

file_category = postgresql.ENUM(
    'measurement', 'design', 'fabric', 'reference', 'fitting', 'product',
    'invoice', 'profile',
    name='file_category',
    create_type=False,
)
file_status = postgresql.ENUM(
    'pending', 'uploaded', 'queued_for_processing', 'processing', 'active',
    'archived', 'failed',
    name='file_status',
    create_type=False,
)


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    file_category.create(bind, checkfirst=True)
    file_status.create(bind, checkfirst=True)

    op.create_table(
        'file',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('original_name', sa.String(length=255), nullable=False),
        sa.Column('mime_type', sa.String(length=255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('path', sa.String(length=1024), nullable=True),
        sa.Column('category', file_category, nullable=False),
        sa.Column('status', file_status, nullable=False),
        sa.Column('is_encrypted', sa.Boolean(), nullable=False),
        sa.Column('encryption_key_id', sa.String(length=64), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('thumbnail_path', sa.String(length=1024), nullable=True),
        sa.Column('versions', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('processing_history', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=True),
        sa.Column('quota_charged', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completing_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            '(is_encrypted AND encryption_key_id IS NOT NULL) OR '
            '(NOT is_encrypted AND encryption_key_id IS NULL)',
            name='ck_file_encryption_key',
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_file_owner_id', 'file', ['owner_id'])
    op.create_index('ix_file_order_id', 'file', ['order_id'])
    op.create_index('ix_file_category', 'file', ['category'])
    op.create_index('ix_file_status', 'file', ['status'])

    op.create_table(
        'filechunk',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('file_id', sa.Uuid(), nullable=False),
        sa.Column('chunk_number', sa.Integer(), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('path', sa.String(length=1024), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['file_id'], ['file.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('file_id', 'chunk_number', name='uq_filechunk_file_chunk'),
    )
    op.create_index('ix_filechunk_file_id', 'filechunk', ['file_id'])
    op.create_index('ix_filechunk_expires_at', 'filechunk', ['expires_at'])

    op.create_table(
        'storagequota',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('total_space', sa.BigInteger(), nullable=False),
        sa.Column('used_space', sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('storagequota')
    op.drop_index('ix_filechunk_expires_at', table_name='filechunk')
    op.drop_index('ix_filechunk_file_id', table_name='filechunk')
    op.drop_table('filechunk')
    op.drop_index('ix_file_status', table_name='file')
    op.drop_index('ix_file_category', table_name='file')
    op.drop_index('ix_file_order_id', table_name='file')
    op.drop_index('ix_file_owner_id', table_name='file')
    op.drop_table('file')
    file_status.drop(op.get_bind(), checkfirst=True)
    file_category.drop(op.get_bind(), checkfirst=True)
