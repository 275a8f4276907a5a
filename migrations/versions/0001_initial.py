"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('collection', sa.String(length=128), nullable=False),
        sa.Column('doc_id', sa.String(length=128), nullable=False),
        sa.Column('body', sa.JSON(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('collection', 'doc_id', name='uq_collection_doc'),
    )
    op.create_index('ix_documents_collection', 'documents', ['collection'])

    op.create_table(
        'local_preferences',
        sa.Column('key', sa.String(length=128), primary_key=True),
        sa.Column('value', sa.JSON()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'attachments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('stored_path', sa.String(length=255), nullable=False),
        sa.Column('meta', sa.JSON()),
        sa.Column('size_bytes', sa.Integer()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_attachments_token', 'attachments', ['token'], unique=True)


def downgrade():
    op.drop_index('ix_attachments_token', table_name='attachments')
    op.drop_table('attachments')
    op.drop_table('local_preferences')
    op.drop_index('ix_documents_collection', table_name='documents')
    op.drop_table('documents')
