"""documents table for the SQL document store

Revision ID: c4d2e8f1a7b3
Revises: 
Create Date: 2026-10-18 09:12:44.108213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'c4d2e8f1a7b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # One row per document; collections share the table
    op.create_table(
        'documents',
        sa.Column('collection', sa.String(length=100), nullable=False),
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('collection', 'id', name='pk_documents')
    )
    op.create_index('ix_documents_collection', 'documents', ['collection'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_documents_collection', table_name='documents')
    op.drop_table('documents')
