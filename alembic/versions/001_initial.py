"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

This is the baseline migration that creates the protected-record tables.
It corresponds to the schema defined in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ============================================
    # SENSITIVE RECORDS
    # ============================================
    op.create_table(
        'sensitive_records',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('record_type', sa.String(50), nullable=False, server_default='identity_document'),
        sa.Column('identifier_hash', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='created'),
        sa.Column('biometric_score', sa.Float(), nullable=True),
        sa.Column('duplicate_check', sa.JSON(), nullable=True),
        sa.Column('requires_manual_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('flag_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sensitive_records_owner_id', 'sensitive_records', ['owner_id'])
    op.create_index('ix_sensitive_records_status', 'sensitive_records', ['status'])
    op.create_index(
        'ix_sensitive_records_hash_created',
        'sensitive_records',
        ['identifier_hash', 'created_at']
    )

    # ============================================
    # ENCRYPTED FIELDS
    # ============================================
    op.create_table(
        'encrypted_fields',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'record_id',
            sa.String(64),
            sa.ForeignKey('sensitive_records.id', ondelete='CASCADE'),
            nullable=False
        ),
        sa.Column('field_name', sa.String(100), nullable=False),
        sa.Column('ciphertext', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('record_id', 'field_name', name='uq_encrypted_field_record_field'),
    )
    op.create_index('ix_encrypted_fields_record_id', 'encrypted_fields', ['record_id'])


def downgrade() -> None:
    """Drop all tables."""
    # Drop tables in reverse order
    op.drop_index('ix_encrypted_fields_record_id', table_name='encrypted_fields')
    op.drop_table('encrypted_fields')
    op.drop_index('ix_sensitive_records_hash_created', table_name='sensitive_records')
    op.drop_index('ix_sensitive_records_status', table_name='sensitive_records')
    op.drop_index('ix_sensitive_records_owner_id', table_name='sensitive_records')
    op.drop_table('sensitive_records')
