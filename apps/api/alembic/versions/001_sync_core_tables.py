"""sync core tables

Revision ID: 001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

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


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
AUTO_ID = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    # Current entity state, one row per (user, type, client id)
    op.create_table(
        'sync_data',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('entity_type', sa.Text(), nullable=False),
        sa.Column('entity_id', sa.Text(), nullable=False),
        sa.Column('data', JSON_TYPE, nullable=False),
        sa.Column('checksum', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('device_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.Text(), nullable=True),
        sa.Column('seq', sa.BigInteger(), nullable=True),
        sa.UniqueConstraint('user_id', 'entity_type', 'entity_id', name='uq_sync_data_user_entity'),
    )
    op.create_index('ix_sync_data_user_type_checksum', 'sync_data', ['user_id', 'entity_type', 'checksum'])
    op.create_index('ix_sync_data_user_updated_at', 'sync_data', ['user_id', 'updated_at'])

    # Named counters; 'global' stamps sync_data.seq
    op.create_table(
        'sync_sequence',
        sa.Column('name', sa.Text(), primary_key=True),
        sa.Column('value', sa.BigInteger(), server_default='0', nullable=False),
    )
    op.execute("INSERT INTO sync_sequence (name, value) VALUES ('global', 0)")

    op.create_table(
        'sync_metadata',
        sa.Column('user_id', sa.Text(), primary_key=True),
        sa.Column('last_sync_token', sa.Text(), nullable=True),
        sa.Column('last_sync_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('device_count', sa.Integer(), server_default='1', nullable=False),
        sa.Column('change_log_version', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Append-only change log (sync v2)
    op.create_table(
        'entity_changes',
        sa.Column('id', AUTO_ID, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('change_id', sa.Text(), nullable=False),
        sa.Column('device_id', sa.Text(), nullable=True),
        sa.Column('change_type', sa.Text(), nullable=False),
        sa.Column('entity_type', sa.Text(), nullable=False),
        sa.Column('entity_id', sa.Text(), nullable=False),
        sa.Column('change_data', JSON_TYPE, nullable=False),
        sa.Column('version', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'change_id', name='uq_entity_changes_user_change_id'),
        sa.UniqueConstraint('user_id', 'version', name='uq_entity_changes_user_version'),
    )

    op.create_table(
        'idempotency_keys',
        sa.Column('id', AUTO_ID, primary_key=True, autoincrement=True),
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('response', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('key', 'user_id', name='uq_idempotency_keys_key_user'),
    )
    op.create_index('ix_idempotency_keys_expires_at', 'idempotency_keys', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_idempotency_keys_expires_at', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')
    op.drop_table('entity_changes')
    op.drop_table('sync_metadata')
    op.drop_table('sync_sequence')
    op.drop_index('ix_sync_data_user_updated_at', table_name='sync_data')
    op.drop_index('ix_sync_data_user_type_checksum', table_name='sync_data')
    op.drop_table('sync_data')
