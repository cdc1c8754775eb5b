from sqlalchemy import Column, Integer, BigInteger, DateTime, JSON, Text, String, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from typing import Optional


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests/tooling).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


def generate_id(prefix: Optional[str] = None) -> str:
    """Generate a storage identifier, optionally prefixed (e.g. "sync_...")."""
    value = uuid.uuid4().hex
    return f"{prefix}_{value}" if prefix else value


class SyncData(Base):
    """
    Current state of one user-owned entity (logbook entry, goal, plan, ...).

    Identified by (user_id, entity_type, entity_id). Rows are never physically
    removed by sync: deletion sets deleted_at and the row stays for pulls
    to skip and for later undelete.
    """
    __tablename__ = "sync_data"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("sync"))
    user_id = Column(Text, nullable=False)
    entity_type = Column(Text, nullable=False)  # 'logbook_entry', 'goal', 'practice_plan', ... (open set)
    entity_id = Column(Text, nullable=False)  # Client-assigned
    data = Column(JSONType, nullable=False)
    checksum = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    device_id = Column(Text, nullable=True)  # Attribution only, never ownership
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    # Client-supplied ISO-8601 string, stored as sent.
    deleted_at = Column(Text, nullable=True)
    # Global write order (sync_sequence 'global'); null only for rows migrated without a write.
    seq = Column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_sync_data_user_entity"),
        Index("ix_sync_data_user_type_checksum", "user_id", "entity_type", "checksum"),
        Index("ix_sync_data_user_updated_at", "user_id", "updated_at"),
    )


class SyncSequence(Base):
    """Named monotonic counters. The 'global' row stamps SyncData.seq."""
    __tablename__ = "sync_sequence"

    name = Column(Text, primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class SyncMetadata(Base):
    """Per-user sync bookkeeping for both protocols."""
    __tablename__ = "sync_metadata"

    user_id = Column(Text, primary_key=True)
    last_sync_token = Column(Text, nullable=True)  # Legacy cursor hint, opaque to clients
    last_sync_time = Column(DateTime(timezone=True), nullable=True)
    device_count = Column(Integer, nullable=False, default=1)
    # Highest EntityChange.version handed out for this user.
    change_log_version = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class EntityChange(Base):
    """
    Append-only change log (sync v2).

    Rows are immutable once written. version is strictly increasing per user.
    """
    __tablename__ = "entity_changes"

    id = Column(AutoIncrementId, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False)
    change_id = Column(Text, nullable=False)  # Client-generated, idempotency key for this mutation
    device_id = Column(Text, nullable=True)
    change_type = Column(Text, nullable=False)  # 'CREATED' | 'UPDATED' | 'DELETED'
    entity_type = Column(Text, nullable=False)
    entity_id = Column(Text, nullable=False)
    # Full object for CREATED, delta for UPDATED, {} for DELETED
    change_data = Column(JSONType, nullable=False, default=dict)
    version = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "change_id", name="uq_entity_changes_user_change_id"),
        UniqueConstraint("user_id", "version", name="uq_entity_changes_user_version"),
    )


class IdempotencyRecord(Base):
    """Stored response for a push bearing a client idempotency key."""
    __tablename__ = "idempotency_keys"

    id = Column(AutoIncrementId, primary_key=True, autoincrement=True)
    key = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    request_hash = Column(String(64), nullable=False)
    # Serialized JSON text so replays are byte-identical to the first response.
    response = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("key", "user_id", name="uq_idempotency_keys_key_user"),
        Index("ix_idempotency_keys_expires_at", "expires_at"),
    )
