"""
Entity store: the canonical per-user table of synced entities.

Both sync protocols (legacy push/pull and the v2 change log) write through
this module. It owns:
- the upsert/versioning algorithm with checksum-based duplicate suppression
- soft deletes
- the shared 'global' sequence counter stamped on every write (broadcast ordering)
- legacy per-user sync metadata (sync token, last sync time)

All writes happen in the caller's transaction; nothing here commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import SyncData, SyncMetadata, SyncSequence
from services.checksum import canonicalize_for_storage

logger = logging.getLogger(__name__)

GLOBAL_SEQUENCE = "global"

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_DUPLICATE_PREVENTED = "duplicate_prevented"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UpsertResult:
    id: str
    entity_id: str
    action: str  # 'created' | 'updated' | 'duplicate_prevented'
    version: Optional[int] = None
    seq: Optional[int] = None  # None when nothing was written

    @property
    def wrote(self) -> bool:
        return self.action in (ACTION_CREATED, ACTION_UPDATED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "action": self.action,
            "version": self.version,
            "seq": self.seq,
        }


class EntityStore:
    """Data access for sync_data, sync_sequence and sync_metadata."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Sequence counter
    # ------------------------------------------------------------------

    def next_seq(self, name: str = GLOBAL_SEQUENCE) -> int:
        """
        Atomically increment and read a named counter.

        The UPDATE takes a row lock that is held until the caller's transaction
        ends, so two concurrent writers can never read the same value.
        """
        result = self.db.execute(
            update(SyncSequence)
            .where(SyncSequence.name == name)
            .values(value=SyncSequence.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._create_counter(name)
            self.db.execute(
                update(SyncSequence)
                .where(SyncSequence.name == name)
                .values(value=SyncSequence.value + 1)
                .execution_options(synchronize_session=False)
            )
        return self.db.execute(
            select(SyncSequence.value).where(SyncSequence.name == name)
        ).scalar_one()

    def _create_counter(self, name: str) -> None:
        try:
            with self.db.begin_nested():
                self.db.add(SyncSequence(name=name, value=0))
        except IntegrityError:
            # Created by a concurrent writer; the retried UPDATE will see it.
            logger.debug(f"Sequence '{name}' created concurrently")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entity(self, user_id: str, entity_type: str, entity_id: str) -> Optional[SyncData]:
        """Point lookup regardless of delete state."""
        return (
            self.db.query(SyncData)
            .filter(
                SyncData.user_id == user_id,
                SyncData.entity_type == entity_type,
                SyncData.entity_id == entity_id,
            )
            .first()
        )

    def get_all(
        self,
        user_id: str,
        entity_type: Optional[str] = None,
        include_deleted: bool = False,
        strict: bool = False,
    ) -> List[SyncData]:
        """
        All rows for a user, newest first.

        Deleted rows are skipped unless include_deleted is set (maintenance/tests).
        A failing query degrades to an empty list: pulls prefer partial
        availability over an error. Callers that decide writes from the result
        pass strict=True so the error propagates instead.
        """
        try:
            with self.db.begin_nested():
                query = self.db.query(SyncData).filter(SyncData.user_id == user_id)
                if not include_deleted:
                    query = query.filter(SyncData.deleted_at.is_(None))
                if entity_type:
                    query = query.filter(SyncData.entity_type == entity_type)
                return query.order_by(SyncData.updated_at.desc(), SyncData.seq.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching sync data for user {user_id}: {e}")
            if strict:
                raise
            return []

    def _find_live_by_checksum(self, user_id: str, entity_type: str, checksum: str) -> Optional[SyncData]:
        return (
            self.db.query(SyncData)
            .filter(
                SyncData.user_id == user_id,
                SyncData.entity_type == entity_type,
                SyncData.checksum == checksum,
                SyncData.deleted_at.is_(None),
            )
            .first()
        )

    def _find_by_checksum(self, user_id: str, entity_type: str, checksum: str) -> Optional[SyncData]:
        return (
            self.db.query(SyncData)
            .filter(
                SyncData.user_id == user_id,
                SyncData.entity_type == entity_type,
                SyncData.checksum == checksum,
            )
            .first()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        data: Any,
        checksum: str,
        version: Optional[int] = None,
        device_id: Optional[str] = None,
    ) -> UpsertResult:
        """
        Create or update an entity with duplicate-content suppression.

        1. canonicalize_for_storage(data) (missing -> null, cycle guard)
        2. deletedAt carried inside the payload becomes the soft-delete marker
        3. live row with the same checksum under another entity_id -> duplicate_prevented
        4. existing (user, type, entity_id) row -> update (version + 1), else insert
        5. every write stamps the next global seq
        6. a uniqueness violation (concurrent push) resolves to duplicate_prevented

        When version is given it is a floor for the stored version: inserts use it
        as-is, updates store max(version, current + 1).
        """
        sanitized = canonicalize_for_storage(data)
        deleted_at = sanitized.get("deletedAt") if isinstance(sanitized, dict) else None
        if deleted_at is not None:
            deleted_at = str(deleted_at)

        try:
            with self.db.begin_nested():
                duplicate = self._find_live_by_checksum(user_id, entity_type, checksum)
                if duplicate is not None and duplicate.entity_id != entity_id:
                    logger.warning(
                        f"[Duplicate] Found duplicate content with different ID. "
                        f"Existing: {duplicate.entity_id}, New: {entity_id}, "
                        f"Device: {device_id or 'unknown'}"
                    )
                    return UpsertResult(
                        id=duplicate.id,
                        entity_id=duplicate.entity_id,
                        action=ACTION_DUPLICATE_PREVENTED,
                        version=duplicate.version,
                    )

                existing = self.get_entity(user_id, entity_type, entity_id)
                now = _utcnow()
                seq = self.next_seq()

                if existing is not None:
                    if version is not None and version > existing.version:
                        existing.version = version
                    else:
                        existing.version = SyncData.version + 1
                    existing.data = sanitized
                    existing.checksum = checksum
                    existing.updated_at = now
                    existing.deleted_at = deleted_at
                    existing.device_id = device_id
                    existing.seq = seq
                    self.db.flush()
                    return UpsertResult(
                        id=existing.id,
                        entity_id=entity_id,
                        action=ACTION_UPDATED,
                        version=existing.version,
                        seq=seq,
                    )

                row = SyncData(
                    user_id=user_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    data=sanitized,
                    checksum=checksum,
                    version=version or 1,
                    device_id=device_id,
                    created_at=now,
                    updated_at=now,
                    deleted_at=deleted_at,
                    seq=seq,
                )
                self.db.add(row)
                self.db.flush()
                return UpsertResult(
                    id=row.id,
                    entity_id=entity_id,
                    action=ACTION_CREATED,
                    version=row.version,
                    seq=seq,
                )
        except IntegrityError:
            logger.error(
                "[Duplicate] Constraint violation",
                extra={
                    "extra_fields": {
                        "user_id": user_id,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "checksum": checksum,
                        "device_id": device_id,
                    }
                },
            )
            existing = self._find_by_checksum(user_id, entity_type, checksum)
            if existing is not None:
                return UpsertResult(
                    id=existing.id,
                    entity_id=existing.entity_id,
                    action=ACTION_DUPLICATE_PREVENTED,
                    version=existing.version,
                )
            raise

    def soft_delete(self, user_id: str, entity_type: str, entity_id: str, deleted_at: str) -> bool:
        """
        Mark an entity deleted without touching data/checksum/version.

        Returns False when there is no such row.
        """
        row = self.get_entity(user_id, entity_type, entity_id)
        if row is None:
            logger.info(f"Soft delete skipped, no {entity_type} {entity_id} for user {user_id}")
            return False

        row.deleted_at = str(deleted_at)
        row.updated_at = _utcnow()
        row.seq = self.next_seq()
        self.db.flush()
        logger.info(f"Soft deleted {entity_type} {entity_id} for user {user_id}")
        return True

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------

    def get_sync_metadata(self, user_id: str) -> Optional[SyncMetadata]:
        return self.db.query(SyncMetadata).filter(SyncMetadata.user_id == user_id).first()

    def get_or_create_sync_metadata(self, user_id: str) -> SyncMetadata:
        metadata = self.get_sync_metadata(user_id)
        if metadata is not None:
            return metadata
        try:
            with self.db.begin_nested():
                metadata = SyncMetadata(user_id=user_id, device_count=1, change_log_version=0)
                self.db.add(metadata)
        except IntegrityError:
            metadata = self.get_sync_metadata(user_id)
        return metadata

    def update_sync_metadata(
        self, user_id: str, sync_token: str, device_count: Optional[int] = None
    ) -> SyncMetadata:
        metadata = self.get_or_create_sync_metadata(user_id)
        metadata.last_sync_token = sync_token
        metadata.last_sync_time = _utcnow()
        if device_count is not None:
            metadata.device_count = device_count
        self.db.flush()
        return metadata
