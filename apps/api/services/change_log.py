"""
Sync v2: append-only change log.

Every mutation is an immutable EntityChange with a per-user version. Clients
send their changes plus the last version they have seen and get back every
change after it. Applying a change is idempotent by changeId, so no separate
idempotency store is involved.

Applied changes are mirrored into EntityStore so legacy pulls keep seeing
current state while both protocols run side by side.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import EntityChange, SyncMetadata, generate_id
from services.checksum import calculate_checksum, canonicalize_for_storage
from services.entity_store import EntityStore
from services.sync_reconciler import iso_now

logger = logging.getLogger(__name__)

CHANGE_CREATED = "CREATED"
CHANGE_UPDATED = "UPDATED"
CHANGE_DELETED = "DELETED"
CHANGE_TYPES = (CHANGE_CREATED, CHANGE_UPDATED, CHANGE_DELETED)

UNKNOWN_DEVICE_ID = "unknown"
MIGRATION_DEVICE_ID = "migration"


def change_to_dict(change: EntityChange) -> Dict[str, Any]:
    """Wire form of a change record; data is omitted when empty."""
    record: Dict[str, Any] = {
        "changeId": change.change_id,
        "type": change.change_type,
        "entityType": change.entity_type,
        "entityId": change.entity_id,
    }
    if change.change_data:
        record["data"] = change.change_data
    return record


class ChangeLogReconciler:
    """Change-log sync, status and one-time migration from EntityStore."""

    def __init__(self, db: Session, store: Optional[EntityStore] = None):
        self.db = db
        self.store = store or EntityStore(db)

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def next_version(self, user_id: str) -> int:
        """Increment and read the user's change-log version (same transaction)."""
        self.store.get_or_create_sync_metadata(user_id)
        self.db.execute(
            update(SyncMetadata)
            .where(SyncMetadata.user_id == user_id)
            .values(change_log_version=SyncMetadata.change_log_version + 1)
        )
        return self.db.execute(
            select(SyncMetadata.change_log_version).where(SyncMetadata.user_id == user_id)
        ).scalar_one()

    def get_latest_version(self, user_id: str) -> int:
        return self.db.execute(
            select(func.coalesce(func.max(EntityChange.version), 0)).where(EntityChange.user_id == user_id)
        ).scalar_one()

    def get_changes_after_version(self, user_id: str, after_version: int) -> List[Dict[str, Any]]:
        """Changes with version > after_version, ascending."""
        changes = (
            self.db.query(EntityChange)
            .filter(EntityChange.user_id == user_id, EntityChange.version > after_version)
            .order_by(EntityChange.version.asc())
            .all()
        )
        return [change_to_dict(change) for change in changes]

    def count_changes(self, user_id: str) -> int:
        return self.db.execute(
            select(func.count()).select_from(EntityChange).where(EntityChange.user_id == user_id)
        ).scalar_one()

    def _change_exists(self, user_id: str, change_id: str) -> bool:
        return (
            self.db.query(EntityChange.id)
            .filter(EntityChange.user_id == user_id, EntityChange.change_id == change_id)
            .first()
            is not None
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(
        self,
        user_id: str,
        last_known_version: int,
        changes: List[Dict[str, Any]],
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply incoming changes, then return everything after last_known_version.

        Response: {newChanges, latestServerVersion, conflicts?}
        """
        device_id = device_id or UNKNOWN_DEVICE_ID
        conflicts: List[Dict[str, Any]] = []
        applied = 0
        skipped = 0

        for change in changes:
            change_id = change.get("changeId")
            if not change_id:
                conflicts.append({"changeId": change_id, "reason": "missing changeId"})
                continue
            try:
                if self._apply_once(user_id, change, device_id):
                    applied += 1
                else:
                    skipped += 1
            except (SQLAlchemyError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"[Sync V2] Failed to apply change {change_id} for user {user_id}: {e!r}")
                conflicts.append({"changeId": change_id, "reason": str(getattr(e, "orig", None) or e)})

        new_changes = self.get_changes_after_version(user_id, last_known_version)
        latest_version = self.get_latest_version(user_id)

        logger.info(
            f"[Sync V2] Sync completed for user {user_id}",
            extra={
                "extra_fields": {
                    "user_id": user_id,
                    "device_id": device_id,
                    "applied_changes": applied,
                    "skipped_changes": skipped,
                    "conflicts": len(conflicts),
                    "new_changes_to_client": len(new_changes),
                    "latest_server_version": latest_version,
                }
            },
        )

        response: Dict[str, Any] = {
            "newChanges": new_changes,
            "latestServerVersion": latest_version,
        }
        if conflicts:
            response["conflicts"] = conflicts
        return response

    def _apply_once(self, user_id: str, change: Dict[str, Any], device_id: str) -> bool:
        """Apply a change unless its changeId was seen before. Returns True if applied."""
        change_id = str(change["changeId"])
        try:
            with self.db.begin_nested():
                if self._change_exists(user_id, change_id):
                    logger.info(f"[Sync V2] Skipping duplicate change: {change_id}")
                    return False
                self._apply_change(user_id, change_id, change, device_id)
                return True
        except IntegrityError:
            # A concurrent request logged the same changeId first.
            if self._change_exists(user_id, change_id):
                logger.info(f"[Sync V2] Change {change_id} applied concurrently, skipping")
                return False
            raise

    def _apply_change(self, user_id: str, change_id: str, change: Dict[str, Any], device_id: str) -> None:
        change_type = change["type"]
        if change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type: {change_type}")
        entity_type = change["entityType"]
        entity_id = str(change["entityId"])

        data = canonicalize_for_storage(change.get("data") or {})
        if not isinstance(data, dict):
            raise ValueError(f"Change data must be an object, got {type(data).__name__}")
        if change_type == CHANGE_DELETED:
            data = {}

        self.db.add(
            EntityChange(
                user_id=user_id,
                change_id=change_id,
                device_id=device_id,
                change_type=change_type,
                entity_type=entity_type,
                entity_id=entity_id,
                change_data=data,
                version=self.next_version(user_id),
            )
        )
        self.db.flush()

        if change_type == CHANGE_DELETED:
            self.store.soft_delete(user_id, entity_type, entity_id, iso_now())
            return

        payload = data
        if change_type == CHANGE_UPDATED:
            current = self.store.get_entity(user_id, entity_type, entity_id)
            if current is not None and isinstance(current.data, dict):
                payload = {**current.data, **data}

        result = self.store.upsert(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            data=payload,
            checksum=calculate_checksum(payload),
            device_id=device_id,
        )
        if not result.wrote:
            logger.info(
                f"[Sync V2] {change_type} {entity_type} {entity_id} logged; "
                f"entity store kept {result.entity_id} ({result.action})"
            )

    # ------------------------------------------------------------------
    # Status / migration
    # ------------------------------------------------------------------

    def status(self, user_id: str) -> Dict[str, Any]:
        metadata = self.store.get_sync_metadata(user_id)
        last_sync = metadata.updated_at if metadata else None
        return {
            "lastKnownVersion": metadata.change_log_version if metadata else 0,
            "deviceCount": metadata.device_count if metadata else 0,
            "totalChanges": self.count_changes(user_id),
            "lastSync": last_sync.isoformat() if last_sync else None,
        }

    def migrate(self, user_id: str) -> Dict[str, Any]:
        """
        Seed the change log from the user's live EntityStore rows.

        A no-op for users that already have any change records. The metadata
        row is locked first so two concurrent migrations cannot both seed.
        """
        self.store.get_or_create_sync_metadata(user_id)
        self.db.query(SyncMetadata).filter(SyncMetadata.user_id == user_id).with_for_update().one()

        existing = self.count_changes(user_id)
        if existing > 0:
            return {
                "migrated": False,
                "reason": "User already has change log data",
                "existingChanges": existing,
            }

        rows = self.store.get_all(user_id)
        # Oldest first, so versions follow write order.
        for row in reversed(rows):
            self.db.add(
                EntityChange(
                    user_id=user_id,
                    change_id=generate_id("migrate_change"),
                    device_id=MIGRATION_DEVICE_ID,
                    change_type=CHANGE_CREATED,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    change_data=canonicalize_for_storage(row.data) or {},
                    version=self.next_version(user_id),
                )
            )
        self.db.flush()

        logger.info(f"[Sync V2] Migrated {len(rows)} entries for user {user_id}")
        return {"migrated": True, "entriesConverted": len(rows)}
