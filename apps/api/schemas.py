from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional


# Legacy protocol (push / pull / batch)

class SyncChanges(BaseModel):
    """Entities grouped by kind. Items are opaque client payloads keyed by 'id'."""
    entries: List[Dict[str, Any]] = Field(default_factory=list)
    goals: List[Dict[str, Any]] = Field(default_factory=list)
    practice_plans: List[Dict[str, Any]] = Field(default_factory=list, alias="practicePlans")
    plan_occurrences: List[Dict[str, Any]] = Field(default_factory=list, alias="planOccurrences")
    plan_templates: List[Dict[str, Any]] = Field(default_factory=list, alias="planTemplates")
    user_preferences: List[Dict[str, Any]] = Field(default_factory=list, alias="userPreferences")

    model_config = ConfigDict(populate_by_name=True)


class SyncPushRequest(BaseModel):
    changes: SyncChanges

    # Clients may send timestamp/requestId alongside; they are ignored by the push
    # and excluded from idempotency hashing.
    model_config = ConfigDict(extra="allow")


class SyncBatchEntity(BaseModel):
    type: str = Field(..., min_length=1)
    id: str = Field(..., min_length=1)
    data: Any = None
    checksum: Optional[str] = None  # Computed server-side when absent
    version: int = Field(default=0, ge=0)


class SyncBatchRequest(BaseModel):
    entities: List[SyncBatchEntity] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


# Change-log protocol (v2)

ChangeType = Literal["CREATED", "UPDATED", "DELETED"]


class ChangeRecordIn(BaseModel):
    change_id: str = Field(..., min_length=1, alias="changeId")
    type: ChangeType
    entity_type: str = Field(..., min_length=1, alias="entityType")
    entity_id: str = Field(..., min_length=1, alias="entityId")
    data: Optional[Dict[str, Any]] = None  # Full object for CREATED, delta for UPDATED

    model_config = ConfigDict(populate_by_name=True)


class SyncV2Request(BaseModel):
    last_known_server_version: int = Field(default=0, ge=0, alias="lastKnownServerVersion")
    changes: List[ChangeRecordIn] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)
