"""
Core types for firewood sync.

This module defines the synchronizable entities (racks and consumption
entries), their replication envelope, and the request/response messages
exchanged between the sync client and the sync server.

Wire format is camelCase JSON with ISO-8601 timestamps. Local-only
bookkeeping (syncStatus, lastSyncedAt) is never put on the wire.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Self

from .exceptions import ValidationError

# =============================================================================
# Enumerations
# =============================================================================


class EntityType(Enum):
    """Kinds of entities that take part in synchronization."""

    RACK = "rack"
    CONSUMPTION = "consumption"


class ChangeAction(Enum):
    """Local mutation carried by a change queue item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RecordStatus(Enum):
    """Per-record sync bookkeeping, local only."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class Winner(Enum):
    """Side that won a last-write-wins arbitration."""

    LOCAL = "local"
    SERVER = "server"


# =============================================================================
# Timestamp and value coercion
# =============================================================================

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision, which the wire format cannot carry."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime with millisecond precision."""
    return truncate_to_millis(datetime.now(UTC))


def format_timestamp(value: datetime) -> str:
    """Format a datetime for the wire: ``2024-01-31T08:15:00.000Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """Coerce a loosely-typed wire value into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without ``Z``) and
    epoch milliseconds. Naive values are taken to be UTC.

    Raises:
        ValidationError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValidationError(field_name, "expected a timestamp", str(value))
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(field_name, "epoch value out of range", repr(value)) from e
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as e:
            raise ValidationError(field_name, "not an ISO-8601 timestamp", value) from e
    else:
        raise ValidationError(field_name, "expected a timestamp", repr(value))

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        return truncate_to_millis(parsed.astimezone(UTC))
    except OverflowError as e:
        raise ValidationError(field_name, "timestamp out of range", repr(value)) from e


def parse_optional_timestamp(value: Any, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value, field_name)


def _coerce_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(field_name, "expected a number", str(value))
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(field_name, "expected a number", repr(value)) from e
    if not math.isfinite(number):
        raise ValidationError(field_name, "expected a finite number", repr(value))
    return number


def _coerce_int(value: Any, field_name: str) -> int:
    return int(_coerce_float(value, field_name))


def _list(data: dict[str, Any], key: str) -> list[Any]:
    """A list-valued field; missing or null means empty."""
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(key, "expected a list", repr(value))
    return value


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise ValidationError(key, "missing required field")
    return data[key]


# =============================================================================
# Entities
# =============================================================================


class SyncEntity:
    """Replication envelope shared by every synchronizable entity.

    Subclasses are dataclasses that declare ``id``, ``created_at``,
    ``updated_at``, ``deleted_at``, ``sync_status`` and ``last_synced_at``
    alongside their domain fields.
    """

    entity_type: ClassVar[EntityType]
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]]

    id: str
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    sync_status: RecordStatus
    last_synced_at: datetime | None

    @property
    def is_deleted(self) -> bool:
        """True when the record carries a tombstone."""
        return self.deleted_at is not None

    def with_changes(self, **changes: Any) -> Self:
        """Return a copy with the given attributes replaced."""
        return replace(self, **changes)  # type: ignore[type-var]

    def tombstoned(self, at: datetime) -> Self:
        """Return a tombstoned copy, keeping deleted_at after every prior timestamp."""
        stamp = max(at, self.updated_at, self.created_at)
        return self.with_changes(deleted_at=stamp, updated_at=stamp)

    def _envelope_to_dict(self, include_local: bool) -> dict[str, Any]:
        result: dict[str, Any] = {
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "deletedAt": format_timestamp(self.deleted_at) if self.deleted_at else None,
        }
        if include_local:
            result["syncStatus"] = self.sync_status.value
            result["lastSyncedAt"] = (
                format_timestamp(self.last_synced_at) if self.last_synced_at else None
            )
        return result

    @staticmethod
    def _envelope_from_dict(data: dict[str, Any]) -> dict[str, Any]:
        status_raw = data.get("syncStatus")
        try:
            status = RecordStatus(status_raw) if status_raw else RecordStatus.PENDING
        except ValueError:
            status = RecordStatus.PENDING
        return {
            "created_at": parse_timestamp(_require(data, "createdAt"), "createdAt"),
            "updated_at": parse_timestamp(_require(data, "updatedAt"), "updatedAt"),
            "deleted_at": parse_optional_timestamp(data.get("deletedAt"), "deletedAt"),
            "sync_status": status,
            "last_synced_at": parse_optional_timestamp(data.get("lastSyncedAt"), "lastSyncedAt"),
        }


@dataclass
class Rack(SyncEntity):
    """A firewood rack with its measured dimensions and computed volume."""

    id: str
    name: str
    height: float
    width: float
    depth: float
    log_size: int
    volume_m3: float
    volume_steres: float
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    sync_status: RecordStatus = RecordStatus.PENDING
    last_synced_at: datetime | None = None

    entity_type: ClassVar[EntityType] = EntityType.RACK
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "height",
        "width",
        "depth",
        "log_size",
        "volume_m3",
        "volume_steres",
    )

    def to_dict(self, include_local: bool = False) -> dict[str, Any]:
        """Convert to wire dictionary (local bookkeeping only on request)."""
        return {
            "id": self.id,
            "name": self.name,
            "height": self.height,
            "width": self.width,
            "depth": self.depth,
            "logSize": self.log_size,
            "volumeM3": self.volume_m3,
            "volumeSteres": self.volume_steres,
            **self._envelope_to_dict(include_local),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rack":
        """Create from a wire or storage dictionary, coercing drifted types."""
        return cls(
            id=str(_require(data, "id")),
            name=str(data.get("name") or ""),
            height=_coerce_float(data.get("height", 0), "height"),
            width=_coerce_float(data.get("width", 0), "width"),
            depth=_coerce_float(data.get("depth", 0), "depth"),
            log_size=_coerce_int(data.get("logSize", 33), "logSize"),
            volume_m3=_coerce_float(data.get("volumeM3", 0), "volumeM3"),
            volume_steres=_coerce_float(data.get("volumeSteres", 0), "volumeSteres"),
            **cls._envelope_from_dict(data),
        )


@dataclass
class ConsumptionEntry(SyncEntity):
    """A reload or consumption event recorded against a rack."""

    id: str
    rack_id: str
    type: str
    percentage: float
    date: datetime
    week_number: int
    year: int
    created_at: datetime
    updated_at: datetime
    notes: str | None = None
    deleted_at: datetime | None = None
    sync_status: RecordStatus = RecordStatus.PENDING
    last_synced_at: datetime | None = None

    entity_type: ClassVar[EntityType] = EntityType.CONSUMPTION
    # rack_id is fixed at creation
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "type",
        "percentage",
        "date",
        "week_number",
        "year",
        "notes",
    )

    def to_dict(self, include_local: bool = False) -> dict[str, Any]:
        """Convert to wire dictionary (local bookkeeping only on request)."""
        return {
            "id": self.id,
            "rackId": self.rack_id,
            "type": self.type,
            "percentage": self.percentage,
            "date": format_timestamp(self.date),
            "weekNumber": self.week_number,
            "year": self.year,
            "notes": self.notes,
            **self._envelope_to_dict(include_local),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsumptionEntry":
        """Create from a wire or storage dictionary, coercing drifted types."""
        notes = data.get("notes")
        return cls(
            id=str(_require(data, "id")),
            rack_id=str(_require(data, "rackId")),
            type=str(data.get("type") or "consumption"),
            percentage=_coerce_float(data.get("percentage", 0), "percentage"),
            date=parse_timestamp(_require(data, "date"), "date"),
            week_number=_coerce_int(data.get("weekNumber", 0), "weekNumber"),
            year=_coerce_int(data.get("year", 0), "year"),
            notes=str(notes) if notes is not None else None,
            **cls._envelope_from_dict(data),
        )


Entity = Rack | ConsumptionEntry

ENTITY_CLASSES: dict[EntityType, type[Rack] | type[ConsumptionEntry]] = {
    EntityType.RACK: Rack,
    EntityType.CONSUMPTION: ConsumptionEntry,
}


def entity_from_dict(entity_type: EntityType, data: dict[str, Any]) -> Entity:
    """Build the entity class registered for entity_type from a dictionary."""
    if not isinstance(data, dict):
        raise ValidationError("data", f"expected an object for {entity_type.value}", repr(data))
    return ENTITY_CLASSES[entity_type].from_dict(data)


# =============================================================================
# Wire messages
# =============================================================================


@dataclass
class SyncItem:
    """One queued local mutation as shipped to the server."""

    data: Entity
    action: ChangeAction
    local_updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "data": self.data.to_dict(),
            "action": self.action.value,
            "localUpdatedAt": format_timestamp(self.local_updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], entity_type: EntityType) -> "SyncItem":
        """Create from wire dictionary."""
        if not isinstance(data, dict):
            raise ValidationError(entity_type.value, "expected a sync item object", repr(data))
        entity = entity_from_dict(entity_type, _require(data, "data"))
        try:
            action = ChangeAction(data.get("action"))
        except ValueError as e:
            raise ValidationError("action", "unknown action", repr(data.get("action"))) from e

        local_raw = data.get("localUpdatedAt")
        local_updated_at = (
            parse_timestamp(local_raw, "localUpdatedAt")
            if local_raw is not None
            else entity.updated_at
        )
        return cls(data=entity, action=action, local_updated_at=local_updated_at)


@dataclass
class SyncRequest:
    """Everything a client uploads in one sync round."""

    last_sync_timestamp: datetime | None
    racks: list[SyncItem] = field(default_factory=list)
    consumptions: list[SyncItem] = field(default_factory=list)

    def items_for(self, entity_type: EntityType) -> list[SyncItem]:
        """Items of one entity kind."""
        return self.racks if entity_type == EntityType.RACK else self.consumptions

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "lastSyncTimestamp": (
                format_timestamp(self.last_sync_timestamp) if self.last_sync_timestamp else None
            ),
            "racks": [item.to_dict() for item in self.racks],
            "consumptions": [item.to_dict() for item in self.consumptions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRequest":
        """Create from wire dictionary; missing collections are empty."""
        if not isinstance(data, dict):
            raise ValidationError("body", "expected a JSON object", repr(data))
        return cls(
            last_sync_timestamp=parse_optional_timestamp(
                data.get("lastSyncTimestamp"), "lastSyncTimestamp"
            ),
            racks=[SyncItem.from_dict(i, EntityType.RACK) for i in _list(data, "racks")],
            consumptions=[
                SyncItem.from_dict(i, EntityType.CONSUMPTION)
                for i in _list(data, "consumptions")
            ],
        )


@dataclass
class EntityChanges:
    """Created, updated and deleted records of one entity kind."""

    created: list[Entity] = field(default_factory=list)
    updated: list[Entity] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.created or self.updated or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "created": [e.to_dict() for e in self.created],
            "updated": [e.to_dict() for e in self.updated],
            "deleted": list(self.deleted),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, entity_type: EntityType) -> "EntityChanges":
        """Create from wire dictionary."""
        data = data or {}
        return cls(
            created=[entity_from_dict(entity_type, e) for e in _list(data, "created")],
            updated=[entity_from_dict(entity_type, e) for e in _list(data, "updated")],
            deleted=[str(entity_id) for entity_id in _list(data, "deleted")],
        )


@dataclass
class ConflictRecord:
    """A queued write that lost arbitration, with the value to adopt."""

    entity_type: EntityType
    entity_id: str
    winner: Winner
    resolved_data: Entity

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "winner": self.winner.value,
            "resolvedData": self.resolved_data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictRecord":
        """Create from wire dictionary."""
        try:
            entity_type = EntityType(data.get("entityType"))
            winner = Winner(data.get("winner"))
        except ValueError as e:
            raise ValidationError("conflicts", "unknown entity type or winner", repr(data)) from e
        return cls(
            entity_type=entity_type,
            entity_id=str(_require(data, "entityId")),
            winner=winner,
            resolved_data=entity_from_dict(entity_type, _require(data, "resolvedData")),
        )


@dataclass
class SyncResponse:
    """Server answer to one sync round."""

    server_timestamp: datetime
    racks: EntityChanges = field(default_factory=EntityChanges)
    consumptions: EntityChanges = field(default_factory=EntityChanges)
    conflicts: list[ConflictRecord] = field(default_factory=list)

    def changes_for(self, entity_type: EntityType) -> EntityChanges:
        """Changes of one entity kind."""
        return self.racks if entity_type == EntityType.RACK else self.consumptions

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "serverTimestamp": format_timestamp(self.server_timestamp),
            "racks": self.racks.to_dict(),
            "consumptions": self.consumptions.to_dict(),
            "conflicts": [c.to_dict() for c in self.conflicts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncResponse":
        """Create from wire dictionary."""
        if not isinstance(data, dict):
            raise ValidationError("body", "expected a JSON object", repr(data))
        return cls(
            server_timestamp=parse_timestamp(
                _require(data, "serverTimestamp"), "serverTimestamp"
            ),
            racks=EntityChanges.from_dict(data.get("racks"), EntityType.RACK),
            consumptions=EntityChanges.from_dict(data.get("consumptions"), EntityType.CONSUMPTION),
            conflicts=[ConflictRecord.from_dict(c) for c in _list(data, "conflicts")],
        )


# =============================================================================
# Status
# =============================================================================


@dataclass
class SyncStatus:
    """Current synchronization status of a client."""

    is_online: bool
    is_syncing: bool
    pending_changes: int
    last_sync: datetime | None
    last_error: str | None = None
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "is_online": self.is_online,
            "is_syncing": self.is_syncing,
            "pending_changes": self.pending_changes,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_error": self.last_error,
            "enabled": self.enabled,
        }
