"""Order/booking entity models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from restosync.ingestion.normalize import safe_float, safe_int
from restosync.models._base import RestoBaseModel, RestoTimestamp


class EntityKind(StrEnum):
    ORDER = "ORDER"
    BOOKING = "BOOKING"


class EntityStatus(StrEnum):
    """Union of order and booking lifecycle states."""

    PENDING = "PENDING"
    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    RESERVED = "RESERVED"
    PREPARING = "PREPARING"
    READY_FOR_SERVICE = "READY_FOR_SERVICE"
    SERVED = "SERVED"
    OCCUPIED = "OCCUPIED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ORDER_STATUSES: frozenset[EntityStatus] = frozenset(
    {
        EntityStatus.PENDING,
        EntityStatus.CONFIRMED,
        EntityStatus.PREPARING,
        EntityStatus.READY_FOR_SERVICE,
        EntityStatus.SERVED,
        EntityStatus.COMPLETED,
        EntityStatus.CANCELLED,
    }
)

BOOKING_STATUSES: frozenset[EntityStatus] = frozenset(
    {
        EntityStatus.PENDING,
        EntityStatus.BOOKED,
        EntityStatus.CONFIRMED,
        EntityStatus.RESERVED,
        EntityStatus.OCCUPIED,
        EntityStatus.COMPLETED,
        EntityStatus.CANCELLED,
    }
)


# Upper bound for a backend-supplied duration hint.
MAX_DURATION = timedelta(days=7)


def valid_statuses(kind: EntityKind) -> frozenset[EntityStatus]:
    if kind == EntityKind.ORDER:
        return ORDER_STATUSES
    return BOOKING_STATUSES


class Entity(BaseModel):
    """A tracked order or booking.

    ``fields`` is opaque to the engine: display attributes such as the
    customer, items, totals or table number are passed through unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    kind: EntityKind
    status: EntityStatus
    created_at: datetime | None = None
    scheduled_at: datetime | None = None
    duration_hint: timedelta | None = None
    version: int = Field(default=0, ge=0)
    fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("id must be non-empty")
        return entity_id

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("created_at", "scheduled_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _status_matches_kind(self) -> Entity:
        if self.status not in valid_statuses(self.kind):
            raise ValueError(f"{self.status} is not a valid {self.kind.lower()} status")
        return self

    @property
    def anchor_time(self) -> datetime | None:
        """Timestamp that elapsed-time transitions are measured from."""
        return self.scheduled_at or self.created_at


class EntityRecord(RestoBaseModel):
    """An order or booking record as returned by the backend."""

    _KEY_ALIASES: ClassVar[dict[str, str]] = {
        "_id": "id",
        "timeSlot": "scheduledAt",
        "bookingTime": "scheduledAt",
    }

    # Keys describing the entity itself; everything else is a display field.
    _STRUCTURAL_KEYS: ClassVar[frozenset[str]] = frozenset({"id", "_id", "status", "version", "kind"})

    id: str
    status: str
    kind: EntityKind | None = None
    version: int | None = None
    created_at: RestoTimestamp = None
    updated_at: RestoTimestamp = None
    scheduled_at: RestoTimestamp = None
    duration_hint: float | None = None
    """Expected duration in seconds."""
    duration_minutes: float | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> int | None:
        parsed = safe_int(value)
        if parsed is None or parsed < 0:
            return None
        return parsed

    @field_validator("duration_hint", "duration_minutes", mode="before")
    @classmethod
    def _coerce_duration(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("status", "kind", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def effective_version(self) -> int:
        """Explicit ``version``, else ``updatedAt`` as epoch milliseconds, else 0."""
        if self.version is not None:
            return self.version
        if self.updated_at is not None:
            return int(self.updated_at.timestamp() * 1000)
        return 0

    @property
    def duration(self) -> timedelta | None:
        """Expected duration; values outside ``(0, MAX_DURATION]`` are ignored."""
        limit = MAX_DURATION.total_seconds()
        if self.duration_hint is not None and 0 < self.duration_hint <= limit:
            return timedelta(seconds=self.duration_hint)
        if self.duration_minutes is not None and 0 < self.duration_minutes * 60 <= limit:
            return timedelta(minutes=self.duration_minutes)
        return None

    def to_entity(self, kind: EntityKind | None = None) -> Entity:
        """Build an :class:`Entity`; ``kind`` wins over the record's own tag."""
        resolved = kind or self.kind
        if resolved is None:
            raise ValueError(f"Cannot determine kind for record {self.id}")
        fields = {key: value for key, value in self.raw.items() if key not in self._STRUCTURAL_KEYS}
        return Entity(
            id=self.id,
            kind=resolved,
            status=self.status,
            created_at=self.created_at,
            scheduled_at=self.scheduled_at,
            duration_hint=self.duration,
            version=self.effective_version,
            fields=fields,
        )
