"""Push notification envelope model."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from restosync.models.entity import EntityKind

# Keys under which a notification may carry the entity record.
_RECORD_KEYS: tuple[str, ...] = ("data", "order", "booking", "payload")
_ENVELOPE_KEYS: frozenset[str] = frozenset({"type", "message", "kind"})


class PushEventType(StrEnum):
    NEW_ORDER = "NEW_ORDER"
    ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
    NEW_BOOKING = "NEW_BOOKING"
    BOOKING_STATUS_UPDATE = "BOOKING_STATUS_UPDATE"


_KIND_BY_TYPE: dict[str, EntityKind] = {
    PushEventType.NEW_ORDER: EntityKind.ORDER,
    PushEventType.ORDER_STATUS_UPDATE: EntityKind.ORDER,
    PushEventType.NEW_BOOKING: EntityKind.BOOKING,
    PushEventType.BOOKING_STATUS_UPDATE: EntityKind.BOOKING,
}


class PushEnvelope(BaseModel):
    """A single-entity change event from the push channel.

    The backend publishes either the bare entity record or a notification
    ``{"type": ..., "message": ..., "data": {...}}``. Both shapes are
    normalized so that ``record`` always holds the entity record.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str | None = None
    message: str | None = None
    kind: EntityKind | None = None
    record: dict[str, Any] = Field(...)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_record(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "record" in values:
            return values
        unwrapped: dict[str, Any] = {key: values[key] for key in _ENVELOPE_KEYS if key in values}
        for key in _RECORD_KEYS:
            candidate = values.get(key)
            if isinstance(candidate, dict):
                unwrapped["record"] = candidate
                return unwrapped
        bare = {key: value for key, value in values.items() if key not in _ENVELOPE_KEYS}
        if "id" in bare or "_id" in bare:
            unwrapped["record"] = bare
        return unwrapped

    @field_validator("type", "kind", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def resolved_kind(self) -> EntityKind | None:
        """Explicit ``kind``, else the kind implied by the notification type."""
        if self.kind is not None:
            return self.kind
        if self.type is None:
            return None
        return _KIND_BY_TYPE.get(self.type)
