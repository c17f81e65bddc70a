"""Pydantic models for entities, push envelopes and overrides."""

from restosync.models.entity import (
    BOOKING_STATUSES,
    ORDER_STATUSES,
    Entity,
    EntityKind,
    EntityRecord,
    EntityStatus,
    valid_statuses,
)
from restosync.models.override import Override
from restosync.models.push_event import PushEnvelope, PushEventType

__all__ = [
    "BOOKING_STATUSES",
    "ORDER_STATUSES",
    "Entity",
    "EntityKind",
    "EntityRecord",
    "EntityStatus",
    "Override",
    "PushEnvelope",
    "PushEventType",
    "valid_statuses",
]
