"""Normalized ingestion events.

All ingestion paths (HTTP refetch, push, local actions) convert their
inputs into these events. Only the state/store layer is allowed to merge
them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from restosync.models.entity import Entity


class IngestionSource(StrEnum):
    HTTP = "http"
    PUSH = "push"
    OPTIMISTIC = "optimistic"
    TRANSITION = "transition"
    DERIVED = "derived"


class IngestionEvent(BaseModel):
    """A normalized entity update to apply to the store."""

    model_config = ConfigDict(frozen=True)

    entity: Entity
    source: IngestionSource
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    raw: dict[str, Any] = Field(default_factory=dict, description="Original payload (as received)")

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def entity_id(self) -> str:
        return self.entity.id
