"""Override ledger record model."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from restosync.models._base import parse_timestamp


class Override(BaseModel):
    """A locally applied field value not yet confirmed by the backend.

    Persisted as ``{field, value, recordedAtVersion, recordedAtTime}``
    under the entity id.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    field: str
    value: Any
    recorded_at_version: int
    recorded_at_time: datetime

    @field_validator("recorded_at_time", mode="before")
    @classmethod
    def _parse_time(cls, value: Any) -> Any:
        return parse_timestamp(value)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
