"""Push ingestion helpers.

This module translates raw push-channel payloads into normalized
ingestion events.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from restosync.ingestion.apply import build_event_from_record
from restosync.models.push_event import PushEnvelope
from restosync.state.events import IngestionEvent, IngestionSource


def build_event_from_push(raw_event: Any, *, observed_at: datetime | None = None) -> IngestionEvent:
    """Validate a push payload and build its single-entity event.

    Raises
    ------
    ValueError
        When the payload is not a recognizable single-entity event.
    """
    if not isinstance(raw_event, dict):
        raise ValueError(f"Push event must be an object, got {type(raw_event).__name__}")
    envelope = PushEnvelope.model_validate(raw_event)
    return build_event_from_record(
        envelope.record,
        kind=envelope.resolved_kind,
        source=IngestionSource.PUSH,
        observed_at=observed_at,
    )
