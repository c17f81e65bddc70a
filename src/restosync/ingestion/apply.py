"""Ingestion application helpers.

This module centralizes the common pattern used by refetch and push:

- parse a raw backend record into a typed :class:`EntityRecord`
- build the validated :class:`Entity`
- wrap it in a :class:`restosync.state.events.IngestionEvent`

Invalid records are dropped here, at the boundary, so a single malformed
row never aborts a refetch batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from restosync._redact import redact_for_log
from restosync.models.entity import EntityKind, EntityRecord
from restosync.state.events import IngestionEvent, IngestionSource

_logger = logging.getLogger(__name__)


def build_event_from_record(
    record: dict[str, Any],
    *,
    kind: EntityKind | None,
    source: IngestionSource,
    observed_at: datetime | None = None,
) -> IngestionEvent:
    """Parse one backend record into an ingestion event.

    Raises
    ------
    ValueError
        When the record is malformed, has an invalid status for its kind,
        or its kind cannot be determined. ``pydantic.ValidationError`` is
        a ``ValueError``.
    """
    parsed = EntityRecord.model_validate(record)
    entity = parsed.to_entity(kind)
    if observed_at is None:
        return IngestionEvent(entity=entity, source=source, raw=record)
    return IngestionEvent(entity=entity, source=source, observed_at=observed_at, raw=record)


def build_events_from_records(
    records: Iterable[dict[str, Any]],
    *,
    kind: EntityKind,
    source: IngestionSource,
    observed_at: datetime | None = None,
) -> list[IngestionEvent]:
    """Parse a refetch batch, skipping (and logging) invalid records."""
    events: list[IngestionEvent] = []
    for record in records:
        try:
            events.append(build_event_from_record(record, kind=kind, source=source, observed_at=observed_at))
        except (ValidationError, ValueError, OverflowError):
            _logger.debug(
                "Skipping invalid %s record: %s",
                kind.lower(),
                redact_for_log(record),
                exc_info=True,
            )
    return events
