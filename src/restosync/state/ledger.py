"""Override ledger: locally applied field values awaiting server confirmation.

Overrides are last-write-wins per ``(entity_id, field)``. They are patched
onto server data after every merge so the user's intent stays visible,
and pruned once the backend reports a newer version (or confirms the
same value).
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from restosync.models.entity import Entity, EntityStatus, valid_statuses
from restosync.models.override import Override

_logger = logging.getLogger(__name__)

STATUS_FIELD = "status"

_MISSING = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LedgerBackend(Protocol):
    """Persistence for ledger records, keyed by entity id."""

    def load(self) -> dict[str, list[dict[str, Any]]]: ...

    def write(self, entity_id: str, records: list[dict[str, Any]]) -> None: ...

    def delete(self, entity_id: str) -> None: ...


class MemoryLedgerBackend:
    """Backend that keeps records for the lifetime of the process only."""

    def __init__(self, initial: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.records: dict[str, list[dict[str, Any]]] = dict(initial or {})

    def load(self) -> dict[str, list[dict[str, Any]]]:
        return {key: list(value) for key, value in self.records.items()}

    def write(self, entity_id: str, records: list[dict[str, Any]]) -> None:
        self.records[entity_id] = list(records)

    def delete(self, entity_id: str) -> None:
        self.records.pop(entity_id, None)


class JsonFileLedgerBackend:
    """Single JSON document ``{entity_id: [record, ...]}``, replaced atomically."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._document: dict[str, list[dict[str, Any]]] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, list[dict[str, Any]]]:
        if not self._path.exists():
            self._document = {}
            return {}
        document = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(document, dict):
            raise ValueError(f"Ledger file {self._path} does not contain an object")
        self._document = {
            str(key): [record for record in value if isinstance(record, dict)]
            for key, value in document.items()
            if isinstance(value, list)
        }
        return {key: list(value) for key, value in self._document.items()}

    def _current(self) -> dict[str, list[dict[str, Any]]]:
        if self._document is None:
            try:
                self.load()
            except (OSError, ValueError):
                _logger.warning("Ignoring unreadable ledger file %s", self._path, exc_info=True)
                self._document = {}
        assert self._document is not None  # noqa: S101
        return self._document

    def _flush(self, document: dict[str, list[dict[str, Any]]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(document, separators=(",", ":")), encoding="utf-8")
        os.replace(tmp, self._path)

    def write(self, entity_id: str, records: list[dict[str, Any]]) -> None:
        document = dict(self._current())
        document[entity_id] = list(records)
        self._flush(document)
        self._document = document

    def delete(self, entity_id: str) -> None:
        document = dict(self._current())
        if document.pop(entity_id, None) is None:
            return
        self._flush(document)
        self._document = document


def _entity_value(entity: Entity, field: str) -> Any:
    if field == STATUS_FIELD:
        return entity.status
    return entity.fields.get(field, _MISSING)


class OverrideLedger:
    """Durable map of optimistic field overrides per entity id.

    Persistence is best effort: when the backend cannot be written the
    ledger logs a warning, switches to :attr:`degraded` and keeps the
    override in memory for the rest of the session.
    """

    def __init__(
        self,
        backend: LedgerBackend | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        max_entities: int = 500,
    ) -> None:
        self._backend: LedgerBackend = backend if backend is not None else MemoryLedgerBackend()
        self._clock = clock
        self._max_entities = max_entities
        self._entries: dict[str, dict[str, Override]] = {}
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """Whether a persistence write has failed this session."""
        return self._degraded

    def load(self) -> int:
        """Load persisted overrides. Returns the number of overrides restored."""
        try:
            document = self._backend.load()
        except (OSError, ValueError):
            _logger.warning("Could not load persisted overrides; starting empty", exc_info=True)
            return 0

        restored = 0
        for entity_id, records in document.items():
            for record in records:
                try:
                    override = Override.model_validate(record)
                except ValidationError:
                    _logger.debug("Skipping malformed override for %s: %s", entity_id, record)
                    continue
                self._entries.setdefault(entity_id, {})[override.field] = override
                restored += 1
        if restored:
            _logger.debug("Restored %d overrides for %d entities", restored, len(self._entries))
        return restored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> dict[str, Any]:
        """Current ``{field: value}`` overrides for an entity, or empty."""
        return {field: override.value for field, override in self._entries.get(entity_id, {}).items()}

    def entries(self, entity_id: str) -> dict[str, Override]:
        return dict(self._entries.get(entity_id, {}))

    def pending_ids(self) -> set[str]:
        return set(self._entries)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, entity_id: str, field: str, value: Any, *, at_version: int) -> Override:
        """Record an override and persist it. Never calls the backend API."""
        override = Override(
            field=field,
            value=value,
            recorded_at_version=at_version,
            recorded_at_time=self._clock(),
        )
        self._entries.setdefault(entity_id, {})[field] = override
        self._evict_oldest(keep=entity_id)
        self._persist(entity_id)
        return override

    def reconcile(self, entity_id: str, field: str, authoritative_value: Any, at_version: int) -> bool:
        """Drop the override once the backend has caught up.

        The override is removed when *at_version* is newer than the
        version it was recorded at, or when the backend reports the same
        value at an equal-or-newer version. Returns whether it was removed.
        """
        fields = self._entries.get(entity_id)
        if not fields or field not in fields:
            return False
        override = fields[field]
        newer = at_version > override.recorded_at_version
        confirmed = at_version >= override.recorded_at_version and authoritative_value == override.value
        if not (newer or confirmed):
            return False

        del fields[field]
        if not fields:
            del self._entries[entity_id]
        _logger.debug(
            "Reconciled override %s.%s=%r at v%d (recorded v%d)",
            entity_id,
            field,
            override.value,
            at_version,
            override.recorded_at_version,
        )
        self._persist(entity_id)
        return True

    def reconcile_entity(self, entity: Entity) -> list[str]:
        """Reconcile every override of *entity* against its authoritative values."""
        reconciled: list[str] = []
        for field in list(self._entries.get(entity.id, {})):
            if self.reconcile(entity.id, field, _entity_value(entity, field), entity.version):
                reconciled.append(field)
        return reconciled

    def discard(self, entity_id: str, field: str | None = None) -> bool:
        """Forget overrides for an entity (or one field) without reconciling."""
        fields = self._entries.get(entity_id)
        if not fields:
            return False
        if field is None:
            del self._entries[entity_id]
        else:
            if fields.pop(field, None) is None:
                return False
            if not fields:
                del self._entries[entity_id]
        self._persist(entity_id)
        return True

    def apply_overrides(self, entity: Entity) -> Entity:
        """Return a copy of *entity* with overrides patched in. Pure."""
        overrides = self._entries.get(entity.id)
        if not overrides:
            return entity

        update: dict[str, Any] = {}
        patched_fields = dict(entity.fields)
        for field, override in overrides.items():
            if field == STATUS_FIELD:
                try:
                    status = EntityStatus(str(override.value))
                except ValueError:
                    _logger.debug("Ignoring invalid status override %r for %s", override.value, entity.id)
                    continue
                if status not in valid_statuses(entity.kind):
                    _logger.debug("Ignoring %s status override %s for %s", entity.kind, status, entity.id)
                    continue
                update["status"] = status
            else:
                patched_fields[field] = override.value
        if patched_fields != entity.fields:
            update["fields"] = patched_fields
        if not update:
            return entity
        return entity.model_copy(update=update)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _evict_oldest(self, *, keep: str) -> None:
        while len(self._entries) > self._max_entities:
            candidates = [entity_id for entity_id in self._entries if entity_id != keep]
            if not candidates:
                return
            oldest = min(
                candidates,
                key=lambda entity_id: min(o.recorded_at_time for o in self._entries[entity_id].values()),
            )
            _logger.warning("Override ledger full; evicting overrides for %s", oldest)
            del self._entries[oldest]
            self._persist(oldest)

    def _persist(self, entity_id: str) -> None:
        fields = self._entries.get(entity_id)
        try:
            if fields:
                self._backend.write(entity_id, [override.to_storage() for override in fields.values()])
            else:
                self._backend.delete(entity_id)
        except (OSError, TypeError, ValueError):
            if not self._degraded:
                _logger.warning(
                    "Override persistence failed; keeping overrides in memory for this session",
                    exc_info=True,
                )
            self._degraded = True
