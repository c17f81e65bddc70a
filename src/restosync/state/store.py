"""Deterministic in-memory entity store.

This is the only component allowed to hold merged order/booking state.
Given the same sequence of writes it produces the same snapshots.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from restosync.exceptions import StaleUpdate
from restosync.models.entity import Entity, EntityKind
from restosync.state.events import IngestionEvent, IngestionSource
from restosync.state.policy import is_expired, should_accept_update
from restosync.state.transitions import is_terminal

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StoreDelta:
    """Ids touched by one mutation batch."""

    added: frozenset[str] = frozenset()
    changed: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    def __bool__(self) -> bool:
        return bool(self.added or self.changed or self.removed)

    @classmethod
    def combine(cls, deltas: Iterable[StoreDelta]) -> StoreDelta:
        """Fold consecutive deltas; the last thing that happened to an id wins."""
        added: set[str] = set()
        changed: set[str] = set()
        removed: set[str] = set()
        for delta in deltas:
            for entity_id in delta.added:
                removed.discard(entity_id)
                added.add(entity_id)
            for entity_id in delta.changed:
                if entity_id not in added:
                    changed.add(entity_id)
            for entity_id in delta.removed:
                was_added = entity_id in added
                added.discard(entity_id)
                changed.discard(entity_id)
                if not was_added:
                    removed.add(entity_id)
        return cls(added=frozenset(added), changed=frozenset(changed), removed=frozenset(removed))


StoreListener = Callable[[StoreDelta], None]


@dataclass
class _Slot:
    entity: Entity
    source: IngestionSource
    last_seen: datetime


class EntityStore:
    """In-memory, id-indexed collection of orders and bookings.

    Writes follow :func:`restosync.state.policy.should_accept_update`:
    server data must carry a strictly newer version, local writes
    (optimistic overrides, validated transitions) always land.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        retention: timedelta = timedelta(hours=1),
    ) -> None:
        self._clock = clock
        self._retention = retention
        self._slots: dict[str, _Slot] = {}
        self._listeners: list[StoreListener] = []
        self._deferred: list[StoreDelta] | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> Entity | None:
        slot = self._slots.get(entity_id)
        return slot.entity if slot is not None else None

    def snapshot(self, kind: EntityKind | None = None) -> list[Entity]:
        """Current entities, optionally filtered by kind."""
        return [slot.entity for slot in self._slots.values() if kind is None or slot.entity.kind == kind]

    def ids(self) -> set[str]:
        return set(self._slots)

    def last_source(self, entity_id: str) -> IngestionSource | None:
        slot = self._slots.get(entity_id)
        return slot.source if slot is not None else None

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._slots

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Coalesce the notifications of every write inside the block into one delta."""
        if self._deferred is not None:
            yield
            return
        self._deferred = []
        try:
            yield
        finally:
            deferred, self._deferred = self._deferred, None
            self._notify(StoreDelta.combine(deferred))

    def _notify(self, delta: StoreDelta) -> None:
        if not delta:
            return
        if self._deferred is not None:
            self._deferred.append(delta)
            return
        for listener in list(self._listeners):
            try:
                listener(delta)
            except Exception:
                _logger.exception("Store listener failed")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, entity: Entity, source: IngestionSource, now: datetime) -> str | None:
        """Apply one write without notifying. Returns ``"added"``, ``"changed"`` or ``None``."""
        slot = self._slots.get(entity.id)
        if slot is None:
            self._slots[entity.id] = _Slot(entity=entity, source=source, last_seen=now)
            return "added"

        # A sighting from the server keeps the entry alive even when stale.
        if source in (IngestionSource.HTTP, IngestionSource.PUSH):
            slot.last_seen = now

        cached = slot.entity
        if not should_accept_update(
            cached_version=cached.version,
            cached_terminal=is_terminal(cached.kind, cached.status),
            incoming_version=entity.version,
            incoming_source=source,
        ):
            stale = StaleUpdate(entity.id, incoming_version=entity.version, stored_version=cached.version)
            _logger.debug("Dropped %s update: %s", source, stale)
            return None

        # Local writes patch the current record; they never move the version back.
        if entity.version < cached.version:
            entity = entity.model_copy(update={"version": cached.version})

        slot.entity = entity
        slot.source = source
        if entity == cached:
            return None
        return "changed"

    def upsert(self, entity: Entity, *, source: IngestionSource = IngestionSource.HTTP) -> bool:
        """Insert or replace by id. Returns ``False`` when the write was dropped or a no-op."""
        outcome = self._write(entity, source, self._clock())
        if outcome is None:
            return False
        if outcome == "added":
            self._notify(StoreDelta(added=frozenset({entity.id})))
        else:
            self._notify(StoreDelta(changed=frozenset({entity.id})))
        return True

    def apply(self, event: IngestionEvent) -> bool:
        """Apply a normalized ingestion event."""
        return self.upsert(event.entity, source=event.source)

    def bulk_replace(
        self,
        entities: Iterable[Entity],
        *,
        kind: EntityKind | None = None,
        pinned: Collection[str] = (),
        source: IngestionSource = IngestionSource.HTTP,
    ) -> StoreDelta:
        """Merge a full refetch batch.

        Each entity follows the :meth:`upsert` rule. Entries (of *kind*,
        when given) missing from the batch are dropped once unseen for
        longer than the retention window, except ids in *pinned*.
        Subscribers are notified once for the whole batch.
        """
        now = self._clock()
        added: set[str] = set()
        changed: set[str] = set()
        seen: set[str] = set()

        for entity in entities:
            seen.add(entity.id)
            outcome = self._write(entity, source, now)
            if outcome == "added":
                added.add(entity.id)
            elif outcome == "changed":
                changed.add(entity.id)

        removed: set[str] = set()
        for entity_id, slot in list(self._slots.items()):
            if entity_id in seen or entity_id in pinned:
                continue
            if kind is not None and slot.entity.kind != kind:
                continue
            if is_expired(now, slot.last_seen, self._retention):
                _logger.debug("Dropping %s %s: absent upstream since %s", slot.entity.kind, entity_id, slot.last_seen)
                del self._slots[entity_id]
                removed.add(entity_id)

        delta = StoreDelta(added=frozenset(added), changed=frozenset(changed), removed=frozenset(removed))
        self._notify(delta)
        return delta
