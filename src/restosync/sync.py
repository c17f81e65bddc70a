"""Sync coordinator.

Owns the update pipelines that feed the entity store:

- periodic refetch per entity kind (``IDLE -> FETCHING -> MERGING -> IDLE``)
- the push channel lifecycle and its bounded reconnect loop
- optimistic user actions, their single retry and the out-of-sync flag

Every path routes entities through the same merge pipeline: transition
commit, override reconciliation, override application, store write.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from restosync._push import PushChannel
from restosync._redact import redact_for_log
from restosync._transport import Backend
from restosync.config import SyncConfig
from restosync.exceptions import EntityNotFoundError, PushChannelLost, RemoteCallFailed
from restosync.ingestion.apply import build_events_from_records
from restosync.ingestion.push import build_event_from_push
from restosync.models.entity import Entity, EntityKind, EntityStatus
from restosync.state.events import IngestionSource
from restosync.state.ledger import STATUS_FIELD, OverrideLedger
from restosync.state.store import EntityStore, StoreDelta, StoreListener
from restosync.state.transitions import TransitionEngine

_logger = logging.getLogger(__name__)

RemoteCall = Callable[[], Awaitable[Any]]
HealthListener = Callable[["SyncHealth"], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PollState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"


class PushState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclasses.dataclass(frozen=True)
class SyncHealth:
    """Degraded-mode indicators for views.

    Attributes
    ----------
    stale_kinds
        Kinds whose consecutive refetch failures reached the threshold.
    live_updates_available
        ``False`` when no push channel is configured or its reconnect
        budget is exhausted.
    push_state
        Current push channel state.
    out_of_sync
        Entity ids whose user action failed twice.
    ledger_degraded
        Whether override persistence has failed this session.
    """

    stale_kinds: frozenset[EntityKind] = frozenset()
    live_updates_available: bool = False
    push_state: PushState = PushState.DISCONNECTED
    out_of_sync: frozenset[str] = frozenset()
    ledger_degraded: bool = False


class SyncCoordinator:
    """Reconcile refetch, push and optimistic overrides into the store."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        backend: Backend,
        push: PushChannel | None = None,
        store: EntityStore | None = None,
        ledger: OverrideLedger | None = None,
        engine: TransitionEngine | None = None,
        kinds: Iterable[EntityKind] = (EntityKind.ORDER, EntityKind.BOOKING),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._backend = backend
        self._push = push
        self._clock = clock
        self._store = (
            store
            if store is not None
            else EntityStore(clock=clock, retention=timedelta(seconds=config.retention_seconds))
        )
        self._ledger = (
            ledger if ledger is not None else OverrideLedger(clock=clock, max_entities=config.ledger_max_entities)
        )
        self._engine = engine if engine is not None else TransitionEngine.from_config(config)
        self._kinds: tuple[EntityKind, ...] = tuple(kinds)

        self._poll_states: dict[EntityKind, PollState] = {kind: PollState.IDLE for kind in self._kinds}
        self._failures: dict[EntityKind, int] = {kind: 0 for kind in self._kinds}
        self._push_state = PushState.DISCONNECTED
        self._push_exhausted = False
        self._out_of_sync: set[str] = set()

        self._running = False
        self._poll_tasks: dict[EntityKind, asyncio.Task[None]] = {}
        self._push_task: asyncio.Task[None] | None = None
        self._retries: dict[str, asyncio.Task[None]] = {}

        self._health_listeners: list[HealthListener] = []
        self._last_health = self.health

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def ledger(self) -> OverrideLedger:
        return self._ledger

    @property
    def engine(self) -> TransitionEngine:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def push_state(self) -> PushState:
        return self._push_state

    def poll_state(self, kind: EntityKind) -> PollState:
        return self._poll_states[kind]

    @property
    def health(self) -> SyncHealth:
        threshold = self._config.stale_after_failures
        return SyncHealth(
            stale_kinds=frozenset(kind for kind, count in self._failures.items() if count >= threshold),
            live_updates_available=self._push is not None and not self._push_exhausted,
            push_state=self._push_state,
            out_of_sync=frozenset(self._out_of_sync),
            ledger_degraded=self._ledger.degraded,
        )

    def get(self, entity_id: str) -> Entity | None:
        return self._store.get(entity_id)

    def snapshot(self, kind: EntityKind | None = None) -> list[Entity]:
        return self._store.snapshot(kind)

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a store listener; returns a callable that unsubscribes it."""
        return self._store.subscribe(listener)

    def subscribe_health(self, listener: HealthListener) -> Callable[[], None]:
        """Register a listener for :class:`SyncHealth` changes."""
        self._health_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._health_listeners:
                self._health_listeners.remove(listener)

        return _unsubscribe

    def get_effective_status(self, entity_id: str, now: datetime | None = None) -> EntityStatus:
        """Displayed status at *now*, including elapsed-time transitions.

        Raises
        ------
        EntityNotFoundError
            When the id is not in the store.
        """
        entity = self._require(entity_id)
        return self._engine.effective_status(entity, now if now is not None else self._clock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, poll_interval: float | None = None) -> None:
        """Run an initial refetch of every kind, then poll and connect push.

        Idempotent while running.
        """
        if self._running:
            return
        self._running = True
        interval = poll_interval if poll_interval is not None else self._config.poll_interval
        _logger.debug("Starting sync for %s (interval=%.1fs)", ", ".join(self._kinds), interval)

        try:
            await asyncio.gather(*(self.refresh(kind) for kind in self._kinds))
        except BaseException:
            self._running = False
            raise

        for kind in self._kinds:
            self._poll_tasks[kind] = asyncio.create_task(
                self._poll_loop(kind, interval),
                name=f"restosync-poll-{kind.lower()}",
            )
        if self._push is not None and self._config.push_enabled:
            self._start_push_loop()

    async def stop(self) -> None:
        """Cancel background work and disconnect push.

        Merged state and recorded overrides are left untouched.
        """
        self._running = False
        tasks: list[asyncio.Task[None]] = [*self._poll_tasks.values(), *self._retries.values()]
        if self._push_task is not None:
            tasks.append(self._push_task)
        self._poll_tasks.clear()
        self._retries.clear()
        self._push_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._push is not None:
            try:
                await self._push.disconnect()
            except Exception:
                _logger.debug("Push disconnect failed", exc_info=True)
        self._set_push_state(PushState.DISCONNECTED)
        _logger.debug("Sync stopped")

    # ------------------------------------------------------------------
    # Refetch pipeline
    # ------------------------------------------------------------------

    async def refresh(self, kind: EntityKind) -> bool:
        """Run one refetch cycle for *kind*.

        Returns ``False`` without doing anything when a cycle for the kind
        is already in flight, and ``False`` when the fetch or the merge
        failed (the previous state is kept and the failure counts toward
        the stale indicator). Returns ``True`` after a merge.
        """
        if self._poll_states[kind] != PollState.IDLE:
            _logger.debug("Refetch of %s already in flight", kind.lower())
            return False

        self._poll_states[kind] = PollState.FETCHING
        try:
            try:
                records = await self._backend.fetch_all(kind)
            except RemoteCallFailed as exc:
                self._record_failure(kind, exc)
                return False
            except Exception as exc:
                self._record_failure(kind, exc, unexpected=True)
                return False

            self._poll_states[kind] = PollState.MERGING
            try:
                self._merge(kind, records)
            except Exception as exc:
                self._record_failure(kind, exc, unexpected=True)
                return False
            self._failures[kind] = 0
            self._emit_health()
            return True
        finally:
            self._poll_states[kind] = PollState.IDLE

    def _record_failure(self, kind: EntityKind, exc: Exception, *, unexpected: bool = False) -> None:
        self._failures[kind] += 1
        _logger.warning(
            "Refetch of %s failed (%d consecutive): %s",
            kind.lower(),
            self._failures[kind],
            exc,
            exc_info=unexpected,
        )
        self._emit_health()

    def _merge(self, kind: EntityKind, records: list[dict[str, Any]]) -> StoreDelta:
        now = self._clock()
        events = build_events_from_records(records, kind=kind, source=IngestionSource.HTTP, observed_at=now)
        routed = [self._route(event.entity, now) for event in events]
        with self._store.batch():
            delta = self._store.bulk_replace(routed, kind=kind, pinned=self._ledger.pending_ids())
            self._commit_due(kind, now)
        _logger.debug(
            "Merged %d %s records: +%d ~%d -%d",
            len(routed),
            kind.lower(),
            len(delta.added),
            len(delta.changed),
            len(delta.removed),
        )
        return delta

    def _route(self, entity: Entity, now: datetime) -> Entity:
        """Commit due transitions, reconcile overrides, then patch them back in."""
        committed = self._engine.commit(entity, now)
        if self._ledger.reconcile_entity(committed) and committed.id not in self._ledger:
            self._out_of_sync.discard(committed.id)
            retry = self._retries.pop(committed.id, None)
            if retry is not None:
                retry.cancel()
        return self._ledger.apply_overrides(committed)

    def _commit_due(self, kind: EntityKind, now: datetime) -> None:
        for entity in self._store.snapshot(kind):
            committed = self._engine.commit(entity, now)
            if committed is not entity:
                self._store.upsert(committed, source=IngestionSource.DERIVED)

    async def _poll_loop(self, kind: EntityKind, interval: float) -> None:
        while self._running:
            jitter = random.uniform(0, interval * self._config.poll_jitter)
            await asyncio.sleep(interval + jitter)
            try:
                await self.refresh(kind)
            except Exception:
                _logger.warning("Refetch cycle for %s crashed", kind.lower(), exc_info=True)

    # ------------------------------------------------------------------
    # Push pipeline
    # ------------------------------------------------------------------

    def on_push_event(self, raw_event: Any) -> bool:
        """Route one push payload into the store. Returns whether it was applied."""
        now = self._clock()
        try:
            event = build_event_from_push(raw_event, observed_at=now)
        except (ValueError, OverflowError):
            _logger.debug("Dropping malformed push event: %s", redact_for_log(raw_event), exc_info=True)
            return False
        if event.entity.kind not in self._kinds:
            _logger.debug("Ignoring push event for untracked kind %s", event.entity.kind)
            return False
        return self._store.upsert(self._route(event.entity, now), source=IngestionSource.PUSH)

    def _on_push_payload(self, raw_event: dict[str, Any]) -> None:
        self.on_push_event(raw_event)

    def _on_push_lost(self, exc: PushChannelLost) -> None:
        self._set_push_state(PushState.DISCONNECTED)
        if not self._running:
            return
        _logger.warning("%s; reconnecting", exc)
        self._start_push_loop()

    def _start_push_loop(self) -> asyncio.Task[None]:
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        self._push_exhausted = False
        self._push_task = asyncio.create_task(self._push_loop(), name="restosync-push")
        return self._push_task

    async def _push_loop(self) -> None:
        assert self._push is not None  # noqa: S101
        budget = max(1, self._config.push_reconnect_attempts)
        failures = 0
        while True:
            self._set_push_state(PushState.CONNECTING)
            try:
                await self._push.connect(self._kinds, self._on_push_payload, self._on_push_lost)
            except PushChannelLost as exc:
                failures += 1
                self._set_push_state(PushState.DISCONNECTED)
                if failures >= budget:
                    self._push_exhausted = True
                    _logger.warning(
                        "Push channel unavailable after %d attempts; continuing with polling only: %s",
                        failures,
                        exc,
                    )
                    self._emit_health()
                    return
                _logger.debug("Push connect attempt %d/%d failed: %s", failures, budget, exc)
                await asyncio.sleep(self._config.push_reconnect_delay)
                continue
            self._set_push_state(PushState.CONNECTED)
            return

    async def reconnect_push(self) -> bool:
        """Reconnect the push channel with a fresh retry budget.

        Returns whether the channel ended up connected.
        """
        if self._push is None:
            return False
        task = self._start_push_loop()
        await asyncio.wait({task})
        return self._push_state == PushState.CONNECTED

    def _set_push_state(self, state: PushState) -> None:
        if state == self._push_state:
            return
        _logger.debug("Push state %s -> %s", self._push_state, state)
        self._push_state = state
        self._emit_health()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def apply_user_action(
        self,
        entity_id: str,
        field: str,
        value: Any,
        remote_call: RemoteCall,
        *,
        source: IngestionSource = IngestionSource.OPTIMISTIC,
    ) -> Entity:
        """Record an override, show it immediately, then call the backend.

        On failure the override stays visible, one retry is scheduled after
        ``action_retry_delay`` and :class:`RemoteCallFailed` is raised. A
        failed retry flags the entity as out of sync; a later successful call
        clears the flag.

        Raises
        ------
        EntityNotFoundError
            When the id is not in the store.
        RemoteCallFailed
            When *remote_call* fails.
        """
        entity = self._require(entity_id)
        self._ledger.set(entity_id, field, value, at_version=entity.version)
        self._store.upsert(self._ledger.apply_overrides(entity), source=source)
        self._cancel_retry(entity_id)
        self._emit_health()

        try:
            await remote_call()
        except Exception as exc:
            _logger.debug("Action %s.%s=%r failed: %s", entity_id, field, value, exc)
            self._schedule_retry(entity_id, remote_call)
            if isinstance(exc, RemoteCallFailed) and exc.entity_id == entity_id:
                raise
            raise RemoteCallFailed(f"Action on {entity_id} failed: {exc}", entity_id=entity_id) from exc

        if entity_id in self._out_of_sync:
            self._out_of_sync.discard(entity_id)
            self._emit_health()
        return self._require(entity_id)

    async def request_transition(self, entity_id: str, target: EntityStatus | str) -> Entity:
        """Validate and apply an explicit status change, then send it upstream.

        Raises
        ------
        EntityNotFoundError
            When the id is not in the store.
        InvalidTransition
            When the target is not reachable; nothing is changed. Repeating
            the failed status change of an out-of-sync entity re-sends it.
        RemoteCallFailed
            When the backend rejects the change (the change stays visible).
        """
        entity = self._require(entity_id)
        if self._is_resend(entity_id, target):
            # The displayed status already is the unconfirmed override.
            updated = entity
        else:
            updated = self._engine.request_transition(entity, target, self._clock())

        async def _send() -> None:
            await self._backend.send_transition(updated.id, updated.kind, updated.status)

        return await self.apply_user_action(
            entity_id,
            STATUS_FIELD,
            updated.status,
            _send,
            source=IngestionSource.TRANSITION,
        )

    def _is_resend(self, entity_id: str, target: EntityStatus | str) -> bool:
        """Whether *target* repeats the failed status change of an out-of-sync entity."""
        if entity_id not in self._out_of_sync:
            return False
        pending = self._ledger.get(entity_id).get(STATUS_FIELD)
        return pending is not None and str(pending).upper() == str(target).strip().upper()

    async def wait_for_retries(self) -> None:
        """Wait until every scheduled action retry has finished."""
        while self._retries:
            await asyncio.gather(*list(self._retries.values()), return_exceptions=True)

    def _schedule_retry(self, entity_id: str, remote_call: RemoteCall) -> None:
        self._cancel_retry(entity_id)
        self._retries[entity_id] = asyncio.create_task(
            self._retry(entity_id, remote_call),
            name=f"restosync-retry-{entity_id}",
        )

    def _cancel_retry(self, entity_id: str) -> None:
        task = self._retries.pop(entity_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _retry(self, entity_id: str, remote_call: RemoteCall) -> None:
        try:
            await asyncio.sleep(self._config.action_retry_delay)
            if entity_id not in self._ledger:
                _logger.debug("Skipping retry for %s: override already reconciled", entity_id)
                return
            try:
                await remote_call()
            except Exception as exc:
                self._out_of_sync.add(entity_id)
                _logger.warning("Retry for %s failed; flagged out of sync: %s", entity_id, exc)
                self._emit_health()
                return
            _logger.debug("Retry for %s succeeded", entity_id)
        finally:
            if self._retries.get(entity_id) is asyncio.current_task():
                del self._retries[entity_id]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, entity_id: str) -> Entity:
        entity = self._store.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    def _emit_health(self) -> None:
        health = self.health
        if health == self._last_health:
            return
        self._last_health = health
        for listener in list(self._health_listeners):
            try:
                listener(health)
            except Exception:
                _logger.exception("Health listener failed")
