from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from restosync._push import PushEventHandler, PushLostHandler
from restosync.config import SyncConfig
from restosync.exceptions import (
    BackendTransportError,
    EntityNotFoundError,
    InvalidTransition,
    PushChannelLost,
    RemoteCallFailed,
)
from restosync.models.entity import Entity, EntityKind, EntityStatus
from restosync.state.events import IngestionSource
from restosync.sync import PollState, PushState, SyncCoordinator, SyncHealth

NOW = datetime(2026, 1, 1, 20, 0, tzinfo=UTC)


def _config(**overrides: Any) -> SyncConfig:
    values: dict[str, Any] = {
        "poll_interval": 3600.0,
        "stale_after_failures": 2,
        "push_reconnect_attempts": 3,
        "push_reconnect_delay": 0.0,
        "action_retry_delay": 0.0,
    }
    values.update(overrides)
    return SyncConfig(**values)


class _FakeBackend:
    def __init__(self) -> None:
        self.records: dict[EntityKind, list[dict[str, Any]]] = {EntityKind.ORDER: [], EntityKind.BOOKING: []}
        self.fail_fetch = False
        self.fetch_calls: list[EntityKind] = []
        self.sent: list[tuple[str, EntityKind, str]] = []
        self.fail_sends = 0

    async def fetch_all(self, kind: EntityKind) -> list[dict[str, Any]]:
        self.fetch_calls.append(kind)
        if self.fail_fetch:
            raise BackendTransportError("HTTP 503 from /orders", status_code=503, endpoint="/orders")
        return [dict(record) for record in self.records[kind]]

    async def send_transition(self, entity_id: str, kind: EntityKind, target_status: str) -> None:
        self.sent.append((entity_id, kind, str(target_status)))
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise BackendTransportError("HTTP 500", status_code=500, endpoint=f"/orders/{entity_id}/status")


class _BlockingBackend(_FakeBackend):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def fetch_all(self, kind: EntityKind) -> list[dict[str, Any]]:
        await self.release.wait()
        return await super().fetch_all(kind)


class _FakePush:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._connected = False
        self.on_event: PushEventHandler | None = None
        self.on_lost: PushLostHandler | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(
        self,
        kinds: Iterable[EntityKind],
        on_event: PushEventHandler,
        on_lost: PushLostHandler,
    ) -> None:
        self.connect_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PushChannelLost("Broker refused connection")
        self.on_event = on_event
        self.on_lost = on_lost
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def drop(self) -> None:
        assert self.on_lost is not None
        self._connected = False
        self.on_lost(PushChannelLost("Push channel dropped"))


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _coordinator(backend: _FakeBackend, push: _FakePush | None = None, **config: Any) -> SyncCoordinator:
    return SyncCoordinator(_config(**config), backend=backend, push=push, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_out_of_order_push_is_dropped() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "E1", "status": "PREPARING", "version": 3}]
    coordinator = _coordinator(backend)
    assert await coordinator.refresh(EntityKind.ORDER) is True

    applied = coordinator.on_push_event(
        {"type": "ORDER_STATUS_UPDATE", "data": {"id": "E1", "status": "CANCELLED", "version": 2}}
    )

    assert applied is False
    current = coordinator.get("E1")
    assert current is not None
    assert current.status == EntityStatus.PREPARING
    assert current.version == 3


@pytest.mark.asyncio
async def test_newer_push_is_applied_and_duplicates_are_ignored() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "E1", "status": "PREPARING", "version": 3}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    event = {"type": "ORDER_STATUS_UPDATE", "data": {"id": "E1", "status": "READY_FOR_SERVICE", "version": 4}}
    assert coordinator.on_push_event(event) is True
    assert coordinator.on_push_event(event) is False
    assert coordinator.get("E1").status == EntityStatus.READY_FOR_SERVICE  # type: ignore[union-attr]
    assert coordinator.store.last_source("E1") == IngestionSource.PUSH


@pytest.mark.asyncio
async def test_malformed_push_is_dropped() -> None:
    coordinator = _coordinator(_FakeBackend())

    assert coordinator.on_push_event({"message": "hello"}) is False
    assert coordinator.on_push_event("not json") is False
    assert coordinator.on_push_event({"kind": "BOOKING", "id": "B1", "status": "PREPARING"}) is False
    assert len(coordinator.store) == 0


@pytest.mark.asyncio
async def test_elapsed_booking_displays_completed_while_stored_confirmed() -> None:
    coordinator = _coordinator(_FakeBackend())
    coordinator.store.upsert(
        Entity(
            id="B1",
            kind=EntityKind.BOOKING,
            status="CONFIRMED",
            version=1,
            scheduled_at=NOW - timedelta(hours=3),
            duration_hint=timedelta(hours=2),
        )
    )

    assert coordinator.get_effective_status("B1") == EntityStatus.COMPLETED
    assert coordinator.get("B1").status == EntityStatus.CONFIRMED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_refetch_commits_elapsed_transitions() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.BOOKING] = [
        {
            "id": "B1",
            "status": "CONFIRMED",
            "version": 1,
            "scheduledAt": (NOW - timedelta(hours=3)).isoformat(),
            "durationHint": 7200,
        }
    ]
    coordinator = _coordinator(backend)
    coordinator.store.upsert(
        Entity(
            id="B2",
            kind=EntityKind.BOOKING,
            status="BOOKED",
            version=1,
            created_at=NOW - timedelta(hours=5),
        ),
        source=IngestionSource.PUSH,
    )

    await coordinator.refresh(EntityKind.BOOKING)

    assert coordinator.get("B1").status == EntityStatus.COMPLETED  # type: ignore[union-attr]
    # Not part of the refetch batch, still committed after the merge.
    assert coordinator.get("B2").status == EntityStatus.COMPLETED  # type: ignore[union-attr]
    assert coordinator.store.last_source("B2") == IngestionSource.DERIVED


@pytest.mark.asyncio
async def test_failed_action_stays_visible_until_newer_refetch() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PREPARING", "version": 8}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    calls = 0

    async def _cancel_upstream() -> None:
        nonlocal calls
        calls += 1
        raise BackendTransportError("HTTP 502", status_code=502, endpoint="/orders/O1/status")

    with pytest.raises(RemoteCallFailed) as excinfo:
        await coordinator.apply_user_action("O1", "status", "CANCELLED", _cancel_upstream)
    assert excinfo.value.entity_id == "O1"
    assert coordinator.get("O1").status == EntityStatus.CANCELLED  # type: ignore[union-attr]

    await coordinator.wait_for_retries()
    assert calls == 2
    assert coordinator.health.out_of_sync == frozenset({"O1"})
    assert coordinator.get("O1").status == EntityStatus.CANCELLED  # type: ignore[union-attr]

    # Same version again: the override still wins.
    await coordinator.refresh(EntityKind.ORDER)
    assert coordinator.get("O1").status == EntityStatus.CANCELLED  # type: ignore[union-attr]

    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PREPARING", "version": 9}]
    await coordinator.refresh(EntityKind.ORDER)

    current = coordinator.get("O1")
    assert current is not None
    assert current.status == EntityStatus.PREPARING
    assert current.version == 9
    assert coordinator.ledger.get("O1") == {}
    assert coordinator.health.out_of_sync == frozenset()


@pytest.mark.asyncio
async def test_retry_success_does_not_flag_out_of_sync() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PENDING", "version": 1}]
    backend.fail_sends = 1
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    with pytest.raises(RemoteCallFailed):
        await coordinator.request_transition("O1", "CONFIRMED")
    await coordinator.wait_for_retries()

    assert backend.sent == [("O1", EntityKind.ORDER, "CONFIRMED")] * 2
    assert coordinator.health.out_of_sync == frozenset()
    assert coordinator.get("O1").status == EntityStatus.CONFIRMED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_newer_action_replaces_pending_retry() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PREPARING", "version": 8}]
    coordinator = _coordinator(backend, action_retry_delay=60.0)
    await coordinator.refresh(EntityKind.ORDER)

    first_calls = 0

    async def _first() -> None:
        nonlocal first_calls
        first_calls += 1
        raise RemoteCallFailed("upstream down", entity_id="O1")

    async def _second() -> None:
        return None

    with pytest.raises(RemoteCallFailed):
        await coordinator.apply_user_action("O1", "notes", "allergy", _first)
    await coordinator.apply_user_action("O1", "notes", "no allergy", _second)
    await coordinator.wait_for_retries()

    assert first_calls == 1
    assert coordinator.get("O1").fields["notes"] == "no allergy"  # type: ignore[union-attr]
    await coordinator.stop()


@pytest.mark.asyncio
async def test_invalid_transition_changes_nothing() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O2", "status": "PENDING", "version": 1}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)
    before = coordinator.get("O2")

    with pytest.raises(InvalidTransition) as excinfo:
        await coordinator.request_transition("O2", "READY_FOR_SERVICE")

    assert excinfo.value.current == EntityStatus.PENDING
    assert excinfo.value.requested == EntityStatus.READY_FOR_SERVICE
    assert coordinator.get("O2") == before
    assert coordinator.ledger.get("O2") == {}
    assert backend.sent == []


@pytest.mark.asyncio
async def test_transition_is_sent_and_reconciled() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O2", "status": "PENDING", "version": 1}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    updated = await coordinator.request_transition("O2", "confirmed")

    assert updated.status == EntityStatus.CONFIRMED
    assert backend.sent == [("O2", EntityKind.ORDER, "CONFIRMED")]
    assert coordinator.store.last_source("O2") == IngestionSource.TRANSITION
    assert coordinator.ledger.get("O2") == {"status": EntityStatus.CONFIRMED}

    backend.records[EntityKind.ORDER] = [{"id": "O2", "status": "CONFIRMED", "version": 2}]
    await coordinator.refresh(EntityKind.ORDER)
    assert coordinator.ledger.get("O2") == {}


@pytest.mark.asyncio
async def test_unknown_entity_raises() -> None:
    coordinator = _coordinator(_FakeBackend())

    with pytest.raises(EntityNotFoundError):
        coordinator.get_effective_status("missing")
    with pytest.raises(EntityNotFoundError):
        await coordinator.request_transition("missing", "CONFIRMED")


@pytest.mark.asyncio
async def test_refresh_in_flight_is_a_noop() -> None:
    backend = _BlockingBackend()
    coordinator = _coordinator(backend)

    first = asyncio.create_task(coordinator.refresh(EntityKind.ORDER))
    await _settle()
    assert coordinator.poll_state(EntityKind.ORDER) == PollState.FETCHING
    assert await coordinator.refresh(EntityKind.ORDER) is False

    backend.release.set()
    assert await first is True
    assert coordinator.poll_state(EntityKind.ORDER) == PollState.IDLE


@pytest.mark.asyncio
async def test_repeated_refetch_failures_mark_kind_stale() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PENDING", "version": 1}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    health_updates: list[SyncHealth] = []
    coordinator.subscribe_health(health_updates.append)

    backend.fail_fetch = True
    assert await coordinator.refresh(EntityKind.ORDER) is False
    assert coordinator.health.stale_kinds == frozenset()
    assert await coordinator.refresh(EntityKind.ORDER) is False
    assert coordinator.health.stale_kinds == frozenset({EntityKind.ORDER})
    # Previous state is kept.
    assert coordinator.get("O1") is not None

    backend.fail_fetch = False
    assert await coordinator.refresh(EntityKind.ORDER) is True
    assert coordinator.health.stale_kinds == frozenset()
    assert [update.stale_kinds for update in health_updates] == [frozenset({EntityKind.ORDER}), frozenset()]


@pytest.mark.asyncio
async def test_push_reconnect_budget_falls_back_to_polling() -> None:
    push = _FakePush(failures=100)
    coordinator = _coordinator(_FakeBackend(), push)

    assert await coordinator.reconnect_push() is False
    assert push.connect_calls == 3
    assert coordinator.health.live_updates_available is False
    assert coordinator.push_state == PushState.DISCONNECTED

    push.failures = 0
    assert await coordinator.reconnect_push() is True
    assert coordinator.health.live_updates_available is True
    assert coordinator.push_state == PushState.CONNECTED


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_keeps_state() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PENDING", "version": 1}]
    push = _FakePush()
    coordinator = _coordinator(backend, push)

    await coordinator.start()
    await coordinator.start()
    await _settle()

    assert sorted(backend.fetch_calls) == sorted([EntityKind.ORDER, EntityKind.BOOKING])
    assert coordinator.is_running
    assert coordinator.push_state == PushState.CONNECTED

    await coordinator.request_transition("O1", "CONFIRMED")
    await coordinator.stop()

    assert not coordinator.is_running
    assert push.disconnect_calls == 1
    assert coordinator.push_state == PushState.DISCONNECTED
    assert coordinator.get("O1").status == EntityStatus.CONFIRMED  # type: ignore[union-attr]
    assert coordinator.ledger.get("O1") == {"status": EntityStatus.CONFIRMED}


@pytest.mark.asyncio
async def test_push_events_and_reconnect_after_drop() -> None:
    push = _FakePush()
    coordinator = _coordinator(_FakeBackend(), push)
    await coordinator.start()
    await _settle()

    assert push.on_event is not None
    push.on_event({"kind": "BOOKING", "id": "B1", "status": "BOOKED", "version": 1})
    assert coordinator.get("B1") is not None

    push.drop()
    assert coordinator.push_state in (PushState.DISCONNECTED, PushState.CONNECTING)
    await _settle()

    assert push.connect_calls == 2
    assert coordinator.push_state == PushState.CONNECTED
    await coordinator.stop()


@pytest.mark.asyncio
async def test_subscribers_see_merges() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PENDING", "version": 1}]
    coordinator = _coordinator(backend)
    deltas: list[Any] = []
    coordinator.subscribe(deltas.append)

    await coordinator.refresh(EntityKind.ORDER)
    await coordinator.refresh(EntityKind.ORDER)

    assert len(deltas) == 1
    assert deltas[0].added == frozenset({"O1"})


class _ExplodingBackend(_FakeBackend):
    def __init__(self) -> None:
        super().__init__()
        self.explode = True

    async def fetch_all(self, kind: EntityKind) -> list[dict[str, Any]]:
        if self.explode:
            self.fetch_calls.append(kind)
            raise RuntimeError("unexpected payload shape")
        return await super().fetch_all(kind)


@pytest.mark.asyncio
async def test_refetch_keeps_valid_rows_next_to_non_finite_numbers() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [
        {"id": "O1", "status": "PENDING", "version": 1},
        {"id": "O2", "status": "PENDING", "version": 2, "createdAt": "1e400"},
        {"id": "O3", "status": "PENDING", "version": "Infinity"},
    ]
    backend.records[EntityKind.BOOKING] = [
        {"id": "B1", "status": "BOOKED", "version": 1, "timeSlot": NOW.isoformat(), "durationHint": "inf"},
    ]
    coordinator = _coordinator(backend)

    assert await coordinator.refresh(EntityKind.ORDER) is True
    assert await coordinator.refresh(EntityKind.BOOKING) is True

    assert coordinator.store.ids() == {"O1", "O3", "B1"}
    assert coordinator.get("B1").duration_hint is None  # type: ignore[union-attr]
    assert coordinator.health.stale_kinds == frozenset()


@pytest.mark.asyncio
async def test_push_with_out_of_range_numbers_is_dropped() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "E1", "status": "PREPARING", "version": 3}]
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    assert coordinator.on_push_event({"kind": "ORDER", "id": "E2", "status": "PENDING", "createdAt": "1e400"}) is False
    # Unknown version is 0, older than the cached one.
    assert coordinator.on_push_event({"kind": "ORDER", "id": "E1", "status": "CANCELLED", "version": "1e400"}) is False
    assert coordinator.get("E1").status == EntityStatus.PREPARING  # type: ignore[union-attr]
    assert "E2" not in coordinator.store


@pytest.mark.asyncio
async def test_unexpected_refetch_error_counts_as_failed_cycle_and_start_recovers() -> None:
    backend = _ExplodingBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PENDING", "version": 1}]
    coordinator = _coordinator(backend)

    await coordinator.start()
    assert coordinator.is_running
    assert coordinator.poll_state(EntityKind.ORDER) == PollState.IDLE

    assert await coordinator.refresh(EntityKind.ORDER) is False
    assert coordinator.health.stale_kinds == frozenset({EntityKind.ORDER})

    backend.explode = False
    assert await coordinator.refresh(EntityKind.ORDER) is True
    assert coordinator.get("O1") is not None
    assert EntityKind.ORDER not in coordinator.health.stale_kinds
    await coordinator.stop()


@pytest.mark.asyncio
async def test_poll_loop_sleeps_interval_plus_bounded_jitter(monkeypatch: pytest.MonkeyPatch) -> None:
    real_sleep = asyncio.sleep
    parked = asyncio.Event()
    sleeps: list[float] = []
    jitter_bounds: list[tuple[float, float]] = []

    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        if len(sleeps) >= 3:
            await parked.wait()
        await real_sleep(0)

    def _fake_uniform(low: float, high: float) -> float:
        jitter_bounds.append((low, high))
        return high

    monkeypatch.setattr("restosync.sync.asyncio.sleep", _fake_sleep)
    monkeypatch.setattr("restosync.sync.random.uniform", _fake_uniform)

    backend = _FakeBackend()
    coordinator = SyncCoordinator(
        _config(poll_interval=10.0, poll_jitter=0.2),
        backend=backend,
        kinds=(EntityKind.ORDER,),
        clock=lambda: NOW,
    )
    await coordinator.start()
    for _ in range(20):
        await real_sleep(0)

    assert sleeps == [12.0, 12.0, 12.0]
    assert jitter_bounds == [(0, 2.0)] * 3
    # Initial refetch plus one per completed sleep.
    assert backend.fetch_calls == [EntityKind.ORDER] * 3

    await coordinator.stop()
    assert not coordinator.is_running


@pytest.mark.asyncio
async def test_out_of_sync_action_can_be_sent_again() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.ORDER] = [{"id": "O1", "status": "PREPARING", "version": 8}]
    backend.fail_sends = 2
    coordinator = _coordinator(backend)
    await coordinator.refresh(EntityKind.ORDER)

    with pytest.raises(RemoteCallFailed):
        await coordinator.request_transition("O1", "CANCELLED")
    await coordinator.wait_for_retries()
    assert coordinator.health.out_of_sync == frozenset({"O1"})

    # Other targets are still validated against what is displayed.
    with pytest.raises(InvalidTransition):
        await coordinator.request_transition("O1", "READY_FOR_SERVICE")

    updated = await coordinator.request_transition("O1", "cancelled")

    assert updated.status == EntityStatus.CANCELLED
    assert backend.sent == [("O1", EntityKind.ORDER, "CANCELLED")] * 3
    assert coordinator.health.out_of_sync == frozenset()
    assert coordinator.ledger.get("O1") == {"status": EntityStatus.CANCELLED}


@pytest.mark.asyncio
async def test_refetch_and_elapsed_commits_notify_once() -> None:
    backend = _FakeBackend()
    backend.records[EntityKind.BOOKING] = [{"id": "B1", "status": "CONFIRMED", "version": 1}]
    coordinator = _coordinator(backend)
    for entity_id in ("B2", "B3"):
        coordinator.store.upsert(
            Entity(
                id=entity_id,
                kind=EntityKind.BOOKING,
                status="BOOKED",
                version=1,
                created_at=NOW - timedelta(hours=5),
            ),
            source=IngestionSource.PUSH,
        )
    deltas: list[Any] = []
    coordinator.subscribe(deltas.append)

    await coordinator.refresh(EntityKind.BOOKING)

    assert len(deltas) == 1
    assert deltas[0].added == frozenset({"B1"})
    assert deltas[0].changed == frozenset({"B2", "B3"})
