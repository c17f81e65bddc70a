"""High-level async client for the restaurant sync engine."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import aiohttp

from restosync._push import MqttPushChannel, PushChannel
from restosync._transport import Backend, HttpBackend
from restosync.config import SyncConfig
from restosync.exceptions import RestoSyncError
from restosync.models.entity import Entity, EntityKind, EntityStatus
from restosync.state.ledger import JsonFileLedgerBackend, LedgerBackend, MemoryLedgerBackend, OverrideLedger
from restosync.state.store import StoreListener
from restosync.sync import HealthListener, RemoteCall, SyncCoordinator, SyncHealth

_logger = logging.getLogger(__name__)


class RestoSyncClient:
    """Async facade wiring backend, push channel, ledger and store.

    Usage::

        async with RestoSyncClient(SyncConfig.from_env()) as client:
            await client.start()
            orders = client.snapshot(EntityKind.ORDER)
            await client.request_transition(orders[0].id, "PREPARING")

    ``backend``, ``push`` and ``ledger_backend`` can be injected (tests,
    alternative transports). Without them the client builds the aiohttp
    backend, the MQTT push channel (when ``push_enabled``) and a JSON file
    ledger (when ``ledger_path`` is set).
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        backend: Backend | None = None,
        push: PushChannel | None = None,
        ledger_backend: LedgerBackend | None = None,
        kinds: Iterable[EntityKind] = (EntityKind.ORDER, EntityKind.BOOKING),
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._backend = backend
        self._push = push
        self._ledger_backend = ledger_backend
        self._kinds = tuple(kinds)
        self._coordinator: SyncCoordinator | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RestoSyncClient:
        backend = self._backend
        if backend is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            backend = HttpBackend(self._config, self._http_session)

        push = self._push
        if push is None and self._config.push_enabled:
            push = MqttPushChannel(self._config)

        ledger_backend = self._ledger_backend
        if ledger_backend is None:
            if self._config.ledger_path:
                ledger_backend = JsonFileLedgerBackend(self._config.ledger_path)
            else:
                ledger_backend = MemoryLedgerBackend()
        ledger = OverrideLedger(ledger_backend, max_entities=self._config.ledger_max_entities)
        restored = ledger.load()

        self._coordinator = SyncCoordinator(
            self._config,
            backend=backend,
            push=push,
            ledger=ledger,
            kinds=self._kinds,
        )
        _logger.debug("Client ready (push=%s, restored overrides=%d)", push is not None, restored)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._coordinator is not None:
            await self._coordinator.stop()
            self._coordinator = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_coordinator(self) -> SyncCoordinator:
        if self._coordinator is None:
            raise RestoSyncError("Client not initialized. Use 'async with RestoSyncClient(...) as client:'")
        return self._coordinator

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._require_coordinator()

    # ------------------------------------------------------------------
    # Sync lifecycle
    # ------------------------------------------------------------------

    async def start(self, poll_interval: float | None = None) -> None:
        await self._require_coordinator().start(poll_interval)

    async def stop(self) -> None:
        await self._require_coordinator().stop()

    async def refresh(self, kind: EntityKind) -> bool:
        return await self._require_coordinator().refresh(kind)

    async def reconnect_push(self) -> bool:
        return await self._require_coordinator().reconnect_push()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def health(self) -> SyncHealth:
        return self._require_coordinator().health

    def get(self, entity_id: str) -> Entity | None:
        return self._require_coordinator().get(entity_id)

    def snapshot(self, kind: EntityKind | None = None) -> list[Entity]:
        return self._require_coordinator().snapshot(kind)

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        return self._require_coordinator().subscribe(listener)

    def subscribe_health(self, listener: HealthListener) -> Callable[[], None]:
        return self._require_coordinator().subscribe_health(listener)

    def get_effective_status(self, entity_id: str, now: datetime | None = None) -> EntityStatus:
        return self._require_coordinator().get_effective_status(entity_id, now)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def request_transition(self, entity_id: str, target: EntityStatus | str) -> Entity:
        """Validate and apply a status change; see :meth:`SyncCoordinator.request_transition`."""
        return await self._require_coordinator().request_transition(entity_id, target)

    async def apply_user_action(self, entity_id: str, field: str, value: Any, remote_call: RemoteCall) -> Entity:
        """Optimistically set a display field; see :meth:`SyncCoordinator.apply_user_action`."""
        return await self._require_coordinator().apply_user_action(entity_id, field, value, remote_call)
