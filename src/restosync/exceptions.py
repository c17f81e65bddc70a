"""Custom exception hierarchy for restosync."""

from __future__ import annotations


class RestoSyncError(Exception):
    """Base exception for all restosync errors."""


class ConfigError(RestoSyncError):
    """Invalid or missing configuration."""


class EntityNotFoundError(RestoSyncError):
    """Action or read on an entity id the store has never seen."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Unknown entity: {entity_id}")


class InvalidTransition(RestoSyncError):
    """Requested status is not reachable from the current status.

    Always recovered locally: nothing is written to the store or the
    override ledger when this is raised.
    """

    def __init__(
        self,
        message: str,
        *,
        entity_id: str = "",
        current: str = "",
        requested: str = "",
    ) -> None:
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(message)


class StaleUpdate(RestoSyncError):
    """Incoming version is not newer than the stored version.

    The store never raises this; it is the reason recorded when an
    upsert is dropped.
    """

    def __init__(self, entity_id: str, *, incoming_version: int, stored_version: int) -> None:
        self.entity_id = entity_id
        self.incoming_version = incoming_version
        self.stored_version = stored_version
        super().__init__(
            f"Stale update for {entity_id}: incoming v{incoming_version} <= stored v{stored_version}"
        )


class RemoteCallFailed(RestoSyncError):
    """A backend call (refetch or user action) was rejected or failed."""

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        self.entity_id = entity_id
        super().__init__(message)


class BackendTransportError(RemoteCallFailed):
    """HTTP-level failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PushChannelLost(RestoSyncError):
    """Push channel could not connect or dropped its connection."""
