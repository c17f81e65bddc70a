"""HTTP backend adapter for refetch and remote transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from restosync._redact import redact_for_log
from restosync.config import SyncConfig
from restosync.exceptions import BackendTransportError
from restosync.ingestion.normalize import unwrap_records
from restosync.models.entity import EntityKind, EntityStatus

_logger = logging.getLogger(__name__)

USER_AGENT = "restosync/0.1"

_COLLECTIONS: dict[EntityKind, str] = {
    EntityKind.ORDER: "/orders",
    EntityKind.BOOKING: "/bookings",
}


class Backend(Protocol):
    """Structural backend interface used by the sync coordinator.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpBackend`) concrete.
    """

    async def fetch_all(self, kind: EntityKind) -> list[dict[str, Any]]: ...

    async def send_transition(self, entity_id: str, kind: EntityKind, target_status: str) -> None: ...


def transition_request(entity_id: str, kind: EntityKind, target_status: str) -> tuple[str, dict[str, Any] | None]:
    """Endpoint and JSON body for a remote status change."""
    status = str(target_status).upper()
    if kind == EntityKind.ORDER:
        return f"/orders/{entity_id}/status", {"status": status}
    if status == EntityStatus.CANCELLED:
        return f"/bookings/{entity_id}/cancel", None
    if status == EntityStatus.COMPLETED:
        return f"/bookings/{entity_id}/complete", None
    return f"/bookings/{entity_id}", {"status": status}


class HttpBackend:
    """aiohttp implementation of :class:`Backend` for the restaurant REST API."""

    def __init__(self, config: SyncConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.api_token:
            headers["authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: Mapping[str, Any] | None = None,
    ) -> Any:
        url = f"{self._config.base_url.rstrip('/')}{endpoint}"
        data = json.dumps(body) if body is not None else None
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)

        _logger.debug("%s %s body=%s", method, url, redact_for_log(body))

        try:
            async with self._http.request(method, url, data=data, headers=self._headers(), timeout=timeout) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise BackendTransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except BackendTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError, UnicodeDecodeError) as exc:
            raise BackendTransportError(
                f"Request to {endpoint} failed: {exc!r}",
                endpoint=endpoint,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackendTransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc

    async def fetch_all(self, kind: EntityKind) -> list[dict[str, Any]]:
        """Full snapshot of every order or booking."""
        endpoint = _COLLECTIONS[kind]
        payload = await self._request("GET", endpoint)
        records = unwrap_records(payload)
        _logger.debug("Fetched %d %s records", len(records), kind.lower())
        return records

    async def send_transition(self, entity_id: str, kind: EntityKind, target_status: str) -> None:
        """Ask the backend to move an entity to *target_status*."""
        endpoint, body = transition_request(entity_id, kind, target_status)
        await self._request("PUT", endpoint, body)
