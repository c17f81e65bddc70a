"""Push channel adapter: paho-mqtt runtime feeding an asyncio loop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from restosync._redact import redact_for_log
from restosync.config import SyncConfig
from restosync.exceptions import PushChannelLost
from restosync.models.entity import EntityKind

_logger = logging.getLogger(__name__)

PushEventHandler = Callable[[dict[str, Any]], None]
PushLostHandler = Callable[[PushChannelLost], None]

_TOPIC_SUFFIX: dict[EntityKind, str] = {
    EntityKind.ORDER: "orders",
    EntityKind.BOOKING: "bookings",
}


class PushChannel(Protocol):
    """Structural push interface used by the sync coordinator."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(
        self,
        kinds: Iterable[EntityKind],
        on_event: PushEventHandler,
        on_lost: PushLostHandler,
    ) -> None: ...

    async def disconnect(self) -> None: ...


def topic_for(prefix: str, kind: EntityKind) -> str:
    return f"{prefix.rstrip('/')}/{_TOPIC_SUFFIX[kind]}"


def kind_for_topic(prefix: str, topic: str) -> EntityKind | None:
    """Entity kind implied by a subscription topic, if any."""
    for kind in _TOPIC_SUFFIX:
        if topic == topic_for(prefix, kind):
            return kind
    return None


def decode_push_payload(payload: bytes, *, kind: EntityKind | None = None) -> dict[str, Any]:
    """Parse push payload bytes into a JSON object.

    When *kind* is given (derived from the topic) it is added to the event
    unless the event already names one.

    Raises
    ------
    ValueError
        When the payload is not UTF-8 JSON or not an object.
    """
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"Push payload decoded to {type(parsed).__name__}, expected object")
    if kind is not None and not parsed.get("kind"):
        parsed["kind"] = kind.value
    return parsed


class MqttPushChannel:
    """Threaded paho-mqtt client that emits parsed events onto an asyncio loop.

    ``on_event`` and ``on_lost`` are always invoked on the event loop that
    called :meth:`connect`, never on the paho network thread.
    """

    def __init__(self, config: SyncConfig, *, client_id: str | None = None) -> None:
        self._config = config
        self._client_id = client_id or f"restosync-{uuid.uuid4().hex[:12]}"
        self._client: mqtt.Client | None = None
        self._connected = False
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(
        self,
        kinds: Iterable[EntityKind],
        on_event: PushEventHandler,
        on_lost: PushLostHandler,
    ) -> None:
        """Connect, subscribe to the topics of *kinds* and wait for the broker.

        Raises
        ------
        PushChannelLost
            When the broker is unreachable, refuses the connection or does
            not acknowledge within ``push_connect_timeout``.
        """
        await self.disconnect()

        loop = asyncio.get_running_loop()
        prefix = self._config.push_topic_prefix
        topics = [topic_for(prefix, kind) for kind in kinds]
        ready: asyncio.Future[None] = loop.create_future()
        self._closing = False

        def _resolve(exc: BaseException | None) -> None:
            if ready.done():
                return
            if exc is None:
                ready.set_result(None)
            else:
                ready.set_exception(exc)

        def _lost(exc: PushChannelLost) -> None:
            if ready.done():
                on_lost(exc)
            else:
                ready.set_exception(exc)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
        )
        client.enable_logger(_logger)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                _logger.debug("Push broker refused connection: %s", reason_code)
                loop.call_soon_threadsafe(_resolve, PushChannelLost(f"Broker refused connection: {reason_code}"))
                return
            for topic in topics:
                _logger.debug("Subscribing push topic=%s", topic)
                c.subscribe(topic, qos=1)
            self._connected = True
            loop.call_soon_threadsafe(_resolve, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                event = decode_push_payload(msg.payload, kind=kind_for_topic(prefix, msg.topic))
            except ValueError:
                _logger.debug("Dropping undecodable push payload on %s", msg.topic, exc_info=True)
                return
            _logger.debug("Received push topic=%s payload=%s", msg.topic, redact_for_log(event))
            loop.call_soon_threadsafe(on_event, event)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if self._closing:
                return
            _logger.debug("Push channel disconnected: %s", reason_code)
            if was_connected:
                loop.call_soon_threadsafe(_lost, PushChannelLost(f"Push channel dropped: {reason_code}"))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            await loop.run_in_executor(
                None,
                lambda: client.connect(
                    self._config.push_host,
                    self._config.push_port,
                    keepalive=self._config.push_keepalive,
                ),
            )
        except OSError as exc:
            raise PushChannelLost(
                f"Cannot reach push broker {self._config.push_host}:{self._config.push_port}: {exc}"
            ) from exc

        client.loop_start()
        self._client = client
        try:
            await asyncio.wait_for(ready, timeout=self._config.push_connect_timeout)
        except TimeoutError:
            await self.disconnect()
            raise PushChannelLost("Push broker did not acknowledge the connection") from None
        except PushChannelLost:
            await self.disconnect()
            raise
        _logger.debug("Push channel connected to %s:%s", self._config.push_host, self._config.push_port)

    async def disconnect(self) -> None:
        """Stop the network loop and disconnect. Safe to call repeatedly."""
        client = self._client
        self._client = None
        self._connected = False
        self._closing = True
        if client is None:
            return
        loop = asyncio.get_running_loop()
        try:
            with contextlib.suppress(OSError):
                client.disconnect()
        finally:
            await loop.run_in_executor(None, client.loop_stop)
        _logger.debug("Push network loop stopped")
