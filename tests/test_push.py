from __future__ import annotations

import json

import pytest

from restosync._push import MqttPushChannel, decode_push_payload, kind_for_topic, topic_for
from restosync.config import SyncConfig
from restosync.ingestion.push import build_event_from_push
from restosync.models.entity import EntityKind, EntityStatus


def test_topics() -> None:
    assert topic_for("restaurant", EntityKind.ORDER) == "restaurant/orders"
    assert topic_for("site/7/", EntityKind.BOOKING) == "site/7/bookings"
    assert kind_for_topic("restaurant", "restaurant/bookings") == EntityKind.BOOKING
    assert kind_for_topic("restaurant", "restaurant/menu") is None


def test_decode_injects_topic_kind() -> None:
    payload = json.dumps({"id": "O1", "status": "CONFIRMED", "version": 2}).encode()

    decoded = decode_push_payload(payload, kind=EntityKind.ORDER)
    assert decoded["kind"] == "ORDER"

    event = build_event_from_push(decoded)
    assert event.entity.kind == EntityKind.ORDER
    assert event.entity.status == EntityStatus.CONFIRMED


def test_decode_keeps_explicit_kind() -> None:
    payload = json.dumps({"kind": "BOOKING", "data": {"id": "B1", "status": "BOOKED"}}).encode()
    assert decode_push_payload(payload, kind=EntityKind.ORDER)["kind"] == "BOOKING"


@pytest.mark.parametrize("payload", [b"{broken", b"[1, 2]", b"\xff\xfe"])
def test_decode_rejects_non_objects(payload: bytes) -> None:
    with pytest.raises(ValueError):
        decode_push_payload(payload)


@pytest.mark.asyncio
async def test_disconnect_without_connect_is_safe() -> None:
    channel = MqttPushChannel(SyncConfig(), client_id="test-client")
    await channel.disconnect()
    assert channel.is_connected is False
