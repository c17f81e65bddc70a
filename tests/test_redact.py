from __future__ import annotations

from datetime import UTC, datetime

from restosync._redact import is_sensitive_key, redact_for_log
from restosync.models.entity import Entity, EntityKind


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "id": "O1",
        "status": "PREPARING",
        "customerEmail": "ada@example.com",
        "customer_phone": "+31000000000",
        "authorization": "Bearer abc",
        "delivery": {"deliveryAddress": "Main street 1", "eta": 15},
        "items": [{"name": "Pasta", "phone": "+1"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["id"] == "O1"
    assert redacted["customerEmail"] == "<redacted>"
    assert redacted["customer_phone"] == "<redacted>"
    assert redacted["authorization"] == "<redacted>"
    assert redacted["delivery"] == {"deliveryAddress": "<redacted>", "eta": 15}
    assert redacted["items"] == [{"name": "Pasta", "phone": "<redacted>"}]
    assert payload["customerEmail"] == "ada@example.com"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarizes_bytes() -> None:
    assert redact_for_log(b"\x00\x01\x02") == "<bytes:3b>"


def test_redact_for_log_dumps_models_and_scalars() -> None:
    entity = Entity(
        id="B1",
        kind=EntityKind.BOOKING,
        status="BOOKED",
        scheduled_at=datetime(2026, 1, 1, 19, 30, tzinfo=UTC),
        fields={"contactEmail": "ada@example.com", "partySize": 4},
    )

    redacted = redact_for_log(entity)

    assert redacted["kind"] == "BOOKING"
    assert redacted["status"] == "BOOKED"
    assert redacted["scheduled_at"] == "2026-01-01T19:30:00+00:00"
    assert redacted["fields"] == {"contactEmail": "<redacted>", "partySize": 4}


def test_redact_for_log_handles_sets_and_unknown_objects() -> None:
    assert redact_for_log(frozenset({"O2", "O1"})) == ["O1", "O2"]
    assert redact_for_log(object()).startswith("<object object")


def test_is_sensitive_key_matches_normalized_substrings() -> None:
    assert is_sensitive_key("guestPhoneNumber")
    assert is_sensitive_key("X-Auth-Token")
    assert not is_sensitive_key("tableNumber")
