"""Tests for availability cache keys and storage."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import redis

from salonbook.availability.cache import AvailabilityCache, make_cache_key
from salonbook.availability.types import AvailabilitySlot, SlotServiceAllocation, SlotStepAllocation


def key(**overrides) -> str:
    values = {
        "location_id": 1,
        "window_from": "2025-03-03T00:00:00.000Z",
        "window_to": "2025-03-04T00:00:00.000Z",
        "service_ids": [2, 1],
    }
    values.update(overrides)
    return make_cache_key(**values)


def test_key_ignores_service_order_but_not_other_inputs() -> None:
    assert key() == key(service_ids=[1, 2])
    assert key() == "availability:v1:1:2025-03-03T00:00:00.000Z:2025-03-04T00:00:00.000Z:-:1,2:-:-:-:-"
    assert key(staff_id=4) != key()
    assert key(device_id="kiosk") != key()
    assert key(slot_granularity_minutes=15) != key(slot_granularity_minutes=30)
    assert key(slot_granularity_minutes=0) == key()


def test_zero_ttl_disables_the_cache() -> None:
    cache = AvailabilityCache()

    cache.set("k", ["slot"], 0)

    assert cache.get("k", 0) is None
    assert cache.get("k", 30) is None


def test_invalidate_location_drops_only_that_location() -> None:
    cache = AvailabilityCache()
    cache.set(key(), ["a"], 30)
    cache.set(key(location_id=2), ["b"], 30)

    assert cache.invalidate_location(1) == 1
    assert cache.get(key(), 30) is None
    assert cache.get(key(location_id=2), 30) == ["b"]


def cached_slot() -> AvailabilitySlot:
    start = datetime(2025, 3, 3, 9, tzinfo=timezone.utc)
    end = datetime(2025, 3, 3, 9, 30, tzinfo=timezone.utc)
    return AvailabilitySlot(
        slot_key="1|7|2025-03-03T09:00:00.000Z|abc",
        location_id="1",
        staff_id="7",
        start=start,
        end=end,
        reserved_from=start,
        reserved_to=end,
        services=(
            SlotServiceAllocation(
                service_id="5",
                steps=(SlotStepAllocation(step_id="s", start=start, end=end, requires_staff=True, resource_ids=("3",)),),
            ),
        ),
    )


def test_redis_backed_cache_stores_slots_as_json() -> None:
    client = Mock()
    cache = AvailabilityCache()
    cache.use_redis(client)
    slot = cached_slot()

    cache.set(key(), [slot], 30)
    stored_key, payload = client.set.call_args.args
    assert stored_key == key()
    assert client.set.call_args.kwargs == {"ex": 30}

    client.get.return_value = payload
    assert cache.get(key(), 30) == [slot]

    client.get.return_value = None
    assert cache.get(key(), 30) is None
    assert json.loads(payload)[0]["slotKey"] == slot.slot_key


def test_redis_backed_invalidation_and_failures() -> None:
    client = Mock()
    cache = AvailabilityCache()
    cache.use_redis(client)
    client.scan_iter.return_value = iter([key(), key(staff_id=4)])

    assert cache.invalidate_location(1) == 2
    client.scan_iter.assert_called_once_with(match="availability:v1:1:*", count=200)
    client.delete.assert_called_once_with(key(), key(staff_id=4))

    client.get.side_effect = redis.ConnectionError("down")
    assert cache.get(key(), 30) is None


def test_memory_entries_expire(monkeypatch) -> None:
    now = [100.0]
    monkeypatch.setattr("salonbook.availability.cache.time.monotonic", lambda: now[0])
    cache = AvailabilityCache()
    cache.set(key(), ["a"], 30)

    assert cache.get(key(), 30) == ["a"]
    now[0] = 131.0
    assert cache.get(key(), 30) is None
