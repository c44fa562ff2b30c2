"""Tests for slot holds and the hold id encoding."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import Mock

from salonbook.availability.types import AvailabilitySlot
from salonbook.holds import (RELEASE_SCRIPT, HoldStore, SlotHoldMetadata, decode_hold_id, encode_hold_id,
                             filter_held_slots, remove_held_slots)
from salonbook.timeutil import to_iso


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 3, 3, hour, minute, tzinfo=timezone.utc)


def slot(staff_id: str, hour: int, minute: int = 0) -> AvailabilitySlot:
    start = at(hour, minute)
    end = at(hour, minute + 30) if minute < 30 else at(hour + 1, minute - 30)
    return AvailabilitySlot(
        slot_key=f"1|{staff_id}|{to_iso(start)}|x",
        location_id="1",
        staff_id=staff_id,
        start=start,
        end=end,
        reserved_from=start,
        reserved_to=end,
        services=(),
    )


def metadata_for(held: AvailabilitySlot, expires_at: float = 2_000.0) -> SlotHoldMetadata:
    return SlotHoldMetadata(
        slot_key=held.slot_key,
        location_id=held.location_id,
        staff_id=held.staff_id,
        start=to_iso(held.start),
        end=to_iso(held.end),
        reserved_from=to_iso(held.reserved_from),
        reserved_to=to_iso(held.reserved_to),
        expires_at=expires_at,
    )


def test_acquire_is_exclusive_until_expiry() -> None:
    clock = FakeClock()
    store = HoldStore(clock=clock)

    token, expires_at = store.acquire("k", ttl_seconds=300)

    assert expires_at == 1_300.0
    assert store.acquire("k") is None
    assert store.verify("k", token)
    assert not store.verify("k", "other")

    clock.now = 1_300.0
    assert not store.verify("k", token)
    assert store.acquire("k") is not None


def test_release_requires_the_owning_token() -> None:
    store = HoldStore(clock=FakeClock())
    token, _ = store.acquire("k")

    assert not store.release("k", "wrong")
    assert store.release("k", token)
    assert not store.verify("k", token)
    assert not store.release("k", token)


def test_metadata_listing_filters_location_and_expiry() -> None:
    clock = FakeClock()
    store = HoldStore(clock=clock)
    store.store_metadata(metadata_for(slot("lina", 9)))
    store.store_metadata(metadata_for(slot("max", 10), expires_at=1_100.0))

    assert len(store.list_for_location(1)) == 2
    assert store.list_for_location("2") == []

    clock.now = 1_500.0
    assert [meta.staff_id for meta in store.list_for_location("1")] == ["lina"]
    assert store.remove_metadata(slot("lina", 9).slot_key)
    assert not store.remove_metadata(slot("lina", 9).slot_key)


def test_hold_id_encoding() -> None:
    hold_id = encode_hold_id("1|7|2025-03-03T09:00:00.000Z|abc", "token-1")

    assert "=" not in hold_id
    assert decode_hold_id(hold_id) == ("1|7|2025-03-03T09:00:00.000Z|abc", "token-1")
    assert decode_hold_id("") is None
    assert decode_hold_id("not base64!") is None
    assert decode_hold_id(encode_hold_id("", "token")) is None


def test_filter_removes_held_and_overlapping_slots_for_the_same_staff() -> None:
    slots = [slot("lina", 9), slot("lina", 9, 15), slot("lina", 10), slot("max", 9)]
    holds = [metadata_for(slots[0])]

    remaining = filter_held_slots(slots, holds)

    assert [(item.staff_id, item.start) for item in remaining] == [("lina", at(10)), ("max", at(9))]


def test_filter_exempts_the_customers_own_hold() -> None:
    slots = [slot("lina", 9), slot("lina", 10)]

    assert filter_held_slots(slots, [metadata_for(slots[0])], exempt_slot_key=slots[0].slot_key) == slots


def test_filter_drops_exact_keys_held_without_metadata() -> None:
    slots = [slot("lina", 9), slot("lina", 9, 15), slot("max", 9)]

    remaining = filter_held_slots(slots, [], held_keys={slots[0].slot_key})

    assert remaining == slots[1:]
    assert filter_held_slots(slots, [], held_keys={slots[0].slot_key}, exempt_slot_key=slots[0].slot_key) == slots


def test_remove_held_slots_consults_bare_holds() -> None:
    store = HoldStore(clock=FakeClock())
    slots = [slot("lina", 9), slot("max", 9)]
    token, _ = store.acquire(slots[1].slot_key)

    assert remove_held_slots(slots, "1", store=store) == [slots[0]]
    assert remove_held_slots(slots, "1", exempt_slot_key=slots[1].slot_key, store=store) == slots
    assert store.release(slots[1].slot_key, token)
    assert remove_held_slots(slots, "1", store=store) == slots


def test_expired_entries_are_purged_from_memory() -> None:
    clock = FakeClock()
    store = HoldStore(clock=clock)
    for minute in range(50):
        held = slot("lina", 9 + minute // 30, minute % 30)
        store.acquire(held.slot_key, ttl_seconds=300)
        store.store_metadata(metadata_for(held, expires_at=1_300.0))
    assert store.size() == (50, 50)

    clock.now = 1_000.0 + 3_600
    assert store.list_for_location("1") == []
    assert store.size() == (0, 0)

    store.acquire("fresh")
    assert store.size() == (1, 0)


def test_redis_backed_store_uses_shared_keys() -> None:
    client = Mock()
    store = HoldStore(clock=FakeClock())
    store.use_redis(client)
    held = slot("lina", 9)

    client.set.return_value = True
    token, expires_at = store.acquire(held.slot_key, ttl_seconds=300)
    client.set.assert_called_once_with(f"booking-hold:{held.slot_key}", token, nx=True, px=300_000)
    assert expires_at == 1_300.0

    client.set.return_value = None
    assert store.acquire(held.slot_key) is None

    client.get.return_value = token
    assert store.verify(held.slot_key, token)
    assert not store.verify(held.slot_key, "other")

    client.eval.return_value = 1
    assert store.release(held.slot_key, token)
    client.eval.assert_called_once_with(RELEASE_SCRIPT, 1, f"booking-hold:{held.slot_key}", token)
    client.delete.assert_called_once_with(f"booking-hold-meta:{held.slot_key}")

    client.mget.return_value = [None, token]
    assert store.held_keys(["a", "b"]) == {"b"}


def test_redis_backed_metadata_listing() -> None:
    client = Mock()
    store = HoldStore(clock=FakeClock())
    store.use_redis(client)
    live = metadata_for(slot("lina", 9))
    stale = metadata_for(slot("max", 9), expires_at=900.0)
    client.scan_iter.return_value = iter(["booking-hold-meta:a", "booking-hold-meta:b", "booking-hold-meta:c"])
    client.mget.return_value = [json.dumps(live.to_dict()), json.dumps(stale.to_dict()), None]

    listed = store.list_for_location("1")

    assert listed == [live]
    client.scan_iter.assert_called_once_with(match="booking-hold-meta:1|*", count=200)

    store.store_metadata(live)
    key, value = client.set.call_args.args
    assert key == f"booking-hold-meta:{live.slot_key}"
    assert json.loads(value)["expiresAt"] == 2_000_000
    assert client.set.call_args.kwargs == {"px": 1_000_000}
