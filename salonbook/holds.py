"""Temporary holds on availability slots while a customer fills in the checkout form."""
from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from .availability.types import AvailabilitySlot
from .timeutil import parse_iso

HOLD_TTL_SECONDS = 5 * 60
MANUAL_HOLD_TTL_SECONDS = 3 * 60
HOLD_PREFIX = "booking-hold"
HOLD_META_PREFIX = "booking-hold-meta"

# Deletes the hold only while it still carries the caller's token.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""

logger = logging.getLogger(__name__)


def hold_key(slot_key: str) -> str:
    return f"{HOLD_PREFIX}:{slot_key}"


def hold_metadata_key(slot_key: str) -> str:
    return f"{HOLD_META_PREFIX}:{slot_key}"


@dataclass
class SlotHoldMetadata:
    slot_key: str
    location_id: str
    staff_id: str
    start: str
    end: str
    reserved_from: str
    reserved_to: str
    expires_at: float
    created_by_staff_id: Optional[str] = None
    created_by_name: Optional[str] = None
    service_names: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        return {
            "slotKey": data["slot_key"],
            "locationId": data["location_id"],
            "staffId": data["staff_id"],
            "start": data["start"],
            "end": data["end"],
            "reservedFrom": data["reserved_from"],
            "reservedTo": data["reserved_to"],
            "expiresAt": int(data["expires_at"] * 1000),
            "createdByStaffId": data["created_by_staff_id"],
            "createdByName": data["created_by_name"],
            "serviceNames": data["service_names"],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotHoldMetadata":
        return cls(
            slot_key=data["slotKey"],
            location_id=str(data["locationId"]),
            staff_id=str(data["staffId"]),
            start=data["start"],
            end=data["end"],
            reserved_from=data["reservedFrom"],
            reserved_to=data["reservedTo"],
            expires_at=data["expiresAt"] / 1000,
            created_by_staff_id=data.get("createdByStaffId"),
            created_by_name=data.get("createdByName"),
            service_names=list(data.get("serviceNames") or []),
        )


class HoldStore:
    """Hold registry keyed by slot key.

    Backed by Redis once :meth:`use_redis` receives a client; otherwise held in
    process memory, where expired entries are purged on every write and listing.
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._holds: dict[str, tuple[str, float]] = {}
        self._metadata: dict[str, SlotHoldMetadata] = {}
        self._lock = threading.Lock()
        self._redis = None

    def use_redis(self, client) -> None:
        self._redis = client

    def _live_hold(self, slot_key: str) -> Optional[tuple[str, float]]:
        entry = self._holds.get(slot_key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._holds.pop(slot_key, None)
            self._metadata.pop(slot_key, None)
            return None
        return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        for slot_key in [key for key, (_, expires_at) in self._holds.items() if expires_at <= now]:
            del self._holds[slot_key]
        for slot_key in [key for key, meta in self._metadata.items() if meta.expires_at <= now]:
            del self._metadata[slot_key]

    def acquire(self, slot_key: str, ttl_seconds: int = HOLD_TTL_SECONDS) -> Optional[tuple[str, float]]:
        """Take the slot if nobody holds it. Returns ``(token, expires_at)`` or None."""
        token = str(uuid.uuid4())
        expires_at = self._clock() + ttl_seconds
        if self._redis is not None:
            stored = self._redis.set(hold_key(slot_key), token, nx=True, px=int(ttl_seconds * 1000))
            return (token, expires_at) if stored else None

        with self._lock:
            self._purge_expired()
            if self._live_hold(slot_key) is not None:
                return None
            self._holds[slot_key] = (token, expires_at)
            return token, expires_at

    def verify(self, slot_key: str, token: str) -> bool:
        if self._redis is not None:
            return self._redis.get(hold_key(slot_key)) == token
        with self._lock:
            entry = self._live_hold(slot_key)
            return entry is not None and entry[0] == token

    def release(self, slot_key: str, token: str) -> bool:
        if self._redis is not None:
            released = self._redis.eval(RELEASE_SCRIPT, 1, hold_key(slot_key), token) == 1
            if released:
                self._redis.delete(hold_metadata_key(slot_key))
            return released

        with self._lock:
            entry = self._live_hold(slot_key)
            if entry is None or entry[0] != token:
                return False
            self._holds.pop(slot_key, None)
            self._metadata.pop(slot_key, None)
            return True

    def store_metadata(self, metadata: SlotHoldMetadata) -> None:
        if self._redis is not None:
            ttl_ms = max(1, int((metadata.expires_at - self._clock()) * 1000))
            self._redis.set(hold_metadata_key(metadata.slot_key), json.dumps(metadata.to_dict()), px=ttl_ms)
            return
        with self._lock:
            self._purge_expired()
            self._metadata[metadata.slot_key] = metadata

    def remove_metadata(self, slot_key: str) -> bool:
        if self._redis is not None:
            return bool(self._redis.delete(hold_metadata_key(slot_key)))
        with self._lock:
            return self._metadata.pop(slot_key, None) is not None

    def list_for_location(self, location_id) -> list[SlotHoldMetadata]:
        now = self._clock()
        if self._redis is not None:
            keys = list(self._redis.scan_iter(match=f"{HOLD_META_PREFIX}:{location_id}|*", count=200))
            if not keys:
                return []
            entries = []
            for raw in self._redis.mget(keys):
                if not raw:
                    continue
                try:
                    meta = SlotHoldMetadata.from_dict(json.loads(raw))
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping unreadable hold metadata")
                    continue
                if meta.expires_at > now:
                    entries.append(meta)
            return entries

        with self._lock:
            self._purge_expired()
            return [meta for meta in self._metadata.values() if meta.location_id == str(location_id)]

    def held_keys(self, slot_keys: Iterable[str]) -> set[str]:
        """The subset of ``slot_keys`` that currently carry a hold, with or without metadata."""
        slot_keys = list(slot_keys)
        if not slot_keys:
            return set()
        if self._redis is not None:
            values = self._redis.mget([hold_key(key) for key in slot_keys])
            return {key for key, value in zip(slot_keys, values) if value}
        with self._lock:
            return {key for key in slot_keys if self._live_hold(key) is not None}

    def size(self) -> tuple[int, int]:
        """Number of in-memory ``(holds, metadata)`` entries."""
        with self._lock:
            return len(self._holds), len(self._metadata)

    def clear(self) -> None:
        with self._lock:
            self._holds.clear()
            self._metadata.clear()


hold_store = HoldStore()


def encode_hold_id(slot_key: str, token: str) -> str:
    raw = json.dumps({"slotKey": slot_key, "token": token}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_hold_id(value: str) -> Optional[tuple[str, str]]:
    """Inverse of :func:`encode_hold_id`; None for anything malformed."""
    if not value:
        return None
    padded = value + "=" * (-len(value) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    slot_key, token = parsed.get("slotKey"), parsed.get("token")
    if not isinstance(slot_key, str) or not isinstance(token, str) or not slot_key or not token:
        return None
    return slot_key, token


def filter_held_slots(
    slots: list[AvailabilitySlot],
    holds: Iterable[SlotHoldMetadata],
    *,
    held_keys: Iterable[str] = (),
    exempt_slot_key: Optional[str] = None,
) -> list[AvailabilitySlot]:
    """Drop held slots and anything overlapping a hold for the same staff member.

    ``held_keys`` are slot keys locked without metadata; those hide only the
    exact slot since their time range is unknown.
    """
    ranges: dict[str, list[tuple]] = {}
    blocked_keys = {key for key in held_keys if key != exempt_slot_key}
    for hold in holds:
        if exempt_slot_key and hold.slot_key == exempt_slot_key:
            continue
        blocked_keys.add(hold.slot_key)
        start = parse_iso(hold.reserved_from) or parse_iso(hold.start)
        end = parse_iso(hold.reserved_to) or parse_iso(hold.end)
        if start and end:
            ranges.setdefault(hold.staff_id, []).append((start, end))
    if not blocked_keys:
        return slots

    remaining = []
    for slot in slots:
        if slot.slot_key in blocked_keys:
            continue
        overlaps = any(
            slot.reserved_from < end and start < slot.reserved_to
            for start, end in ranges.get(slot.staff_id, [])
        )
        if not overlaps:
            remaining.append(slot)
    return remaining


def remove_held_slots(
    slots: list[AvailabilitySlot],
    location_id,
    *,
    exempt_slot_key: Optional[str] = None,
    store: Optional[HoldStore] = None,
) -> list[AvailabilitySlot]:
    """Apply :func:`filter_held_slots` with the live holds of ``location_id``."""
    if not slots:
        return slots
    store = store or hold_store
    return filter_held_slots(
        slots,
        store.list_for_location(location_id),
        held_keys=store.held_keys(slot.slot_key for slot in slots),
        exempt_slot_key=exempt_slot_key,
    )
