"""Short-lived cache for computed availability responses."""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Iterable, Optional

import redis

from .types import AvailabilitySlot

logger = logging.getLogger(__name__)

CACHE_PREFIX = "availability:v1"


def make_cache_key(
    *,
    location_id,
    window_from: str,
    window_to: str,
    service_ids: Iterable,
    staff_id=None,
    device_id: Optional[str] = None,
    mode: Optional[str] = None,
    slot_granularity_minutes: Optional[int] = None,
    smart_slots_key: Optional[str] = None,
) -> str:
    """Build a key that ignores service order but separates every other input."""
    services = ",".join(sorted(str(service_id) for service_id in service_ids))
    granularity = (
        str(slot_granularity_minutes)
        if isinstance(slot_granularity_minutes, int) and slot_granularity_minutes > 0
        else "-"
    )
    parts = [
        CACHE_PREFIX,
        str(location_id),
        window_from,
        window_to,
        mode or "-",
        services,
        str(staff_id) if staff_id else "-",
        granularity,
        smart_slots_key or "-",
        device_id or "-",
    ]
    return ":".join(parts)


class AvailabilityCache:
    """TTL store for computed slots; a TTL of 0 turns every call into a no-op.

    Slots are kept as JSON in Redis when a client is attached, otherwise as
    objects in process memory. Cache failures never fail a request.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, object]] = {}
        self._lock = threading.Lock()
        self._redis = None

    def use_redis(self, client) -> None:
        self._redis = client

    def get(self, key: str, ttl_seconds: int) -> Optional[list[AvailabilitySlot]]:
        if ttl_seconds <= 0:
            return None
        if self._redis is not None:
            try:
                raw = self._redis.get(key)
                return [AvailabilitySlot.from_dict(entry) for entry in json.loads(raw)] if raw else None
            except (redis.RedisError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Availability cache read failed for %s: %s", key, exc)
                return None

        with self._lock:
            now = time.monotonic()
            self._evict_expired(now)
            entry = self._entries.get(key)
            return entry[1] if entry is not None else None

    def set(self, key: str, value: list[AvailabilitySlot], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        if self._redis is not None:
            try:
                self._redis.set(key, json.dumps([slot.to_dict() for slot in value]), ex=ttl_seconds)
            except redis.RedisError as exc:
                logger.warning("Availability cache write failed for %s: %s", key, exc)
            return

        with self._lock:
            self._entries[key] = (time.monotonic() + ttl_seconds, value)

    def invalidate_location(self, location_id) -> int:
        prefix = f"{CACHE_PREFIX}:{location_id}:"
        if self._redis is not None:
            try:
                stale = list(self._redis.scan_iter(match=f"{prefix}*", count=200))
                if stale:
                    self._redis.delete(*stale)
            except redis.RedisError as exc:
                logger.warning("Availability cache invalidation failed for location %s: %s", location_id, exc)
                return 0
            return len(stale)

        with self._lock:
            stale = [key for key in self._entries if key.startswith(prefix)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def _evict_expired(self, now: float) -> None:
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


availability_cache = AvailabilityCache()
