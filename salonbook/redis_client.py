"""Shared Redis connection for slot holds, rate limits and the availability cache.

Without ``REDIS_URL`` every store keeps its state in process memory, which is
only correct for a single worker.
"""
from __future__ import annotations

import logging
from typing import Optional

import redis

from .availability import availability_cache
from .holds import hold_store
from .rate_limit import rate_limiter

logger = logging.getLogger(__name__)


def _masked(url: str) -> str:
    if "@" not in url:
        return "****"
    scheme = url.split(":", 1)[0]
    return f"{scheme}:****@{url.rsplit('@', 1)[1]}"


def connect(url: str) -> redis.Redis:
    """Build a client for ``url``; the connection itself is opened on first use."""
    logger.info("Using Redis at %s", _masked(url))
    return redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def init_redis(app) -> Optional[redis.Redis]:
    """Point the shared stores at Redis when the app is configured with ``REDIS_URL``."""
    url = app.config.get("REDIS_URL")
    client = connect(url) if url else None
    if client is None:
        app.logger.info("REDIS_URL not set; holds, rate limits and cache stay in process memory")
    availability_cache.use_redis(client)
    hold_store.use_redis(client)
    rate_limiter.use_redis(client)
    return client
