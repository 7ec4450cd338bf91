"""
Fixed-window rate limiter, Redis-backed when configured, in-memory otherwise.
allow() returns True if the call is within limit.
Keys:
- ratelimit:<scope>:<window>
"""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

import redis

logger = logging.getLogger(__name__)

_MEM: dict[str, tuple[int, float]] = {}
_MEM_LOCK = threading.Lock()
# Expired buckets are swept at most this often
_PRUNE_INTERVAL = 60.0
_next_prune = 0.0

_REDIS: Optional[redis.Redis] = None
_REDIS_URL: Optional[str] = None
_REDIS_LOCK = threading.Lock()


def _get_redis() -> Optional[redis.Redis]:
    """Shared client for FACEAUTH_REDIS_URL; connections are opened lazily by its pool."""
    global _REDIS, _REDIS_URL
    url = os.getenv("FACEAUTH_REDIS_URL")
    if not url:
        return None
    with _REDIS_LOCK:
        if _REDIS is None or _REDIS_URL != url:
            _REDIS = redis.Redis.from_url(url, decode_responses=True)
            _REDIS_URL = url
        return _REDIS


def _prune(now: float) -> None:
    global _next_prune
    if now < _next_prune:
        return
    for key in [k for k, (_, exp) in _MEM.items() if now > exp]:
        del _MEM[key]
    _next_prune = now + _PRUNE_INTERVAL


def allow(scope: str, max_per_window: int, window_seconds: int = 60) -> bool:
    key = f"ratelimit:{scope}:{window_seconds}"
    r = _get_redis()
    if r:
        try:
            with r.pipeline() as p:
                p.incr(key)
                p.expire(key, window_seconds)
                count, _ = p.execute()
            return int(count) <= max_per_window
        except redis.RedisError as e:
            logger.warning(f"Rate limiter Redis error, using memory bucket: {e}")

    # Fallback memory bucket
    now = time.time()
    with _MEM_LOCK:
        _prune(now)
        count, exp = _MEM.get(key, (0, now + window_seconds))
        if now > exp:
            count, exp = 0, now + window_seconds
        count += 1
        _MEM[key] = (count, exp)
    return count <= max_per_window


def reset() -> None:
    """Forget all in-memory counters and the cached Redis client."""
    global _next_prune, _REDIS, _REDIS_URL
    with _MEM_LOCK:
        _MEM.clear()
        _next_prune = 0.0
    with _REDIS_LOCK:
        if _REDIS is not None:
            _REDIS.close()
        _REDIS, _REDIS_URL = None, None
