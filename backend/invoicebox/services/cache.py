"""Lightweight Redis cache utilities for short-lived API response caching.

Usage guidelines:
- Only invoice detail responses are cached; blob bytes never are.
- Keep TTLs short to preserve freshness.
- Invalidate on every mutation (create, update, delete, attachment add/remove/normalize).

All helpers are best-effort: a missing or unreachable Redis degrades to
"no cache" and is logged at debug level, never raised to the request.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from invoicebox.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None
_lock = asyncio.Lock()


async def get_redis():
    """Return a singleton async Redis client or None if caching is disabled."""
    global _redis_client
    if not settings.CACHE_ENABLED:
        return None
    if _redis_client is not None:
        return _redis_client
    async with _lock:
        if _redis_client is None:
            _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


async def cache_get_json(key: str) -> Optional[Any]:
    client = await get_redis()
    if not client:
        return None
    try:
        raw = await client.get(key)
    except RedisError as e:
        logger.debug("[cache] get %s failed: %s", key, e)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def cache_set_json(key: str, value: Any, ttl: int) -> None:
    client = await get_redis()
    if not client:
        return
    try:
        await client.set(key, json.dumps(value), ex=ttl)
    except RedisError as e:
        logger.debug("[cache] set %s failed: %s", key, e)


async def cache_delete(key: str) -> None:
    client = await get_redis()
    if not client:
        return
    try:
        await client.delete(key)
    except RedisError as e:
        logger.debug("[cache] delete %s failed: %s", key, e)


def invoice_cache_key(invoice_id: int) -> str:
    return f"invoices:detail:{invoice_id}"


async def invalidate_invoice(invoice_id: int) -> None:
    await cache_delete(invoice_cache_key(invoice_id))
