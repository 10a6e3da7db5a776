"""Pooled httpx clients for LLM providers, one pool per event loop.

Every Celery task and every background run drives its batches on its own
short-lived loop, and several background runs can be live at once on
different threads. An ``AsyncClient`` must not cross loops, so clients are
keyed by ``(provider, loop)`` and each run closes only the clients of its
own loop when it finishes.
"""
from __future__ import annotations

import asyncio
import logging
import threading

import httpx

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15.0

_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=120)

_pool: dict[tuple[str, int], httpx.AsyncClient] = {}
_pool_lock = threading.Lock()


def get_http_client(provider: str, timeout_seconds: float = 120.0) -> httpx.AsyncClient:
    key = (provider, id(asyncio.get_running_loop()))
    with _pool_lock:
        client = _pool.get(key)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds, connect=CONNECT_TIMEOUT),
                limits=_LIMITS,
            )
            _pool[key] = client
            logger.debug("HTTP client for %s created on loop %x", provider, key[1])
        return client


def open_client_count() -> int:
    with _pool_lock:
        return sum(1 for c in _pool.values() if not c.is_closed)


async def close_all_clients() -> None:
    """Close the clients created on the running loop."""
    loop_id = id(asyncio.get_running_loop())
    with _pool_lock:
        mine = [(key, _pool.pop(key)) for key in list(_pool) if key[1] == loop_id]
    for (provider, _), client in mine:
        if client.is_closed:
            continue
        try:
            await client.aclose()
        except httpx.HTTPError as e:
            logger.debug("Closing %s client failed: %s", provider, e)
    if mine:
        logger.info("Closed %d HTTP client(s)", len(mine))
