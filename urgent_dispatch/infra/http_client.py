# urgent_dispatch/infra/http_client.py
"""
Shared aiohttp client sessions.

Named, lazily created ``aiohttp.ClientSession`` singletons, so outbound
calls reuse TCP connections instead of opening a session per event.

Session profiles
~~~~~~~~~~~~~~~~
- **realtime** – event relay posts (total=10 s, connect=3 s, pool limit=20)

Call ``close_all_sessions()`` once during shutdown.
"""
from __future__ import annotations

import aiohttp

from urgent_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_realtime_session() -> aiohttp.ClientSession:
    """Session for real-time relay events (short timeouts: events are best-effort)."""
    return _get_or_create(
        "realtime",
        aiohttp.ClientTimeout(total=10, connect=3),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
