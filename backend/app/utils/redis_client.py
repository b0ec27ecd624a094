"""Helper function to create Redis clients with SSL support for managed providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client with proper SSL configuration.

    Managed Redis providers (Upstash and similar) require TLS; ``redis://``
    URLs pointing at them are upgraded to ``rediss://`` and certificate
    verification is relaxed the same way the Celery broker config does it.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Additional arguments (decode_responses, socket_connect_timeout, etc.)
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://"):
        pool = getattr(client, "connection_pool", None)
        if pool is not None and hasattr(pool, "connection_kwargs"):
            pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client
