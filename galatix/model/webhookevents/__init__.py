# model/webhookevents/__init__.py
"""
De-duplication of gateway webhook deliveries.

Gateways deliver at least once; every event carries an idempotency key and
`mark_event_seen()` answers True only for the first delivery of a key. The
order-level guard in fulfillment is what keeps fulfillment exactly-once;
this store only saves the work of re-processing redelivered events.
"""
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ._sql import WebhookEventStore as SqlWebhookEventStore
from ._redis import WebhookEventStore as RedisWebhookEventStore

Gated = Callable[[], AsyncContextManager[None]]


# Factory keeps the app factory constructor-agnostic:
def new_store(backend: str, *,
              sessions: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 24 * 3600):
    if backend == "sql":
        if sessions is None:
            raise RuntimeError(
                "WebhookEventStore(sql) requires sessions=async_sessionmaker"
            )
        return SqlWebhookEventStore(sessions=sessions, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return RedisWebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown webhook events backend: {backend!r}")


__all__ = [
    "SqlWebhookEventStore", "RedisWebhookEventStore", "new_store",
]
