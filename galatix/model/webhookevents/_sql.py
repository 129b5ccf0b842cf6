from __future__ import annotations
from contextlib import nullcontext
from typing import Optional, Callable, AsyncContextManager

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db import WebhookEventSeen
from ...helpers import now_ts


class WebhookEventStore:
    def __init__(
        self, *, sessions: async_sessionmaker,
        gated: Optional[Callable[[], AsyncContextManager[None]]] = None,
    ) -> None:
        self.sessions = sessions
        self.gated = gated or nullcontext

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True if this is the first time we see `evt_id`."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.sessions() as db:
                try:
                    async with db.begin():
                        db.add(WebhookEventSeen(
                            idempotency_key=evt_id, created_at=now_ts()
                        ))
                except IntegrityError:
                    # primary key already there: a redelivery
                    return False
        return True

    async def forget(self, evt_id: Optional[str]) -> None:
        """Drop `evt_id` so a redelivery gets processed again."""
        if not evt_id:
            return
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(
                        delete(WebhookEventSeen)
                        .where(WebhookEventSeen.idempotency_key == evt_id)
                    )

    async def close(self) -> None:
        return None
