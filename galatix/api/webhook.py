"""
Gateway callbacks.

The webhook answers 200 once the signature checks out, whatever happens to
the order afterwards; gateways retry anything else and fulfillment is
already idempotent per order.
"""
import json
import logging

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy import select

from .. import orders
from ..config import Settings
from ..deps import get_adapter, get_events, get_mailer, get_settings
from ..errors import ConflictError, NotFoundError, ValidationError
from ..fulfillment import fulfill_order
from ..gateway import MOCK_SIGNATURE_HEADER, MockPay, PaymentAdapter
from ..infra.timings import timeit
from ..mailer import Mailer
from ..model.db import Order
from ..schemas import MockEmit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

ACK = {"received": True}


@router.post("/api/webhook")
async def payment_webhook(
    request: Request,
    background: BackgroundTasks,
    adapter: PaymentAdapter = Depends(get_adapter),
    events=Depends(get_events),
    mailer: Mailer = Depends(get_mailer),
):
    payload = await request.body()
    try:
        event = adapter.verify_webhook(payload, dict(request.headers))
    except ValidationError as e:
        logger.warning("webhook rejected: %s", e.detail)
        raise

    kind = adapter.event_kind(event)
    order_id, idem = adapter.event_ids(event)
    if kind == "ignored":
        logger.debug("webhook event %s ignored", event.get("type"))
        return ACK
    if not order_id:
        logger.warning("webhook %s without order id", event.get("type"))
        return ACK

    async with timeit("webhook.mark_event_seen"):
        first = await events.mark_event_seen(idem)
    if not first:
        logger.info("duplicate webhook event %s for order %s", idem, order_id)
        return ACK

    state = request.app.state
    try:
        # DB GATE
        async with state.gated():
            async with state.sessions() as db:
                if kind == "succeeded":
                    result = await fulfill_order(
                        db, order_id, adapter.payment_reference(event)
                    )
                    background.add_task(
                        mailer.notify_fulfilled,
                        result.receipt, result.previous_status,
                    )
                elif kind == "canceled":
                    await orders.cancel_order(db, order_id)
                else:
                    logger.info("payment failed for order %s", order_id)
    except (NotFoundError, ConflictError) as e:
        logger.info("webhook %s for order %s: %s", kind, order_id, e.detail)
    except Exception:
        logger.exception("webhook %s for order %s failed", kind, order_id)
        # the event was marked seen above; let a redelivery try again
        await events.forget(idem)
    return ACK


# ----------------------------
# MockPay: simulate the gateway calling us back
# ----------------------------
@router.post("/mockpay/{session_id}/emit")
async def mockpay_emit(
    session_id: str,
    request: Request,
    body: MockEmit = MockEmit(),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    if not isinstance(adapter, MockPay):
        raise NotFoundError("Mock gateway is not enabled")

    state = request.app.state
    # released before we call ourselves back through the webhook
    async with state.gated():
        async with state.sessions() as db:
            order = (await db.execute(
                select(Order).where(Order.gateway_session_id == session_id)
            )).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Payment session not found")

    event = adapter.build_event(
        body.kind, session_id, order.id, order.total_cents
    )
    payload = json.dumps(event).encode()
    http: httpx.AsyncClient = state.http
    try:
        await http.post(
            settings.mock_webhook_url,
            content=payload,
            headers={
                MOCK_SIGNATURE_HEADER: adapter.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the buyer can press the button again
        logger.warning("mock webhook delivery failed: %s", e)

    base = settings.base_url.rstrip("/")
    if body.kind == "succeeded":
        redirect = f"{base}/success?session_id={session_id}"
    else:
        redirect = f"{base}/cancel?order_id={order.id}&status={body.kind}"
    return {"redirect_url": redirect, "event": event["type"]}
