"""Order reads for the storefront and the back office, and admin status changes."""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, NotFoundError, ValidationError
from .helpers import to_iso
from .mailer import OrderReceipt, ReceiptLine
from .model.db import ORDER_STATUSES, Order
from .schemas import OrderUpdate, changes

logger = logging.getLogger(__name__)


async def _get(db: AsyncSession, order_id: str) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def _lines(db: AsyncSession, order_id: str) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT oi.id, oi.product_id, oi.quantity, oi.unit_price_cents,
               oi.total_cents, p.name AS product_name, p.category
        FROM order_items oi
        JOIN products p ON oi.product_id = p.id
        WHERE oi.order_id = :id
        ORDER BY oi.position
    """), {"id": order_id})).mappings().all()
    return [dict(r) for r in rows]


async def _raffle_numbers(db: AsyncSession, order_id: str) -> List[int]:
    rows = (await db.execute(text("""
        SELECT entry_number FROM raffle_entries
        WHERE order_id = :id ORDER BY entry_number
    """), {"id": order_id})).all()
    return [int(r[0]) for r in rows]


async def load_receipt(db: AsyncSession, order_id: str) -> OrderReceipt:
    order = await _get(db, order_id)
    lines = await _lines(db, order_id)
    return OrderReceipt(
        order_id=order.id,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        payment_method=order.payment_method,
        total_cents=order.total_cents,
        donation_cents=order.donation_cents,
        lines=[
            ReceiptLine(
                product_name=ln["product_name"],
                category=ln["category"],
                quantity=int(ln["quantity"]),
                unit_price_cents=int(ln["unit_price_cents"]),
            )
            for ln in lines
        ],
        raffle_entry_numbers=await _raffle_numbers(db, order_id),
    )


# ----------------------------
# Public lookup (purchaser-safe)
# ----------------------------
async def public_summary(db: AsyncSession, order_id: str) -> dict:
    order = await _get(db, order_id)
    lines = await _lines(db, order_id)
    attendees = (await db.execute(
        text("SELECT COUNT(*) FROM attendees WHERE order_id = :id"),
        {"id": order_id},
    )).scalar_one()
    raffle = await _raffle_numbers(db, order_id)
    return {
        "order_id": order.id,
        "status": order.status,
        "payment_method": order.payment_method,
        "subtotal_cents": order.subtotal_cents,
        "donation_cents": order.donation_cents,
        "total_cents": order.total_cents,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "items": [
            {
                "product_name": ln["product_name"],
                "category": ln["category"],
                "quantity": ln["quantity"],
                "unit_price_cents": ln["unit_price_cents"],
                "total_cents": ln["total_cents"],
            }
            for ln in lines
        ],
        "attendee_count": int(attendees),
        "raffle_entry_count": len(raffle),
        "raffle_entry_numbers": raffle,
    }


async def public_summary_by_session(
    db: AsyncSession, session_id: str
) -> dict:
    order_id = (await db.execute(
        text("SELECT id FROM orders WHERE gateway_session_id = :sid"),
        {"sid": session_id},
    )).scalar_one_or_none()
    if order_id is None:
        raise NotFoundError("Order not found")
    return await public_summary(db, order_id)


# ----------------------------
# Admin
# ----------------------------
def _order_row(r) -> Dict[str, Any]:
    d = dict(r)
    d.pop("attendee_data", None)
    for k in ("created_at", "paid_at"):
        d[k] = to_iso(d.get(k))
    return d


async def list_orders(
    db: AsyncSession, status: Optional[str] = None
) -> List[dict]:
    if status is not None and status not in ORDER_STATUSES:
        raise ValidationError(f"unknown status: {status}")
    where = "WHERE o.status = :status" if status else ""
    rows = (await db.execute(text(f"""
        SELECT o.*,
          (SELECT COUNT(*) FROM attendees a
            WHERE a.order_id = o.id) AS attendee_count,
          (SELECT COUNT(*) FROM attendees a
            WHERE a.order_id = o.id AND a.name IS NOT NULL
              AND a.name != '') AS names_collected
        FROM orders o
        {where}
        ORDER BY o.created_at DESC
    """), {"status": status} if status else {})).mappings().all()
    return [_order_row(r) for r in rows]


async def get_order_detail(db: AsyncSession, order_id: str) -> dict:
    row = (await db.execute(
        text("SELECT * FROM orders WHERE id = :id"), {"id": order_id}
    )).mappings().first()
    if row is None:
        raise NotFoundError("Order not found")

    attendees = (await db.execute(text("""
        SELECT a.id, a.order_item_id, a.name, a.email,
               a.dietary_restrictions, a.table_id, a.checked_in,
               a.checked_in_at, t.name AS table_name
        FROM attendees a
        LEFT JOIN tables t ON a.table_id = t.id
        WHERE a.order_id = :id
        ORDER BY a.created_at, a.id
    """), {"id": order_id})).mappings().all()

    raffle = (await db.execute(text("""
        SELECT re.id, re.entry_number, re.product_id,
               p.name AS product_name
        FROM raffle_entries re
        JOIN products p ON re.product_id = p.id
        WHERE re.order_id = :id
        ORDER BY re.entry_number
    """), {"id": order_id})).mappings().all()

    out = _order_row(row)
    out["items"] = await _lines(db, order_id)
    out["attendees"] = [
        {**dict(a), "checked_in": bool(a["checked_in"]),
         "checked_in_at": to_iso(a["checked_in_at"])}
        for a in attendees
    ]
    out["raffle_entries"] = [dict(r) for r in raffle]
    return out


async def update_order(
    db: AsyncSession, order_id: str, patch: OrderUpdate
) -> dict:
    fields = changes(patch)
    async with db.begin():
        order = await _get(db, order_id)
        for k, v in fields.items():
            setattr(order, k, v)
    return {"success": True}


async def cancel_order(db: AsyncSession, order_id: str) -> dict:
    async with db.begin():
        res = await db.execute(text("""
            UPDATE orders SET status = 'cancelled'
            WHERE id = :id AND status IN ('pending', 'pending_check')
        """), {"id": order_id})
        if res.rowcount == 0:
            order = await _get(db, order_id)
            if order.status == "paid":
                raise ConflictError(
                    "Cannot cancel paid order - use refund instead"
                )
            raise ConflictError(f"Order is already {order.status}")
    logger.info("order %s cancelled", order_id)
    return {"success": True, "status": "cancelled"}


async def refund_order(db: AsyncSession, order_id: str) -> dict:
    # bookkeeping only: inventory and donor totals are left as they are
    async with db.begin():
        res = await db.execute(text("""
            UPDATE orders SET status = 'refunded'
            WHERE id = :id AND status = 'paid'
        """), {"id": order_id})
        if res.rowcount == 0:
            order = await _get(db, order_id)
            raise ConflictError(
                f"Only paid orders can be refunded (order is {order.status})"
            )
    logger.info("order %s marked refunded", order_id)
    return {"success": True, "status": "refunded"}
