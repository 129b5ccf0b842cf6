"""
Checkout: validate a cart against live inventory, snapshot prices, persist
a pending order and hand it to the payment gateway.

The availability check is a read, not a reservation. Two checkouts racing
for the last unit can both pass; the loser still gets fulfilled once paid.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    InsufficientInventory, ProductNotFound, ValidationError,
)
from .gateway import PaymentAdapter, SessionLine
from .helpers import is_valid_email, new_id, normalize_email, now_ts
from .infra.timings import timeit
from .model.db import SEATED_CATEGORIES, Order, OrderItem, Product
from .schemas import CheckoutRequest

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    order_id: str
    status: str
    subtotal_cents: int
    donation_cents: int
    total_cents: int
    redirect_url: str
    session_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "donation_cents": self.donation_cents,
            "total_cents": self.total_cents,
            "redirect_url": self.redirect_url,
            "session_id": self.session_id,
        }


def _seats(product: Product, quantity: int) -> int:
    if product.category not in SEATED_CATEGORIES:
        return 0
    return quantity * (product.table_size or 1)


async def _load_products(
    db: AsyncSession, req: CheckoutRequest
) -> Dict[str, Product]:
    ids = {item.product_id for item in req.items}
    rows = (await db.execute(
        select(Product).where(
            Product.id.in_(list(ids)), Product.is_active.is_(True)
        )
    )).scalars().all()
    products = {p.id: p for p in rows}

    requested: Dict[str, int] = {}
    for item in req.items:
        product = products.get(item.product_id)
        if product is None:
            raise ProductNotFound(f"Product {item.product_id} not found")
        requested[product.id] = requested.get(product.id, 0) + item.quantity
        seats = _seats(product, item.quantity)
        if len(item.attendees) > seats:
            raise ValidationError(
                f"{len(item.attendees)} attendees given for {seats} seats "
                f"of {product.name}"
            )

    for pid, qty in requested.items():
        product = products[pid]
        if product.quantity_available is None:
            continue
        remaining = product.quantity_available - product.quantity_sold
        if qty > remaining:
            raise InsufficientInventory(
                f"Only {max(0, remaining)} {product.name} available"
            )
    return products


async def create_checkout(
    db: AsyncSession,
    req: CheckoutRequest,
    adapter: PaymentAdapter,
    base_url: str = "",
) -> CheckoutResult:
    if not req.items:
        raise ValidationError("Cart is empty")
    email = normalize_email(req.customer_email)
    if not is_valid_email(email):
        raise ValidationError(
            "customer_email is required and must be a valid email address"
        )

    order_id = new_id()
    is_check = req.payment_method == "check"
    status = "pending_check" if is_check else "pending"

    async with timeit("checkout.persist"):
        async with db.begin():
            products = await _load_products(db, req)

            subtotal = 0
            items: List[OrderItem] = []
            lines: List[SessionLine] = []
            attendee_data: Dict[str, List[dict]] = {}
            for pos, item in enumerate(req.items):
                product = products[item.product_id]
                line_total = product.price_cents * item.quantity
                subtotal += line_total
                oi = OrderItem(
                    id=new_id(),
                    order_id=order_id,
                    product_id=product.id,
                    quantity=item.quantity,
                    unit_price_cents=product.price_cents,
                    total_cents=line_total,
                    position=pos,
                )
                items.append(oi)
                if item.attendees:
                    attendee_data[oi.id] = [
                        a.model_dump() for a in item.attendees
                    ]
                lines.append({
                    "name": product.name,
                    "description": product.description,
                    "unit_amount": product.price_cents,
                    "quantity": item.quantity,
                })

            total = subtotal + req.donation_cents
            db.add(Order(
                id=order_id,
                payment_method=req.payment_method,
                status=status,
                customer_email=email,
                customer_name=(req.customer_name or "").strip() or None,
                customer_phone=(req.customer_phone or "").strip() or None,
                subtotal_cents=subtotal,
                total_cents=total,
                donation_cents=req.donation_cents,
                attendee_data=attendee_data or None,
                created_at=now_ts(),
            ))
            # orders first so the FK on order_items is satisfied
            await db.flush()
            db.add_all(items)

    logger.info("order %s created (%s): %d lines, total %d",
                order_id, status, len(items), total)

    base = base_url.rstrip("/")
    if is_check:
        return CheckoutResult(
            order_id=order_id,
            status=status,
            subtotal_cents=subtotal,
            donation_cents=req.donation_cents,
            total_cents=total,
            redirect_url=f"{base}/check-confirmation?order_id={order_id}",
        )

    if req.donation_cents > 0:
        lines.append({
            "name": "Additional Donation",
            "description": "Thank you for your generous support!",
            "unit_amount": req.donation_cents,
            "quantity": 1,
        })
    async with timeit("gateway.create_session"):
        session = await adapter.create_session(order_id, email, lines)
    psid = session["payment_session_id"]
    async with db.begin():
        order = await db.get(Order, order_id)
        order.gateway_session_id = psid

    return CheckoutResult(
        order_id=order_id,
        status=status,
        subtotal_cents=subtotal,
        donation_cents=req.donation_cents,
        total_cents=total,
        redirect_url=session["redirect_url"],
        session_id=psid,
    )
