"""
Order fulfillment.

Turns a paid (or check-confirmed) order into its downstream effects:
inventory counters, attendee seats, numbered raffle entries and the donor
ledger. Everything happens in one transaction that starts with a guarded
status flip, so a webhook redelivery racing an admin's "complete" click
fulfills the order once and the loser gets `AlreadyFulfilledError`.

Emails are not sent from here. The caller gets a receipt snapshot back and
hands it to the mailer after the transaction committed.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AlreadyFulfilledError, ConflictError, NotFoundError
from .helpers import new_id, now_ts
from .infra.timings import timeit
from .mailer import OrderReceipt
from .model.db import (
    PENDING_STATUSES, RAFFLE_COUNTER, SEATED_CATEGORIES,
    Attendee, Order, RaffleEntry,
)
from .orders import load_receipt

logger = logging.getLogger(__name__)

# raffle bundles are sold by price: $25 = 1 entry, $100 = 5, $200 = 12
RAFFLE_ENTRIES_BY_PRICE: Dict[int, int] = {2500: 1, 10000: 5, 20000: 12}


def raffle_entries_per_unit(unit_price_cents: int) -> int:
    return RAFFLE_ENTRIES_BY_PRICE.get(unit_price_cents, 1)


def seats_for(category: str, quantity: int, table_size: Optional[int]) -> int:
    if category not in SEATED_CATEGORIES:
        return 0
    return quantity * (table_size or 1)


@dataclass
class FulfillmentResult:
    order_id: str
    previous_status: str
    attendees_created: int = 0
    raffle_entries_created: int = 0
    raffle_entry_numbers: List[int] = field(default_factory=list)
    receipt: Optional[OrderReceipt] = None

    def as_dict(self) -> dict:
        return {
            "success": True,
            "order_id": self.order_id,
            "attendees_created": self.attendees_created,
            "raffle_entries_created": self.raffle_entries_created,
            "raffle_entry_numbers": self.raffle_entry_numbers,
        }


async def _mark_paid(
    db: AsyncSession, order_id: str, payment_reference: Optional[str]
) -> bool:
    params = {"id": order_id, "now": now_ts()}
    ref_sql = ""
    if payment_reference:
        ref_sql = ", payment_reference = :ref"
        params["ref"] = payment_reference
    res = await db.execute(text(f"""
        UPDATE orders SET status = 'paid', paid_at = :now{ref_sql}
        WHERE id = :id AND status IN ('pending', 'pending_check')
    """), params)
    return res.rowcount == 1


async def _load_lines(db: AsyncSession, order_id: str):
    return (await db.execute(text("""
        SELECT oi.id, oi.product_id, oi.quantity, oi.unit_price_cents,
               p.category, p.table_size, p.name AS product_name
        FROM order_items oi
        JOIN products p ON oi.product_id = p.id
        WHERE oi.order_id = :id
        ORDER BY oi.position
    """), {"id": order_id})).mappings().all()


async def _count_sold(db: AsyncSession, line) -> None:
    row = (await db.execute(text("""
        UPDATE products SET quantity_sold = quantity_sold + :q
        WHERE id = :pid
        RETURNING quantity_sold, quantity_available, name
    """), {"q": int(line["quantity"]), "pid": line["product_id"]})).first()
    if row is not None and row[1] is not None and row[0] > row[1]:
        # availability is only checked at checkout; a payment that lands
        # after someone else bought the last unit still counts
        logger.warning("product %s oversold: %d sold of %d",
                       row[2], row[0], row[1])


async def _allocate_raffle_numbers(db: AsyncSession, count: int) -> int:
    """Reserve `count` consecutive entry numbers; returns the first one."""
    end = (await db.execute(text("""
        UPDATE counters SET value = value + :n
        WHERE name = :name
        RETURNING value
    """), {"n": count, "name": RAFFLE_COUNTER})).scalar_one_or_none()

    highest = (await db.execute(text(
        "SELECT COALESCE(MAX(entry_number), 0) FROM raffle_entries"
    ))).scalar_one()
    highest = int(highest)

    if end is None:
        await db.execute(text("""
            INSERT INTO counters (name, value) VALUES (:name, :v)
        """), {"name": RAFFLE_COUNTER, "v": highest + count})
        return highest + 1

    start = int(end) - count + 1
    if start <= highest:
        # counter fell behind the table (restored dump, manual inserts)
        await db.execute(text("""
            UPDATE counters SET value = :v WHERE name = :name
        """), {"name": RAFFLE_COUNTER, "v": highest + count})
        start = highest + 1
    return start


async def _upsert_donor(db: AsyncSession, order: Order, now: float) -> None:
    await db.execute(text("""
        INSERT INTO donors (id, email, name, phone, total_donated_cents,
                            order_count, first_order_at, last_order_at,
                            created_at)
        VALUES (:id, :email, :name, :phone, :total, 1, :now, :now, :now)
        ON CONFLICT (email) DO UPDATE SET
            total_donated_cents =
                donors.total_donated_cents + excluded.total_donated_cents,
            order_count = donors.order_count + 1,
            last_order_at = excluded.last_order_at,
            name = COALESCE(donors.name, excluded.name),
            phone = COALESCE(donors.phone, excluded.phone)
    """), {
        "id": new_id(),
        "email": order.customer_email,
        "name": order.customer_name,
        "phone": order.customer_phone,
        "total": order.total_cents,
        "now": now,
    })


async def fulfill_order(
    db: AsyncSession,
    order_id: str,
    payment_reference: Optional[str] = None,
    *,
    require_status: Optional[str] = None,
) -> FulfillmentResult:
    """
    Fulfill `order_id` exactly once.

    Raises NotFoundError for unknown orders, AlreadyFulfilledError when the
    order is already paid (nothing is touched), ConflictError for cancelled
    or refunded orders, or when `require_status` is given and the order is
    in a different pending state.
    """
    async with timeit("fulfillment"):
        async with db.begin():
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found")
            previous = order.status
            if previous == "paid":
                raise AlreadyFulfilledError(order_id)
            if previous not in PENDING_STATUSES:
                raise ConflictError(f"Order is {previous}")
            if require_status is not None and previous != require_status:
                raise ConflictError(
                    f"Order is {previous}, expected {require_status}"
                )

            if not await _mark_paid(db, order_id, payment_reference):
                # someone else flipped it between our read and our update
                raise AlreadyFulfilledError(order_id)

            now = now_ts()
            lines = await _load_lines(db, order_id)
            prefill: Dict[str, List[dict]] = order.attendee_data or {}
            result = FulfillmentResult(
                order_id=order_id, previous_status=previous
            )

            for line in lines:
                await _count_sold(db, line)

            attendees = []
            for line in lines:
                seats = seats_for(
                    line["category"], int(line["quantity"]),
                    line["table_size"],
                )
                given = prefill.get(line["id"]) or []
                for i in range(seats):
                    info = given[i] if i < len(given) else {}
                    attendees.append(Attendee(
                        id=new_id(),
                        order_id=order_id,
                        order_item_id=line["id"],
                        name=info.get("name") or None,
                        email=info.get("email") or None,
                        dietary_restrictions=(
                            info.get("dietary_restrictions") or None
                        ),
                        checked_in=False,
                        created_at=now,
                    ))
            db.add_all(attendees)
            result.attendees_created = len(attendees)

            raffle_lines = [
                (line, int(line["quantity"]) * raffle_entries_per_unit(
                    int(line["unit_price_cents"])
                ))
                for line in lines if line["category"] == "raffle"
            ]
            total_entries = sum(n for _, n in raffle_lines)
            if total_entries:
                number = await _allocate_raffle_numbers(db, total_entries)
                entries = []
                for line, n in raffle_lines:
                    for _ in range(n):
                        entries.append(RaffleEntry(
                            id=new_id(),
                            order_id=order_id,
                            product_id=line["product_id"],
                            entry_number=number,
                            created_at=now,
                        ))
                        result.raffle_entry_numbers.append(number)
                        number += 1
                db.add_all(entries)
            result.raffle_entries_created = total_entries

            await _upsert_donor(db, order, now)
            await db.flush()
            result.receipt = await load_receipt(db, order_id)

    logger.info(
        "order %s fulfilled (was %s): %d attendees, %d raffle entries",
        order_id, previous, result.attendees_created,
        result.raffle_entries_created,
    )
    return result
