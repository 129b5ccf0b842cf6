"""Dashboard numbers, donor list and CSV exports."""
from __future__ import annotations
from typing import Dict, Iterator, List, Sequence, Tuple
import csv
import io

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError
from .helpers import to_iso
from .model.db import CATEGORIES


def _int(v) -> int:
    return int(v or 0)


async def summary(db: AsyncSession) -> dict:
    o = (await db.execute(text("""
        SELECT
          COUNT(*) AS total,
          SUM(CASE WHEN status = 'paid' THEN 1 ELSE 0 END) AS paid,
          SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
          SUM(CASE WHEN status = 'pending_check' THEN 1 ELSE 0 END)
            AS pending_check,
          SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
          SUM(CASE WHEN status = 'refunded' THEN 1 ELSE 0 END) AS refunded,
          SUM(CASE WHEN status = 'paid' THEN total_cents ELSE 0 END)
            AS revenue,
          SUM(CASE WHEN status = 'paid' THEN donation_cents ELSE 0 END)
            AS donations
        FROM orders
    """))).mappings().one()

    by_cat = (await db.execute(text("""
        SELECT p.category, SUM(oi.total_cents) AS revenue
        FROM order_items oi
        JOIN products p ON oi.product_id = p.id
        JOIN orders o ON oi.order_id = o.id
        WHERE o.status = 'paid'
        GROUP BY p.category
    """))).all()
    revenue_by_category: Dict[str, int] = {c: 0 for c in CATEGORIES}
    for category, revenue in by_cat:
        revenue_by_category[category] = _int(revenue)
    # the checkout add-on is not a line item
    revenue_by_category["donation"] += _int(o["donations"])

    a = (await db.execute(text("""
        SELECT
          COUNT(*) AS total,
          SUM(CASE WHEN a.name IS NOT NULL AND a.name != ''
              THEN 1 ELSE 0 END) AS names_collected,
          SUM(CASE WHEN a.checked_in THEN 1 ELSE 0 END) AS checked_in,
          SUM(CASE WHEN a.table_id IS NOT NULL THEN 1 ELSE 0 END)
            AS assigned
        FROM attendees a
        JOIN orders o ON a.order_id = o.id
        WHERE o.status IN ('paid', 'pending_check')
    """))).mappings().one()

    raffle = (await db.execute(text("""
        SELECT COUNT(*) FROM raffle_entries re
        JOIN orders o ON re.order_id = o.id
        WHERE o.status = 'paid'
    """))).scalar_one()

    products = (await db.execute(text("""
        SELECT p.id, p.name, p.category, p.price_cents,
               p.quantity_available, p.quantity_sold
        FROM products p
        WHERE p.is_active
        ORDER BY p.category, p.sort_order
    """))).mappings().all()

    return {
        "orders": {k: _int(o[k]) for k in (
            "total", "paid", "pending", "pending_check",
            "cancelled", "refunded",
        )},
        "revenue": {
            "total_cents": _int(o["revenue"]),
            "donations_cents": _int(o["donations"]),
            "by_category": revenue_by_category,
        },
        "attendees": {k: _int(a[k]) for k in (
            "total", "names_collected", "checked_in", "assigned",
        )},
        "raffle_entries": _int(raffle),
        "products": [dict(p) for p in products],
    }


async def list_donors(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(text("""
        SELECT id, email, name, phone, address, total_donated_cents,
               order_count, first_order_at, last_order_at, notes
        FROM donors
        ORDER BY total_donated_cents DESC, email
    """))).mappings().all()
    out = []
    for r in rows:
        d = dict(r)
        d["first_order_at"] = to_iso(d["first_order_at"])
        d["last_order_at"] = to_iso(d["last_order_at"])
        out.append(d)
    return out


# ----------------------------
# CSV exports
# ----------------------------
def _dollars(cents) -> str:
    return f"{_int(cents) / 100:.2f}"


def _yes_no(v) -> str:
    return "Yes" if v else "No"


# name -> (filename, header, query, per-row formatter)
_EXPORTS = {
    "attendees": (
        "attendees.csv",
        ("Attendee Name", "Attendee Email", "Dietary Restrictions", "Table",
         "Checked In", "Order Name", "Order Email"),
        """
        SELECT a.name, a.email, a.dietary_restrictions, t.name AS table_name,
               a.checked_in, o.customer_name, o.customer_email
        FROM attendees a
        JOIN orders o ON a.order_id = o.id
        LEFT JOIN tables t ON a.table_id = t.id
        WHERE o.status = 'paid'
        ORDER BY t.name, a.name
        """,
        lambda r: (r[0], r[1], r[2], r[3], _yes_no(r[4]), r[5], r[6]),
    ),
    "orders": (
        "orders.csv",
        ("Order ID", "Name", "Email", "Phone", "Payment Method", "Total",
         "Donation", "Status", "Created", "Paid"),
        """
        SELECT id, customer_name, customer_email, customer_phone,
               payment_method, total_cents, donation_cents, status,
               created_at, paid_at
        FROM orders
        ORDER BY created_at DESC
        """,
        lambda r: (r[0], r[1], r[2], r[3], r[4], _dollars(r[5]),
                   _dollars(r[6]), r[7], to_iso(r[8]), to_iso(r[9])),
    ),
    "raffle": (
        "raffle-entries.csv",
        ("Entry #", "Raffle Type", "Purchaser Name", "Purchaser Email"),
        """
        SELECT re.entry_number, p.name, o.customer_name, o.customer_email
        FROM raffle_entries re
        JOIN orders o ON re.order_id = o.id
        JOIN products p ON re.product_id = p.id
        WHERE o.status = 'paid'
        ORDER BY re.entry_number
        """,
        tuple,
    ),
    "donors": (
        "donors.csv",
        ("Name", "Email", "Phone", "Total Donated", "Orders",
         "First Order", "Last Order"),
        """
        SELECT name, email, phone, total_donated_cents, order_count,
               first_order_at, last_order_at
        FROM donors
        ORDER BY total_donated_cents DESC
        """,
        lambda r: (r[0], r[1], r[2], _dollars(r[3]), r[4],
                   to_iso(r[5]), to_iso(r[6])),
    ),
}


def iter_csv(header: Sequence[str], rows) -> Iterator[str]:
    """Yield RFC 4180 CSV text, one record per chunk."""
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\r\n")
    for record in (header, *rows):
        w.writerow(["" if v is None else v for v in record])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)


async def export_csv(
    db: AsyncSession, name: str
) -> Tuple[str, Iterator[str]]:
    """Returns (filename, chunks) for one of the `_EXPORTS` names."""
    try:
        filename, header, sql, fmt = _EXPORTS[name]
    except KeyError:
        raise NotFoundError(f"Unknown export: {name}")
    rows = (await db.execute(text(sql))).all()
    return filename, iter_csv(header, (fmt(r) for r in rows))
