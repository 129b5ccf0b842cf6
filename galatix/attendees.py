"""Attendee roster, name collection and door check-in."""
from __future__ import annotations
from typing import List
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError
from .helpers import normalize_email, now_ts, to_iso
from .model.db import Attendee, SeatingTable
from .schemas import AttendeeUpdate, changes
from .seating import check_capacity

logger = logging.getLogger(__name__)

_ROSTER = """
    SELECT a.id, a.order_id, a.order_item_id, a.name, a.email,
           a.dietary_restrictions, a.table_id, a.checked_in,
           a.checked_in_at, a.created_at,
           t.name AS table_name,
           o.customer_name, o.customer_email, o.status AS order_status
    FROM attendees a
    JOIN orders o ON a.order_id = o.id
    LEFT JOIN tables t ON a.table_id = t.id
    WHERE o.status = 'paid' {extra}
    ORDER BY o.customer_name, a.created_at, a.id
"""


def _row(r) -> dict:
    d = dict(r)
    d["checked_in"] = bool(d["checked_in"])
    d["checked_in_at"] = to_iso(d["checked_in_at"])
    d["created_at"] = to_iso(d["created_at"])
    return d


def attendee_dict(a: Attendee) -> dict:
    return {
        "id": a.id,
        "order_id": a.order_id,
        "order_item_id": a.order_item_id,
        "name": a.name,
        "email": a.email,
        "dietary_restrictions": a.dietary_restrictions,
        "table_id": a.table_id,
        "checked_in": bool(a.checked_in),
        "checked_in_at": to_iso(a.checked_in_at),
    }


async def list_attendees(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(
        text(_ROSTER.format(extra=""))
    )).mappings().all()
    return [_row(r) for r in rows]


async def list_missing_names(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(text(_ROSTER.format(
        extra="AND (a.name IS NULL OR a.name = '')"
    )))).mappings().all()
    return [_row(r) for r in rows]


async def _get(db: AsyncSession, attendee_id: str) -> Attendee:
    a = await db.get(Attendee, attendee_id)
    if a is None:
        raise NotFoundError("Attendee not found")
    return a


async def update_attendee(
    db: AsyncSession, attendee_id: str, patch: AttendeeUpdate
) -> dict:
    fields = changes(patch)
    if fields.get("email"):
        fields["email"] = normalize_email(fields["email"])
    # an empty table id from the form means "unassign"
    if fields.get("table_id") == "":
        fields["table_id"] = None
    async with db.begin():
        a = await _get(db, attendee_id)
        table_id = fields.get("table_id")
        if table_id is not None and table_id != a.table_id:
            table = await db.get(SeatingTable, table_id)
            if table is None:
                raise NotFoundError("Table not found")
            await check_capacity(db, table, [a.id])
        for k, v in fields.items():
            setattr(a, k, v)
    return attendee_dict(a)


async def set_checked_in(
    db: AsyncSession, attendee_id: str, checked_in: bool
) -> dict:
    async with db.begin():
        a = await _get(db, attendee_id)
        a.checked_in = checked_in
        a.checked_in_at = now_ts() if checked_in else None
    logger.info("attendee %s %s", attendee_id,
                "checked in" if checked_in else "check-in undone")
    return attendee_dict(a)
