"""Tables and who sits at them."""
from __future__ import annotations
from typing import List

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, NotFoundError, ValidationError
from .helpers import new_id
from .model.db import Attendee, SeatingTable
from .schemas import (
    TableBulkCreate, TableCreate, TableUpdate, changes,
)


def table_dict(t: SeatingTable, current_count: int = 0) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "capacity": t.capacity,
        "is_reserved": bool(t.is_reserved),
        "notes": t.notes,
        "current_count": int(current_count),
    }


async def _get(db: AsyncSession, table_id: str) -> SeatingTable:
    t = await db.get(SeatingTable, table_id)
    if t is None:
        raise NotFoundError("Table not found")
    return t


async def _occupants(db: AsyncSession, table_id: str) -> int:
    return int((await db.execute(
        text("SELECT COUNT(*) FROM attendees WHERE table_id = :id"),
        {"id": table_id},
    )).scalar_one())


async def list_tables(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(text("""
        SELECT t.id, t.name, t.capacity, t.is_reserved, t.notes,
               COUNT(a.id) AS current_count
        FROM tables t
        LEFT JOIN attendees a ON a.table_id = t.id
        GROUP BY t.id, t.name, t.capacity, t.is_reserved, t.notes
        ORDER BY t.name
    """))).mappings().all()
    return [
        {**dict(r), "is_reserved": bool(r["is_reserved"]),
         "current_count": int(r["current_count"])}
        for r in rows
    ]


async def get_table(db: AsyncSession, table_id: str) -> dict:
    t = await _get(db, table_id)
    rows = (await db.execute(text("""
        SELECT a.id, a.name, a.email, a.dietary_restrictions, a.checked_in,
               a.order_id, o.status AS order_status,
               o.customer_name, o.customer_email
        FROM attendees a
        JOIN orders o ON a.order_id = o.id
        WHERE a.table_id = :id
        ORDER BY a.name
    """), {"id": table_id})).mappings().all()
    out = table_dict(t, await _occupants(db, table_id))
    out["attendees"] = [
        {**dict(r), "checked_in": bool(r["checked_in"])} for r in rows
    ]
    return out


async def create_table(db: AsyncSession, body: TableCreate) -> dict:
    t = SeatingTable(id=new_id(), **body.model_dump())
    async with db.begin():
        db.add(t)
    return table_dict(t)


async def bulk_create_tables(
    db: AsyncSession, body: TableBulkCreate
) -> List[dict]:
    async with db.begin():
        existing = int((await db.execute(
            text("SELECT COUNT(*) FROM tables")
        )).scalar_one())
        tables = [
            SeatingTable(
                id=new_id(),
                name=f"{body.prefix} {existing + i + 1}".strip(),
                capacity=body.capacity,
                is_reserved=False,
            )
            for i in range(body.count)
        ]
        db.add_all(tables)
    return [table_dict(t) for t in tables]


async def update_table(
    db: AsyncSession, table_id: str, patch: TableUpdate
) -> dict:
    fields = changes(patch)
    for k in ("name", "capacity", "is_reserved"):
        if k in fields and fields[k] is None:
            raise ValidationError(f"{k} cannot be null")
    async with db.begin():
        t = await _get(db, table_id)
        count = await _occupants(db, table_id)
        if "capacity" in fields and fields["capacity"] < count:
            raise ConflictError(
                f"Table has {count} assigned attendees - "
                f"capacity cannot go below that"
            )
        for k, v in fields.items():
            setattr(t, k, v)
    return table_dict(t, count)


async def delete_table(db: AsyncSession, table_id: str) -> dict:
    async with db.begin():
        t = await _get(db, table_id)
        count = await _occupants(db, table_id)
        if count:
            raise ConflictError(
                f"Table has {count} assigned attendees - unassign them first"
            )
        await db.delete(t)
    return {"success": True}


async def list_unassigned(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(text("""
        SELECT a.id, a.name, a.email, a.dietary_restrictions, a.order_id,
               o.customer_name, o.customer_email, o.status AS order_status
        FROM attendees a
        JOIN orders o ON a.order_id = o.id
        WHERE a.table_id IS NULL
          AND o.status IN ('paid', 'pending_check')
        ORDER BY o.customer_name, a.name
    """))).mappings().all()
    return [dict(r) for r in rows]


async def check_capacity(
    db: AsyncSession, table: SeatingTable, attendee_ids: List[str]
) -> None:
    """Raise ConflictError when seating `attendee_ids` would overfill `table`."""
    already = (await db.execute(
        select(func.count()).select_from(Attendee).where(
            Attendee.table_id == table.id, Attendee.id.in_(attendee_ids)
        )
    )).scalar_one()
    incoming = len(attendee_ids) - int(already)
    available = table.capacity - await _occupants(db, table.id)
    if incoming > available:
        raise ConflictError(
            f"Table only has {max(0, available)} seats available"
        )


async def assign_attendees(
    db: AsyncSession, table_id: str, attendee_ids: List[str]
) -> dict:
    ids = list(dict.fromkeys(attendee_ids))
    if not ids:
        raise ValidationError("attendee_ids is required")
    async with db.begin():
        table = await _get(db, table_id)
        found = set((await db.execute(
            select(Attendee.id).where(Attendee.id.in_(ids))
        )).scalars().all())
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError(f"Attendee {missing[0]} not found")
        await check_capacity(db, table, ids)
        await db.execute(
            update(Attendee).where(Attendee.id.in_(ids))
            .values(table_id=table_id)
        )
    return {"success": True, "assigned": len(ids)}


async def unassign_attendee(
    db: AsyncSession, table_id: str, attendee_id: str
) -> dict:
    async with db.begin():
        res = await db.execute(
            update(Attendee)
            .where(Attendee.id == attendee_id, Attendee.table_id == table_id)
            .values(table_id=None)
        )
        if res.rowcount == 0:
            raise NotFoundError("Attendee is not assigned to this table")
    return {"success": True}
