"""
Back office API.

Every route needs a logged-in admin; anything that writes also needs the
`edit` role. `view` users can read and export.
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .. import attendees, catalog, orders, reports, seating, users
from ..deps import current_user, get_db, get_mailer, require_editor
from ..fulfillment import fulfill_order
from ..infra import timings
from ..mailer import Mailer
from ..model.db import AdminUser
from ..schemas import (
    AssignRequest, AttendeeUpdate, OrderUpdate, ProductCreate, ProductUpdate,
    TableBulkCreate, TableCreate, TableUpdate, UserCreate, UserUpdate,
)

router = APIRouter(
    prefix="/api/admin", tags=["admin"],
    dependencies=[Depends(current_user)],
)
edit = [Depends(require_editor)]


# ----------------------------
# Orders
# ----------------------------
@router.get("/orders")
async def list_orders(
    status: Optional[str] = None, db: AsyncSession = Depends(get_db)
):
    return await orders.list_orders(db, status)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await orders.get_order_detail(db, order_id)


@router.patch("/orders/{order_id}", dependencies=edit)
async def update_order(
    order_id: str, body: OrderUpdate, db: AsyncSession = Depends(get_db)
):
    return await orders.update_order(db, order_id, body)


@router.post("/orders/{order_id}/cancel", dependencies=edit)
async def cancel_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await orders.cancel_order(db, order_id)


async def _fulfill(db, order_id, background, mailer, require_status=None):
    result = await fulfill_order(
        db, order_id, require_status=require_status
    )
    background.add_task(
        mailer.notify_fulfilled, result.receipt, result.previous_status
    )
    return result.as_dict()


@router.post("/orders/{order_id}/complete", dependencies=edit)
async def complete_order(
    order_id: str,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return await _fulfill(db, order_id, background, mailer)


@router.post("/orders/{order_id}/check-received", dependencies=edit)
async def check_received(
    order_id: str,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return await _fulfill(
        db, order_id, background, mailer, require_status="pending_check"
    )


@router.post("/orders/{order_id}/refund", dependencies=edit)
async def refund_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await orders.refund_order(db, order_id)


# ----------------------------
# Attendees
# ----------------------------
@router.get("/attendees")
async def list_attendees(db: AsyncSession = Depends(get_db)):
    return await attendees.list_attendees(db)


@router.get("/attendees/missing-names")
async def missing_names(db: AsyncSession = Depends(get_db)):
    return await attendees.list_missing_names(db)


@router.patch("/attendees/{attendee_id}", dependencies=edit)
async def update_attendee(
    attendee_id: str, body: AttendeeUpdate,
    db: AsyncSession = Depends(get_db),
):
    return await attendees.update_attendee(db, attendee_id, body)


@router.post("/attendees/{attendee_id}/checkin", dependencies=edit)
async def checkin(attendee_id: str, db: AsyncSession = Depends(get_db)):
    return await attendees.set_checked_in(db, attendee_id, True)


@router.post("/attendees/{attendee_id}/undo-checkin", dependencies=edit)
async def undo_checkin(attendee_id: str, db: AsyncSession = Depends(get_db)):
    return await attendees.set_checked_in(db, attendee_id, False)


# ----------------------------
# Tables
# ----------------------------
@router.get("/tables")
async def list_tables(db: AsyncSession = Depends(get_db)):
    return await seating.list_tables(db)


@router.get("/tables/unassigned")
async def unassigned(db: AsyncSession = Depends(get_db)):
    return await seating.list_unassigned(db)


@router.get("/tables/{table_id}")
async def get_table(table_id: str, db: AsyncSession = Depends(get_db)):
    return await seating.get_table(db, table_id)


@router.post("/tables", dependencies=edit)
async def create_table(body: TableCreate, db: AsyncSession = Depends(get_db)):
    return await seating.create_table(db, body)


@router.post("/tables/bulk", dependencies=edit)
async def bulk_create_tables(
    body: TableBulkCreate, db: AsyncSession = Depends(get_db)
):
    return await seating.bulk_create_tables(db, body)


@router.patch("/tables/{table_id}", dependencies=edit)
async def update_table(
    table_id: str, body: TableUpdate, db: AsyncSession = Depends(get_db)
):
    return await seating.update_table(db, table_id, body)


@router.delete("/tables/{table_id}", dependencies=edit)
async def delete_table(table_id: str, db: AsyncSession = Depends(get_db)):
    return await seating.delete_table(db, table_id)


@router.post("/tables/{table_id}/assign", dependencies=edit)
async def assign(
    table_id: str, body: AssignRequest, db: AsyncSession = Depends(get_db)
):
    return await seating.assign_attendees(db, table_id, body.attendee_ids)


@router.delete("/tables/{table_id}/attendees/{attendee_id}",
               dependencies=edit)
async def unassign(
    table_id: str, attendee_id: str, db: AsyncSession = Depends(get_db)
):
    return await seating.unassign_attendee(db, table_id, attendee_id)


# ----------------------------
# Products
# ----------------------------
@router.get("/products")
async def list_products(db: AsyncSession = Depends(get_db)):
    return await catalog.list_all(db)


@router.post("/products", dependencies=edit)
async def create_product(
    body: ProductCreate, db: AsyncSession = Depends(get_db)
):
    return await catalog.create_product(db, body)


@router.patch("/products/{product_id}", dependencies=edit)
async def update_product(
    product_id: str, body: ProductUpdate, db: AsyncSession = Depends(get_db)
):
    return await catalog.update_product(db, product_id, body)


@router.delete("/products/{product_id}", dependencies=edit)
async def delete_product(product_id: str, db: AsyncSession = Depends(get_db)):
    return await catalog.deactivate_product(db, product_id)


# ----------------------------
# Donors
# ----------------------------
@router.get("/donors")
async def list_donors(db: AsyncSession = Depends(get_db)):
    return await reports.list_donors(db)


# ----------------------------
# Users
# ----------------------------
@router.get("/users", dependencies=edit)
async def list_users(db: AsyncSession = Depends(get_db)):
    return await users.list_users(db)


@router.post("/users", dependencies=edit)
async def create_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    return await users.create_user(db, body)


@router.patch("/users/{user_id}", dependencies=edit)
async def update_user(
    user_id: str, body: UserUpdate, db: AsyncSession = Depends(get_db)
):
    return await users.update_user(db, user_id, body)


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    me: AdminUser = Depends(require_editor),
    db: AsyncSession = Depends(get_db),
):
    return await users.delete_user(db, user_id, me.id)


# ----------------------------
# Reports
# ----------------------------
@router.get("/reports/summary")
async def report_summary(db: AsyncSession = Depends(get_db)):
    return await reports.summary(db)


@router.get("/reports/export/{name}")
async def export(name: str, db: AsyncSession = Depends(get_db)):
    filename, chunks = await reports.export_csv(db, name)
    return StreamingResponse(
        chunks,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/timings")
async def get_timings():
    return timings.summary()
