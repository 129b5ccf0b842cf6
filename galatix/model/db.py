from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    JSON,
    select,
    func,
)
from sqlalchemy.ext.asyncio import AsyncConnection

from ..helpers import now_ts


Base = declarative_base()

CATEGORIES = ("ticket", "sponsorship", "raffle", "donation")
SEATED_CATEGORIES = ("ticket", "sponsorship")
ORDER_STATUSES = ("pending", "pending_check", "paid", "cancelled", "refunded")
PENDING_STATUSES = ("pending", "pending_check")
PAYMENT_METHODS = ("card", "check")
ROLES = ("edit", "view")

RAFFLE_COUNTER = "raffle_entry"


def _in(col: str, values) -> str:
    return f"{col} IN ({', '.join(repr(v) for v in values)})"


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint(_in("category", CATEGORIES), name="ck_category"),
        CheckConstraint("price_cents >= 0", name="ck_price"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)
    # NULL = unlimited
    quantity_available = Column(Integer, nullable=True)
    quantity_sold = Column(Integer, nullable=False, default=0)
    # seats per unit; NULL counts as 1
    table_size = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False, default=now_ts)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_in("status", ORDER_STATUSES), name="ck_status"),
        CheckConstraint(
            _in("payment_method", PAYMENT_METHODS), name="ck_payment_method"
        ),
        Index("idx_orders_status", "status"),
        Index("idx_orders_email", "customer_email"),
    )
    id = Column(String, primary_key=True)
    gateway_session_id = Column(String, nullable=True, unique=True)
    payment_reference = Column(String, nullable=True)
    payment_method = Column(String, nullable=False, default="card")

    # pending | pending_check | paid | cancelled | refunded
    status = Column(String, nullable=False, default="pending")
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    subtotal_cents = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)
    donation_cents = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    # {order_item_id: [{name, email, dietary_restrictions}, ...]}
    attendee_data = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    paid_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_quantity"),
        Index("idx_order_items_order", "order_id"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)
    # insertion order within an order; fulfillment walks items by it
    position = Column(Integer, nullable=False, default=0)


class SeatingTable(Base):
    __tablename__ = "tables"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_capacity"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    capacity = Column(Integer, nullable=False, default=8)
    is_reserved = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)


class Attendee(Base):
    __tablename__ = "attendees"
    __table_args__ = (
        Index("idx_attendees_order", "order_id"),
        Index("idx_attendees_table", "table_id"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    order_item_id = Column(
        String, ForeignKey("order_items.id"), nullable=True
    )
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    dietary_restrictions = Column(String, nullable=True)
    table_id = Column(String, ForeignKey("tables.id"), nullable=True)
    checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class RaffleEntry(Base):
    __tablename__ = "raffle_entries"
    __table_args__ = (
        Index("idx_raffle_entries_order", "order_id"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    attendee_id = Column(String, ForeignKey("attendees.id"), nullable=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    entry_number = Column(Integer, nullable=False, unique=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class Donor(Base):
    __tablename__ = "donors"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    total_donated_cents = Column(Integer, nullable=False, default=0)
    order_count = Column(Integer, nullable=False, default=0)
    first_order_at = Column(Float, nullable=True)
    last_order_at = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class AdminUser(Base):
    __tablename__ = "admin_users"
    __table_args__ = (
        CheckConstraint(_in("role", ROLES), name="ck_role"),
    )
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default="view")
    reset_token = Column(String, nullable=True, unique=True)
    reset_token_expires = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    last_login_at = Column(Float, nullable=True)


class EmailLog(Base):
    __tablename__ = "email_log"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=True)
    recipient = Column(String, nullable=False)
    email_type = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    provider_id = Column(String, nullable=True)
    # sent | failed
    status = Column(String, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class Counter(Base):
    __tablename__ = "counters"
    name = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


async def create_schema(conn: AsyncConnection) -> None:
    """
    Create tables if missing and make sure the raffle counter row exists,
    seeded from the highest entry number already handed out.
    """
    await conn.run_sync(Base.metadata.create_all)
    row = (await conn.execute(
        select(Counter.value).where(Counter.name == RAFFLE_COUNTER)
    )).first()
    if row is None:
        current = (await conn.execute(
            select(func.coalesce(func.max(RaffleEntry.entry_number), 0))
        )).scalar_one()
        await conn.execute(
            Counter.__table__.insert().values(
                name=RAFFLE_COUNTER, value=int(current)
            )
        )
