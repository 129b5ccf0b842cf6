"""Product catalog: storefront reads and admin edits."""
from __future__ import annotations
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError, ValidationError
from .helpers import new_id, now_ts, to_iso
from .model.db import CATEGORIES, Product
from .schemas import ProductCreate, ProductUpdate, changes

# columns a PATCH may not set to null
_REQUIRED = ("name", "category", "price_cents", "is_active", "sort_order")


def product_dict(p: Product) -> Dict[str, Any]:
    remaining = None
    if p.quantity_available is not None:
        remaining = max(0, p.quantity_available - p.quantity_sold)
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "category": p.category,
        "price_cents": p.price_cents,
        "quantity_available": p.quantity_available,
        "quantity_sold": p.quantity_sold,
        "quantity_remaining": remaining,
        "table_size": p.table_size,
        "is_active": bool(p.is_active),
        "sort_order": p.sort_order,
        "created_at": to_iso(p.created_at),
    }


async def list_active_grouped(db: AsyncSession) -> Dict[str, List[dict]]:
    rows = (await db.execute(
        select(Product)
        .where(Product.is_active.is_(True))
        .order_by(Product.category, Product.sort_order, Product.price_cents)
    )).scalars().all()
    grouped: Dict[str, List[dict]] = {c: [] for c in CATEGORIES}
    for p in rows:
        grouped[p.category].append(product_dict(p))
    return grouped


async def list_all(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(
        select(Product).order_by(Product.category, Product.sort_order)
    )).scalars().all()
    return [product_dict(p) for p in rows]


async def get_product(db: AsyncSession, product_id: str) -> Product:
    p = await db.get(Product, product_id)
    if p is None:
        raise NotFoundError("Product not found")
    return p


async def create_product(db: AsyncSession, body: ProductCreate) -> dict:
    p = Product(
        id=new_id(),
        quantity_sold=0,
        created_at=now_ts(),
        **body.model_dump(),
    )
    async with db.begin():
        db.add(p)
    return product_dict(p)


async def update_product(
    db: AsyncSession, product_id: str, patch: ProductUpdate
) -> dict:
    fields = changes(patch)
    for k in _REQUIRED:
        if k in fields and fields[k] is None:
            raise ValidationError(f"{k} cannot be null")
    async with db.begin():
        p = await get_product(db, product_id)
        for k, v in fields.items():
            setattr(p, k, v)
    return product_dict(p)


async def deactivate_product(db: AsyncSession, product_id: str) -> dict:
    # products are referenced by historical orders; never hard-delete
    async with db.begin():
        p = await get_product(db, product_id)
        p.is_active = False
    return product_dict(p)
