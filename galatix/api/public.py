from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .. import catalog, orders
from ..checkout import create_checkout
from ..config import Settings
from ..deps import get_adapter, get_db, get_mailer, get_settings
from ..gateway import PaymentAdapter
from ..mailer import Mailer
from ..schemas import CheckoutRequest

router = APIRouter(prefix="/api", tags=["storefront"])


@router.get("/products")
async def list_products(db: AsyncSession = Depends(get_db)):
    return await catalog.list_active_grouped(db)


@router.get("/products/{product_id}")
async def get_product(product_id: str, db: AsyncSession = Depends(get_db)):
    p = await catalog.get_product(db, product_id)
    return catalog.product_dict(p)


@router.post("/checkout")
async def checkout(
    req: CheckoutRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
):
    result = await create_checkout(db, req, adapter, settings.base_url)
    if result.status == "pending_check":
        # check orders never see a gateway; confirm receipt of the order now
        receipt = await orders.load_receipt(db, result.order_id)
        background.add_task(mailer.notify_order_placed, receipt)
    return result.as_dict()


@router.get("/orders/by-session/{session_id}")
async def order_by_session(
    session_id: str, db: AsyncSession = Depends(get_db)
):
    return await orders.public_summary_by_session(db, session_id)


@router.get("/orders/{order_id}")
async def order_status(order_id: str, db: AsyncSession = Depends(get_db)):
    return await orders.public_summary(db, order_id)
