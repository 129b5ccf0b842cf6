"""
Request-scoped dependencies.

Long-lived handles (engine, gateway adapter, mailer, event store) are built
once in `create_app()` and parked on `app.state`; these functions hand them
to route handlers.
"""
from typing import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import AuthorizationError, ForbiddenError
from .gateway import PaymentAdapter
from .mailer import Mailer
from .model.db import AdminUser

SESSION_USER_KEY = "admin_user_id"


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    state = request.app.state
    # DB GATE
    async with state.gated():
        async with state.sessions() as session:
            yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_events(request: Request):
    return request.app.state.events


async def current_user(
    request: Request, db: AsyncSession = Depends(get_db)
) -> AdminUser:
    user_id = request.session.get(SESSION_USER_KEY)
    if not user_id:
        raise AuthorizationError("Not authenticated")
    # own transaction, so the handler's service call starts on a clean session
    async with db.begin():
        user = await db.get(AdminUser, user_id)
    if user is None:
        request.session.clear()
        raise AuthorizationError("Not authenticated")
    return user


async def require_editor(
    user: AdminUser = Depends(current_user),
) -> AdminUser:
    if user.role != "edit":
        raise ForbiddenError("Edit access required")
    return user
