"""Admin accounts: passwords, roles and reset tokens."""
from __future__ import annotations
from typing import List, Optional, Tuple
import logging
import secrets

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from .errors import (
    AuthorizationError, ConflictError, ForbiddenError, NotFoundError,
    ValidationError,
)
from .helpers import is_valid_email, new_id, normalize_email, now_ts, to_iso
from .model.db import AdminUser
from .schemas import UserCreate, UserUpdate, changes

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
RESET_TOKEN_TTL = 3600


def _check_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


async def hash_password(password: str) -> str:
    # bcrypt is deliberately slow; keep it off the event loop
    hashed = await run_in_threadpool(
        bcrypt.hashpw, password.encode("utf-8"), bcrypt.gensalt()
    )
    return hashed.decode("utf-8")


async def verify_password(password: str, hashed: str) -> bool:
    try:
        return await run_in_threadpool(
            bcrypt.checkpw, password.encode("utf-8"), hashed.encode("utf-8")
        )
    except ValueError:
        # not a bcrypt hash
        return False


def user_dict(u: AdminUser) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "role": u.role,
        "created_at": to_iso(u.created_at),
        "last_login_at": to_iso(u.last_login_at),
    }


async def _by_email(db: AsyncSession, email: str) -> Optional[AdminUser]:
    return (await db.execute(
        select(AdminUser).where(AdminUser.email == normalize_email(email))
    )).scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: str) -> AdminUser:
    u = await db.get(AdminUser, user_id)
    if u is None:
        raise NotFoundError("User not found")
    return u


async def count_users(db: AsyncSession) -> int:
    return int((await db.execute(
        select(func.count()).select_from(AdminUser)
    )).scalar_one())


async def _insert(db: AsyncSession, email: str, password: str,
                  role: str) -> AdminUser:
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("A valid email is required")
    _check_password(password)
    if await _by_email(db, email) is not None:
        raise ConflictError("A user with that email already exists")
    u = AdminUser(
        id=new_id(),
        email=email,
        password_hash=await hash_password(password),
        role=role,
        created_at=now_ts(),
    )
    db.add(u)
    return u


async def setup_first_admin(db: AsyncSession, email: str,
                            password: str) -> dict:
    async with db.begin():
        if await count_users(db) > 0:
            raise ForbiddenError("Setup already completed")
        u = await _insert(db, email, password, "edit")
    logger.info("first admin %s created", u.email)
    return user_dict(u)


async def authenticate(db: AsyncSession, email: str,
                       password: str) -> AdminUser:
    async with db.begin():
        u = await _by_email(db, email)
        # same answer for unknown user and wrong password
        if u is None or not await verify_password(password, u.password_hash):
            raise AuthorizationError("Invalid email or password")
        u.last_login_at = now_ts()
    return u


async def start_password_reset(
    db: AsyncSession, email: str
) -> Optional[Tuple[str, str]]:
    """Returns (email, token) when the address belongs to a user."""
    async with db.begin():
        u = await _by_email(db, email)
        if u is None:
            return None
        token = secrets.token_hex(32)
        u.reset_token = token
        u.reset_token_expires = now_ts() + RESET_TOKEN_TTL
    logger.info("password reset requested for %s", u.email)
    return u.email, token


async def reset_password(db: AsyncSession, token: str,
                         password: str) -> None:
    _check_password(password)
    async with db.begin():
        u = (await db.execute(
            select(AdminUser).where(AdminUser.reset_token == token)
        )).scalar_one_or_none()
        if (u is None or u.reset_token_expires is None
                or u.reset_token_expires < now_ts()):
            raise ValidationError("Invalid or expired reset token")
        u.password_hash = await hash_password(password)
        u.reset_token = None
        u.reset_token_expires = None
    logger.info("password reset for %s", u.email)


async def list_users(db: AsyncSession) -> List[dict]:
    rows = (await db.execute(
        select(AdminUser).order_by(AdminUser.email)
    )).scalars().all()
    return [user_dict(u) for u in rows]


async def create_user(db: AsyncSession, body: UserCreate) -> dict:
    async with db.begin():
        u = await _insert(db, body.email, body.password, body.role)
    return user_dict(u)


async def update_user(db: AsyncSession, user_id: str,
                      patch: UserUpdate) -> dict:
    fields = changes(patch)
    if "role" in fields and fields["role"] is None:
        raise ValidationError("role cannot be null")
    if "password" in fields:
        _check_password(fields["password"])
    async with db.begin():
        u = await get_user(db, user_id)
        if "role" in fields:
            u.role = fields["role"]
        if "password" in fields:
            u.password_hash = await hash_password(fields["password"])
    return user_dict(u)


async def delete_user(db: AsyncSession, user_id: str,
                      current_user_id: str) -> dict:
    if user_id == current_user_id:
        raise ValidationError("You cannot delete your own account")
    async with db.begin():
        u = await get_user(db, user_id)
        await db.delete(u)
    return {"success": True}
