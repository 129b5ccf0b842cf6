from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .. import users
from ..deps import SESSION_USER_KEY, current_user, get_db, get_mailer
from ..mailer import Mailer
from ..model.db import AdminUser
from ..schemas import Credentials, ForgotRequest, ResetRequest

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/setup")
async def setup(
    body: Credentials, request: Request,
    db: AsyncSession = Depends(get_db),
):
    user = await users.setup_first_admin(db, body.email, body.password)
    request.session[SESSION_USER_KEY] = user["id"]
    return {"success": True, "user": user}


@router.post("/login")
async def login(
    body: Credentials, request: Request,
    db: AsyncSession = Depends(get_db),
):
    user = await users.authenticate(db, body.email, body.password)
    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id
    return {"success": True, "user": users.user_dict(user)}


@router.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return {"success": True}


@router.get("/me")
async def me(user: AdminUser = Depends(current_user)):
    return {"user": users.user_dict(user)}


@router.post("/forgot")
async def forgot(
    body: ForgotRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    found = await users.start_password_reset(db, body.email)
    if found is not None:
        background.add_task(mailer.send_password_reset, *found)
    # same answer either way so addresses can't be probed
    return {
        "success": True,
        "message": "If that email exists, a reset link has been sent",
    }


@router.post("/reset")
async def reset(body: ResetRequest, db: AsyncSession = Depends(get_db)):
    await users.reset_password(db, body.token, body.password)
    return {"success": True, "message": "Password has been reset"}
