from fastapi import APIRouter, Depends, Header, Request

from billsledger.auth import hash_password_async, verify_password_async
from billsledger.db import run_db
from billsledger.deps import current_user_id, get_redis, logger
from billsledger.errors import AuthenticationFailure
from billsledger.logging_utils import log_event
from billsledger.redis_utils import bearer_token, create_session, delete_session
from billsledger.schemas import LoginReq, RegisterReq, UpdateProfileReq
from billsledger.services import users

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=201)
async def register(body: RegisterReq, request: Request):
    pw_hash = await hash_password_async(body.password)
    user = await run_db(users.register, body, pw_hash)
    token = await create_session(get_redis(request), user["id"])
    log_event(logger, "register_success", user_id=user["id"], username=user["username"])
    return {"user": user, "token": token}


@router.post("/login")
async def login(body: LoginReq, request: Request):
    creds = await run_db(users.credentials_for, body.email)
    if not creds:
        log_event(logger, "login_failed", reason="user_not_found")
        raise AuthenticationFailure("Invalid credentials")
    if not await verify_password_async(body.password, creds["password_hash"]):
        log_event(logger, "login_failed", reason="invalid_password", user_id=creds["id"])
        raise AuthenticationFailure("Invalid credentials")
    token = await create_session(get_redis(request), creds["id"])
    log_event(logger, "login_success", user_id=creds["id"])
    return {"user": creds["user"], "token": token}


@router.post("/logout")
async def logout(
    request: Request,
    authorization: str | None = Header(default=None),
    user_id: str = Depends(current_user_id),
):
    await delete_session(get_redis(request), bearer_token(authorization))
    log_event(logger, "logout", user_id=user_id)
    return {"ok": True}


@router.get("/me")
async def me(user_id: str = Depends(current_user_id)):
    return await run_db(users.get_profile, user_id)


@router.put("/profile")
async def update_profile(body: UpdateProfileReq, user_id: str = Depends(current_user_id)):
    user = await run_db(users.update_profile, user_id, body)
    log_event(logger, "profile_updated", user_id=user_id, fields=sorted(body.model_dump(exclude_unset=True)))
    return user
