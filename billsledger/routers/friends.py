from fastapi import APIRouter, Depends, Query, Request

from billsledger.db import run_db
from billsledger.deps import current_user_id, logger, publish
from billsledger.logging_utils import log_event
from billsledger.schemas import FriendRequestReq
from billsledger.services import friends, users

router = APIRouter(prefix="/api/friends", tags=["friends"])


@router.post("/request", status_code=201)
async def send_request(body: FriendRequestReq, request: Request, user_id: str = Depends(current_user_id)):
    req, events = await run_db(friends.send_request, user_id, body.receiver_id)
    log_event(logger, "friend_request_sent", request_id=req["id"], sender_id=user_id, receiver_id=body.receiver_id)
    await publish(request, events)
    return req


@router.post("/request/{request_id}/accept")
async def accept_request(request_id: str, request: Request, user_id: str = Depends(current_user_id)):
    req, events = await run_db(friends.accept_request, user_id, request_id)
    log_event(logger, "friend_request_accepted", request_id=request_id, user_id=user_id, friend_id=req["sender_id"])
    await publish(request, events)
    return req


@router.post("/request/{request_id}/reject")
async def reject_request(request_id: str, user_id: str = Depends(current_user_id)):
    req = await run_db(friends.reject_request, user_id, request_id)
    log_event(logger, "friend_request_rejected", request_id=request_id, user_id=user_id)
    return req


@router.get("/requests")
async def pending_requests(user_id: str = Depends(current_user_id)):
    return await run_db(friends.pending_requests, user_id)


@router.get("/search")
async def search(
    q: str = Query(min_length=1),
    limit: int = Query(default=20, ge=1, le=50),
    user_id: str = Depends(current_user_id),
):
    return await run_db(users.search_users, user_id, q, limit)


@router.get("")
async def list_friends(request: Request, user_id: str = Depends(current_user_id)):
    rows = await run_db(friends.list_friends, user_id)
    presence = request.app.state.presence
    for row in rows:
        row["is_online"] = await presence.is_online(row["id"])
    return rows


@router.delete("/{friend_id}")
async def remove_friend(friend_id: str, user_id: str = Depends(current_user_id)):
    await run_db(friends.remove_friend, user_id, friend_id)
    log_event(logger, "friend_removed", user_id=user_id, friend_id=friend_id)
    return {"ok": True}
