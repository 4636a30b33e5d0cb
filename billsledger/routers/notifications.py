from fastapi import APIRouter, Depends, Query

from billsledger.db import run_db
from billsledger.deps import current_user_id
from billsledger.services import notifications

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = False,
    user_id: str = Depends(current_user_id),
):
    return await run_db(notifications.list_notifications, user_id, page, limit, unread_only)


@router.get("/unread-count")
async def unread_count(user_id: str = Depends(current_user_id)):
    return {"count": await run_db(notifications.unread_count, user_id)}


@router.put("/read-all")
async def mark_all_read(user_id: str = Depends(current_user_id)):
    return {"updated": await run_db(notifications.mark_all_read, user_id)}


@router.put("/{notification_id}/read")
async def mark_read(notification_id: str, user_id: str = Depends(current_user_id)):
    return await run_db(notifications.mark_read, user_id, notification_id)


@router.delete("/{notification_id}")
async def delete_notification(notification_id: str, user_id: str = Depends(current_user_id)):
    await run_db(notifications.delete_notification, user_id, notification_id)
    return {"ok": True}
