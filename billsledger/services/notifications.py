import math

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from billsledger.dispatch import Notice
from billsledger.errors import AuthorizationFailure, NotFound
from billsledger.models import Notification
from billsledger.serializers import notification_to_dict


def store_notices(db: Session, pending: list[tuple[str, Notice]]) -> int:
    """Persist one Notification row per (user_id, notice) pair."""
    db.add_all(
        Notification(
            user_id=user_id,
            title=n.title,
            message=n.message,
            type=n.type,
            meta=dict(n.metadata),
            is_read=False,
        )
        for user_id, n in pending
    )
    db.flush()
    return len(pending)


def unread_count(db: Session, user_id: str) -> int:
    return db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    ).scalar_one()


def list_notifications(db: Session, user_id: str, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
    cond = [Notification.user_id == user_id]
    if unread_only:
        cond.append(Notification.is_read.is_(False))
    total = db.execute(select(func.count()).select_from(Notification).where(*cond)).scalar_one()
    rows = db.execute(
        select(Notification)
        .where(*cond)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "notifications": [notification_to_dict(n) for n in rows],
        "unread_count": unread_count(db, user_id),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


def _owned(db: Session, user_id: str, notification_id: str) -> Notification:
    n = db.get(Notification, notification_id)
    if not n:
        raise NotFound("Notification not found")
    if n.user_id != user_id:
        raise AuthorizationFailure("Not your notification")
    return n


def mark_read(db: Session, user_id: str, notification_id: str) -> dict:
    n = _owned(db, user_id, notification_id)
    n.is_read = True
    db.flush()
    return notification_to_dict(n)


def mark_all_read(db: Session, user_id: str) -> int:
    res = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    return res.rowcount or 0


def delete_notification(db: Session, user_id: str, notification_id: str) -> None:
    db.delete(_owned(db, user_id, notification_id))
    db.flush()
