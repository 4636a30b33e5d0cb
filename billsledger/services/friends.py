from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session

from billsledger.dispatch import DomainEvent, Notice, notice_event
from billsledger.errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from billsledger.models import Friend, FriendRequest, FriendRequestStatus
from billsledger.serializers import iso, user_snippet
from billsledger.services.users import load_users, require_user


def _request_to_dict(r: FriendRequest, users=None) -> dict:
    data = {
        "id": r.id,
        "sender_id": r.sender_id,
        "receiver_id": r.receiver_id,
        "status": r.status.value,
        "created_at": iso(r.created_at),
    }
    if users is not None:
        data["sender"] = user_snippet(users.get(r.sender_id))
    return data


def _load_request(db: Session, request_id: str) -> FriendRequest:
    r = db.execute(select(FriendRequest).where(FriendRequest.id == request_id).with_for_update()).scalar_one_or_none()
    if not r:
        raise NotFound("Friend request not found")
    return r


def are_friends(db: Session, a: str, b: str) -> bool:
    return db.execute(select(Friend.id).where(Friend.user_id == a, Friend.friend_id == b)).first() is not None


def pending_between(db: Session, a: str, b: str) -> FriendRequest | None:
    """Pending request in either direction."""
    return db.execute(
        select(FriendRequest).where(
            FriendRequest.status == FriendRequestStatus.PENDING,
            or_(
                and_(FriendRequest.sender_id == a, FriendRequest.receiver_id == b),
                and_(FriendRequest.sender_id == b, FriendRequest.receiver_id == a),
            ),
        )
    ).scalars().first()


def has_pending_request(db: Session, sender_id: str, receiver_id: str) -> bool:
    return db.execute(
        select(FriendRequest.id).where(
            FriendRequest.sender_id == sender_id,
            FriendRequest.receiver_id == receiver_id,
            FriendRequest.status == FriendRequestStatus.PENDING,
        )
    ).first() is not None


def send_request(db: Session, sender_id: str, receiver_id: str) -> tuple[dict, list[DomainEvent]]:
    if sender_id == receiver_id:
        raise ValidationFailure("Cannot send a friend request to yourself")
    sender = require_user(db, sender_id)
    require_user(db, receiver_id, "Receiver")
    if are_friends(db, sender_id, receiver_id):
        raise Conflict("Already friends")
    if pending_between(db, sender_id, receiver_id):
        raise Conflict("Friend request already pending")

    r = FriendRequest(sender_id=sender_id, receiver_id=receiver_id, status=FriendRequestStatus.PENDING)
    db.add(r)
    db.flush()
    notice = Notice(
        title="New Friend Request",
        message=f"{sender.full_name} sent you a friend request",
        type="FRIEND_REQUEST",
        metadata={"requestId": r.id, "senderId": sender_id},
    )
    event = DomainEvent(
        recipients=[receiver_id],
        event="friend_request_received",
        payload={"requestId": r.id, "senderId": sender_id, "sender": user_snippet(sender)},
        notice=notice,
    )
    return _request_to_dict(r), [event]


def accept_request(db: Session, user_id: str, request_id: str) -> tuple[dict, list[DomainEvent]]:
    """Both Friend rows are written in the caller's transaction or not at all."""
    r = _load_request(db, request_id)
    if r.receiver_id != user_id:
        raise AuthorizationFailure("Only the receiver can accept this request")
    if r.status != FriendRequestStatus.PENDING:
        raise Conflict("Friend request has already been processed")

    r.status = FriendRequestStatus.ACCEPTED
    db.add_all([
        Friend(user_id=r.sender_id, friend_id=r.receiver_id),
        Friend(user_id=r.receiver_id, friend_id=r.sender_id),
    ])
    db.flush()

    receiver = require_user(db, user_id)
    notice = Notice(
        title="Friend Request Accepted",
        message=f"{receiver.full_name} accepted your friend request",
        type="FRIEND_REQUEST_ACCEPTED",
        metadata={"requestId": r.id, "friendId": user_id},
    )
    return _request_to_dict(r), [notice_event([r.sender_id], notice)]


def reject_request(db: Session, user_id: str, request_id: str) -> dict:
    r = _load_request(db, request_id)
    if r.receiver_id != user_id:
        raise AuthorizationFailure("Only the receiver can reject this request")
    if r.status != FriendRequestStatus.PENDING:
        raise Conflict("Friend request has already been processed")
    r.status = FriendRequestStatus.REJECTED
    db.flush()
    return _request_to_dict(r)


def pending_requests(db: Session, user_id: str) -> list[dict]:
    rows = db.execute(
        select(FriendRequest)
        .where(FriendRequest.receiver_id == user_id, FriendRequest.status == FriendRequestStatus.PENDING)
        .order_by(FriendRequest.created_at.desc())
    ).scalars().all()
    users = load_users(db, [r.sender_id for r in rows])
    return [_request_to_dict(r, users) for r in rows]


def friend_ids(db: Session, user_id: str) -> list[str]:
    return list(db.execute(select(Friend.friend_id).where(Friend.user_id == user_id)).scalars().all())


def list_friends(db: Session, user_id: str) -> list[dict]:
    users = load_users(db, friend_ids(db, user_id))
    return [user_snippet(u) for u in sorted(users.values(), key=lambda u: u.username)]


def remove_friend(db: Session, user_id: str, friend_id: str) -> None:
    if not are_friends(db, user_id, friend_id):
        raise NotFound("Friend not found")
    db.execute(
        delete(Friend).where(
            or_(
                and_(Friend.user_id == user_id, Friend.friend_id == friend_id),
                and_(Friend.user_id == friend_id, Friend.friend_id == user_id),
            )
        )
    )
    db.flush()
