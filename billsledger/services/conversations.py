from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from billsledger.dispatch import Notice
from billsledger.errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from billsledger.models import (
    Conversation,
    ConversationParticipant,
    ConversationType,
    Message,
    MessageType,
    utcnow,
)
from billsledger.schemas import GroupConversationReq
from billsledger.serializers import conversation_to_dict, message_to_dict
from billsledger.services.users import load_users, require_user

PREVIEW_LEN = 100


def direct_key(a: str, b: str) -> str:
    lo, hi = sorted((a, b))
    return f"{lo}:{hi}"


def _load(db: Session, conversation_id: str) -> Conversation:
    c = db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(selectinload(Conversation.participants))
    ).scalar_one_or_none()
    if not c:
        raise NotFound("Conversation not found")
    return c


def _membership(db: Session, conversation_id: str, user_id: str) -> ConversationParticipant | None:
    return db.execute(
        select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()


def is_participant(db: Session, conversation_id: str, user_id: str) -> bool:
    return _membership(db, conversation_id, user_id) is not None


def _with_users(db: Session, c: Conversation) -> dict:
    return conversation_to_dict(c, load_users(db, [p.user_id for p in c.participants]))


def _find_direct(db: Session, key: str) -> Conversation | None:
    return db.execute(
        select(Conversation).where(Conversation.direct_key == key).options(selectinload(Conversation.participants))
    ).scalar_one_or_none()


def create_or_get_direct(db: Session, user_id: str, other_id: str) -> dict:
    """One DIRECT conversation per unordered pair; repeat calls return it."""
    if other_id == user_id:
        raise ValidationFailure("Cannot start a conversation with yourself")
    require_user(db, other_id, "Participant")
    key = direct_key(user_id, other_id)
    existing = _find_direct(db, key)
    if existing:
        return _with_users(db, existing)

    c = Conversation(type=ConversationType.DIRECT, direct_key=key)
    c.participants = [ConversationParticipant(user_id=user_id), ConversationParticipant(user_id=other_id)]
    db.add(c)
    try:
        db.flush()
    except IntegrityError:
        # lost the race on direct_key: nothing else was written in this unit
        db.rollback()
        existing = _find_direct(db, key)
        if not existing:
            raise
        return _with_users(db, existing)
    return _with_users(db, c)


def create_group(db: Session, user_id: str, body: GroupConversationReq) -> dict:
    others = [uid for uid in dict.fromkeys(body.participant_ids) if uid != user_id]
    if len(others) < 2:
        raise ValidationFailure("Group conversations need at least two other participants")
    users = load_users(db, [user_id, *others])
    missing = [uid for uid in others if uid not in users]
    if missing:
        raise NotFound(f"Participant does not exist: {missing[0]}")

    c = Conversation(type=ConversationType.GROUP, name=body.name)
    c.participants = [ConversationParticipant(user_id=uid) for uid in [user_id, *others]]
    db.add(c)
    db.flush()
    return conversation_to_dict(c, users)


def list_conversations(db: Session, user_id: str) -> list[dict]:
    memberships = db.execute(
        select(ConversationParticipant).where(ConversationParticipant.user_id == user_id)
    ).scalars().all()
    if not memberships:
        return []
    last_read = {m.conversation_id: m.last_read_at for m in memberships}
    convs = (
        db.execute(
            select(Conversation)
            .where(Conversation.id.in_(last_read))
            .options(selectinload(Conversation.participants))
            .order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
        )
        .scalars()
        .all()
    )
    users = load_users(db, {p.user_id for c in convs for p in c.participants})
    out = []
    for c in convs:
        stmt = select(func.count()).select_from(Message).where(
            Message.conversation_id == c.id, Message.sender_id != user_id
        )
        if last_read[c.id] is not None:
            stmt = stmt.where(Message.created_at > last_read[c.id])
        data = conversation_to_dict(c, users)
        data["unread_count"] = db.execute(stmt).scalar_one()
        out.append(data)
    return out


def get_conversation(db: Session, user_id: str, conversation_id: str) -> dict:
    c = _load(db, conversation_id)
    if all(p.user_id != user_id for p in c.participants):
        raise AuthorizationFailure("You are not a participant of this conversation")
    return _with_users(db, c)


def get_messages(db: Session, user_id: str, conversation_id: str, page: int = 1, limit: int = 50) -> dict:
    """Page of messages, oldest first within the page; marks the conversation read."""
    membership = _membership(db, conversation_id, user_id)
    if not membership:
        if not db.get(Conversation, conversation_id):
            raise NotFound("Conversation not found")
        raise AuthorizationFailure("You are not a participant of this conversation")

    total = db.execute(
        select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
    ).scalar_one()
    rows = (
        db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.sender))
            .order_by(Message.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    membership.last_read_at = utcnow()
    db.flush()
    return {
        "messages": [message_to_dict(m) for m in reversed(rows)],
        "pagination": {"page": page, "limit": limit, "total": total, "hasMore": page * limit < total},
    }


def persist_message(
    db: Session,
    sender_id: str,
    conversation_id: str,
    content: str,
    type: MessageType = MessageType.TEXT,
    attachments: list[str] | None = None,
) -> tuple[dict, list[str], Notice]:
    """
    Append a message and bump the conversation's last-message fields.

    Returns the serialized message, every participant id and the notice to
    store for whoever is offline.
    """
    c = _load(db, conversation_id)
    participant_ids = [p.user_id for p in c.participants]
    if sender_id not in participant_ids:
        raise AuthorizationFailure("You are not a participant of this conversation")
    sender = require_user(db, sender_id, "Sender")

    m = Message(
        conversation_id=c.id,
        sender=sender,
        content=content,
        type=type,
        attachments=list(attachments or []),
    )
    db.add(m)
    c.last_message = content
    c.last_message_at = utcnow()
    db.flush()

    notice = Notice(
        title=f"New message from {sender.full_name}",
        message=content[:PREVIEW_LEN],
        type="MESSAGE",
        metadata={"conversationId": c.id, "messageId": m.id},
    )
    return message_to_dict(m), participant_ids, notice


def add_participant(db: Session, user_id: str, conversation_id: str, new_user_id: str) -> dict:
    c = _load(db, conversation_id)
    if c.type != ConversationType.GROUP:
        raise ValidationFailure("Participants can only be added to group conversations")
    ids = {p.user_id for p in c.participants}
    if user_id not in ids:
        raise AuthorizationFailure("You are not a participant of this conversation")
    if new_user_id in ids:
        raise Conflict("User is already a participant")
    require_user(db, new_user_id)
    c.participants.append(ConversationParticipant(user_id=new_user_id))
    db.flush()
    return _with_users(db, c)


def leave_conversation(db: Session, user_id: str, conversation_id: str) -> None:
    membership = _membership(db, conversation_id, user_id)
    if not membership:
        raise NotFound("You are not a participant of this conversation")
    db.delete(membership)
    db.flush()
