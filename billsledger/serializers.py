"""Row → JSON-ready dict helpers shared by the services and the socket layer."""
from datetime import datetime, timezone
from decimal import Decimal

from billsledger.models import (
    Bill,
    BillParticipant,
    Conversation,
    Message,
    Notification,
    Organization,
    OrganizationMember,
    Transaction,
    User,
)


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    # SQLite trả về naive datetime; coi như UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def money(value: Decimal | None) -> float | None:
    return None if value is None else float(value)


def user_snippet(u: User | None) -> dict | None:
    if u is None:
        return None
    return {"id": u.id, "username": u.username, "full_name": u.full_name, "avatar": u.avatar}


def user_profile(u: User) -> dict:
    return {
        **user_snippet(u),
        "email": u.email,
        "phone_number": u.phone_number,
        "bio": u.bio,
        "created_at": iso(u.created_at),
    }


def participant_to_dict(p: BillParticipant, users: dict[str, User] | None = None) -> dict:
    data = {
        "id": p.id,
        "bill_id": p.bill_id,
        "user_id": p.user_id,
        "amount": money(p.amount),
        "paid_amount": money(p.paid_amount),
        "is_paid": p.is_paid,
        "paid_at": iso(p.paid_at),
    }
    if users is not None:
        data["user"] = user_snippet(users.get(p.user_id))
    return data


def bill_to_dict(b: Bill, users: dict[str, User] | None = None) -> dict:
    data = {
        "id": b.id,
        "creator_id": b.creator_id,
        "conversation_id": b.conversation_id,
        "title": b.title,
        "description": b.description,
        "total_amount": money(b.total_amount),
        "currency": b.currency,
        "status": b.status.value,
        "due_date": iso(b.due_date),
        "paid_at": iso(b.paid_at),
        "created_at": iso(b.created_at),
        "participants": [participant_to_dict(p, users) for p in b.participants],
    }
    if users is not None:
        data["creator"] = user_snippet(users.get(b.creator_id))
    return data


def transaction_to_dict(t: Transaction, users: dict[str, User] | None = None) -> dict:
    data = {
        "id": t.id,
        "sender_id": t.sender_id,
        "receiver_id": t.receiver_id,
        "bill_id": t.bill_id,
        "amount": money(t.amount),
        "currency": t.currency,
        "description": t.description,
        "reference": t.reference,
        "type": t.type.value,
        "status": t.status.value,
        "created_at": iso(t.created_at),
    }
    if users is not None:
        data["sender"] = user_snippet(users.get(t.sender_id))
        data["receiver"] = user_snippet(users.get(t.receiver_id))
    return data


def message_to_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "sender_id": m.sender_id,
        "content": m.content,
        "type": m.type.value,
        "attachments": list(m.attachments or []),
        "created_at": iso(m.created_at),
        "sender": user_snippet(m.sender),
    }


def conversation_to_dict(c: Conversation, users: dict[str, User] | None = None) -> dict:
    data = {
        "id": c.id,
        "type": c.type.value,
        "name": c.name,
        "last_message": c.last_message,
        "last_message_at": iso(c.last_message_at),
        "created_at": iso(c.created_at),
        "participant_ids": [p.user_id for p in c.participants],
    }
    if users is not None:
        data["participants"] = [user_snippet(users.get(p.user_id)) for p in c.participants]
    return data


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "metadata": n.meta or {},
        "is_read": n.is_read,
        "created_at": iso(n.created_at),
    }


def organization_to_dict(o: Organization, users: dict[str, User] | None = None) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "description": o.description,
        "avatar": o.avatar,
        "creator_id": o.creator_id,
        "created_at": iso(o.created_at),
        "members": [member_to_dict(m, users) for m in o.members],
    }


def member_to_dict(m: OrganizationMember, users: dict[str, User] | None = None) -> dict:
    data = {"user_id": m.user_id, "role": m.role.value, "joined_at": iso(m.joined_at)}
    if users is not None:
        data["user"] = user_snippet(users.get(m.user_id))
    return data
