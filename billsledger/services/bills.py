from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from billsledger.config import DEFAULT_CURRENCY
from billsledger.dispatch import Delivery, DomainEvent, Notice, notice_event
from billsledger.errors import AuthorizationFailure, NotFound, ValidationFailure
from billsledger.models import (
    Bill,
    BillParticipant,
    BillStatus,
    Conversation,
    ConversationParticipant,
    ConversationType,
    utcnow,
)
from billsledger.schemas import CreateBillReq
from billsledger.serializers import bill_to_dict, money, participant_to_dict
from billsledger.services.users import load_users, require_user
from billsledger.settlement import (
    apply_payment,
    ensure_payable,
    open_share,
    remaining,
    settle_bill,
    transition,
    validate_split,
)

# Trạng thái set tay; PAID/PARTIALLY_PAID chỉ đến từ thanh toán
MANUAL_STATUSES = frozenset({BillStatus.CANCELLED, BillStatus.OVERDUE})


def _load_bill(db: Session, bill_id: str, for_update: bool = False) -> Bill:
    stmt = select(Bill).where(Bill.id == bill_id).options(selectinload(Bill.participants))
    if for_update:
        stmt = stmt.with_for_update()
    bill = db.execute(stmt).scalar_one_or_none()
    if not bill:
        raise NotFound("Bill does not exist")
    return bill


def _bill_users(db: Session, bill: Bill):
    return load_users(db, [bill.creator_id, *(p.user_id for p in bill.participants)])


def _status_event(bill: Bill, updated_by: str) -> DomainEvent:
    return DomainEvent(
        recipients=[p.user_id for p in bill.participants],
        event="bill_updated",
        payload={"billId": bill.id, "status": bill.status.value, "updatedBy": updated_by},
        delivery=Delivery.LIVE,
    )


def create_bill(db: Session, creator_id: str, body: CreateBillReq) -> tuple[dict, list[DomainEvent]]:
    validate_split(body.total_amount, [p.amount for p in body.participants])
    user_ids = [p.user_id for p in body.participants]
    if len(set(user_ids)) != len(user_ids):
        raise ValidationFailure("Duplicate participant")

    creator = require_user(db, creator_id)
    users = load_users(db, [creator_id, *user_ids])
    missing = [uid for uid in user_ids if uid not in users]
    if missing:
        raise NotFound(f"Participant does not exist: {missing[0]}")

    conversation_id = body.conversation_id
    if conversation_id:
        if not db.get(Conversation, conversation_id):
            raise NotFound("Conversation not found")
    else:
        conversation = Conversation(type=ConversationType.GROUP, name=f"Bill: {body.title}")
        conversation.participants = [
            ConversationParticipant(user_id=uid) for uid in dict.fromkeys([creator_id, *user_ids])
        ]
        db.add(conversation)
        db.flush()
        conversation_id = conversation.id

    bill = Bill(
        creator_id=creator_id,
        conversation_id=conversation_id,
        title=body.title,
        description=body.description,
        total_amount=body.total_amount,
        currency=(body.currency or DEFAULT_CURRENCY).upper(),
        due_date=body.due_date,
        status=BillStatus.PENDING,
    )
    now = utcnow()
    bill.participants = [
        open_share(BillParticipant(user_id=p.user_id, amount=p.amount), now) for p in body.participants
    ]
    settle_bill(bill, bill.participants, now)
    db.add(bill)
    db.flush()

    notice = Notice(
        title="New Bill Created",
        message=f"{creator.full_name} added you to a bill: {body.title}",
        type="BILL_CREATED",
        metadata={"billId": bill.id},
    )
    events = [notice_event([uid for uid in user_ids if uid != creator_id], notice)]
    return bill_to_dict(bill, users), events


def get_bill(db: Session, user_id: str, bill_id: str) -> dict:
    bill = _load_bill(db, bill_id)
    if bill.creator_id != user_id and all(p.user_id != user_id for p in bill.participants):
        raise AuthorizationFailure("You are not part of this bill")
    return bill_to_dict(bill, _bill_users(db, bill))


def list_bills(db: Session, user_id: str, status: BillStatus | None = None, kind: str | None = None) -> list[dict]:
    stmt = (
        select(Bill)
        .where(or_(Bill.creator_id == user_id, Bill.participants.any(BillParticipant.user_id == user_id)))
        .options(selectinload(Bill.participants))
        .order_by(Bill.created_at.desc())
    )
    if status:
        stmt = stmt.where(Bill.status == status)
    bills = db.execute(stmt).scalars().all()

    if kind == "owed":
        bills = [b for b in bills if any(p.user_id == user_id and not p.is_paid for p in b.participants)]
    elif kind == "owing":
        bills = [b for b in bills if b.creator_id == user_id and any(not p.is_paid for p in b.participants)]

    users = load_users(db, {uid for b in bills for uid in [b.creator_id, *(p.user_id for p in b.participants)]})
    return [bill_to_dict(b, users) for b in bills]


def bill_summary(db: Session, user_id: str) -> dict:
    participations = db.execute(
        select(BillParticipant)
        .join(Bill)
        .where(BillParticipant.user_id == user_id, Bill.status != BillStatus.CANCELLED)
    ).scalars().all()
    created = db.execute(
        select(Bill)
        .where(Bill.creator_id == user_id, Bill.status != BillStatus.CANCELLED)
        .options(selectinload(Bill.participants))
    ).scalars().all()

    # phần của chính creator không tính là người khác nợ mình
    total_owed = sum((remaining(p) for p in participations if not p.is_paid), Decimal("0"))
    total_owing = sum(
        (remaining(p) for b in created for p in b.participants if not p.is_paid and p.user_id != user_id),
        Decimal("0"),
    )
    return {
        "total_owed": money(total_owed),
        "total_owing": money(total_owing),
        "net_balance": money(total_owing - total_owed),
        "total_bills": len(participations) + len(created),
        "pending_bills": sum(1 for p in participations if not p.is_paid),
    }


def update_status(db: Session, user_id: str, bill_id: str, target: BillStatus) -> tuple[dict, list[DomainEvent]]:
    bill = _load_bill(db, bill_id, for_update=True)
    if bill.creator_id != user_id:
        raise AuthorizationFailure("Only bill creator can update status")
    if target != bill.status and target not in MANUAL_STATUSES:
        raise ValidationFailure(f"{target.value} is derived from payments and cannot be set directly")
    bill.status = transition(bill.status, target)
    db.flush()
    return bill_to_dict(bill, _bill_users(db, bill)), [_status_event(bill, user_id)]


def record_payment(
    db: Session, bill_id: str, payer_id: str, amount, now: datetime
) -> tuple[Bill, BillParticipant, Decimal]:
    """
    Apply one payment to the payer's share and recompute the bill status.

    ``amount=None`` pays whatever is left. Bill row first, then participant
    row: both locked in that order so two payers on the same bill serialize
    on the bill. Returns the amount actually applied.
    """
    bill = _load_bill(db, bill_id, for_update=True)
    participant = db.execute(
        select(BillParticipant)
        .where(BillParticipant.bill_id == bill_id, BillParticipant.user_id == payer_id)
        .with_for_update()
    ).scalar_one_or_none()
    if not participant:
        raise NotFound("You are not part of this bill")
    ensure_payable(bill)
    if amount is None:
        amount = remaining(participant)
    apply_payment(participant, amount, now)
    settle_bill(bill, bill.participants, now)
    db.flush()
    return bill, participant, Decimal(amount)


def payment_events(bill: Bill, payer_id: str, amount) -> list[DomainEvent]:
    events = [_status_event(bill, payer_id)]
    if bill.creator_id != payer_id:
        notice = Notice(
            title="Bill Payment Received",
            message=f"Payment received for {bill.title}",
            type="BILL_PAYMENT",
            metadata={"billId": bill.id, "amount": money(amount)},
        )
        events.append(notice_event([bill.creator_id], notice))
    return events


def pay_bill(db: Session, user_id: str, bill_id: str, amount=None) -> tuple[dict, list[DomainEvent]]:
    bill, participant, paid = record_payment(db, bill_id, user_id, amount, utcnow())
    data = participant_to_dict(participant)
    data["bill_status"] = bill.status.value
    return data, payment_events(bill, user_id, paid)


def delete_bill(db: Session, user_id: str, bill_id: str) -> None:
    bill = _load_bill(db, bill_id, for_update=True)
    if bill.creator_id != user_id:
        raise AuthorizationFailure("Only bill creator can delete")
    db.delete(bill)
    db.flush()


def bill_recipients(db: Session, user_id: str, bill_id: str) -> list[str]:
    """Participants of a bill, for the socket ``bill_update`` relay."""
    bill = _load_bill(db, bill_id)
    if bill.creator_id != user_id and all(p.user_id != user_id for p in bill.participants):
        raise AuthorizationFailure("You are not part of this bill")
    return [p.user_id for p in bill.participants]


def is_participant(db: Session, bill_id: str, user_id: str) -> bool:
    bill = _load_bill(db, bill_id)
    return any(p.user_id == user_id for p in bill.participants)
