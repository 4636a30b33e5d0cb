import math
import uuid
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from billsledger.config import DEFAULT_CURRENCY
from billsledger.dispatch import DomainEvent, Notice
from billsledger.errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from billsledger.models import Transaction, TransactionStatus, TransactionType, utcnow
from billsledger.schemas import CreateTransactionReq, TransactionFilter
from billsledger.serializers import money, transaction_to_dict
from billsledger.services import bills
from billsledger.services.users import load_users, require_user


def new_reference() -> str:
    return f"TXN-{uuid.uuid4().hex[:8].upper()}"


def _load(db: Session, transaction_id: str, for_update: bool = False) -> Transaction:
    stmt = select(Transaction).where(Transaction.id == transaction_id)
    if for_update:
        stmt = stmt.with_for_update()
    t = db.execute(stmt).scalar_one_or_none()
    if not t:
        raise NotFound("Transaction not found")
    return t


def _received_event(t: Transaction, sender_name: str) -> DomainEvent:
    notice = Notice(
        title="Payment Received",
        message=f"{sender_name} sent you {t.currency} {money(t.amount):.2f}",
        type="TRANSACTION",
        metadata={"transactionId": t.id},
    )
    payload = {
        "transactionId": t.id,
        "senderId": t.sender_id,
        "amount": money(t.amount),
        "currency": t.currency,
        "reference": t.reference,
    }
    return DomainEvent(recipients=[t.receiver_id], event="transaction_received", payload=payload, notice=notice)


def create_transaction(db: Session, sender_id: str, body: CreateTransactionReq) -> tuple[dict, list[DomainEvent]]:
    """
    Record a completed transfer. With ``bill_id`` set it is a bill payment:
    the sender's share and the bill status move in the same transaction.
    """
    if body.receiver_id == sender_id:
        raise ValidationFailure("Cannot send money to yourself")
    sender = require_user(db, sender_id, "Sender")
    receiver = require_user(db, body.receiver_id, "Receiver")

    events: list[DomainEvent] = []
    if body.bill_id:
        if not bills.is_participant(db, body.bill_id, sender_id):
            raise AuthorizationFailure("You are not a participant of this bill")
        bill, _, paid = bills.record_payment(db, body.bill_id, sender_id, body.amount, utcnow())
        if bill.creator_id != receiver.id:
            raise ValidationFailure("Bill payments must be sent to the bill creator")
        events.extend(bills.payment_events(bill, sender_id, paid))

    t = Transaction(
        sender_id=sender_id,
        receiver_id=receiver.id,
        bill_id=body.bill_id,
        amount=body.amount,
        currency=(body.currency or DEFAULT_CURRENCY).upper(),
        description=body.description,
        reference=new_reference(),
        type=TransactionType.BILL_PAYMENT if body.bill_id else TransactionType.DIRECT_TRANSFER,
        status=TransactionStatus.COMPLETED,
    )
    db.add(t)
    db.flush()
    events.insert(0, _received_event(t, sender.full_name))
    return transaction_to_dict(t, {sender.id: sender, receiver.id: receiver}), events


def get_transaction(db: Session, user_id: str, transaction_id: str) -> dict:
    t = _load(db, transaction_id)
    if user_id not in (t.sender_id, t.receiver_id):
        raise AuthorizationFailure("You are not part of this transaction")
    return transaction_to_dict(t, load_users(db, [t.sender_id, t.receiver_id]))


def list_transactions(db: Session, user_id: str, flt: TransactionFilter) -> dict:
    cond = [or_(Transaction.sender_id == user_id, Transaction.receiver_id == user_id)]
    if flt.type:
        cond.append(Transaction.type == flt.type)
    if flt.status:
        cond.append(Transaction.status == flt.status)

    total = db.execute(select(func.count()).select_from(Transaction).where(*cond)).scalar_one()
    rows = (
        db.execute(
            select(Transaction)
            .where(*cond)
            .order_by(Transaction.created_at.desc())
            .offset((flt.page - 1) * flt.limit)
            .limit(flt.limit)
        )
        .scalars()
        .all()
    )
    users = load_users(db, {uid for t in rows for uid in (t.sender_id, t.receiver_id)})
    return {
        "transactions": [transaction_to_dict(t, users) for t in rows],
        "pagination": {
            "page": flt.page,
            "limit": flt.limit,
            "total": total,
            "totalPages": math.ceil(total / flt.limit) if total else 0,
        },
    }


def transaction_stats(db: Session, user_id: str) -> dict:
    def _sum(*cond) -> Decimal:
        return db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.status == TransactionStatus.COMPLETED, *cond
            )
        ).scalar_one()

    sent = Decimal(_sum(Transaction.sender_id == user_id))
    received = Decimal(_sum(Transaction.receiver_id == user_id))
    count = db.execute(
        select(func.count())
        .select_from(Transaction)
        .where(or_(Transaction.sender_id == user_id, Transaction.receiver_id == user_id))
    ).scalar_one()
    return {
        "total_sent": money(sent),
        "total_received": money(received),
        "net_flow": money(received - sent),
        "total_transactions": count,
    }


def cancel_transaction(db: Session, user_id: str, transaction_id: str) -> dict:
    t = _load(db, transaction_id, for_update=True)
    if t.sender_id != user_id:
        raise AuthorizationFailure("Only the sender can cancel a transaction")
    if t.status != TransactionStatus.PENDING:
        raise Conflict(f"Cannot cancel a {t.status.value} transaction")
    t.status = TransactionStatus.CANCELLED
    db.flush()
    return transaction_to_dict(t)


def transaction_for_relay(db: Session, user_id: str, transaction_id: str) -> tuple[str, dict]:
    """Receiver id and payload for the socket ``transaction_created`` relay."""
    t = _load(db, transaction_id)
    if user_id not in (t.sender_id, t.receiver_id):
        raise AuthorizationFailure("You are not part of this transaction")
    sender = require_user(db, t.sender_id, "Sender")
    return t.receiver_id, {**_received_event(t, sender.full_name).payload, "transaction": transaction_to_dict(t)}
