"""
Settlement engine: pure bill/participant payment state.

Works on anything shaped like a BillParticipant (``amount``, ``paid_amount``,
``is_paid``, ``paid_at``) and a Bill (``status``, ``paid_at``). No I/O here;
callers load and lock rows, call these functions and commit in one
transaction.

Bill status is a small state machine. Derived moves (from payments) and
explicit moves (cancel, overdue) both go through ``ALLOWED_TRANSITIONS`` so a
recompute can never pull a CANCELLED bill back to PARTIALLY_PAID.
"""
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

from billsledger.errors import AlreadyPaid, Conflict, ValidationFailure
from billsledger.models import BillStatus

SPLIT_TOLERANCE = Decimal("0.01")

ALLOWED_TRANSITIONS: dict[BillStatus, frozenset[BillStatus]] = {
    BillStatus.PENDING: frozenset(
        {BillStatus.PARTIALLY_PAID, BillStatus.PAID, BillStatus.CANCELLED, BillStatus.OVERDUE}
    ),
    BillStatus.PARTIALLY_PAID: frozenset({BillStatus.PAID, BillStatus.CANCELLED, BillStatus.OVERDUE}),
    BillStatus.OVERDUE: frozenset({BillStatus.PAID, BillStatus.CANCELLED}),
    BillStatus.PAID: frozenset(),
    BillStatus.CANCELLED: frozenset(),
}


class ParticipantState(Protocol):
    amount: Decimal
    paid_amount: Decimal
    is_paid: bool
    paid_at: datetime | None


class BillState(Protocol):
    status: BillStatus
    paid_at: datetime | None


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def validate_split(total_amount, amounts: Iterable) -> None:
    """Participant amounts must add up to the bill total within one cent."""
    amounts = [to_money(a) for a in amounts]
    if not amounts:
        raise ValidationFailure("At least one participant is required")
    if any(a < 0 for a in amounts):
        raise ValidationFailure("Participant amount must be positive")
    total = to_money(total_amount)
    if total < 0:
        raise ValidationFailure("Total amount must be a positive number")
    if abs(sum(amounts, Decimal("0")) - total) > SPLIT_TOLERANCE:
        raise ValidationFailure("Participants amounts must equal total amount")


def remaining(participant: ParticipantState) -> Decimal:
    return max(to_money(participant.amount) - to_money(participant.paid_amount), Decimal("0.00"))


def apply_payment(participant: ParticipantState, amount, now: datetime) -> ParticipantState:
    """
    Add ``amount`` to the participant's cumulative paid amount.

    ``paid_at`` is stamped only when ``is_paid`` flips. Paying an already
    settled share raises AlreadyPaid instead of double counting.
    """
    if participant.is_paid:
        raise AlreadyPaid()
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationFailure("Amount must be greater than 0")
    participant.paid_amount = to_money(participant.paid_amount) + amount
    participant.is_paid = participant.paid_amount >= to_money(participant.amount)
    if participant.is_paid:
        participant.paid_at = now
    return participant


def can_transition(current: BillStatus, target: BillStatus) -> bool:
    return target == current or target in ALLOWED_TRANSITIONS[current]


def transition(current: BillStatus, target: BillStatus) -> BillStatus:
    if not can_transition(current, target):
        raise Conflict(f"Cannot change bill status from {current.value} to {target.value}")
    return target


def derive_status(current: BillStatus, participants: Iterable[ParticipantState]) -> BillStatus:
    """Status implied by participant payments, kept only if the move is allowed."""
    flags = [p.is_paid for p in participants]
    if flags and all(flags):
        candidate = BillStatus.PAID
    elif any(flags):
        candidate = BillStatus.PARTIALLY_PAID
    else:
        candidate = current
    return candidate if can_transition(current, candidate) else current


def settle_bill(bill: BillState, participants: Iterable[ParticipantState], now: datetime) -> BillStatus:
    new_status = derive_status(bill.status, participants)
    if new_status == BillStatus.PAID and bill.status != BillStatus.PAID:
        bill.paid_at = now
    bill.status = new_status
    return new_status


def open_share(participant: ParticipantState, now: datetime) -> ParticipantState:
    """Fresh share: nothing paid yet, so only a zero share starts settled."""
    participant.paid_amount = Decimal("0.00")
    participant.is_paid = to_money(participant.amount) <= 0
    participant.paid_at = now if participant.is_paid else None
    return participant


def ensure_payable(bill: BillState) -> None:
    if bill.status == BillStatus.CANCELLED:
        raise Conflict("Bill has been cancelled")
