from fastapi import APIRouter, Depends, Query, Request

from billsledger.db import run_db
from billsledger.deps import current_user_id, logger, publish
from billsledger.logging_utils import log_event, mask_amount
from billsledger.models import TransactionStatus, TransactionType
from billsledger.schemas import CreateTransactionReq, TransactionFilter
from billsledger.services import transactions

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@router.post("", status_code=201)
async def create_transaction(body: CreateTransactionReq, request: Request, user_id: str = Depends(current_user_id)):
    txn, events = await run_db(transactions.create_transaction, user_id, body)
    log_event(
        logger,
        "transaction_success",
        transaction_id=txn["id"],
        reference=txn["reference"],
        type=txn["type"],
        from_user_id=user_id,
        to_user_id=txn["receiver_id"],
        bill_id=txn["bill_id"],
        amount_hash=mask_amount(body.amount),
    )
    await publish(request, events)
    return txn


@router.get("")
async def list_transactions(
    kind: TransactionType | None = Query(default=None, alias="type"),
    status: TransactionStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(current_user_id),
):
    flt = TransactionFilter(type=kind, status=status, page=page, limit=limit)
    return await run_db(transactions.list_transactions, user_id, flt)


@router.get("/stats")
async def transaction_stats(user_id: str = Depends(current_user_id)):
    return await run_db(transactions.transaction_stats, user_id)


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, user_id: str = Depends(current_user_id)):
    return await run_db(transactions.get_transaction, user_id, transaction_id)


@router.post("/{transaction_id}/cancel")
async def cancel_transaction(transaction_id: str, user_id: str = Depends(current_user_id)):
    txn = await run_db(transactions.cancel_transaction, user_id, transaction_id)
    log_event(logger, "transaction_cancelled", transaction_id=transaction_id, user_id=user_id)
    return txn
