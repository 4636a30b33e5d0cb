from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from billsledger.db import run_db
from billsledger.deps import current_user_id, logger, publish
from billsledger.logging_utils import log_event, mask_amount
from billsledger.models import BillStatus
from billsledger.schemas import CreateBillReq, PayBillReq, UpdateBillStatusReq
from billsledger.services import bills

router = APIRouter(prefix="/api/bills", tags=["bills"])


@router.post("", status_code=201)
async def create_bill(body: CreateBillReq, request: Request, user_id: str = Depends(current_user_id)):
    bill, events = await run_db(bills.create_bill, user_id, body)
    log_event(
        logger,
        "bill_created",
        bill_id=bill["id"],
        creator_id=user_id,
        participants=len(bill["participants"]),
        amount_hash=mask_amount(body.total_amount),
    )
    await publish(request, events)
    return bill


@router.get("")
async def list_bills(
    status: BillStatus | None = None,
    kind: Literal["owed", "owing"] | None = Query(default=None, alias="type"),
    user_id: str = Depends(current_user_id),
):
    return await run_db(bills.list_bills, user_id, status, kind)


@router.get("/summary")
async def bill_summary(user_id: str = Depends(current_user_id)):
    return await run_db(bills.bill_summary, user_id)


@router.get("/{bill_id}")
async def get_bill(bill_id: str, user_id: str = Depends(current_user_id)):
    return await run_db(bills.get_bill, user_id, bill_id)


@router.put("/{bill_id}/status")
async def update_status(
    bill_id: str, body: UpdateBillStatusReq, request: Request, user_id: str = Depends(current_user_id)
):
    bill, events = await run_db(bills.update_status, user_id, bill_id, body.status)
    log_event(logger, "bill_status_updated", bill_id=bill_id, user_id=user_id, status=bill["status"])
    await publish(request, events)
    return bill


@router.post("/{bill_id}/pay")
async def pay_bill(
    bill_id: str, request: Request, body: PayBillReq | None = None, user_id: str = Depends(current_user_id)
):
    amount = body.amount if body else None
    participant, events = await run_db(bills.pay_bill, user_id, bill_id, amount)
    log_event(
        logger,
        "bill_paid",
        bill_id=bill_id,
        user_id=user_id,
        is_paid=participant["is_paid"],
        bill_status=participant["bill_status"],
        amount_hash=mask_amount(participant["paid_amount"]),
    )
    await publish(request, events)
    return participant


@router.delete("/{bill_id}")
async def delete_bill(bill_id: str, user_id: str = Depends(current_user_id)):
    await run_db(bills.delete_bill, user_id, bill_id)
    log_event(logger, "bill_deleted", bill_id=bill_id, user_id=user_id)
    return {"ok": True}
