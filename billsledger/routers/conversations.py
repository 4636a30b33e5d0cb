from fastapi import APIRouter, Depends, Query, Request

from billsledger.db import run_db
from billsledger.deps import current_user_id, logger, session_router
from billsledger.logging_utils import log_event
from billsledger.schemas import AddParticipantReq, DirectConversationReq, GroupConversationReq, SendMessageReq
from billsledger.services import conversations

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.post("/direct")
async def create_direct(body: DirectConversationReq, user_id: str = Depends(current_user_id)):
    return await run_db(conversations.create_or_get_direct, user_id, body.participant_id)


@router.post("/group", status_code=201)
async def create_group(body: GroupConversationReq, user_id: str = Depends(current_user_id)):
    conv = await run_db(conversations.create_group, user_id, body)
    log_event(logger, "conversation_created", conversation_id=conv["id"], user_id=user_id, size=len(conv["participant_ids"]))
    return conv


@router.get("")
async def list_conversations(user_id: str = Depends(current_user_id)):
    return await run_db(conversations.list_conversations, user_id)


@router.post("/messages", status_code=201)
async def send_message(body: SendMessageReq, request: Request, user_id: str = Depends(current_user_id)):
    # cùng đường đi với socket send_message: room relay + notification cho user offline
    return await session_router(request).deliver_message(
        user_id, body.conversation_id, body.content, body.type, body.attachments
    )


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(current_user_id)):
    return await run_db(conversations.get_conversation, user_id, conversation_id)


@router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user_id: str = Depends(current_user_id),
):
    return await run_db(conversations.get_messages, user_id, conversation_id, page, limit)


@router.post("/{conversation_id}/participants")
async def add_participant(conversation_id: str, body: AddParticipantReq, user_id: str = Depends(current_user_id)):
    conv = await run_db(conversations.add_participant, user_id, conversation_id, body.user_id)
    log_event(logger, "conversation_participant_added", conversation_id=conversation_id, user_id=user_id, added=body.user_id)
    return conv


@router.delete("/{conversation_id}/leave")
async def leave_conversation(conversation_id: str, user_id: str = Depends(current_user_id)):
    await run_db(conversations.leave_conversation, user_id, conversation_id)
    log_event(logger, "conversation_left", conversation_id=conversation_id, user_id=user_id)
    return {"ok": True}
