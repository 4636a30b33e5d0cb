"""
Realtime layer over a single WebSocket endpoint.

- RealtimeHub: open connections, conversation rooms, sends with a timeout.
- SessionRouter: handshake auth, the per-connection receive loop and the
  client event handlers (join/leave, messages, typing, bill/transaction/
  friend relays).

Frames both ways are JSON objects ``{"event": <name>, "data": <payload>}``.
Events from one connection are handled one at a time in receipt order.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable

import anyio
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.asyncio import Redis

from billsledger.config import REALTIME_EVENT_TIMEOUT, REALTIME_SEND_TIMEOUT
from billsledger.db import run_db
from billsledger.dispatch import Delivery, DomainEvent, NotificationDispatcher
from billsledger.errors import LedgerError, NotFound, ValidationFailure
from billsledger.logging_utils import log_error_event, log_event
from billsledger.models import BillStatus, MessageType
from billsledger.observability import set_connected_users
from billsledger.presence import OFFLINE, ONLINE, PresenceRegistry, RegistryClosed
from billsledger.redis_utils import bearer_token, get_user_id_from_session
from billsledger.services import bills, conversations, friends, transactions


class Connection:
    def __init__(self, websocket: WebSocket, user_id: str):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.websocket = websocket
        self.rooms: set[str] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: Any) -> None:
        frame = json.dumps({"event": event, "data": data}, ensure_ascii=False, default=str)
        # một frame tại một thời điểm trên mỗi socket
        async with self._send_lock:
            await asyncio.wait_for(self.websocket.send_text(frame), REALTIME_SEND_TIMEOUT)


class RealtimeHub:
    """Connections by id plus conversation rooms; user lookup goes through presence."""

    def __init__(self, presence: PresenceRegistry, logger: logging.Logger | None = None):
        self.presence = presence
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._logger = logger or logging.getLogger(__name__)

    async def attach(self, conn: Connection) -> str | None:
        previous = await self.presence.register_connection(conn.user_id, conn.id)
        self._connections[conn.id] = conn
        set_connected_users(len(self.presence))
        return previous

    async def detach(self, conn: Connection) -> bool:
        """Drop the connection; True only if it was still the user's active one."""
        for room in list(conn.rooms):
            self.leave_room(conn, room)
        self._connections.pop(conn.id, None)
        removed = await self.presence.remove_connection(conn.user_id, conn.id)
        set_connected_users(len(self.presence))
        return removed

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def join_room(self, conn: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(conn.id)
        conn.rooms.add(room)

    def leave_room(self, conn: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    async def emit_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        try:
            await conn.send(event, data)
            return True
        except Exception as exc:
            log_error_event(
                self._logger, "ws_send_failed", exc=exc, user_id=conn.user_id, connection_id=conn.id, ws_event=event
            )
            return False

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> bool:
        connection_id = await self.presence.lookup(user_id)
        if connection_id is None:
            return False
        return await self.emit_to_connection(connection_id, event, data)

    async def emit_to_room(self, room: str, event: str, data: Any, exclude: str | None = None) -> int:
        targets = [cid for cid in self.room_members(room) if cid != exclude]
        sent = await asyncio.gather(*(self.emit_to_connection(cid, event, data) for cid in targets))
        return sum(sent)

    async def shutdown(self) -> int:
        """Drain presence and close every open socket with 1001 (going away)."""
        await self.presence.shutdown()
        conns = list(self._connections.values())
        self._connections.clear()
        self._rooms.clear()
        for conn in conns:
            try:
                await conn.websocket.close(code=1001, reason="Server shutting down")
            except Exception as exc:
                log_error_event(self._logger, "ws_close_failed", exc=exc, user_id=conn.user_id, connection_id=conn.id)
        set_connected_users(0)
        return len(conns)


# --- client payloads (camelCase on the wire) ---


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConversationRef(_Payload):
    conversation_id: str = Field(alias="conversationId", min_length=1)


class SendMessagePayload(_Payload):
    conversation_id: str = Field(alias="conversationId", min_length=1)
    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT
    attachments: list[str] = Field(default_factory=list)


class TypingPayload(_Payload):
    conversation_id: str = Field(alias="conversationId", min_length=1)
    is_typing: bool = Field(alias="isTyping")


class BillUpdatePayload(_Payload):
    bill_id: str = Field(alias="billId", min_length=1)
    status: BillStatus


class TransactionCreatedPayload(_Payload):
    transaction_id: str = Field(alias="transactionId", min_length=1)


class FriendRequestSentPayload(_Payload):
    receiver_id: str = Field(alias="receiverId", min_length=1)


def _conversation_ref(data: Any) -> ConversationRef:
    # join/leave cho phép gửi thẳng id dạng string
    if isinstance(data, str):
        data = {"conversationId": data}
    return ConversationRef.model_validate(data)


Handler = Callable[[Connection, Any], Awaitable[None]]


class SessionRouter:
    def __init__(self, hub: RealtimeHub, dispatcher: NotificationDispatcher, logger: logging.Logger | None = None):
        self.hub = hub
        self.dispatcher = dispatcher
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: dict[str, Handler] = {
            "join_conversation": self.on_join_conversation,
            "leave_conversation": self.on_leave_conversation,
            "send_message": self.on_send_message,
            "typing": self.on_typing,
            "bill_update": self.on_bill_update,
            "transaction_created": self.on_transaction_created,
            "friend_request_sent": self.on_friend_request_sent,
        }

    @property
    def presence(self) -> PresenceRegistry:
        return self.hub.presence

    async def serve(self, websocket: WebSocket, redis: Redis) -> None:
        token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
        try:
            user_id = await get_user_id_from_session(redis, token)
        except LedgerError as exc:
            log_event(self._logger, "ws_rejected", reason=exc.code, detail=exc.detail)
            await websocket.close(code=1008, reason=f"Authentication error: {exc.detail}")
            return

        await websocket.accept()
        conn = Connection(websocket, user_id)
        try:
            previous = await self.hub.attach(conn)
        except RegistryClosed:
            await websocket.close(code=1001, reason="Server shutting down")
            return
        log_event(self._logger, "ws_connected", user_id=user_id, connection_id=conn.id, replaced=previous)

        await self.hub.emit_to_connection(conn.id, "connected", {"userId": user_id})
        await self.presence.broadcast_presence(user_id, ONLINE, self.hub.emit_to_connection)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_frame(conn, raw)
        except WebSocketDisconnect as exc:
            log_event(self._logger, "ws_disconnected", user_id=user_id, connection_id=conn.id, code=exc.code)
        finally:
            # dọn dẹp phải chạy hết kể cả khi task bị cancel
            with anyio.CancelScope(shield=True):
                await self.disconnect(conn)

    async def disconnect(self, conn: Connection) -> bool:
        """Detach ``conn``; broadcast offline only if it was still the active one."""
        removed = await self.hub.detach(conn)
        if removed:
            await self.presence.broadcast_presence(conn.user_id, OFFLINE, self.hub.emit_to_connection)
        return removed

    async def handle_frame(self, conn: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
            event = frame["event"]
            data = frame.get("data")
            if not isinstance(event, str):
                raise TypeError(event)
        except (ValueError, KeyError, TypeError, AttributeError):
            await self._error(conn, "Malformed frame")
            return

        handler = self._handlers.get(event)
        if handler is None:
            await self._error(conn, f"Unknown event: {event}")
            return
        try:
            await asyncio.wait_for(handler(conn, data), REALTIME_EVENT_TIMEOUT)
        except ValidationError as exc:
            log_event(self._logger, "ws_event_rejected", user_id=conn.user_id, ws_event=event, reason="invalid_payload")
            await self._error(conn, f"Invalid payload for {event}", errors=exc.errors(include_url=False))
        except LedgerError as exc:
            if exc.status_code >= 500:
                log_error_event(self._logger, "ws_event_failed", exc=exc, user_id=conn.user_id, ws_event=event)
                await self._error(conn, "Internal server error")
            else:
                log_event(
                    self._logger, "ws_event_rejected", user_id=conn.user_id, ws_event=event, reason=exc.code, detail=exc.detail
                )
                await self._error(conn, exc.detail)
        except asyncio.TimeoutError as exc:
            log_error_event(self._logger, "ws_event_failed", exc=exc, user_id=conn.user_id, ws_event=event, reason="timeout")
            await self._error(conn, f"{event} timed out")
        except Exception as exc:
            log_error_event(self._logger, "ws_event_failed", exc=exc, user_id=conn.user_id, ws_event=event)
            await self._error(conn, "Internal server error")

    async def _error(self, conn: Connection, message: str, **extra: Any) -> None:
        await self.hub.emit_to_connection(conn.id, "error", {"message": message, **extra})

    async def deliver_message(
        self,
        sender_id: str,
        conversation_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        attachments: list[str] | None = None,
    ) -> dict:
        """
        Persist a message, relay ``new_message`` to the room and store a
        notification for every other participant the registry cannot reach.
        Shared by the socket handler and ``POST /api/conversations/messages``.
        """
        message, participant_ids, notice = await run_db(
            conversations.persist_message, sender_id, conversation_id, content, type, attachments
        )
        await self.hub.emit_to_room(conversation_id, "new_message", message)
        await self.dispatcher.store_for_offline([uid for uid in participant_ids if uid != sender_id], notice)
        return message

    # --- handlers ---

    async def on_join_conversation(self, conn: Connection, data: Any) -> None:
        ref = _conversation_ref(data)
        if not await run_db(conversations.is_participant, ref.conversation_id, conn.user_id):
            raise NotFound("Conversation not found or you are not a participant")
        self.hub.join_room(conn, ref.conversation_id)
        await self.hub.emit_to_connection(conn.id, "joined_conversation", {"conversationId": ref.conversation_id})

    async def on_leave_conversation(self, conn: Connection, data: Any) -> None:
        ref = _conversation_ref(data)
        self.hub.leave_room(conn, ref.conversation_id)
        await self.hub.emit_to_connection(conn.id, "left_conversation", {"conversationId": ref.conversation_id})

    async def on_send_message(self, conn: Connection, data: Any) -> None:
        body = SendMessagePayload.model_validate(data)
        await self.deliver_message(conn.user_id, body.conversation_id, body.content, body.type, body.attachments)

    async def on_typing(self, conn: Connection, data: Any) -> None:
        body = TypingPayload.model_validate(data)
        if body.conversation_id not in conn.rooms:
            raise ValidationFailure("Join the conversation before sending typing events")
        payload = {"userId": conn.user_id, "conversationId": body.conversation_id, "isTyping": body.is_typing}
        await self.hub.emit_to_room(body.conversation_id, "user_typing", payload, exclude=conn.id)

    async def on_bill_update(self, conn: Connection, data: Any) -> None:
        body = BillUpdatePayload.model_validate(data)
        recipients = await run_db(bills.bill_recipients, conn.user_id, body.bill_id)
        payload = {"billId": body.bill_id, "status": body.status.value, "updatedBy": conn.user_id}
        await self.dispatcher.dispatch(
            [DomainEvent(recipients=recipients, event="bill_updated", payload=payload, delivery=Delivery.LIVE)]
        )

    async def on_transaction_created(self, conn: Connection, data: Any) -> None:
        body = TransactionCreatedPayload.model_validate(data)
        receiver_id, payload = await run_db(transactions.transaction_for_relay, conn.user_id, body.transaction_id)
        await self.dispatcher.dispatch(
            [DomainEvent(recipients=[receiver_id], event="transaction_received", payload=payload, delivery=Delivery.LIVE)]
        )

    async def on_friend_request_sent(self, conn: Connection, data: Any) -> None:
        body = FriendRequestSentPayload.model_validate(data)
        if not await run_db(friends.has_pending_request, conn.user_id, body.receiver_id):
            raise NotFound("No pending friend request to this user")
        await self.dispatcher.dispatch(
            [
                DomainEvent(
                    recipients=[body.receiver_id],
                    event="friend_request_received",
                    payload={"senderId": conn.user_id},
                    delivery=Delivery.LIVE,
                )
            ]
        )
