"""
Notification fallback policy.

Mutations describe what happened as DomainEvents; the dispatcher decides per
recipient whether the event goes out live over the socket or is persisted as
a Notification row for later. Services never talk to the transport directly.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from billsledger.logging_utils import log_error_event, log_event
from billsledger.observability import record_notification
from billsledger.presence import PresenceRegistry


class Delivery(str, enum.Enum):
    # best effort, dropped for offline recipients
    LIVE = "live"
    # live when reachable, otherwise stored as a Notification
    LIVE_OR_STORE = "live_or_store"


@dataclass(frozen=True)
class Notice:
    title: str
    message: str
    type: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DomainEvent:
    recipients: list[str]
    event: str
    payload: dict[str, Any]
    notice: Notice | None = None
    delivery: Delivery = Delivery.LIVE_OR_STORE


def notice_payload(notice: Notice) -> dict[str, Any]:
    return {"title": notice.title, "message": notice.message, "type": notice.type, "metadata": dict(notice.metadata)}


def notice_event(recipients: Iterable[str], notice: Notice) -> DomainEvent:
    """Live ``notification`` push that falls back to a stored Notification."""
    return DomainEvent(recipients=list(recipients), event="notification", payload=notice_payload(notice), notice=notice)


@dataclass
class DispatchResult:
    delivered: list[tuple[str, str]] = field(default_factory=list)
    stored: list[tuple[str, str]] = field(default_factory=list)
    dropped: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)


Emitter = Callable[[str, str, dict], Awaitable[bool]]
NoticeStore = Callable[[list[tuple[str, Notice]]], Awaitable[None]]


class NotificationDispatcher:
    def __init__(
        self,
        presence: PresenceRegistry,
        emit_to_user: Emitter,
        store: NoticeStore,
        logger: logging.Logger | None = None,
    ):
        self.presence = presence
        self._emit = emit_to_user
        self._store = store
        self._logger = logger or logging.getLogger(__name__)

    async def dispatch(self, events: Iterable[DomainEvent]) -> DispatchResult:
        result = DispatchResult()
        pending: list[tuple[str, Notice]] = []
        for ev in events:
            for user_id in dict.fromkeys(ev.recipients):
                if await self.presence.is_online(user_id) and await self._emit(user_id, ev.event, ev.payload):
                    result.delivered.append((user_id, ev.event))
                    record_notification("live")
                elif ev.delivery is Delivery.LIVE_OR_STORE and ev.notice is not None:
                    pending.append((user_id, ev.notice))
                    result.stored.append((user_id, ev.event))
                else:
                    result.dropped.append((user_id, ev.event))
                    record_notification("dropped")
        if not await self._persist(pending):
            result.failed, result.stored = result.stored, []
        return result

    async def store_for_offline(self, user_ids: Iterable[str], notice: Notice) -> list[str]:
        """
        Persist ``notice`` for every user the registry cannot resolve. Used
        for chat messages, which reach online users through their rooms.
        """
        offline = [uid for uid in dict.fromkeys(user_ids) if not await self.presence.is_online(uid)]
        if not await self._persist([(uid, notice) for uid in offline]):
            return []
        return offline

    async def _persist(self, pending: list[tuple[str, Notice]]) -> bool:
        if not pending:
            return True
        try:
            await self._store(pending)
        except Exception as exc:
            # mutation đã commit: mất notification, không fail cả request
            log_error_event(self._logger, "notification_store_failed", exc=exc, count=len(pending))
            for _ in pending:
                record_notification("store_failed")
            return False
        for _ in pending:
            record_notification("stored")
        log_event(self._logger, "notifications_stored", count=len(pending), types=sorted({n.type for _, n in pending}))
        return True
