import pytest

from billsledger.dispatch import Delivery, DomainEvent, Notice, NotificationDispatcher, notice_event
from billsledger.presence import PresenceRegistry

NOTICE = Notice(title="Hi", message="hello", type="TEST", metadata={"billId": "b1"})


async def _no_friends(user_id):
    return []


class Recorder:
    def __init__(self, fail_for=()):
        self.emitted = []
        self.stored = []
        self.fail_for = set(fail_for)

    async def emit(self, user_id, event, payload):
        if user_id in self.fail_for:
            return False
        self.emitted.append((user_id, event, payload))
        return True

    async def store(self, pending):
        self.stored.extend(pending)


async def _dispatcher(online=(), **kw):
    presence = PresenceRegistry(_no_friends)
    for uid in online:
        await presence.register_connection(uid, f"conn-{uid}")
    rec = Recorder(**kw)
    return NotificationDispatcher(presence, rec.emit, rec.store), rec


@pytest.mark.asyncio
async def test_online_recipient_gets_live_event_and_nothing_is_stored():
    d, rec = await _dispatcher(online=["a"])
    result = await d.dispatch([notice_event(["a"], NOTICE)])
    assert result.delivered == [("a", "notification")]
    assert rec.emitted[0][2]["metadata"] == {"billId": "b1"}
    assert rec.stored == []


@pytest.mark.asyncio
async def test_offline_recipient_falls_back_to_stored_notice():
    d, rec = await _dispatcher(online=["a"])
    await d.dispatch([notice_event(["a", "b"], NOTICE)])
    assert [u for u, _, _ in rec.emitted] == ["a"]
    assert rec.stored == [("b", NOTICE)]


@pytest.mark.asyncio
async def test_failed_live_send_is_stored_instead():
    d, rec = await _dispatcher(online=["a"], fail_for=["a"])
    result = await d.dispatch([notice_event(["a"], NOTICE)])
    assert result.delivered == []
    assert rec.stored == [("a", NOTICE)]


@pytest.mark.asyncio
async def test_live_only_events_are_dropped_for_offline_users():
    d, rec = await _dispatcher()
    ev = DomainEvent(recipients=["b"], event="bill_updated", payload={}, delivery=Delivery.LIVE)
    result = await d.dispatch([ev])
    assert result.dropped == [("b", "bill_updated")]
    assert rec.stored == []


@pytest.mark.asyncio
async def test_duplicate_recipients_are_handled_once():
    d, rec = await _dispatcher()
    await d.dispatch([notice_event(["b", "b"], NOTICE)])
    assert rec.stored == [("b", NOTICE)]


@pytest.mark.asyncio
async def test_store_failure_is_reported_not_raised():
    presence = PresenceRegistry(_no_friends)

    async def emit(*args):
        return False

    async def store(pending):
        raise RuntimeError("db down")

    d = NotificationDispatcher(presence, emit, store)
    result = await d.dispatch([notice_event(["x"], NOTICE)])
    assert result.failed == [("x", "notification")]
    assert result.stored == []
    assert await d.store_for_offline(["y"], NOTICE) == []


@pytest.mark.asyncio
async def test_store_for_offline_skips_registered_users():
    d, rec = await _dispatcher(online=["a"])
    offline = await d.store_for_offline(["a", "b", "c"], NOTICE)
    assert offline == ["b", "c"]
    assert [u for u, _ in rec.stored] == ["b", "c"]
