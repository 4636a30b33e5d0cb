import asyncio
import json

import anyio
import pytest

from billsledger import realtime
from billsledger.dispatch import NotificationDispatcher
from billsledger.presence import PresenceRegistry
from billsledger.realtime import Connection, RealtimeHub, SessionRouter


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail
        self.closed = False
        self.close_code = None

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def events(self):
        return [f["event"] for f in self.sent]


async def _no_friends(user_id):
    return []


async def _discard(pending):
    return None


def _hub():
    return RealtimeHub(PresenceRegistry(_no_friends))


async def _connect(hub, user_id, **kw):
    conn = Connection(FakeWebSocket(**kw), user_id)
    await hub.attach(conn)
    return conn


@pytest.mark.asyncio
async def test_emit_to_room_excludes_sender():
    hub = _hub()
    a = await _connect(hub, "a")
    b = await _connect(hub, "b")
    hub.join_room(a, "room")
    hub.join_room(b, "room")

    assert await hub.emit_to_room("room", "user_typing", {"isTyping": True}, exclude=a.id) == 1
    assert a.websocket.sent == []
    assert b.websocket.sent == [{"event": "user_typing", "data": {"isTyping": True}}]


@pytest.mark.asyncio
async def test_failed_send_reports_false():
    hub = _hub()
    a = await _connect(hub, "a", fail=True)
    assert await hub.emit_to_user("a", "ping", {}) is False
    assert await hub.emit_to_user("nobody", "ping", {}) is False
    assert a.websocket.sent == []


@pytest.mark.asyncio
async def test_stale_connection_detach_keeps_user_online():
    hub = _hub()
    old = await _connect(hub, "a")
    new = await _connect(hub, "a")
    hub.join_room(old, "room")

    assert await hub.detach(old) is False
    assert await hub.presence.lookup("a") == new.id
    assert hub.room_members("room") == set()

    assert await hub.detach(new) is True
    assert await hub.presence.is_online("a") is False


@pytest.mark.asyncio
async def test_shutdown_closes_sockets_with_going_away():
    hub = _hub()
    a = await _connect(hub, "a")
    b = await _connect(hub, "b")
    assert await hub.shutdown() == 2
    assert a.websocket.close_code == 1001
    assert b.websocket.close_code == 1001
    assert len(hub.presence) == 0


def _router(hub):
    dispatcher = NotificationDispatcher(hub.presence, hub.emit_to_user, _discard)
    return SessionRouter(hub, dispatcher)


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"data": {}}', '{"event": 5}'])
async def test_malformed_frames_yield_error_event(raw):
    hub = _hub()
    router = _router(hub)
    conn = await _connect(hub, "a")
    await router.handle_frame(conn, raw)
    assert conn.websocket.events() == ["error"]


@pytest.mark.asyncio
async def test_unknown_event_yields_error_event():
    hub = _hub()
    router = _router(hub)
    conn = await _connect(hub, "a")
    await router.handle_frame(conn, json.dumps({"event": "dance", "data": {}}))
    assert conn.websocket.sent[0]["data"]["message"] == "Unknown event: dance"


@pytest.mark.asyncio
async def test_typing_requires_joined_room():
    hub = _hub()
    router = _router(hub)
    conn = await _connect(hub, "a")
    await router.handle_frame(
        conn, json.dumps({"event": "typing", "data": {"conversationId": "c1", "isTyping": True}})
    )
    assert conn.websocket.events() == ["error"]


@pytest.mark.asyncio
async def test_join_unknown_conversation_is_refused():
    hub = _hub()
    router = _router(hub)
    conn = await _connect(hub, "a")
    await router.handle_frame(conn, json.dumps({"event": "join_conversation", "data": "missing"}))
    assert conn.websocket.events() == ["error"]
    assert conn.rooms == set()


@pytest.mark.asyncio
async def test_slow_handler_times_out_with_error_event(monkeypatch):
    monkeypatch.setattr(realtime, "REALTIME_EVENT_TIMEOUT", 0.01)
    hub = _hub()
    router = _router(hub)
    conn = await _connect(hub, "a")

    async def slow(conn, data):
        await asyncio.sleep(1)

    router._handlers["slow"] = slow
    await router.handle_frame(conn, json.dumps({"event": "slow", "data": None}))
    assert conn.websocket.sent == [{"event": "error", "data": {"message": "slow timed out"}}]


class ServedWebSocket(FakeWebSocket):
    """Accepted socket whose client never sends anything."""

    def __init__(self, token: str) -> None:
        super().__init__()
        self.query_params = {"token": token}
        self.headers = {}
        self.accepted = False

    async def accept(self) -> None:
        self.accepted = True

    async def receive_text(self) -> str:
        await asyncio.Event().wait()


class SessionStore:
    def __init__(self, sessions):
        self.sessions = sessions

    async def get(self, key):
        return self.sessions.get(key)


@pytest.mark.asyncio
async def test_cancelled_session_still_broadcasts_offline():
    async def friends_of(user_id):
        await asyncio.sleep(0)
        return {"bob": ["alice"], "alice": ["bob"]}[user_id]

    hub = RealtimeHub(PresenceRegistry(friends_of))
    router = _router(hub)
    alice = await _connect(hub, "alice")

    ws_b = ServedWebSocket("tok-b")
    async with anyio.create_task_group() as tg:
        tg.start_soon(router.serve, ws_b, SessionStore({"session:tok-b": "bob"}))
        while not alice.websocket.sent:
            await asyncio.sleep(0)
        assert ws_b.accepted
        assert await hub.presence.lookup("bob") is not None
        tg.cancel_scope.cancel()

    assert await hub.presence.lookup("bob") is None
    statuses = [f["data"]["status"] for f in alice.websocket.sent if f["event"] == "user_status_changed"]
    assert statuses == ["online", "offline"]
