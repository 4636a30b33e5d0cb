import asyncio

import pytest

from billsledger.presence import OFFLINE, ONLINE, PresenceRegistry, RegistryClosed


def _registry(friends=None):
    friends = friends or {}

    async def loader(user_id):
        return friends.get(user_id, [])

    return PresenceRegistry(loader)


@pytest.mark.asyncio
async def test_register_overwrites_previous_connection():
    reg = _registry()
    assert await reg.register_connection("u", "c1") is None
    assert await reg.register_connection("u", "c2") == "c1"
    assert await reg.lookup("u") == "c2"


@pytest.mark.asyncio
async def test_remove_with_stale_connection_id_is_ignored():
    reg = _registry()
    await reg.register_connection("u", "c1")
    await reg.register_connection("u", "c2")

    assert await reg.remove_connection("u", "c1") is False
    assert await reg.lookup("u") == "c2"

    assert await reg.remove_connection("u", "c2") is True
    assert await reg.lookup("u") is None
    assert await reg.is_online("u") is False


@pytest.mark.asyncio
async def test_concurrent_register_and_remove_stay_consistent():
    reg = _registry()

    async def cycle(i):
        cid = f"c{i}"
        await reg.register_connection(f"u{i % 5}", cid)
        await asyncio.sleep(0)
        await reg.remove_connection(f"u{i % 5}", cid)

    await asyncio.gather(*(cycle(i) for i in range(50)))
    for uid in await reg.online_user_ids():
        assert (await reg.lookup(uid)).startswith("c")
    assert len(reg) <= 5


@pytest.mark.asyncio
async def test_broadcast_presence_reaches_online_friends_only():
    reg = _registry({"alice": ["bob", "carol"]})
    await reg.register_connection("bob", "cb")
    sent = []

    async def send(connection_id, event, payload):
        sent.append((connection_id, event, payload))
        return True

    assert await reg.broadcast_presence("alice", ONLINE, send) == 1
    assert sent == [("cb", "user_status_changed", {"userId": "alice", "status": "online"})]


@pytest.mark.asyncio
async def test_broadcast_presence_swallows_loader_errors():
    async def loader(user_id):
        raise RuntimeError("db down")

    reg = PresenceRegistry(loader)

    async def send(*args):
        raise AssertionError("should not send")

    assert await reg.broadcast_presence("alice", OFFLINE, send) == 0


@pytest.mark.asyncio
async def test_shutdown_drains_and_refuses_new_registrations():
    reg = _registry()
    await reg.register_connection("u1", "c1")
    await reg.register_connection("u2", "c2")

    drained = await reg.shutdown()
    assert drained == {"u1": "c1", "u2": "c2"}
    assert len(reg) == 0
    with pytest.raises(RegistryClosed):
        await reg.register_connection("u3", "c3")
