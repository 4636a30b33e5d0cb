"""
Presence registry: which users currently hold a live connection.

One active connection per user: a new registration overwrites the old one.
Removal is guarded by connection id so a late disconnect of a replaced
connection cannot wipe out the fresh one. Every access goes through a single
asyncio.Lock, so a register/remove pair for the same user is never observed
out of order by a concurrent lookup.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from billsledger.logging_utils import log_error_event

ONLINE = "online"
OFFLINE = "offline"

FriendLoader = Callable[[str], Awaitable[Iterable[str]]]
Sender = Callable[[str, str, dict], Awaitable[bool]]


class RegistryClosed(RuntimeError):
    pass


class PresenceRegistry:
    def __init__(self, friend_loader: FriendLoader, logger: logging.Logger | None = None):
        self._by_user: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        self._friend_loader = friend_loader
        self._logger = logger or logging.getLogger(__name__)

    async def register_connection(self, user_id: str, connection_id: str) -> str | None:
        """Record ``user_id -> connection_id``; returns the replaced id, if any."""
        async with self._lock:
            if self._closed:
                raise RegistryClosed("presence registry is shut down")
            previous = self._by_user.get(user_id)
            self._by_user[user_id] = connection_id
            return previous

    async def remove_connection(self, user_id: str, connection_id: str) -> bool:
        async with self._lock:
            if self._by_user.get(user_id) != connection_id:
                return False
            del self._by_user[user_id]
            return True

    async def lookup(self, user_id: str) -> str | None:
        async with self._lock:
            return self._by_user.get(user_id)

    async def is_online(self, user_id: str) -> bool:
        return await self.lookup(user_id) is not None

    async def online_user_ids(self) -> list[str]:
        async with self._lock:
            return list(self._by_user)

    def __len__(self) -> int:
        return len(self._by_user)

    async def broadcast_presence(self, user_id: str, state: str, send: Sender) -> int:
        """
        Push ``user_status_changed`` to every friend of ``user_id`` that is
        connected. Failures are logged and swallowed; returns how many
        friends were reached.
        """
        reached = 0
        try:
            friend_ids = list(await self._friend_loader(user_id))
            for friend_id in friend_ids:
                connection_id = await self.lookup(friend_id)
                if connection_id is None:
                    continue
                if await send(connection_id, "user_status_changed", {"userId": user_id, "status": state}):
                    reached += 1
        except Exception as exc:
            log_error_event(self._logger, "presence_broadcast_failed", exc=exc, user_id=user_id, status=state)
        return reached

    async def shutdown(self) -> dict[str, str]:
        """Stop accepting registrations and hand back whatever was registered."""
        async with self._lock:
            self._closed = True
            drained = dict(self._by_user)
            self._by_user.clear()
            return drained
