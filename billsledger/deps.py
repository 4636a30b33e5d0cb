from fastapi import Header, Request
from redis.asyncio import Redis

from billsledger.config import SERVICE_NAME
from billsledger.dispatch import DispatchResult, DomainEvent
from billsledger.logging_utils import get_json_logger
from billsledger.realtime import SessionRouter
from billsledger.redis_utils import bearer_token, get_user_id_from_session

logger = get_json_logger(SERVICE_NAME)


def get_redis(request: Request) -> Redis:
    return request.app.state.redis


async def current_user_id(request: Request, authorization: str | None = Header(default=None)) -> str:
    """Resolve ``Authorization: Bearer <token>`` to a user id via the Redis session."""
    return await get_user_id_from_session(get_redis(request), bearer_token(authorization))


async def publish(request: Request, events: list[DomainEvent]) -> DispatchResult:
    return await request.app.state.dispatcher.dispatch(events)


def session_router(request: Request) -> SessionRouter:
    return request.app.state.realtime
