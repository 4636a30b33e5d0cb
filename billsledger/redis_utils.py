import uuid
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

from redis.asyncio import Redis
from redis.asyncio.sentinel import Sentinel

from billsledger.config import REDIS_SOCKET_TIMEOUT, REDIS_URL, SESSION_TTL
from billsledger.errors import AuthenticationFailure

if TYPE_CHECKING:
    from logging import Logger


async def create_redis_client(url: str | None = None, logger: "Logger | None" = None) -> Redis:
    url = url or REDIS_URL
    if url.startswith("sentinel://"):
        parsed = urlparse(url)
        password = unquote(parsed.password) if parsed.password else None
        host = parsed.hostname or "localhost"
        port = parsed.port or 26379
        path_parts = parsed.path.strip("/").split("/")
        db = int(path_parts[0]) if path_parts[0] else 0
        service_name = path_parts[1] if len(path_parts) > 1 else "mymaster"
        sentinel = Sentinel(
            [(host, port)],
            sentinel_kwargs={"password": password},
            password=password,
            db=db,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
        )
        client = sentinel.master_for(service_name)
    else:
        client = Redis.from_url(url, decode_responses=True, socket_timeout=REDIS_SOCKET_TIMEOUT)

    if logger:
        from billsledger.logging_utils import log_error_event, log_event

        try:
            await client.ping()
            log_event(logger, "redis_connected")
        except Exception as exc:
            # Không fail startup nếu ping lỗi; /health sẽ báo
            log_error_event(logger, "redis_ping_failed", exc=exc)
    return client


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def create_session(redis: Redis, user_id: str) -> str:
    sid = uuid.uuid4().hex
    await redis.setex(f"session:{sid}", SESSION_TTL, user_id)
    return sid


async def delete_session(redis: Redis, token: str) -> None:
    await redis.delete(f"session:{token}")


async def get_user_id_from_session(redis: Redis, token: str | None) -> str:
    if not token:
        raise AuthenticationFailure("No token provided")
    v = await redis.get(f"session:{token}")
    if not v:
        raise AuthenticationFailure("Invalid or expired token")
    return v
