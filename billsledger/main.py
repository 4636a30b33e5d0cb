"""
Bills Ledger API: REST routers under /api plus the realtime socket at /ws.

Single process: the presence registry lives on ``app.state`` and is drained
in the lifespan shutdown.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from billsledger import models  # noqa: F401  (registers tables on Base.metadata)
from billsledger.config import CORS_ORIGINS, REDIS_URL, SERVICE_NAME
from billsledger.db import Base, check_database, engine, log_db_pool_status, run_db
from billsledger.deps import logger
from billsledger.dispatch import NotificationDispatcher
from billsledger.logging_utils import RequestLogMiddleware, log_event, setup_exception_logging
from billsledger.observability import instrument_fastapi
from billsledger.presence import PresenceRegistry
from billsledger.realtime import RealtimeHub, SessionRouter
from billsledger.redis_utils import create_redis_client
from billsledger.routers import all_routers
from billsledger.services import friends, notifications


async def _load_friend_ids(user_id: str) -> list[str]:
    return await run_db(friends.friend_ids, user_id)


async def _store_notices(pending) -> None:
    await run_db(notifications.store_notices, pending)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    # tests inject their own client before startup
    if getattr(app.state, "redis", None) is None:
        app.state.redis = await create_redis_client(REDIS_URL, logger=logger)
    log_db_pool_status(logger)

    presence = PresenceRegistry(_load_friend_ids, logger)
    hub = RealtimeHub(presence, logger)
    dispatcher = NotificationDispatcher(presence, hub.emit_to_user, _store_notices, logger)
    app.state.presence = presence
    app.state.dispatcher = dispatcher
    app.state.realtime = SessionRouter(hub, dispatcher, logger)
    log_event(logger, "service_started", service=SERVICE_NAME)
    yield
    closed = await hub.shutdown()
    log_event(logger, "service_stopped", service=SERVICE_NAME, closed_connections=closed)
    if app.state.redis is not None:
        await app.state.redis.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Bills Ledger API", lifespan=lifespan)
    app.state.redis = None
    instrument_fastapi(app, SERVICE_NAME)
    setup_exception_logging(app, logger, SERVICE_NAME)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[x.strip() for x in CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLogMiddleware, logger=logger, service_name=SERVICE_NAME)

    for router in all_routers:
        app.include_router(router)

    @app.websocket("/ws")
    async def ws(websocket: WebSocket):
        """Realtime socket; authenticate with ?token= or Authorization: Bearer."""
        await websocket.app.state.realtime.serve(websocket, websocket.app.state.redis)

    @app.get("/health")
    async def health():
        try:
            await app.state.redis.ping()
            redis_status = "ok"
        except Exception:
            redis_status = "error"
        try:
            await run_db(check_database)
            db_status = "ok"
        except Exception:
            db_status = "error"
        status = "healthy" if db_status == redis_status == "ok" else "unhealthy"
        return {"status": status, "service": SERVICE_NAME, "database": db_status, "redis": redis_status}

    return app


app = create_app()
