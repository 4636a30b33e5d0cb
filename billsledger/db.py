import asyncio
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from billsledger.config import DATABASE_URL, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT
from billsledger.errors import InternalFailure

if TYPE_CHECKING:
    from logging import Logger

T = TypeVar("T")


def _normalize_url(url: str) -> str:
    # Dùng psycopg3 dialect thay vì psycopg2
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _engine_kwargs(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_timeout": DB_POOL_TIMEOUT,
        "pool_recycle": 600,
    }


DATABASE_URL = _normalize_url(DATABASE_URL)
engine = create_engine(DATABASE_URL, future=True, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


class Base(DeclarativeBase):
    pass


def log_db_pool_status(logger: "Logger | None" = None) -> None:
    """Log DB pool status at startup."""
    if not logger:
        return
    from billsledger.logging_utils import log_event

    if DATABASE_URL.startswith("sqlite"):
        log_event(logger, "db_ready", dialect="sqlite")
    else:
        log_event(logger, "db_pool_ready", pool_size=DB_POOL_SIZE, max_overflow=DB_MAX_OVERFLOW)


def unit_of_work(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run ``fn(db, *args, **kwargs)`` inside one session and one transaction.

    Commits when ``fn`` returns, rolls back everything on any error. Domain
    errors propagate unchanged; database faults surface as InternalFailure.
    """
    db = SessionLocal()
    try:
        result = fn(db, *args, **kwargs)
        db.commit()
        return result
    except SQLAlchemyError as exc:
        db.rollback()
        raise InternalFailure("Database error") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def run_db(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking unit of work off the event loop."""
    return await asyncio.to_thread(unit_of_work, fn, *args, **kwargs)


def check_database(db: Session) -> bool:
    db.execute(select(1))
    return True
