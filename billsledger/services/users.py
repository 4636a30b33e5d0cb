from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billsledger.errors import Conflict, NotFound
from billsledger.models import User
from billsledger.schemas import RegisterReq, UpdateProfileReq
from billsledger.serializers import user_profile, user_snippet


def load_users(db: Session, user_ids: Iterable[str]) -> dict[str, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    rows = db.execute(select(User).where(User.id.in_(ids))).scalars().all()
    return {u.id: u for u in rows}


def require_user(db: Session, user_id: str, what: str = "User") -> User:
    u = db.get(User, user_id)
    if not u:
        raise NotFound(f"{what} does not exist")
    return u


def register(db: Session, body: RegisterReq, password_hash: str) -> dict:
    exists = db.execute(
        select(User.id).where(or_(User.email == body.email, User.username == body.username))
    ).first()
    if exists:
        raise Conflict("Email or username already taken")
    u = User(
        email=body.email,
        username=body.username,
        full_name=body.full_name,
        phone_number=body.phone_number,
        password_hash=password_hash,
    )
    db.add(u)
    try:
        db.flush()
    except IntegrityError:
        raise Conflict("Email or username already taken")
    return user_profile(u)


def credentials_for(db: Session, email: str) -> dict | None:
    u = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not u:
        return None
    return {"id": u.id, "password_hash": u.password_hash, "user": user_profile(u)}


def get_profile(db: Session, user_id: str) -> dict:
    return user_profile(require_user(db, user_id))


def update_profile(db: Session, user_id: str, body: UpdateProfileReq) -> dict:
    u = require_user(db, user_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(u, field, value)
    db.flush()
    return user_profile(u)


def search_users(db: Session, user_id: str, q: str, limit: int = 20) -> list[dict]:
    pattern = f"%{q}%"
    rows = (
        db.execute(
            select(User)
            .where(User.id != user_id)
            .where(or_(User.username.ilike(pattern), User.full_name.ilike(pattern), User.email.ilike(pattern)))
            .order_by(User.username)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [user_snippet(u) for u in rows]
