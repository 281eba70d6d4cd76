from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from friendgraph.core.settings import settings
from friendgraph.db.session import SessionLocal
from friendgraph.dispatch import EventBus, log_event
from friendgraph.engine import FriendshipEngine
from friendgraph.models.user import User
from friendgraph.store.sql import SqlRelationshipStore

# Process-wide dispatcher; real-time delivery hooks subscribe here.
event_bus = EventBus()
event_bus.subscribe(log_event)


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(session_factory: sessionmaker = Depends(get_session_factory)) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_engine(session_factory: sessionmaker = Depends(get_session_factory)) -> FriendshipEngine:
    return FriendshipEngine(SqlRelationshipStore(session_factory), events=event_bus)


def ensure_user(db: Session, external_id: str) -> User:
    external_id = (external_id or "").strip()
    user = db.execute(select(User).where(User.external_id == external_id)).scalars().one_or_none()
    if user:
        return user

    user = User(external_id=external_id)
    db.add(user)
    db.flush()
    return user


def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias=settings.USER_ID_HEADER),
) -> str:
    # Authentication happens upstream; we only trust the forwarded identity.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail=f"Missing {settings.USER_ID_HEADER} header")
    return x_user_id.strip()


def get_current_user(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> User:
    user = ensure_user(db, user_id)
    # The engine writes through its own sessions, so the row must be committed first.
    db.commit()
    return user


def resolve_user_ref(db: Session, ref: str) -> User:
    ref = (ref or "").strip()
    if not ref:
        raise HTTPException(status_code=400, detail="Empty user reference")

    user = db.execute(select(User).where(User.external_id == ref)).scalars().one_or_none()
    if user is None:
        user = db.execute(select(User).where(User.username == ref)).scalars().one_or_none()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def users_by_id(db: Session, ids) -> dict[int, User]:
    ids = set(ids)
    if not ids:
        return {}
    rows = db.execute(select(User).where(User.id.in_(ids))).scalars().all()
    return {u.id: u for u in rows}
