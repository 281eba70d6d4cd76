from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from friendgraph.api.deps import get_current_user, get_db
from friendgraph.models.user import User

router = APIRouter()


class UserOut(BaseModel):
    id: int
    external_id: str
    username: str | None
    display_name: str | None

    class Config:
        from_attributes = True


class UserMeUpdateIn(BaseModel):
    username: str | None = None
    display_name: str | None = None


@router.get("/users/me", response_model=UserOut)
def upsert_me(me: User = Depends(get_current_user)):
    return me


@router.patch("/users/me", response_model=UserOut)
def update_me(
    payload: UserMeUpdateIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    if payload.username is not None:
        v = (payload.username or "").strip()
        me.username = v or None

    if payload.display_name is not None:
        v = (payload.display_name or "").strip()
        me.display_name = v or None

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="username already in use")

    db.refresh(me)
    return me


@router.get("/users/{external_id}", response_model=UserOut)
def get_user(
    external_id: str,
    db: Session = Depends(get_db),
    _me: User = Depends(get_current_user),
):
    u = db.execute(select(User).where(User.external_id == external_id)).scalars().one_or_none()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u
