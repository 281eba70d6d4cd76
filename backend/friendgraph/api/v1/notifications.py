from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from friendgraph import inbox
from friendgraph.api.deps import get_current_user, get_db
from friendgraph.models.user import User

router = APIRouter()


class NotificationOut(BaseModel):
    id: int
    type: str
    source_user_id: int
    payload: dict[str, Any]
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class MarkReadIn(BaseModel):
    # None marks everything as read.
    ids: list[int] | None = None


class MarkReadOut(BaseModel):
    updated: int


class UnreadCountOut(BaseModel):
    unread: int


@router.get("/notifications", response_model=list[NotificationOut])
def list_notifications(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
):
    return inbox.list_notifications(db, me.id, unread_only=unread_only, limit=limit)


@router.get("/notifications/unread-count", response_model=UnreadCountOut)
def unread_count(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return UnreadCountOut(unread=inbox.unread_count(db, me.id))


@router.post("/notifications/read", response_model=MarkReadOut)
def mark_notifications_read(
    payload: MarkReadIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return MarkReadOut(updated=inbox.mark_read(db, me.id, payload.ids))
