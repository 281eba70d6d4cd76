from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from friendgraph.api.deps import get_current_user, get_db, get_engine, resolve_user_ref, users_by_id
from friendgraph.api.ratelimit import friend_action_limit, friend_request_limit
from friendgraph.api.v1.users import UserOut
from friendgraph.domain.records import RequestRecord
from friendgraph.engine import FriendshipEngine
from friendgraph.models.user import User

router = APIRouter()


class FriendRequestIn(BaseModel):
    ref: str
    message: str | None = None


class FriendRequestCreatedOut(BaseModel):
    ok: bool
    request_id: int


class FriendRequestOut(BaseModel):
    id: int
    sender: UserOut
    receiver: UserOut
    message: str | None
    created_at: datetime


class FriendRequestActionOut(BaseModel):
    ok: bool
    relationship_id: int | None = None


class FriendRemoveOut(BaseModel):
    ok: bool
    removed: bool


class FriendStatusOut(BaseModel):
    status: str


class FriendStatsOut(BaseModel):
    total_friends: int
    recent_friendships: int


class RequestStatsOut(BaseModel):
    incoming_pending: int
    outgoing_pending: int
    total_pending: int


def _request_out(req: RequestRecord, users: dict[int, User]) -> FriendRequestOut:
    return FriendRequestOut(
        id=req.id,
        sender=UserOut.model_validate(users[req.sender_id]),
        receiver=UserOut.model_validate(users[req.receiver_id]),
        message=req.message,
        created_at=req.created_at,
    )


@router.get("/friends", response_model=list[UserOut])
def list_friends(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    friend_ids = engine.list_friends(me.id)
    users = users_by_id(db, friend_ids)
    return [users[i] for i in friend_ids if i in users]


@router.get("/friends/stats", response_model=FriendStatsOut)
def friend_stats(
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    return FriendStatsOut(**engine.friend_stats(me.id))


@router.get("/friends/requests/stats", response_model=RequestStatsOut)
def request_stats(
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    return RequestStatsOut(**engine.request_stats(me.id))


@router.get("/friends/status/{external_id}", response_model=FriendStatusOut)
def friendship_status(
    external_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, external_id)
    return FriendStatusOut(status=engine.relationship_status(me.id, other.id).value)


@router.get("/friends/requests/incoming", response_model=list[FriendRequestOut])
def list_incoming_requests(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    reqs = engine.list_incoming_requests(me.id)
    users = users_by_id(db, [r.sender_id for r in reqs] + [me.id])
    return [_request_out(r, users) for r in reqs]


@router.get("/friends/requests/outgoing", response_model=list[FriendRequestOut])
def list_outgoing_requests(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    reqs = engine.list_outgoing_requests(me.id)
    users = users_by_id(db, [r.receiver_id for r in reqs] + [me.id])
    return [_request_out(r, users) for r in reqs]


@router.post(
    "/friends/requests",
    response_model=FriendRequestCreatedOut,
    status_code=201,
    dependencies=[Depends(friend_request_limit)],
)
def send_friend_request(
    payload: FriendRequestIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, payload.ref)
    request_id = engine.send_request(me.id, other.id, payload.message)
    return FriendRequestCreatedOut(ok=True, request_id=request_id)


@router.post(
    "/friends/requests/{request_id}/accept",
    response_model=FriendRequestActionOut,
    dependencies=[Depends(friend_action_limit)],
)
def accept_friend_request(
    request_id: int,
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    relationship_id = engine.accept_request(request_id, me.id)
    return FriendRequestActionOut(ok=True, relationship_id=relationship_id)


@router.post(
    "/friends/requests/{request_id}/decline",
    response_model=FriendRequestActionOut,
    dependencies=[Depends(friend_action_limit)],
)
def decline_friend_request(
    request_id: int,
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    engine.decline_request(request_id, me.id)
    return FriendRequestActionOut(ok=True)


@router.delete(
    "/friends/requests/{request_id}",
    response_model=FriendRequestActionOut,
    dependencies=[Depends(friend_action_limit)],
)
def cancel_friend_request(
    request_id: int,
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    engine.cancel_request(request_id, me.id)
    return FriendRequestActionOut(ok=True)


@router.delete("/friends/{friend_external_id}", response_model=FriendRemoveOut)
def remove_friend(
    friend_external_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, friend_external_id)
    removed = engine.remove_friend(me.id, other.id)
    return FriendRemoveOut(ok=True, removed=removed)
