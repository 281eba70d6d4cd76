from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from friendgraph.api.deps import get_current_user, get_db, get_engine, resolve_user_ref, users_by_id
from friendgraph.api.v1.users import UserOut
from friendgraph.engine import FriendshipEngine
from friendgraph.models.user import User

router = APIRouter()


class BlockIn(BaseModel):
    ref: str
    reason: str | None = None


class BlockCreatedOut(BaseModel):
    ok: bool
    relationship_id: int


class BlockedUserOut(BaseModel):
    user: UserOut
    reason: str | None
    blocked_at: datetime


class UnblockOut(BaseModel):
    ok: bool
    unblocked: bool


class BlockReasonIn(BaseModel):
    reason: str | None = None


class BlockReasonOut(BaseModel):
    ok: bool
    reason: str | None


class BulkUnblockIn(BaseModel):
    refs: list[str]


class BulkUnblockOut(BaseModel):
    ok: bool
    unblocked: list[UserOut]


class BlockReasonCountOut(BaseModel):
    reason: str
    count: int


class BlockStatsOut(BaseModel):
    total_blocked: int
    recent_blocks: int
    blocks_with_reason: int
    top_reasons: list[BlockReasonCountOut]


@router.get("/blocks", response_model=list[BlockedUserOut])
def list_blocked_users(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    blocks = engine.list_blocked(me.id)
    users = users_by_id(db, [b.blocked_id for b in blocks])
    return [
        BlockedUserOut(
            user=UserOut.model_validate(users[b.blocked_id]),
            reason=b.block_reason,
            blocked_at=b.created_at,
        )
        for b in blocks
        if b.blocked_id in users
    ]


@router.get("/blocks/stats", response_model=BlockStatsOut)
def block_stats(
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    return engine.block_stats(me.id)


@router.post("/blocks", response_model=BlockCreatedOut, status_code=201)
def block_user(
    payload: BlockIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, payload.ref)
    relationship_id = engine.block_user(me.id, other.id, payload.reason)
    return BlockCreatedOut(ok=True, relationship_id=relationship_id)


@router.delete("/blocks/{external_id}", response_model=UnblockOut)
def unblock_user(
    external_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, external_id)
    return UnblockOut(ok=True, unblocked=engine.unblock_user(me.id, other.id))


@router.put("/blocks/{external_id}/reason", response_model=BlockReasonOut)
def update_block_reason(
    external_id: str,
    payload: BlockReasonIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    other = resolve_user_ref(db, external_id)
    rel = engine.update_block_reason(me.id, other.id, payload.reason)
    return BlockReasonOut(ok=True, reason=rel.block_reason)


@router.post("/blocks/bulk-unblock", response_model=BulkUnblockOut)
def bulk_unblock(
    payload: BulkUnblockIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
    engine: FriendshipEngine = Depends(get_engine),
):
    others = [resolve_user_ref(db, ref) for ref in payload.refs]
    unblocked = engine.bulk_unblock(me.id, [u.id for u in others])
    users = users_by_id(db, unblocked)
    return BulkUnblockOut(
        ok=True, unblocked=[UserOut.model_validate(users[i]) for i in unblocked if i in users]
    )
