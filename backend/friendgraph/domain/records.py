from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from friendgraph.domain.pairs import CanonicalPair, OrderedPair, canonical_pair
from friendgraph.domain.states import RelationshipState, RequestStatus


@dataclass(frozen=True)
class RelationshipRecord:
    id: int
    pair: CanonicalPair
    state: RelationshipState
    created_at: datetime
    updated_at: datetime
    blocker_id: int | None = None
    block_reason: str | None = None

    @property
    def blocked_id(self) -> int | None:
        if self.blocker_id is None:
            return None
        return self.pair.other(self.blocker_id)


@dataclass(frozen=True)
class RequestRecord:
    id: int
    sender_id: int
    receiver_id: int
    status: RequestStatus
    created_at: datetime
    updated_at: datetime
    message: str | None = None

    @property
    def ordered(self) -> OrderedPair:
        return OrderedPair(self.sender_id, self.receiver_id)

    @property
    def pair(self) -> CanonicalPair:
        return canonical_pair(self.sender_id, self.receiver_id)

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING


@dataclass(frozen=True)
class NotificationRecord:
    id: int
    user_id: int
    source_user_id: int
    type: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False

    @property
    def pair(self) -> CanonicalPair:
        return canonical_pair(self.user_id, self.source_user_id)


@dataclass(frozen=True)
class ActivityRecord:
    id: int
    user_id: int
    target_user_id: int
    kind: str
    created_at: datetime


@dataclass(frozen=True)
class PairSnapshot:
    """Everything the validator needs to know about one pair, read under lock."""

    pair: CanonicalPair
    relationship: RelationshipRecord | None = None
    pending: tuple[RequestRecord, ...] = ()

    @property
    def state(self) -> RelationshipState:
        if self.relationship is None:
            return RelationshipState.NONE
        return self.relationship.state

    def pending_from(self, sender_id: int) -> RequestRecord | None:
        for req in self.pending:
            if req.sender_id == sender_id:
                return req
        return None
