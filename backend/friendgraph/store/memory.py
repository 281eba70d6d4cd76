import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Iterator

from friendgraph.domain.errors import ConcurrencyConflict
from friendgraph.domain.pairs import CanonicalPair
from friendgraph.domain.records import (
    ActivityRecord,
    NotificationRecord,
    RelationshipRecord,
    RequestRecord,
)
from friendgraph.domain.states import RelationshipState, RequestStatus
from friendgraph.store.base import INCOMING, OUTGOING, RelationshipStore


@dataclass(frozen=True)
class ConversationPreviewRecord:
    id: int
    user_id: int
    friend_id: int
    last_message: str | None = None
    unread_count: int = 0


@dataclass
class _Tables:
    relationships: dict[CanonicalPair, RelationshipRecord] = field(default_factory=dict)
    requests: dict[int, RequestRecord] = field(default_factory=dict)
    notifications: dict[int, NotificationRecord] = field(default_factory=dict)
    activity: list[ActivityRecord] = field(default_factory=list)
    previews: dict[int, ConversationPreviewRecord] = field(default_factory=dict)
    next_id: int = 1

    def copy(self) -> "_Tables":
        # Records are frozen, so copying the containers is enough.
        return _Tables(
            relationships=dict(self.relationships),
            requests=dict(self.requests),
            notifications=dict(self.notifications),
            activity=list(self.activity),
            previews=dict(self.previews),
            next_id=self.next_id,
        )

    def allocate_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value


class InMemoryRelationshipStore(RelationshipStore):
    """Process-local store with the same constraints as the SQL schema.

    Transactions are serialized by a single lock and work on a private copy of
    the tables that only replaces the shared state on a clean exit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables = _Tables()

    @contextmanager
    def transaction(self) -> Iterator[_Tables]:
        with self._lock:
            work = self._tables.copy()
            yield work
            self._tables = work

    def lock_pair(self, tx: _Tables, pair: CanonicalPair) -> None:
        # The store-wide lock taken by transaction() already covers the pair.
        return None

    # test helpers

    def add_conversation_preview(
        self, user_id: int, friend_id: int, last_message: str | None = None
    ) -> ConversationPreviewRecord:
        with self.transaction() as tx:
            rec = ConversationPreviewRecord(
                id=tx.allocate_id(), user_id=user_id, friend_id=friend_id, last_message=last_message
            )
            tx.previews[rec.id] = rec
            return rec

    def conversation_previews(self) -> list[ConversationPreviewRecord]:
        with self.transaction() as tx:
            return sorted(tx.previews.values(), key=lambda r: r.id)

    def activity_log(self) -> list[ActivityRecord]:
        with self.transaction() as tx:
            return list(tx.activity)

    # relationships

    def get_relationship(self, tx: _Tables, pair: CanonicalPair, for_update: bool = False):
        return tx.relationships.get(CanonicalPair(*pair))

    def upsert_relationship(
        self,
        tx: _Tables,
        pair: CanonicalPair,
        state: RelationshipState,
        now: datetime,
        blocker_id: int | None = None,
        block_reason: str | None = None,
    ) -> RelationshipRecord:
        pair = CanonicalPair(*pair)
        if pair.low >= pair.high:
            raise ValueError(f"pair {pair} is not canonical")
        existing = tx.relationships.get(pair)
        if existing is None:
            rec = RelationshipRecord(
                id=tx.allocate_id(),
                pair=pair,
                state=RelationshipState(state),
                blocker_id=blocker_id,
                block_reason=block_reason,
                created_at=now,
                updated_at=now,
            )
        else:
            rec = replace(
                existing,
                state=RelationshipState(state),
                blocker_id=blocker_id,
                block_reason=block_reason,
                updated_at=now,
            )
        tx.relationships[pair] = rec
        return rec

    def delete_relationship(self, tx: _Tables, pair: CanonicalPair) -> int:
        return 1 if tx.relationships.pop(CanonicalPair(*pair), None) else 0

    def list_relationships_for_user(self, tx: _Tables, user_id: int, state: RelationshipState):
        rows = [
            r
            for r in tx.relationships.values()
            if r.pair.contains(user_id) and r.state == RelationshipState(state)
        ]
        return sorted(rows, key=lambda r: (r.updated_at, r.id), reverse=True)

    def list_all_relationships(self, tx: _Tables):
        return sorted(tx.relationships.values(), key=lambda r: r.id)

    # friend requests

    def get_request(self, tx: _Tables, request_id: int, for_update: bool = False):
        return tx.requests.get(request_id)

    def get_pending_requests(self, tx: _Tables, pair: CanonicalPair, for_update: bool = False):
        return [r for r in self.get_requests_for_pair(tx, pair) if r.is_pending]

    def get_requests_for_pair(self, tx: _Tables, pair: CanonicalPair):
        pair = CanonicalPair(*pair)
        rows = [r for r in tx.requests.values() if r.pair == pair]
        return sorted(rows, key=lambda r: (r.created_at, r.id))

    def insert_request(
        self, tx: _Tables, sender_id: int, receiver_id: int, message: str | None, now: datetime
    ) -> RequestRecord:
        for r in tx.requests.values():
            if r.is_pending and r.sender_id == sender_id and r.receiver_id == receiver_id:
                raise ConcurrencyConflict(
                    f"pending request {sender_id}->{receiver_id} already exists"
                )
        rec = RequestRecord(
            id=tx.allocate_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=RequestStatus.PENDING,
            message=message,
            created_at=now,
            updated_at=now,
        )
        tx.requests[rec.id] = rec
        return rec

    def put_request(self, tx: _Tables, record: RequestRecord) -> RequestRecord:
        """Write a request row as-is, bypassing the pending constraint.

        Only used to seed the inconsistent states the audit tool repairs.
        """
        tx.requests[record.id] = record
        tx.next_id = max(tx.next_id, record.id + 1)
        return record

    def delete_request(self, tx: _Tables, request_id: int) -> int:
        return 1 if tx.requests.pop(request_id, None) else 0

    def delete_requests_for_pair(self, tx: _Tables, pair: CanonicalPair) -> int:
        ids = [r.id for r in self.get_requests_for_pair(tx, pair)]
        for rid in ids:
            del tx.requests[rid]
        return len(ids)

    def list_requests_for_user(self, tx: _Tables, user_id: int, direction: str):
        if direction == INCOMING:
            rows = [r for r in tx.requests.values() if r.receiver_id == user_id]
        elif direction == OUTGOING:
            rows = [r for r in tx.requests.values() if r.sender_id == user_id]
        else:
            raise ValueError(f"unknown direction {direction!r}")
        rows = [r for r in rows if r.is_pending]
        return sorted(rows, key=lambda r: (r.created_at, r.id), reverse=True)

    def list_all_requests(self, tx: _Tables):
        return sorted(tx.requests.values(), key=lambda r: r.id)

    # derived rows

    def insert_notification(
        self,
        tx: _Tables,
        user_id: int,
        source_user_id: int,
        type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> NotificationRecord:
        rec = NotificationRecord(
            id=tx.allocate_id(),
            user_id=user_id,
            source_user_id=source_user_id,
            type=getattr(type, "value", type),
            payload=dict(payload),
            created_at=now,
        )
        tx.notifications[rec.id] = rec
        return rec

    def delete_notifications_for_pair(
        self, tx: _Tables, pair: CanonicalPair, types: Iterable[str]
    ) -> int:
        pair = CanonicalPair(*pair)
        wanted = {getattr(t, "value", t) for t in types}
        ids = [
            n.id
            for n in tx.notifications.values()
            if n.type in wanted and {n.user_id, n.source_user_id} == {pair.low, pair.high}
        ]
        for nid in ids:
            del tx.notifications[nid]
        return len(ids)

    def delete_notification(self, tx: _Tables, notification_id: int) -> int:
        return 1 if tx.notifications.pop(notification_id, None) else 0

    def list_notifications_for_pair(self, tx: _Tables, pair: CanonicalPair):
        pair = CanonicalPair(*pair)
        return [n for n in self.list_all_notifications(tx) if n.pair == pair]

    def list_all_notifications(self, tx: _Tables):
        return sorted(tx.notifications.values(), key=lambda n: n.id)

    def delete_conversation_previews(self, tx: _Tables, pair: CanonicalPair) -> int:
        pair = CanonicalPair(*pair)
        ids = [
            p.id
            for p in tx.previews.values()
            if {p.user_id, p.friend_id} == {pair.low, pair.high}
        ]
        for pid in ids:
            del tx.previews[pid]
        return len(ids)

    def insert_activity(
        self, tx: _Tables, user_id: int, target_user_id: int, kind: str, now: datetime
    ) -> ActivityRecord:
        rec = ActivityRecord(
            id=tx.allocate_id(),
            user_id=user_id,
            target_user_id=target_user_id,
            kind=getattr(kind, "value", kind),
            created_at=now,
        )
        tx.activity.append(rec)
        return rec
