import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from sqlalchemy import and_, delete, or_, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from friendgraph.domain.errors import ConcurrencyConflict, NotFound, RejectionReason, StorageFailure
from friendgraph.domain.pairs import CanonicalPair
from friendgraph.domain.records import (
    ActivityRecord,
    NotificationRecord,
    RelationshipRecord,
    RequestRecord,
)
from friendgraph.domain.states import RelationshipState, RequestStatus
from friendgraph.models.activity_event import ActivityEvent
from friendgraph.models.conversation_preview import ConversationPreview
from friendgraph.models.friend_request import FriendRequest
from friendgraph.models.notification import Notification
from friendgraph.models.relationship import Relationship
from friendgraph.models.user import User
from friendgraph.store.base import INCOMING, OUTGOING, RelationshipStore

log = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _relationship_record(row: Relationship) -> RelationshipRecord:
    return RelationshipRecord(
        id=row.id,
        pair=CanonicalPair(row.low_id, row.high_id),
        state=RelationshipState(row.state),
        blocker_id=row.blocker_id,
        block_reason=row.block_reason,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _request_record(row: FriendRequest) -> RequestRecord:
    return RequestRecord(
        id=row.id,
        sender_id=row.sender_id,
        receiver_id=row.receiver_id,
        status=RequestStatus(row.status),
        message=row.message,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _notification_record(row: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        user_id=row.user_id,
        source_user_id=row.source_user_id,
        type=row.type,
        payload=dict(row.payload or {}),
        is_read=row.is_read,
        created_at=_aware(row.created_at),
    )


def _between(sender_col, receiver_col, pair: CanonicalPair):
    # Directional tables (requests, notifications) still need both orders;
    # the pair itself is already canonical so this is the only place it fans out.
    return or_(
        and_(sender_col == pair.low, receiver_col == pair.high),
        and_(sender_col == pair.high, receiver_col == pair.low),
    )


def _is_unique_violation(err: IntegrityError) -> bool:
    # psycopg2 exposes the SQLSTATE, sqlite3 only the message.
    if getattr(err.orig, "pgcode", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(err.orig)


class SqlRelationshipStore(RelationshipStore):
    """SQLAlchemy-backed store; the transaction handle is a ``Session``."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise ConcurrencyConflict(str(e.orig)) from e
            log.exception("friendship transaction hit an integrity error")
            raise StorageFailure("integrity error") from e
        except SQLAlchemyError as e:
            log.exception("friendship transaction failed")
            raise StorageFailure("storage unavailable") from e
        finally:
            session.close()

    def lock_pair(self, tx: Session, pair: CanonicalPair) -> None:
        ids = {"low": pair.low, "high": pair.high}
        if tx.get_bind().dialect.name == "sqlite":
            # No row locks on SQLite; a no-op write takes the database write lock.
            res = tx.execute(
                text("UPDATE users SET display_name = display_name WHERE id IN (:low, :high)"),
                ids,
            )
            found = res.rowcount
        else:
            # Both user rows, in id order, so crossing transitions queue instead of deadlocking.
            found = len(
                tx.execute(
                    select(User.id)
                    .where(User.id.in_((pair.low, pair.high)))
                    .order_by(User.id)
                    .with_for_update(key_share=True)
                ).scalars().all()
            )
        if found != 2:
            raise NotFound(RejectionReason.NO_SUCH_USER)

    # relationships

    def _relationship_row(self, tx: Session, pair: CanonicalPair, for_update: bool = False):
        stmt = select(Relationship).where(
            Relationship.low_id == pair.low, Relationship.high_id == pair.high
        )
        if for_update:
            stmt = stmt.with_for_update()
        return tx.execute(stmt).scalars().one_or_none()

    def get_relationship(self, tx: Session, pair: CanonicalPair, for_update: bool = False):
        row = self._relationship_row(tx, pair, for_update)
        return _relationship_record(row) if row else None

    def upsert_relationship(
        self,
        tx: Session,
        pair: CanonicalPair,
        state: RelationshipState,
        now: datetime,
        blocker_id: int | None = None,
        block_reason: str | None = None,
    ) -> RelationshipRecord:
        row = self._relationship_row(tx, pair, for_update=True)
        if row is None:
            row = Relationship(low_id=pair.low, high_id=pair.high, created_at=now)
            tx.add(row)
        row.state = RelationshipState(state).value
        row.blocker_id = blocker_id
        row.block_reason = block_reason
        row.updated_at = now
        tx.flush()
        return _relationship_record(row)

    def delete_relationship(self, tx: Session, pair: CanonicalPair) -> int:
        res = tx.execute(
            delete(Relationship).where(
                Relationship.low_id == pair.low, Relationship.high_id == pair.high
            )
        )
        return res.rowcount or 0

    def list_relationships_for_user(self, tx: Session, user_id: int, state: RelationshipState):
        rows = tx.execute(
            select(Relationship)
            .where(
                or_(Relationship.low_id == user_id, Relationship.high_id == user_id),
                Relationship.state == RelationshipState(state).value,
            )
            .order_by(Relationship.updated_at.desc(), Relationship.id.desc())
        ).scalars().all()
        return [_relationship_record(r) for r in rows]

    def list_all_relationships(self, tx: Session):
        rows = tx.execute(select(Relationship).order_by(Relationship.id)).scalars().all()
        return [_relationship_record(r) for r in rows]

    # friend requests

    def get_request(self, tx: Session, request_id: int, for_update: bool = False):
        stmt = select(FriendRequest).where(FriendRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = tx.execute(stmt).scalars().one_or_none()
        return _request_record(row) if row else None

    def get_pending_requests(self, tx: Session, pair: CanonicalPair, for_update: bool = False):
        stmt = (
            select(FriendRequest)
            .where(
                _between(FriendRequest.sender_id, FriendRequest.receiver_id, pair),
                FriendRequest.status == RequestStatus.PENDING.value,
            )
            .order_by(FriendRequest.created_at, FriendRequest.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return [_request_record(r) for r in tx.execute(stmt).scalars().all()]

    def get_requests_for_pair(self, tx: Session, pair: CanonicalPair):
        rows = tx.execute(
            select(FriendRequest)
            .where(_between(FriendRequest.sender_id, FriendRequest.receiver_id, pair))
            .order_by(FriendRequest.created_at, FriendRequest.id)
        ).scalars().all()
        return [_request_record(r) for r in rows]

    def insert_request(
        self, tx: Session, sender_id: int, receiver_id: int, message: str | None, now: datetime
    ) -> RequestRecord:
        row = FriendRequest(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=RequestStatus.PENDING.value,
            message=message,
            created_at=now,
            updated_at=now,
        )
        tx.add(row)
        # Flush now so the pending-uniqueness index fires inside this call.
        tx.flush()
        return _request_record(row)

    def delete_request(self, tx: Session, request_id: int) -> int:
        res = tx.execute(delete(FriendRequest).where(FriendRequest.id == request_id))
        return res.rowcount or 0

    def delete_requests_for_pair(self, tx: Session, pair: CanonicalPair) -> int:
        res = tx.execute(
            delete(FriendRequest).where(
                _between(FriendRequest.sender_id, FriendRequest.receiver_id, pair)
            )
        )
        return res.rowcount or 0

    def list_requests_for_user(self, tx: Session, user_id: int, direction: str):
        if direction == INCOMING:
            cond = FriendRequest.receiver_id == user_id
        elif direction == OUTGOING:
            cond = FriendRequest.sender_id == user_id
        else:
            raise ValueError(f"unknown direction {direction!r}")
        rows = tx.execute(
            select(FriendRequest)
            .where(cond, FriendRequest.status == RequestStatus.PENDING.value)
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        ).scalars().all()
        return [_request_record(r) for r in rows]

    def list_all_requests(self, tx: Session):
        rows = tx.execute(select(FriendRequest).order_by(FriendRequest.id)).scalars().all()
        return [_request_record(r) for r in rows]

    # derived rows

    def insert_notification(
        self,
        tx: Session,
        user_id: int,
        source_user_id: int,
        type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> NotificationRecord:
        row = Notification(
            user_id=user_id,
            source_user_id=source_user_id,
            type=getattr(type, "value", type),
            payload=dict(payload),
            is_read=False,
            created_at=now,
        )
        tx.add(row)
        tx.flush()
        return _notification_record(row)

    def delete_notifications_for_pair(
        self, tx: Session, pair: CanonicalPair, types: Iterable[str]
    ) -> int:
        types = [getattr(t, "value", t) for t in types]
        if not types:
            return 0
        res = tx.execute(
            delete(Notification).where(
                _between(Notification.user_id, Notification.source_user_id, pair),
                Notification.type.in_(types),
            )
        )
        return res.rowcount or 0

    def delete_notification(self, tx: Session, notification_id: int) -> int:
        res = tx.execute(delete(Notification).where(Notification.id == notification_id))
        return res.rowcount or 0

    def list_notifications_for_pair(self, tx: Session, pair: CanonicalPair):
        rows = tx.execute(
            select(Notification)
            .where(_between(Notification.user_id, Notification.source_user_id, pair))
            .order_by(Notification.id)
        ).scalars().all()
        return [_notification_record(r) for r in rows]

    def list_all_notifications(self, tx: Session):
        rows = tx.execute(select(Notification).order_by(Notification.id)).scalars().all()
        return [_notification_record(r) for r in rows]

    def delete_conversation_previews(self, tx: Session, pair: CanonicalPair) -> int:
        res = tx.execute(
            delete(ConversationPreview).where(
                _between(ConversationPreview.user_id, ConversationPreview.friend_id, pair)
            )
        )
        return res.rowcount or 0

    def insert_activity(
        self, tx: Session, user_id: int, target_user_id: int, kind: str, now: datetime
    ) -> ActivityRecord:
        row = ActivityEvent(
            user_id=user_id,
            target_user_id=target_user_id,
            kind=getattr(kind, "value", kind),
            created_at=now,
        )
        tx.add(row)
        tx.flush()
        return ActivityRecord(
            id=row.id,
            user_id=row.user_id,
            target_user_id=row.target_user_id,
            kind=row.kind,
            created_at=row.created_at,
        )
