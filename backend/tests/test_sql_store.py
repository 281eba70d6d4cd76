from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from friendgraph.db.base import Base
from friendgraph.domain.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    RejectionReason,
    StorageFailure,
)
from friendgraph.domain.pairs import canonical_pair
from friendgraph.domain.states import RelationshipState
from friendgraph.engine import FriendshipEngine
from friendgraph.models import ActivityEvent, ConversationPreview, FriendRequest, Notification, User
from friendgraph.store.sql import SqlRelationshipStore

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def users(session_factory):
    with session_factory() as db:
        rows = [User(external_id=f"u{i}") for i in range(1, 4)]
        db.add_all(rows)
        db.commit()
        return [u.id for u in rows]


@pytest.fixture()
def store(session_factory):
    return SqlRelationshipStore(session_factory)


def _count(session_factory, model):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_full_lifecycle_on_sql(store, users, session_factory):
    u1, u2, _ = users
    engine = FriendshipEngine(store)

    engine.accept_request(engine.send_request(u1, u2, "hey"), u2)
    assert engine.list_friends(u1) == [u2]
    assert _count(session_factory, FriendRequest) == 0

    assert engine.remove_friend(u1, u2) is True
    assert engine.remove_friend(u1, u2) is False

    engine.accept_request(engine.send_request(u2, u1), u1)
    assert engine.get_relationship(u2, u1).state == RelationshipState.ACTIVE

    # Two full cycles leave one relationship row, no request rows and only
    # the latest acceptance notices.
    with session_factory() as db:
        notes = [tuple(n) for n in db.execute(select(Notification.type, Notification.user_id))]
    assert sorted(notes) == [("friend_accepted", u1), ("friend_accepted", u2)]
    assert _count(session_factory, FriendRequest) == 0
    assert _count(session_factory, ActivityEvent) == 5


def test_block_on_sql(store, users):
    u1, u2, _ = users
    engine = FriendshipEngine(store)
    engine.send_request(u2, u1)

    engine.block_user(u1, u2, "  ")
    rel = engine.get_relationship(u1, u2)
    assert rel.state == RelationshipState.BLOCKED
    assert rel.blocker_id == u1
    assert rel.block_reason is None
    assert engine.list_incoming_requests(u1) == []

    with pytest.raises(InvalidTransition):
        engine.send_request(u2, u1)

    assert engine.unblock_user(u1, u2) is True
    assert engine.get_relationship(u1, u2) is None


def test_second_pending_insert_is_a_conflict(store, users, session_factory):
    u1, u2, _ = users
    with pytest.raises(ConcurrencyConflict):
        with store.transaction() as tx:
            store.insert_request(tx, u1, u2, None, NOW)
            store.insert_request(tx, u1, u2, None, NOW)

    # rolled back as a whole
    assert _count(session_factory, FriendRequest) == 0


def test_resolved_rows_do_not_block_new_pending(store, users, session_factory):
    u1, u2, _ = users
    with session_factory() as db:
        db.add(
            FriendRequest(
                sender_id=u1, receiver_id=u2, status="declined", created_at=NOW, updated_at=NOW
            )
        )
        db.commit()

    with store.transaction() as tx:
        store.insert_request(tx, u1, u2, None, NOW)

    assert _count(session_factory, FriendRequest) == 2


def test_pair_lookups_are_order_independent(store, users):
    u1, u2, u3 = users
    with store.transaction() as tx:
        store.insert_request(tx, u2, u1, None, NOW)
        store.insert_request(tx, u3, u1, None, NOW)
        store.upsert_relationship(tx, canonical_pair(u3, u1), RelationshipState.ACTIVE, NOW)

    with store.transaction() as tx:
        assert len(store.get_pending_requests(tx, canonical_pair(u1, u2))) == 1
        snap = store.load_snapshot(tx, canonical_pair(u1, u3))
        assert snap.state == RelationshipState.ACTIVE
        assert [r.sender_id for r in snap.pending] == [u3]


def test_conversation_previews_deleted_with_pair(store, users, session_factory):
    u1, u2, u3 = users
    with session_factory() as db:
        db.add_all(
            [
                ConversationPreview(user_id=u1, friend_id=u2, last_message="yo"),
                ConversationPreview(user_id=u2, friend_id=u1, last_message="yo"),
                ConversationPreview(user_id=u1, friend_id=u3),
            ]
        )
        db.commit()

    with store.transaction() as tx:
        assert store.delete_conversation_previews(tx, canonical_pair(u2, u1)) == 2
    assert _count(session_factory, ConversationPreview) == 1


def test_missing_schema_is_a_storage_failure():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SqlRelationshipStore(sessionmaker(bind=engine))
    with pytest.raises(StorageFailure):
        FriendshipEngine(store).send_request(1, 2)


def test_unknown_user_is_not_found(store, users, session_factory):
    u1, _, _ = users
    engine = FriendshipEngine(store)

    with pytest.raises(NotFound) as e:
        engine.block_user(u1, 999)
    assert e.value.reason == RejectionReason.NO_SUCH_USER
    with pytest.raises(NotFound):
        engine.send_request(999, u1)
    assert _count(session_factory, FriendRequest) == 0


def test_foreign_key_failure_is_not_a_conflict():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_fks(dbapi_conn, _record):
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as db:
        db.add(User(external_id="only"))
        db.commit()
        (u1,) = db.execute(select(User.id)).scalars().all()

    store = SqlRelationshipStore(factory)
    with pytest.raises(StorageFailure) as e:
        with store.transaction() as tx:
            store.insert_request(tx, u1, 999, None, NOW)
    assert not isinstance(e.value, ConcurrencyConflict)
    assert _count(factory, FriendRequest) == 0


def test_records_carry_utc_timestamps(store, users):
    u1, u2, _ = users
    engine = FriendshipEngine(store)
    engine.send_request(u1, u2)
    (req,) = engine.list_outgoing_requests(u1)
    assert req.created_at.tzinfo is not None
