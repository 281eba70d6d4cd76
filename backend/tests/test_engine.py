from datetime import datetime, timedelta, timezone
import itertools

import pytest

from friendgraph.dispatch import EventBus, RecordingHandler
from friendgraph.domain.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    RejectionReason,
    StorageFailure,
    ValidationFailed,
)
from friendgraph.domain.events import EventType
from friendgraph.domain.pairs import canonical_pair
from friendgraph.domain.states import FriendshipStatus, RelationshipState
from friendgraph.engine import FriendshipEngine
from friendgraph.store.memory import InMemoryRelationshipStore

A, B, C = 1, 2, 3


def ticking_clock():
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    counter = itertools.count()
    return lambda: start + timedelta(seconds=next(counter))


@pytest.fixture()
def store():
    return InMemoryRelationshipStore()


@pytest.fixture()
def recorder():
    return RecordingHandler()


@pytest.fixture()
def engine(store, recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    return FriendshipEngine(store, events=bus, clock=ticking_clock())


def _pair_rows(store, a, b):
    pair = canonical_pair(a, b)
    with store.transaction() as tx:
        return (
            store.get_relationship(tx, pair),
            store.get_requests_for_pair(tx, pair),
            store.list_notifications_for_pair(tx, pair),
        )


def test_request_accept_remove_and_refriend(engine, store):
    r1 = engine.send_request(A, B)
    assert engine.relationship_status(A, B) == FriendshipStatus.REQUEST_SENT
    assert engine.relationship_status(B, A) == FriendshipStatus.REQUEST_RECEIVED

    engine.accept_request(r1, B)
    assert engine.list_friends(A) == [B]
    assert engine.list_friends(B) == [A]

    assert engine.remove_friend(A, B) is True
    rel, requests, notes = _pair_rows(store, A, B)
    assert rel is None
    assert requests == []
    assert [n.type for n in notes] == ["friend_removed"]
    assert notes[0].user_id == B

    # The other side can start over right away.
    r2 = engine.send_request(B, A)
    engine.accept_request(r2, A)

    rel, requests, notes = _pair_rows(store, A, B)
    assert rel.state == RelationshipState.ACTIVE
    assert requests == []
    assert sorted((n.type, n.user_id) for n in notes) == [
        ("friend_accepted", A),
        ("friend_accepted", B),
    ]


def test_accept_clears_request_and_its_notification(engine, store):
    rid = engine.send_request(A, B, message="  hi there  ")
    _, requests, notes = _pair_rows(store, A, B)
    assert requests[0].message == "hi there"
    assert notes[0].type == "friend_request"
    assert notes[0].payload == {"request_id": rid, "message": "hi there"}

    rel_id = engine.accept_request(rid, B)
    rel, requests, notes = _pair_rows(store, A, B)
    assert rel.id == rel_id
    assert requests == []
    assert {n.type for n in notes} == {"friend_accepted"}


def test_decline_and_cancel_delete_the_request(engine, store, recorder):
    rid = engine.send_request(A, B)
    engine.decline_request(rid, B)
    rel, requests, notes = _pair_rows(store, A, B)
    assert (rel, requests, notes) == (None, [], [])

    rid = engine.send_request(A, B)
    engine.cancel_request(rid, A)
    assert _pair_rows(store, A, B) == (None, [], [])

    assert recorder.types() == [
        "friend_request",
        "friend_declined",
        "friend_request",
        "friend_request_cancelled",
    ]
    declined = recorder.events[1]
    assert declined.audience == (A,)


def test_duplicate_and_reverse_requests_rejected(engine):
    engine.send_request(A, B)
    with pytest.raises(InvalidTransition) as e:
        engine.send_request(A, B)
    assert e.value.reason == RejectionReason.REQUEST_EXISTS

    with pytest.raises(InvalidTransition) as e:
        engine.send_request(B, A)
    assert e.value.reason == RejectionReason.REQUEST_EXISTS


def test_send_to_friend_rejected(engine):
    engine.accept_request(engine.send_request(A, B), B)
    with pytest.raises(InvalidTransition) as e:
        engine.send_request(B, A)
    assert e.value.reason == RejectionReason.ALREADY_FRIENDS


def test_self_target_rejected(engine, recorder):
    for call in (
        lambda: engine.send_request(A, A),
        lambda: engine.remove_friend(A, A),
        lambda: engine.block_user(A, A),
        lambda: engine.unblock_user(A, A),
    ):
        with pytest.raises(InvalidTransition) as e:
            call()
        assert e.value.reason == RejectionReason.SELF_TARGET
    assert recorder.events == []


def test_wrong_actor_not_authorized(engine, store):
    rid = engine.send_request(A, B)
    for call in (
        lambda: engine.accept_request(rid, A),
        lambda: engine.accept_request(rid, C),
        lambda: engine.decline_request(rid, A),
        lambda: engine.cancel_request(rid, B),
    ):
        with pytest.raises(InvalidTransition) as e:
            call()
        assert e.value.reason == RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION

    _, requests, _ = _pair_rows(store, A, B)
    assert [r.id for r in requests] == [rid]


def test_unknown_or_resolved_request_not_found(engine):
    with pytest.raises(NotFound) as e:
        engine.accept_request(999, B)
    assert e.value.reason == RejectionReason.NO_SUCH_REQUEST

    rid = engine.send_request(A, B)
    engine.decline_request(rid, B)
    with pytest.raises(NotFound):
        engine.accept_request(rid, B)


def test_remove_is_idempotent(engine, recorder):
    engine.accept_request(engine.send_request(A, B), B)
    assert engine.remove_friend(A, B) is True
    assert engine.remove_friend(A, B) is False
    assert engine.remove_friend(B, A) is False
    assert engine.remove_friend(A, C) is False
    assert recorder.types().count("friend_removed") == 1


def test_remove_purges_conversation_previews(engine, store, recorder):
    engine.accept_request(engine.send_request(A, B), B)
    store.add_conversation_preview(A, B, "see you at 5")
    store.add_conversation_preview(B, A, "ok")
    store.add_conversation_preview(A, C, "unrelated")

    engine.remove_friend(B, A)

    assert [(p.user_id, p.friend_id) for p in store.conversation_previews()] == [(A, C)]
    removed = recorder.events[-1]
    assert removed.type == EventType.FRIEND_REMOVED
    assert removed.payload["cleanup"]["conversation_previews"] == 2
    assert set(removed.audience) == {A, B}


def test_block_wipes_pair_and_takes_precedence(engine, store, recorder):
    engine.send_request(B, A)
    store.add_conversation_preview(A, B)

    engine.block_user(A, B, reason="spam")

    rel, requests, notes = _pair_rows(store, A, B)
    assert rel.state == RelationshipState.BLOCKED
    assert rel.blocker_id == A
    assert rel.block_reason == "spam"
    assert requests == []
    assert notes == []
    assert store.conversation_previews() == []

    for call in (lambda: engine.send_request(B, A), lambda: engine.send_request(A, B)):
        with pytest.raises(InvalidTransition) as e:
            call()
        assert e.value.reason == RejectionReason.BLOCKED

    assert engine.relationship_status(A, B) == FriendshipStatus.BLOCKED
    assert engine.relationship_status(B, A) == FriendshipStatus.BLOCKED_BY

    blocked = recorder.events[-1]
    assert blocked.type == EventType.FRIEND_BLOCKED
    assert blocked.audience == (A,)
    assert blocked.payload == {"reason": "spam", "was_friend": False}


def test_block_friend_reports_was_friend(engine, recorder):
    engine.accept_request(engine.send_request(A, B), B)
    engine.block_user(B, A)
    assert recorder.events[-1].payload["was_friend"] is True
    assert engine.list_friends(A) == []


def test_block_already_blocked_pair_rejected(engine):
    engine.block_user(A, B)
    with pytest.raises(InvalidTransition) as e:
        engine.block_user(B, A)
    assert e.value.reason == RejectionReason.BLOCKED


def test_unblock(engine, recorder):
    engine.block_user(A, B)
    assert [r.blocked_id for r in engine.list_blocked(A)] == [B]
    assert engine.list_blocked(B) == []

    with pytest.raises(InvalidTransition) as e:
        engine.unblock_user(B, A)
    assert e.value.reason == RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION

    assert engine.unblock_user(A, B) is True
    assert engine.unblock_user(A, B) is False
    assert engine.relationship_status(A, B) == FriendshipStatus.NONE
    assert recorder.types()[-1] == "friend_unblocked"

    # back to NONE: requests work again
    engine.send_request(B, A)


def test_remove_leaves_block_intact(engine):
    engine.block_user(A, B)
    assert engine.remove_friend(B, A) is False
    assert engine.get_relationship(A, B).state == RelationshipState.BLOCKED


def test_text_validation(engine):
    engine.send_request(A, B, message="   ")
    with pytest.raises(ValidationFailed):
        engine.send_request(A, C, message="x" * 501)
    with pytest.raises(ValidationFailed):
        engine.block_user(A, C, reason="r" * 101)


def test_activity_log_is_append_only(engine, store):
    rid = engine.send_request(A, B)
    engine.decline_request(rid, B)
    engine.send_request(A, B)
    kinds = [a.kind for a in store.activity_log()]
    assert kinds == ["friend_request_sent", "friend_request_declined", "friend_request_sent"]


def test_list_requests(engine):
    r1 = engine.send_request(A, B)
    r2 = engine.send_request(C, B)
    assert [r.id for r in engine.list_incoming_requests(B)] == [r2, r1]
    assert [r.id for r in engine.list_outgoing_requests(A)] == [r1]
    assert engine.list_incoming_requests(A) == []


def test_event_audience(engine, recorder):
    rid = engine.send_request(A, B)
    engine.accept_request(rid, B)
    sent, accepted = recorder.events
    assert sent.audience == (B,)
    assert set(accepted.audience) == {A, B}
    assert accepted.subject_user_id == B
    assert accepted.as_dict()["type"] == "friend_accepted"


def test_failing_handler_does_not_break_transition(store, recorder):
    bus = EventBus()

    def explode(event):
        raise RuntimeError("push gateway down")

    bus.subscribe(explode)
    bus.subscribe(recorder, types=[EventType.FRIEND_ACCEPTED])
    engine = FriendshipEngine(store, events=bus)

    rid = engine.send_request(A, B)
    engine.accept_request(rid, B)
    assert recorder.types() == ["friend_accepted"]
    assert engine.list_friends(A) == [B]


def test_rejected_transition_emits_nothing_and_writes_nothing(engine, store, recorder):
    engine.block_user(A, B)
    before = len(store.activity_log())
    with pytest.raises(InvalidTransition):
        engine.send_request(B, A)
    assert len(store.activity_log()) == before
    assert recorder.types() == ["friend_blocked"]


class FlakyStore(InMemoryRelationshipStore):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def insert_request(self, tx, sender_id, receiver_id, message, now):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConcurrencyConflict("unique violation")
        return super().insert_request(tx, sender_id, receiver_id, message, now)


def test_conflict_is_retried_once(recorder):
    store = FlakyStore(failures=1)
    bus = EventBus()
    bus.subscribe(recorder)
    engine = FriendshipEngine(store, events=bus, conflict_retries=1)

    engine.send_request(A, B)
    assert store.attempts == 2
    assert recorder.types() == ["friend_request"]


def test_persistent_conflict_surfaces_as_request_exists(recorder):
    store = FlakyStore(failures=10)
    bus = EventBus()
    bus.subscribe(recorder)
    engine = FriendshipEngine(store, events=bus, conflict_retries=1)

    with pytest.raises(InvalidTransition) as e:
        engine.send_request(A, B)
    assert e.value.reason == RejectionReason.REQUEST_EXISTS
    assert store.attempts == 2
    assert recorder.events == []
    # the failed attempts rolled back
    assert store.activity_log() == []


class BrokenStore(InMemoryRelationshipStore):
    def insert_activity(self, tx, user_id, target_user_id, kind, now):
        raise StorageFailure("connection reset")


def test_storage_failure_rolls_back(recorder):
    store = BrokenStore()
    bus = EventBus()
    bus.subscribe(recorder)
    engine = FriendshipEngine(store, events=bus)

    with pytest.raises(StorageFailure):
        engine.send_request(A, B)
    assert engine.list_outgoing_requests(A) == []
    assert recorder.events == []


def test_hi_then_hi_again(engine, store):
    rid = engine.send_request(1, 2, "hi")
    rel_id = engine.accept_request(rid, 2)

    rel = engine.get_relationship(2, 1)
    assert rel.id == rel_id
    assert (rel.pair.low, rel.pair.high, rel.state) == (1, 2, RelationshipState.ACTIVE)

    engine.remove_friend(1, 2)
    rel, requests, _ = _pair_rows(store, 1, 2)
    assert rel is None
    assert requests == []

    assert engine.send_request(2, 1, "hi again")


def test_zero_length_limits_are_honoured(store):
    engine = FriendshipEngine(store, message_max_length=0, reason_max_length=0)
    with pytest.raises(ValidationFailed):
        engine.send_request(A, B, message="hi")
    with pytest.raises(ValidationFailed):
        engine.block_user(A, B, reason="r")
    # blank text still normalises to no text
    engine.send_request(A, B, message="  ")


def test_update_block_reason(engine, recorder):
    engine.block_user(A, B, reason="spam")
    before = engine.get_relationship(A, B)
    events_before = len(recorder.events)

    rel = engine.update_block_reason(A, B, "  harassment ")
    assert rel.block_reason == "harassment"
    assert rel.id == before.id
    assert rel.created_at == before.created_at
    assert (rel.state, rel.blocker_id) == (RelationshipState.BLOCKED, A)
    assert len(recorder.events) == events_before

    assert engine.update_block_reason(A, B, None).block_reason is None
    with pytest.raises(ValidationFailed):
        engine.update_block_reason(A, B, "r" * 101)


def test_update_block_reason_needs_own_block(engine):
    engine.block_user(A, B)
    with pytest.raises(NotFound) as e:
        engine.update_block_reason(B, A, "nope")
    assert e.value.reason == RejectionReason.NO_SUCH_RELATIONSHIP

    rid = engine.send_request(A, C)
    engine.accept_request(rid, C)
    with pytest.raises(NotFound):
        engine.update_block_reason(A, C, "friends are not blocked")
    with pytest.raises(InvalidTransition):
        engine.update_block_reason(A, A, "self")


def test_bulk_unblock(engine, recorder):
    engine.block_user(A, B)
    engine.block_user(A, C)
    engine.block_user(4, A)

    # duplicates collapse, and a block placed on A is not A's to lift
    assert engine.bulk_unblock(A, [B, B, 4, C]) == [B, C]
    assert engine.list_blocked(A) == []
    assert engine.get_relationship(A, 4).state == RelationshipState.BLOCKED
    assert recorder.types()[-2:] == ["friend_unblocked", "friend_unblocked"]

    with pytest.raises(NotFound):
        engine.bulk_unblock(A, [B, C])
    with pytest.raises(ValidationFailed):
        engine.bulk_unblock(A, [])


def test_bulk_unblock_size_cap(engine, monkeypatch):
    from friendgraph.core.settings import settings

    monkeypatch.setattr(settings, "BULK_UNBLOCK_MAX", 2)
    with pytest.raises(ValidationFailed):
        engine.bulk_unblock(A, [B, C, 4])


def test_stats(store):
    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    engine = FriendshipEngine(store, clock=lambda: now[0])

    rid = engine.send_request(A, B)
    engine.accept_request(rid, B)
    engine.block_user(A, 5, reason="spam")
    now[0] += timedelta(days=45)
    rid = engine.send_request(A, C)
    engine.accept_request(rid, C)
    engine.send_request(A, 4)
    engine.send_request(6, A)
    engine.block_user(A, 7, reason="spam")
    engine.block_user(A, 8)

    assert engine.friend_stats(A) == {"total_friends": 2, "recent_friendships": 1}
    assert engine.request_stats(A) == {"incoming_pending": 1, "outgoing_pending": 1, "total_pending": 2}
    assert engine.block_stats(A) == {
        "total_blocked": 3,
        "recent_blocks": 2,
        "blocks_with_reason": 2,
        "top_reasons": [{"reason": "spam", "count": 2}],
    }
    assert engine.block_stats(5)["total_blocked"] == 0
