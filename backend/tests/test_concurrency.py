from concurrent.futures import ThreadPoolExecutor
import threading

import pytest

from friendgraph.dispatch import EventBus, RecordingHandler
from friendgraph.domain.errors import FriendgraphError, RejectionReason
from friendgraph.domain.pairs import canonical_pair
from friendgraph.domain.states import RelationshipState
from friendgraph.engine import FriendshipEngine
from friendgraph.store.memory import InMemoryRelationshipStore

A, B = 1, 2
WORKERS = 16


@pytest.fixture()
def recorder():
    return RecordingHandler()


@pytest.fixture()
def engine(recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    return FriendshipEngine(InMemoryRelationshipStore(), events=bus)


def _race(calls):
    """Run every call at once and return (results, errors)."""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call(), None
        except FriendgraphError as e:
            return None, e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        outcomes = list(pool.map(run, calls))
    return [r for r, e in outcomes if e is None], [e for _, e in outcomes if e is not None]


def _pending(engine):
    pair = canonical_pair(A, B)
    with engine.store.transaction() as tx:
        return engine.store.get_pending_requests(tx, pair)


def test_concurrent_sends_leave_one_pending_request(engine, recorder):
    calls = [lambda: engine.send_request(A, B) for _ in range(WORKERS)]
    results, errors = _race(calls)

    assert len(results) == 1
    assert len(errors) == WORKERS - 1
    assert {e.reason for e in errors} == {RejectionReason.REQUEST_EXISTS}
    assert [r.id for r in _pending(engine)] == results
    assert recorder.types() == ["friend_request"]


def test_crossing_sends_leave_one_pending_request(engine):
    calls = []
    for i in range(WORKERS):
        calls.append((lambda: engine.send_request(A, B)) if i % 2 else (lambda: engine.send_request(B, A)))
    results, errors = _race(calls)

    assert len(results) == 1
    assert len(_pending(engine)) == 1
    assert {e.reason for e in errors} == {RejectionReason.REQUEST_EXISTS}


def test_concurrent_removes_all_succeed(engine, recorder):
    engine.accept_request(engine.send_request(A, B), B)

    calls = [(lambda: engine.remove_friend(A, B)) for _ in range(WORKERS // 2)]
    calls += [(lambda: engine.remove_friend(B, A)) for _ in range(WORKERS // 2)]
    results, errors = _race(calls)

    assert errors == []
    assert results.count(True) == 1
    assert results.count(False) == WORKERS - 1
    assert engine.get_relationship(A, B) is None
    assert recorder.types().count("friend_removed") == 1


def test_accept_racing_block_never_leaves_both(engine):
    rid = engine.send_request(A, B)

    def accept():
        return engine.accept_request(rid, B)

    def block():
        return engine.block_user(A, B)

    _race([accept, block])

    rel = engine.get_relationship(A, B)
    # Whatever order they ran in, the block is the final word and no request survives.
    assert rel.state == RelationshipState.BLOCKED
    assert _pending(engine) == []


def test_accept_racing_remove_leaves_no_hybrid(engine):
    for _ in range(10):
        rid = engine.send_request(A, B)
        _race([lambda: engine.accept_request(rid, B), lambda: engine.remove_friend(A, B)])

        rel = engine.get_relationship(A, B)
        pending = _pending(engine)
        assert not (rel is not None and pending)
        assert rel is None or rel.state == RelationshipState.ACTIVE
        engine.remove_friend(A, B)
