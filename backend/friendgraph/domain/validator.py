"""Transition rules for a single user pair.

``validate`` is pure: it looks only at the snapshot it is handed and never
touches storage, so it can be exercised exhaustively without a database.
"""

from dataclasses import dataclass

from friendgraph.domain.errors import RejectionReason
from friendgraph.domain.records import PairSnapshot, RequestRecord
from friendgraph.domain.states import RelationshipState, Transition


@dataclass(frozen=True)
class Allowed:
    # True when the transition is legal but there is nothing to change
    # (removing a friendship that is already gone, unblocking a pair that
    # isn't blocked).
    noop: bool = False


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason


Verdict = Allowed | Rejected

_REQUEST_TRANSITIONS = frozenset({Transition.ACCEPT, Transition.DECLINE, Transition.CANCEL})


def precheck(transition: Transition, actor_id: int, target_id: int) -> Rejected | None:
    """Checks that need no stored state."""
    if actor_id == target_id:
        return Rejected(RejectionReason.SELF_TARGET)
    return None


def validate(
    snapshot: PairSnapshot | None,
    transition: Transition,
    actor_id: int,
    target_id: int,
    request: RequestRecord | None = None,
) -> Verdict:
    """Decide whether ``actor_id`` may apply ``transition`` towards ``target_id``.

    ``request`` is the friend request being acted on and is only consulted for
    accept, decline and cancel. ``snapshot`` may be None only when the
    precheck already rejects the call.
    """
    transition = Transition(transition)

    early = precheck(transition, actor_id, target_id)
    if early is not None:
        return early
    if snapshot is None:
        raise ValueError("snapshot is required once the precheck passes")

    if transition == Transition.SEND_REQUEST:
        return _validate_send(snapshot)
    if transition in _REQUEST_TRANSITIONS:
        return _validate_request_action(snapshot, transition, actor_id, request)
    if transition == Transition.REMOVE:
        return _validate_remove(snapshot)
    if transition == Transition.BLOCK:
        return _validate_block(snapshot)
    if transition == Transition.UNBLOCK:
        return _validate_unblock(snapshot, actor_id)

    raise ValueError(f"unknown transition {transition!r}")


def _validate_send(snapshot: PairSnapshot) -> Verdict:
    state = snapshot.state
    if state == RelationshipState.BLOCKED:
        return Rejected(RejectionReason.BLOCKED)
    if state == RelationshipState.ACTIVE:
        return Rejected(RejectionReason.ALREADY_FRIENDS)
    # A pending request in either direction blocks a new one.
    if snapshot.pending:
        return Rejected(RejectionReason.REQUEST_EXISTS)
    return Allowed()


def _validate_request_action(
    snapshot: PairSnapshot,
    transition: Transition,
    actor_id: int,
    request: RequestRecord | None,
) -> Verdict:
    if request is None or not request.is_pending:
        return Rejected(RejectionReason.NO_SUCH_REQUEST)
    if request.pair != snapshot.pair:
        raise ValueError("request does not belong to the snapshot's pair")

    if transition == Transition.CANCEL:
        if actor_id != request.sender_id:
            return Rejected(RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION)
        return Allowed()

    # accept / decline belong to the receiver only
    if actor_id != request.receiver_id:
        return Rejected(RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION)

    if transition == Transition.ACCEPT:
        state = snapshot.state
        if state == RelationshipState.BLOCKED:
            return Rejected(RejectionReason.BLOCKED)
        if state == RelationshipState.ACTIVE:
            return Rejected(RejectionReason.ALREADY_FRIENDS)
    return Allowed()


def _validate_remove(snapshot: PairSnapshot) -> Verdict:
    if snapshot.state == RelationshipState.ACTIVE:
        return Allowed()
    # Double-clicks and retries land here.
    return Allowed(noop=True)


def _validate_block(snapshot: PairSnapshot) -> Verdict:
    if snapshot.state == RelationshipState.BLOCKED:
        return Rejected(RejectionReason.BLOCKED)
    return Allowed()


def _validate_unblock(snapshot: PairSnapshot, actor_id: int) -> Verdict:
    rel = snapshot.relationship
    if rel is None or rel.state != RelationshipState.BLOCKED:
        return Allowed(noop=True)
    if rel.blocker_id != actor_id:
        return Rejected(RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION)
    return Allowed()
