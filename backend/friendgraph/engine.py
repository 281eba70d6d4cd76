"""Friend relationship lifecycle.

Every mutating operation runs as one store transaction: read the pair under
lock, ask the validator, apply the row changes and the derived rows
(notifications, activity, conversation previews) together, then publish the
domain event once the transaction has committed.
"""

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from friendgraph.core.settings import settings
from friendgraph.dispatch import EventBus
from friendgraph.domain.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    RejectionReason,
    ValidationFailed,
    rejection_error,
)
from friendgraph.domain.events import DomainEvent, EventType
from friendgraph.domain.pairs import CanonicalPair, canonical_pair
from friendgraph.domain.records import (
    NotificationRecord,
    PairSnapshot,
    RelationshipRecord,
    RequestRecord,
)
from friendgraph.domain.states import (
    PAIR_NOTIFICATION_TYPES,
    ActivityKind,
    FriendshipStatus,
    NotificationType,
    RelationshipState,
    RequestStatus,
    Transition,
)
from friendgraph.domain.validator import Rejected, Verdict, precheck, validate
from friendgraph.store.base import INCOMING, OUTGOING, RelationshipStore

log = logging.getLogger(__name__)

RECENT = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconcileReport:
    pair: CanonicalPair
    actions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.actions)


def _raise_if_rejected(verdict: Verdict) -> None:
    if isinstance(verdict, Rejected):
        raise rejection_error(verdict.reason)


def _counterparty(req: RequestRecord, actor_id: int) -> int:
    return req.receiver_id if actor_id == req.sender_id else req.sender_id


def find_orphaned_notifications(
    notifications: list[NotificationRecord],
    relationship: RelationshipRecord | None,
    pending: list[RequestRecord],
) -> list[NotificationRecord]:
    """Notifications of one pair that point at a request or friendship that is gone.

    Removal notices are left alone: they describe the removal itself.
    """
    live_requests = {(r.id, r.receiver_id) for r in pending}
    state = relationship.state if relationship is not None else RelationshipState.NONE
    out = []
    for n in notifications:
        if state == RelationshipState.BLOCKED:
            out.append(n)
        elif n.type == NotificationType.FRIEND_REQUEST.value:
            if (n.payload.get("request_id"), n.user_id) not in live_requests:
                out.append(n)
        elif n.type == NotificationType.FRIEND_ACCEPTED.value and state != RelationshipState.ACTIVE:
            out.append(n)
    return out


class FriendshipEngine:
    def __init__(
        self,
        store: RelationshipStore,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        conflict_retries: int | None = None,
        message_max_length: int | None = None,
        reason_max_length: int | None = None,
    ):
        self.store = store
        self.events = events if events is not None else EventBus()
        self._clock = clock
        self._conflict_retries = (
            settings.CONFLICT_RETRIES if conflict_retries is None else conflict_retries
        )
        self._message_max_length = (
            settings.REQUEST_MESSAGE_MAX_LENGTH if message_max_length is None else message_max_length
        )
        self._reason_max_length = (
            settings.BLOCK_REASON_MAX_LENGTH if reason_max_length is None else reason_max_length
        )

    # plumbing

    def _run(self, op: str, work: Callable[[Any, datetime], tuple[Any, list[DomainEvent]]]):
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.store.transaction() as tx:
                    result, events = work(tx, self._clock())
            except ConcurrencyConflict as e:
                if attempt <= self._conflict_retries:
                    log.warning("%s: concurrent writer on the same pair, retrying (%s)", op, e)
                    continue
                log.warning("%s: conflict persisted after %d attempts", op, attempt)
                raise InvalidTransition(RejectionReason.REQUEST_EXISTS) from e

            # Delivery happens after commit and never holds the pair's locks.
            for event in events:
                self.events.publish(event)
            return result

    def _check_distinct(self, transition: Transition, actor_id: int, target_id: int) -> CanonicalPair:
        early = precheck(transition, actor_id, target_id)
        if early is not None:
            raise rejection_error(early.reason)
        return canonical_pair(actor_id, target_id)

    def _clean_text(self, value: str | None, limit: int, what: str) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if len(value) > limit:
            raise ValidationFailed(f"{what} is too long (max {limit} characters)")
        return value

    def _purge_pair(self, tx: Any, pair: CanonicalPair) -> dict[str, int]:
        """Delete every live trace of the pair: relationship, all requests,
        derived notifications and cached conversation previews."""
        return {
            "relationships": self.store.delete_relationship(tx, pair),
            "requests": self.store.delete_requests_for_pair(tx, pair),
            "notifications": self.store.delete_notifications_for_pair(
                tx, pair, [t.value for t in PAIR_NOTIFICATION_TYPES]
            ),
            "conversation_previews": self.store.delete_conversation_previews(tx, pair),
        }

    def _locked_snapshot(self, tx: Any, pair: CanonicalPair) -> PairSnapshot:
        self.store.lock_pair(tx, pair)
        return self.store.load_snapshot(tx, pair)

    def _lock_pending_request(self, tx: Any, request_id: int) -> tuple[RequestRecord, PairSnapshot]:
        """Lock the request's pair, then re-read the request under that lock."""
        req = self.store.get_request(tx, request_id)
        if req is None or not req.is_pending:
            raise NotFound(RejectionReason.NO_SUCH_REQUEST)
        snapshot = self._locked_snapshot(tx, req.pair)
        req = self.store.get_request(tx, request_id, for_update=True)
        if req is None or not req.is_pending:
            raise NotFound(RejectionReason.NO_SUCH_REQUEST)
        return req, snapshot

    # transitions

    def send_request(self, sender_id: int, receiver_id: int, message: str | None = None) -> int:
        pair = self._check_distinct(Transition.SEND_REQUEST, sender_id, receiver_id)
        message = self._clean_text(message, self._message_max_length, "message")

        def work(tx, now):
            snapshot = self._locked_snapshot(tx, pair)
            _raise_if_rejected(validate(snapshot, Transition.SEND_REQUEST, sender_id, receiver_id))

            req = self.store.insert_request(tx, sender_id, receiver_id, message, now)
            self.store.insert_notification(
                tx,
                receiver_id,
                sender_id,
                NotificationType.FRIEND_REQUEST.value,
                {"request_id": req.id, "message": message},
                now,
            )
            self.store.insert_activity(tx, sender_id, receiver_id, ActivityKind.REQUEST_SENT.value, now)
            event = DomainEvent(
                EventType.FRIEND_REQUEST,
                sender_id,
                receiver_id,
                now,
                {"request_id": req.id, "message": message},
            )
            return req.id, [event]

        request_id = self._run("send_request", work)
        log.info("friend request %s sent %s -> %s", request_id, sender_id, receiver_id)
        return request_id

    def accept_request(self, request_id: int, acting_user_id: int) -> int:
        def work(tx, now):
            req, snapshot = self._lock_pending_request(tx, request_id)
            _raise_if_rejected(
                validate(
                    snapshot,
                    Transition.ACCEPT,
                    acting_user_id,
                    _counterparty(req, acting_user_id),
                    request=req,
                )
            )

            # The request's outcome now lives in the relationship row; drop it and
            # anything left over from earlier cycles between the pair.
            self.store.delete_requests_for_pair(tx, req.pair)
            self.store.delete_notifications_for_pair(
                tx, req.pair, [t.value for t in PAIR_NOTIFICATION_TYPES]
            )
            rel = self.store.upsert_relationship(tx, req.pair, RelationshipState.ACTIVE, now)

            payload = {"request_id": req.id, "relationship_id": rel.id}
            self.store.insert_notification(
                tx, req.sender_id, req.receiver_id, NotificationType.FRIEND_ACCEPTED.value, payload, now
            )
            self.store.insert_notification(
                tx, req.receiver_id, req.sender_id, NotificationType.FRIEND_ACCEPTED.value, payload, now
            )
            self.store.insert_activity(
                tx, acting_user_id, req.sender_id, ActivityKind.REQUEST_ACCEPTED.value, now
            )
            event = DomainEvent(EventType.FRIEND_ACCEPTED, acting_user_id, req.sender_id, now, payload)
            return rel.id, [event]

        relationship_id = self._run("accept_request", work)
        log.info("friend request %s accepted by %s", request_id, acting_user_id)
        return relationship_id

    def decline_request(self, request_id: int, acting_user_id: int) -> None:
        self._resolve_request(request_id, acting_user_id, Transition.DECLINE)

    def cancel_request(self, request_id: int, acting_user_id: int) -> None:
        self._resolve_request(request_id, acting_user_id, Transition.CANCEL)

    def _resolve_request(self, request_id: int, acting_user_id: int, transition: Transition) -> None:
        if transition == Transition.DECLINE:
            kind, event_type = ActivityKind.REQUEST_DECLINED, EventType.FRIEND_DECLINED
        else:
            kind, event_type = ActivityKind.REQUEST_CANCELLED, EventType.FRIEND_REQUEST_CANCELLED

        def work(tx, now):
            req, snapshot = self._lock_pending_request(tx, request_id)
            _raise_if_rejected(
                validate(snapshot, transition, acting_user_id, _counterparty(req, acting_user_id), request=req)
            )

            self.store.delete_request(tx, req.id)
            self.store.delete_notifications_for_pair(
                tx, req.pair, [NotificationType.FRIEND_REQUEST.value]
            )
            counterparty = _counterparty(req, acting_user_id)
            self.store.insert_activity(tx, acting_user_id, counterparty, kind.value, now)
            event = DomainEvent(event_type, acting_user_id, counterparty, now, {"request_id": req.id})
            return None, [event]

        self._run(transition.value, work)
        log.info("friend request %s %s by %s", request_id, transition.value, acting_user_id)

    def remove_friend(self, actor_id: int, target_id: int) -> bool:
        """Unfriend. Returns False when there was no friendship to remove."""
        pair = self._check_distinct(Transition.REMOVE, actor_id, target_id)

        def work(tx, now):
            snapshot = self._locked_snapshot(tx, pair)
            verdict = validate(snapshot, Transition.REMOVE, actor_id, target_id)
            _raise_if_rejected(verdict)
            if verdict.noop:
                return False, []

            removed = self._purge_pair(tx, pair)
            self.store.insert_notification(
                tx,
                target_id,
                actor_id,
                NotificationType.FRIEND_REMOVED.value,
                {"removed_by": actor_id},
                now,
            )
            self.store.insert_activity(tx, actor_id, target_id, ActivityKind.FRIEND_REMOVED.value, now)
            event = DomainEvent(EventType.FRIEND_REMOVED, actor_id, target_id, now, {"cleanup": removed})
            return True, [event]

        changed = self._run("remove_friend", work)
        if changed:
            log.info("friendship %s removed by %s", pair, actor_id)
        else:
            log.info("remove_friend %s -> %s: nothing to remove", actor_id, target_id)
        return changed

    def block_user(self, blocker_id: int, blocked_id: int, reason: str | None = None) -> int:
        pair = self._check_distinct(Transition.BLOCK, blocker_id, blocked_id)
        reason = self._clean_text(reason, self._reason_max_length, "reason")

        def work(tx, now):
            snapshot = self._locked_snapshot(tx, pair)
            _raise_if_rejected(validate(snapshot, Transition.BLOCK, blocker_id, blocked_id))

            removed = self._purge_pair(tx, pair)
            rel = self.store.upsert_relationship(
                tx, pair, RelationshipState.BLOCKED, now, blocker_id=blocker_id, block_reason=reason
            )
            self.store.insert_activity(tx, blocker_id, blocked_id, ActivityKind.USER_BLOCKED.value, now)
            event = DomainEvent(
                EventType.FRIEND_BLOCKED,
                blocker_id,
                blocked_id,
                now,
                {"reason": reason, "was_friend": bool(removed["relationships"])},
            )
            return rel.id, [event]

        relationship_id = self._run("block_user", work)
        log.info("user %s blocked %s", blocker_id, blocked_id)
        return relationship_id

    def unblock_user(self, blocker_id: int, blocked_id: int) -> bool:
        """Lift a block. Returns False when the pair wasn't blocked."""
        pair = self._check_distinct(Transition.UNBLOCK, blocker_id, blocked_id)

        def work(tx, now):
            snapshot = self._locked_snapshot(tx, pair)
            verdict = validate(snapshot, Transition.UNBLOCK, blocker_id, blocked_id)
            _raise_if_rejected(verdict)
            if verdict.noop:
                return False, []

            self.store.delete_relationship(tx, pair)
            self.store.insert_activity(tx, blocker_id, blocked_id, ActivityKind.USER_UNBLOCKED.value, now)
            return True, [DomainEvent(EventType.FRIEND_UNBLOCKED, blocker_id, blocked_id, now)]

        changed = self._run("unblock_user", work)
        if changed:
            log.info("user %s unblocked %s", blocker_id, blocked_id)
        return changed

    def update_block_reason(
        self, blocker_id: int, blocked_id: int, reason: str | None
    ) -> RelationshipRecord:
        pair = self._check_distinct(Transition.BLOCK, blocker_id, blocked_id)
        reason = self._clean_text(reason, self._reason_max_length, "reason")

        def work(tx, now):
            rel = self._locked_snapshot(tx, pair).relationship
            # A block placed by the other side is not the caller's to edit.
            if rel is None or rel.state != RelationshipState.BLOCKED or rel.blocker_id != blocker_id:
                raise NotFound(RejectionReason.NO_SUCH_RELATIONSHIP, "user is not blocked")
            rel = self.store.upsert_relationship(
                tx, pair, RelationshipState.BLOCKED, now, blocker_id=blocker_id, block_reason=reason
            )
            return rel, []

        rel = self._run("update_block_reason", work)
        log.info("user %s updated block reason for %s", blocker_id, blocked_id)
        return rel

    def bulk_unblock(self, blocker_id: int, blocked_ids: Iterable[int]) -> list[int]:
        """Lift several blocks placed by ``blocker_id``; returns the ids actually unblocked.

        Each pair is unblocked in its own transaction, so a failure part-way
        leaves the earlier unblocks committed and the call safe to repeat.
        """
        wanted = list(dict.fromkeys(blocked_ids))
        if not wanted:
            raise ValidationFailed("no user ids given")
        if len(wanted) > settings.BULK_UNBLOCK_MAX:
            raise ValidationFailed(f"cannot unblock more than {settings.BULK_UNBLOCK_MAX} users at once")

        placed = {r.blocked_id for r in self.list_blocked(blocker_id)}
        targets = [uid for uid in wanted if uid in placed]
        if not targets:
            raise NotFound(RejectionReason.NO_SUCH_RELATIONSHIP, "none of these users are blocked")
        return [uid for uid in targets if self.unblock_user(blocker_id, uid)]

    # maintenance

    def reconcile_pair(self, user_a: int, user_b: int) -> ReconcileReport:
        """Bring one pair back in line with the store invariants.

        Used by the offline audit tool. Runs under the same locks as the
        transitions so it cannot race them into a new inconsistent state.
        """
        pair = canonical_pair(user_a, user_b)

        def work(tx, now):
            report = ReconcileReport(pair)
            self.store.lock_pair(tx, pair)
            rel = self.store.get_relationship(tx, pair, for_update=True)
            requests = self.store.get_requests_for_pair(tx, pair)

            accepted = [r for r in requests if r.status == RequestStatus.ACCEPTED]
            if rel is None and accepted:
                rel = self.store.upsert_relationship(tx, pair, RelationshipState.ACTIVE, now)
                report.actions.append("restored_friendship")

            surviving: list[RequestRecord] = []
            if rel is not None:
                if requests:
                    self.store.delete_requests_for_pair(tx, pair)
                    report.actions.append(f"deleted_requests:{len(requests)}")
            else:
                pending = [r for r in requests if r.is_pending]
                stale = [r for r in requests if not r.is_pending]
                # Keep the oldest pending request; one direction only.
                if pending:
                    surviving = pending[:1]
                    stale.extend(pending[1:])
                for r in stale:
                    self.store.delete_request(tx, r.id)
                if stale:
                    report.actions.append(f"deleted_requests:{len(stale)}")

            orphaned = find_orphaned_notifications(
                self.store.list_notifications_for_pair(tx, pair), rel, surviving
            )
            for n in orphaned:
                self.store.delete_notification(tx, n.id)
            if orphaned:
                report.actions.append(f"deleted_notifications:{len(orphaned)}")

            if report.changed:
                self.store.insert_activity(
                    tx, pair.low, pair.high, ActivityKind.PAIR_RECONCILED.value, now
                )
            return report, []

        report = self._run("reconcile_pair", work)
        if report.changed:
            log.info("reconciled %s: %s", pair, ", ".join(report.actions))
        return report

    # reads

    def get_relationship(self, user_a: int, user_b: int) -> RelationshipRecord | None:
        with self.store.transaction() as tx:
            return self.store.get_relationship(tx, canonical_pair(user_a, user_b))

    def list_friends(self, user_id: int) -> list[int]:
        with self.store.transaction() as tx:
            rows = self.store.list_relationships_for_user(tx, user_id, RelationshipState.ACTIVE)
        return [r.pair.other(user_id) for r in rows]

    def list_incoming_requests(self, user_id: int) -> list[RequestRecord]:
        with self.store.transaction() as tx:
            return self.store.list_requests_for_user(tx, user_id, INCOMING)

    def list_outgoing_requests(self, user_id: int) -> list[RequestRecord]:
        with self.store.transaction() as tx:
            return self.store.list_requests_for_user(tx, user_id, OUTGOING)

    def list_blocked(self, user_id: int) -> list[RelationshipRecord]:
        """Blocks placed by ``user_id`` (not blocks placed on them)."""
        with self.store.transaction() as tx:
            rows = self.store.list_relationships_for_user(tx, user_id, RelationshipState.BLOCKED)
        return [r for r in rows if r.blocker_id == user_id]

    def relationship_status(self, viewer_id: int, other_id: int) -> FriendshipStatus:
        if viewer_id == other_id:
            return FriendshipStatus.NONE
        pair = canonical_pair(viewer_id, other_id)
        with self.store.transaction() as tx:
            snapshot = self.store.load_snapshot(tx, pair, for_update=False)

        if snapshot.state == RelationshipState.ACTIVE:
            return FriendshipStatus.FRIENDS
        if snapshot.state == RelationshipState.BLOCKED:
            if snapshot.relationship.blocker_id == viewer_id:
                return FriendshipStatus.BLOCKED
            return FriendshipStatus.BLOCKED_BY
        if snapshot.pending_from(viewer_id):
            return FriendshipStatus.REQUEST_SENT
        if snapshot.pending_from(other_id):
            return FriendshipStatus.REQUEST_RECEIVED
        return FriendshipStatus.NONE

    def friend_stats(self, user_id: int) -> dict[str, int]:
        since = self._clock() - RECENT
        with self.store.transaction() as tx:
            rows = self.store.list_relationships_for_user(tx, user_id, RelationshipState.ACTIVE)
        return {
            "total_friends": len(rows),
            "recent_friendships": sum(1 for r in rows if r.created_at >= since),
        }

    def request_stats(self, user_id: int) -> dict[str, int]:
        # Resolved requests are deleted, so only pending ones can be counted.
        with self.store.transaction() as tx:
            incoming = len(self.store.list_requests_for_user(tx, user_id, INCOMING))
            outgoing = len(self.store.list_requests_for_user(tx, user_id, OUTGOING))
        return {
            "incoming_pending": incoming,
            "outgoing_pending": outgoing,
            "total_pending": incoming + outgoing,
        }

    def block_stats(self, user_id: int) -> dict[str, Any]:
        since = self._clock() - RECENT
        blocks = self.list_blocked(user_id)
        reasons = Counter(b.block_reason for b in blocks if b.block_reason)
        return {
            "total_blocked": len(blocks),
            "recent_blocks": sum(1 for b in blocks if b.created_at >= since),
            "blocks_with_reason": sum(reasons.values()),
            "top_reasons": [{"reason": r, "count": c} for r, c in reasons.most_common(5)],
        }
