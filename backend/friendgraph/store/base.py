"""Persistence boundary for the friendship engine.

The store owns no business rules. Every method runs inside a transaction
handle obtained from :meth:`RelationshipStore.transaction`, so the engine can
compose several calls into one atomic transition. Pairs are canonicalised
before they reach the store; implementations never have to look up a pair in
both orders.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterable

from friendgraph.domain.pairs import CanonicalPair
from friendgraph.domain.records import (
    ActivityRecord,
    NotificationRecord,
    PairSnapshot,
    RelationshipRecord,
    RequestRecord,
)
from friendgraph.domain.states import RelationshipState

INCOMING = "incoming"
OUTGOING = "outgoing"


class RelationshipStore(ABC):
    @abstractmethod
    def transaction(self) -> AbstractContextManager[Any]:
        """Open a transaction and yield its handle.

        Commits when the block exits cleanly and rolls back on any exception.
        Unique-constraint violations surface as ``ConcurrencyConflict`` and
        driver/connection errors as ``StorageFailure``.
        """

    @abstractmethod
    def lock_pair(self, tx: Any, pair: CanonicalPair) -> None:
        """Serialise every transition on ``pair`` for the rest of the transaction.

        Must hold even when the pair has no rows yet, and must raise
        ``NotFound(NO_SUCH_USER)`` when either user does not exist.
        """

    # relationships

    @abstractmethod
    def get_relationship(
        self, tx: Any, pair: CanonicalPair, for_update: bool = False
    ) -> RelationshipRecord | None: ...

    @abstractmethod
    def upsert_relationship(
        self,
        tx: Any,
        pair: CanonicalPair,
        state: RelationshipState,
        now: datetime,
        blocker_id: int | None = None,
        block_reason: str | None = None,
    ) -> RelationshipRecord: ...

    @abstractmethod
    def delete_relationship(self, tx: Any, pair: CanonicalPair) -> int: ...

    @abstractmethod
    def list_relationships_for_user(
        self, tx: Any, user_id: int, state: RelationshipState
    ) -> list[RelationshipRecord]: ...

    @abstractmethod
    def list_all_relationships(self, tx: Any) -> list[RelationshipRecord]: ...

    # friend requests

    @abstractmethod
    def get_request(self, tx: Any, request_id: int, for_update: bool = False) -> RequestRecord | None: ...

    @abstractmethod
    def get_pending_requests(
        self, tx: Any, pair: CanonicalPair, for_update: bool = False
    ) -> list[RequestRecord]: ...

    @abstractmethod
    def get_requests_for_pair(self, tx: Any, pair: CanonicalPair) -> list[RequestRecord]:
        """All requests between the pair, any status, oldest first."""

    @abstractmethod
    def insert_request(
        self, tx: Any, sender_id: int, receiver_id: int, message: str | None, now: datetime
    ) -> RequestRecord: ...

    @abstractmethod
    def delete_request(self, tx: Any, request_id: int) -> int: ...

    @abstractmethod
    def delete_requests_for_pair(self, tx: Any, pair: CanonicalPair) -> int: ...

    @abstractmethod
    def list_requests_for_user(self, tx: Any, user_id: int, direction: str) -> list[RequestRecord]:
        """Pending requests where ``user_id`` is the receiver (incoming) or sender (outgoing)."""

    @abstractmethod
    def list_all_requests(self, tx: Any) -> list[RequestRecord]: ...

    # derived rows

    @abstractmethod
    def insert_notification(
        self,
        tx: Any,
        user_id: int,
        source_user_id: int,
        type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> NotificationRecord: ...

    @abstractmethod
    def delete_notifications_for_pair(
        self, tx: Any, pair: CanonicalPair, types: Iterable[str]
    ) -> int: ...

    @abstractmethod
    def delete_notification(self, tx: Any, notification_id: int) -> int: ...

    @abstractmethod
    def list_notifications_for_pair(self, tx: Any, pair: CanonicalPair) -> list[NotificationRecord]: ...

    @abstractmethod
    def list_all_notifications(self, tx: Any) -> list[NotificationRecord]: ...

    @abstractmethod
    def delete_conversation_previews(self, tx: Any, pair: CanonicalPair) -> int: ...

    @abstractmethod
    def insert_activity(
        self, tx: Any, user_id: int, target_user_id: int, kind: str, now: datetime
    ) -> ActivityRecord: ...

    # composite reads

    def load_snapshot(self, tx: Any, pair: CanonicalPair, for_update: bool = True) -> PairSnapshot:
        return PairSnapshot(
            pair=pair,
            relationship=self.get_relationship(tx, pair, for_update=for_update),
            pending=tuple(self.get_pending_requests(tx, pair, for_update=for_update)),
        )
