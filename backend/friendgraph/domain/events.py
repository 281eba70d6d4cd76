from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    FRIEND_DECLINED = "friend_declined"
    FRIEND_REQUEST_CANCELLED = "friend_request_cancelled"
    FRIEND_REMOVED = "friend_removed"
    FRIEND_BLOCKED = "friend_blocked"
    FRIEND_UNBLOCKED = "friend_unblocked"


# Who hears about each event: the subject, the counterparty, or both.
_AUDIENCE = {
    EventType.FRIEND_REQUEST: ("counterparty",),
    EventType.FRIEND_ACCEPTED: ("subject", "counterparty"),
    EventType.FRIEND_DECLINED: ("counterparty",),
    EventType.FRIEND_REQUEST_CANCELLED: ("counterparty",),
    EventType.FRIEND_REMOVED: ("subject", "counterparty"),
    # The blocked user is never told.
    EventType.FRIEND_BLOCKED: ("subject",),
    EventType.FRIEND_UNBLOCKED: ("subject",),
}


@dataclass(frozen=True)
class DomainEvent:
    """Emitted once per committed mutating transition.

    ``subject_user_id`` is the user who performed the transition and
    ``counterparty_user_id`` the other side of the pair.
    """

    type: EventType
    subject_user_id: int
    counterparty_user_id: int
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def audience(self) -> tuple[int, ...]:
        out = []
        for role in _AUDIENCE[self.type]:
            out.append(self.subject_user_id if role == "subject" else self.counterparty_user_id)
        return tuple(out)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "subject_user_id": self.subject_user_id,
            "counterparty_user_id": self.counterparty_user_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": dict(self.payload),
        }
