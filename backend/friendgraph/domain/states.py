from enum import Enum


class RelationshipState(str, Enum):
    # NONE is never stored: a missing row means NONE.
    NONE = "none"
    ACTIVE = "active"
    BLOCKED = "blocked"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class Transition(str, Enum):
    SEND_REQUEST = "send_request"
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"
    REMOVE = "remove"
    BLOCK = "block"
    UNBLOCK = "unblock"


class NotificationType(str, Enum):
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    FRIEND_REMOVED = "friend_removed"
    FRIEND_BLOCKED = "friend_blocked"


# Every notification kind the engine derives from a pair's relationship.
PAIR_NOTIFICATION_TYPES = tuple(NotificationType)


class ActivityKind(str, Enum):
    REQUEST_SENT = "friend_request_sent"
    REQUEST_ACCEPTED = "friend_request_accepted"
    REQUEST_DECLINED = "friend_request_declined"
    REQUEST_CANCELLED = "friend_request_cancelled"
    FRIEND_REMOVED = "friend_removed"
    USER_BLOCKED = "user_blocked"
    USER_UNBLOCKED = "user_unblocked"
    PAIR_RECONCILED = "pair_reconciled"


class FriendshipStatus(str, Enum):
    """How one user sees another, from the viewer's side."""

    NONE = "none"
    FRIENDS = "friends"
    REQUEST_SENT = "request_sent"
    REQUEST_RECEIVED = "request_received"
    BLOCKED = "blocked"
    BLOCKED_BY = "blocked_by"
