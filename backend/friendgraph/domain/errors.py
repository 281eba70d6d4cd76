from enum import Enum


class RejectionReason(str, Enum):
    SELF_TARGET = "SELF_TARGET"
    ALREADY_FRIENDS = "ALREADY_FRIENDS"
    REQUEST_EXISTS = "REQUEST_EXISTS"
    BLOCKED = "BLOCKED"
    NOT_AUTHORIZED_FOR_TRANSITION = "NOT_AUTHORIZED_FOR_TRANSITION"
    NO_SUCH_REQUEST = "NO_SUCH_REQUEST"
    NO_SUCH_RELATIONSHIP = "NO_SUCH_RELATIONSHIP"
    NO_SUCH_USER = "NO_SUCH_USER"


NOT_FOUND_REASONS = frozenset(
    {
        RejectionReason.NO_SUCH_REQUEST,
        RejectionReason.NO_SUCH_RELATIONSHIP,
        RejectionReason.NO_SUCH_USER,
    }
)


class FriendgraphError(Exception):
    code = "FRIENDGRAPH_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidTransition(FriendgraphError):
    def __init__(self, reason: RejectionReason, message: str | None = None):
        self.reason = RejectionReason(reason)
        self.code = self.reason.value
        super().__init__(message or self.reason.value)


class NotFound(FriendgraphError):
    def __init__(self, reason: RejectionReason, message: str | None = None):
        self.reason = RejectionReason(reason)
        self.code = self.reason.value
        super().__init__(message or self.reason.value)


class ValidationFailed(FriendgraphError):
    code = "INVALID_INPUT"


class ConcurrencyConflict(FriendgraphError):
    """A concurrent writer won a uniqueness race on the same pair."""

    code = "CONCURRENCY_CONFLICT"


class StorageFailure(FriendgraphError):
    code = "STORAGE_FAILURE"


def rejection_error(reason: RejectionReason, message: str | None = None) -> FriendgraphError:
    if reason in NOT_FOUND_REASONS:
        return NotFound(reason, message)
    return InvalidTransition(reason, message)
