from typing import NamedTuple


class CanonicalPair(NamedTuple):
    """Unordered user pair, always stored as (low, high)."""

    low: int
    high: int

    def contains(self, user_id: int) -> bool:
        return user_id == self.low or user_id == self.high

    def other(self, user_id: int) -> int:
        if user_id == self.low:
            return self.high
        if user_id == self.high:
            return self.low
        raise ValueError(f"user {user_id} is not part of pair {self}")


class OrderedPair(NamedTuple):
    """Directional (sender, receiver) pair used for friend requests."""

    sender_id: int
    receiver_id: int

    @property
    def canonical(self) -> CanonicalPair:
        return canonical_pair(self.sender_id, self.receiver_id)


def canonical_pair(a: int, b: int) -> CanonicalPair:
    if a == b:
        raise ValueError("a pair needs two distinct users")
    return CanonicalPair(a, b) if a < b else CanonicalPair(b, a)
