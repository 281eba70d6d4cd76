from .base import INCOMING, OUTGOING, RelationshipStore
from .memory import InMemoryRelationshipStore
from .sql import SqlRelationshipStore

__all__ = [
    "INCOMING",
    "OUTGOING",
    "RelationshipStore",
    "InMemoryRelationshipStore",
    "SqlRelationshipStore",
]
