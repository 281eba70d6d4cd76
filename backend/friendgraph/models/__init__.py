from .user import User
from .relationship import Relationship
from .friend_request import FriendRequest
from .notification import Notification
from .activity_event import ActivityEvent
from .conversation_preview import ConversationPreview

__all__ = [
    "User",
    "Relationship",
    "FriendRequest",
    "Notification",
    "ActivityEvent",
    "ConversationPreview",
]
