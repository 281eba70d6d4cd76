from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from friendgraph.db.base import Base


class ConversationPreview(Base):
    # Owned by the chat service; the engine only deletes rows when a pair stops being friends.
    __tablename__ = "conversation_previews"
    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_conversation_preview"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    friend_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    last_message: Mapped[str | None] = mapped_column(String(255))
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
