"""Durable notification inbox.

The engine creates notification rows inside its transactions; this module is
the only writer of their read state.
"""

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from friendgraph.models.notification import Notification


def list_notifications(
    db: Session, user_id: int, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def unread_count(db: Session, user_id: int) -> int:
    return db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
    ).scalar_one()


def mark_read(db: Session, user_id: int, notification_ids: list[int] | None = None) -> int:
    """Mark the given notifications (or all of them when ids is None) as read."""
    stmt = update(Notification).where(
        Notification.user_id == user_id, Notification.is_read.is_(False)
    )
    if notification_ids is not None:
        if not notification_ids:
            return 0
        stmt = stmt.where(Notification.id.in_(notification_ids))
    res = db.execute(stmt.values(is_read=True).execution_options(synchronize_session=False))
    db.commit()
    return res.rowcount or 0
