from __future__ import annotations

import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from reportflow.core.config import settings
from reportflow.core.logging import get_logger, log_event
from reportflow.modules.identity.models import User
from reportflow.modules.notifications.models import Notification, NotificationType

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationPage:
    items: list[Notification]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def notify(
    session: Session,
    *,
    user_id: uuid.UUID,
    type: NotificationType,
    title: str,
    message: str,
    data: dict | None = None,
) -> Notification:
    return notify_many(
        session, user_ids=[user_id], type=type, title=title, message=message, data=data
    )[0]


def notify_many(
    session: Session,
    *,
    user_ids: Iterable[uuid.UUID],
    type: NotificationType,
    title: str,
    message: str,
    data: dict | None = None,
) -> list[Notification]:
    recipients = list(dict.fromkeys(user_ids))
    notifications = [
        Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data_json=dict(data or {}),
            read=False,
        )
        for user_id in recipients
    ]
    if not notifications:
        return []
    session.add_all(notifications)
    session.commit()
    log_event(
        logger,
        "notification.created",
        notification_type=type.value,
        recipient_count=len(notifications),
    )
    return notifications


def list_notifications(
    session: Session, *, user: User, page: int = 1, limit: int = 20, unread_only: bool = False
) -> NotificationPage:
    page = max(page, 1)
    limit = min(max(limit, 1), settings.notifications_page_size_max)

    where = [Notification.user_id == user.id]
    if unread_only:
        where.append(Notification.read.is_(False))

    total = session.scalar(select(func.count()).select_from(Notification).where(*where)) or 0
    items = list(
        session.scalars(
            select(Notification)
            .where(*where)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    )
    return NotificationPage(items=items, page=page, limit=limit, total=int(total))


def unread_count(session: Session, *, user: User) -> int:
    count = session.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user.id, Notification.read.is_(False))
    )
    return int(count or 0)


def _get_own_notification(
    session: Session, *, notification_id: uuid.UUID, user: User
) -> Notification:
    notification = session.scalar(
        select(Notification).where(
            Notification.id == notification_id, Notification.user_id == user.id
        )
    )
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification


def mark_read(session: Session, *, notification_id: uuid.UUID, user: User) -> Notification:
    notification = _get_own_notification(session, notification_id=notification_id, user=user)
    if not notification.read:
        notification.read = True
        session.add(notification)
        session.commit()
        session.refresh(notification)
    return notification


def mark_all_read(session: Session, *, user: User) -> int:
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.read.is_(False))
        .values(read=True)
    )
    session.commit()
    return int(result.rowcount or 0)


def delete_notification(session: Session, *, notification_id: uuid.UUID, user: User) -> None:
    _get_own_notification(session, notification_id=notification_id, user=user)
    session.execute(
        delete(Notification).where(
            Notification.id == notification_id, Notification.user_id == user.id
        )
    )
    session.commit()
