from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from reportflow.api.deps import get_current_user
from reportflow.core.db import db_session
from reportflow.modules.identity.models import User
from reportflow.modules.notifications.schemas import (
    MarkAllReadOut,
    NotificationOut,
    NotificationPageOut,
    UnreadCountOut,
)
from reportflow.modules.notifications.service import (
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    unread_count,
)

router = APIRouter(tags=["notifications"])


@router.get("/notifications", response_model=NotificationPageOut)
def list_notifications_endpoint(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    unread_only: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> NotificationPageOut:
    result = list_notifications(
        session, user=user, page=page, limit=limit, unread_only=unread_only
    )
    return NotificationPageOut(
        items=[NotificationOut.model_validate(n, from_attributes=True) for n in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
        has_next=result.has_next,
        has_prev=result.has_prev,
    )


@router.get("/notifications/unread-count", response_model=UnreadCountOut)
def unread_count_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> UnreadCountOut:
    return UnreadCountOut(unread_count=unread_count(session, user=user))


@router.post("/notifications/read-all", response_model=MarkAllReadOut)
def mark_all_read_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> MarkAllReadOut:
    return MarkAllReadOut(updated=mark_all_read(session, user=user))


@router.post("/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_read_endpoint(
    notification_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> NotificationOut:
    notification = mark_read(session, notification_id=notification_id, user=user)
    return NotificationOut.model_validate(notification, from_attributes=True)


@router.delete("/notifications/{notification_id}", status_code=204)
def delete_notification_endpoint(
    notification_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    delete_notification(session, notification_id=notification_id, user=user)
    return Response(status_code=204)
