from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from reportflow.modules.notifications.models import NotificationType


class NotificationOut(BaseModel):
    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    data: dict = Field(default_factory=dict, validation_alias="data_json")
    read: bool
    created_at: datetime


class NotificationPageOut(BaseModel):
    items: list[NotificationOut]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class UnreadCountOut(BaseModel):
    unread_count: int


class MarkAllReadOut(BaseModel):
    updated: int
