from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    type: str
    priority: str
    title: str
    message: str
    data: dict[str, Any] | None
    is_read: bool
    read_at: datetime | None
    sent_at: datetime | None
    expires_at: datetime | None
    related_entity_id: UUID | None
    related_entity_type: str | None
    created_at: datetime
    is_expired: bool = False


class NotificationPage(BaseModel):
    items: list[NotificationRead]
    total: int
    page: int
    page_size: int
    total_pages: int


class NotificationStats(BaseModel):
    total: int
    unread: int
    read: int
    expired: int


class MarkAllReadResponse(BaseModel):
    updated: int


class MarkManyReadRequest(BaseModel):
    notification_ids: list[UUID] = Field(min_length=1, max_length=100)


class NotificationCleanupResponse(BaseModel):
    deactivated: int
