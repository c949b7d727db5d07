from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LeadStatus(str, enum.Enum):
    REGISTERED = "Registered"
    ATTENDED = "Attended"
    IN_FOLLOW_UP = "InFollowUp"
    COMPLETED = "Completed"
    CANCELED = "Canceled"
    EXPIRED = "Expired"


TERMINAL_LEAD_STATUSES = (LeadStatus.COMPLETED.value, LeadStatus.CANCELED.value, LeadStatus.EXPIRED.value)


class NotificationType(str, enum.Enum):
    LEAD_EXPIRED = "LeadExpired"
    LEADS_EXPIRED_BATCH = "LeadsExpiredBatch"
    SYSTEM_DEFERRED_WORK = "SystemDeferredWork"


LEAD_EXPIRED_NOTIFICATION_TYPES = (NotificationType.LEAD_EXPIRED.value, NotificationType.LEADS_EXPIRED_BATCH.value)


class NotificationPriority(str, enum.Enum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    URGENT = "Urgent"


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=LeadStatus.REGISTERED.value,
        server_default=LeadStatus.REGISTERED.value,
    )
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiration_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiration_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    def is_expirable(self, now: datetime) -> bool:
        return self.status not in TERMINAL_LEAD_STATUSES and ensure_utc(self.expiration_at) < now

    @property
    def display_name(self) -> str:
        return self.company_name or self.contact_name or str(self.id)


class CRMNotification(Base):
    __tablename__ = "crm_notification"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # NULL marks a system-level notification that belongs to no single user.
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=NotificationPriority.NORMAL.value,
        server_default=NotificationPriority.NORMAL.value,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    related_entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    related_entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def mark_as_read(self, now: datetime | None = None) -> None:
        moment = now or utcnow()
        self.is_read = True
        self.read_at = moment
        self.updated_at = moment

    def mark_as_unread(self, now: datetime | None = None) -> None:
        self.is_read = False
        self.read_at = None
        self.updated_at = now or utcnow()

    def has_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) < (now or utcnow())


Index(
    "ix_crm_lead_expiration_scan",
    CRMLead.is_active,
    CRMLead.status,
    CRMLead.expiration_at,
)
Index(
    "ix_crm_lead_expiration_pending_notification",
    CRMLead.status,
    CRMLead.expiration_notified_at,
    CRMLead.expiration_at,
)
Index(
    "ix_crm_notification_user_type_created",
    CRMNotification.user_id,
    CRMNotification.type,
    CRMNotification.created_at,
)
Index("ix_crm_notification_user_read", CRMNotification.user_id, CRMNotification.is_read)
