from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import AuthUser, require_user
from leadflow.core.config import get_settings
from leadflow.core.database import get_db
from leadflow.crm.delivery import NotificationConnectionRegistry, Subscription
from leadflow.crm.models import CRMNotification, NotificationType, utcnow
from leadflow.crm.repositories import NotificationRepository
from leadflow.crm.schemas import (
    MarkAllReadResponse,
    MarkManyReadRequest,
    NotificationCleanupResponse,
    NotificationPage,
    NotificationRead,
    NotificationStats,
)


logger = logging.getLogger("leadflow.crm.delivery")

notifications_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_notification_registry(request: Request) -> NotificationConnectionRegistry:
    registry = getattr(request.app.state, "notification_registry", None)
    if registry is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notification stream unavailable")
    return registry


def _to_read(notification: CRMNotification) -> NotificationRead:
    read = NotificationRead.model_validate(notification)
    read.is_expired = notification.has_expired()
    return read


def _user_id(user: AuthUser) -> uuid.UUID:
    # require_user has already rejected non-UUID subjects.
    return user.user_id  # type: ignore[return-value]


def _notification_not_found(request: Request) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_404_NOT_FOUND,
        code="notification_not_found",
        message="Notification not found",
    )


@notifications_router.get("", response_model=NotificationPage)
def list_notifications(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    is_read: bool | None = Query(default=None),
    notification_type: NotificationType | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationPage:
    repository = NotificationRepository(db)
    items, total = repository.list_for_user(
        _user_id(user),
        page=page,
        page_size=page_size,
        is_read=is_read,
        notification_type=notification_type.value if notification_type is not None else None,
    )
    return NotificationPage(
        items=[_to_read(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


@notifications_router.get("/stats", response_model=NotificationStats)
def notification_stats(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationStats:
    stats = NotificationRepository(db).stats_for_user(_user_id(user), utcnow())
    return NotificationStats(**stats)


@notifications_router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> MarkAllReadResponse:
    repository = NotificationRepository(db)
    updated = repository.mark_all_read(_user_id(user), utcnow())
    repository.commit()
    return MarkAllReadResponse(updated=updated)


@notifications_router.post("/mark-multiple-read", response_model=MarkAllReadResponse)
def mark_notifications_read(
    payload: MarkManyReadRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> MarkAllReadResponse:
    repository = NotificationRepository(db)
    updated = repository.mark_many_read(payload.notification_ids, _user_id(user), utcnow())
    repository.commit()
    return MarkAllReadResponse(updated=updated)


@notifications_router.post("/clean-expired", response_model=NotificationCleanupResponse)
def clean_expired_notifications(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationCleanupResponse | JSONResponse:
    if not user.is_admin:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="forbidden",
            message="Only administrators can clean notifications",
        )
    repository = NotificationRepository(db)
    deactivated = repository.deactivate_expired(utcnow())
    repository.commit()
    logger.info("notification_cleanup_completed", extra={"deactivated": deactivated})
    return NotificationCleanupResponse(deactivated=deactivated)


@notifications_router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationRead | JSONResponse:
    repository = NotificationRepository(db)
    notification = repository.get_for_user(notification_id, _user_id(user))
    if notification is None:
        return _notification_not_found(request)
    if not notification.is_read:
        notification.mark_as_read()
        repository.commit()
    return _to_read(notification)


@notifications_router.post("/{notification_id}/unread", response_model=NotificationRead)
def mark_notification_unread(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationRead | JSONResponse:
    repository = NotificationRepository(db)
    notification = repository.get_for_user(notification_id, _user_id(user))
    if notification is None:
        return _notification_not_found(request)
    if notification.is_read:
        notification.mark_as_unread()
        repository.commit()
    return _to_read(notification)


@notifications_router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def dismiss_notification(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> Response:
    repository = NotificationRepository(db)
    notification = repository.get_for_user(notification_id, _user_id(user))
    if notification is None:
        return _notification_not_found(request)
    notification.is_active = False
    notification.updated_at = utcnow()
    repository.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def notification_event_stream(
    request: Request,
    registry: NotificationConnectionRegistry,
    subscription: Subscription,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    try:
        yield format_sse(
            "connection",
            {
                "status": "connected",
                "user_id": str(subscription.user_id),
                "subscription_id": subscription.subscription_id,
                "timestamp": utcnow().isoformat(),
            },
        )
        while not await request.is_disconnected():
            message = await subscription.receive(heartbeat_seconds)
            if message is None:
                yield ": heartbeat\n\n"
                continue
            yield format_sse("notification", message)
    finally:
        registry.disconnect(subscription)


@notifications_router.get("/stream")
async def stream_notifications(
    request: Request,
    user: AuthUser = Depends(require_user),
    registry: NotificationConnectionRegistry = Depends(get_notification_registry),
) -> StreamingResponse:
    subscription = registry.connect(_user_id(user), include_system=user.is_admin)
    return StreamingResponse(
        notification_event_stream(
            request,
            registry,
            subscription,
            get_settings().notification_stream_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# Registered last so the static paths above are matched first.
@notifications_router.get("/{notification_id}", response_model=NotificationRead)
def get_notification(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> NotificationRead | JSONResponse:
    notification = NotificationRepository(db).get_for_user(notification_id, _user_id(user))
    if notification is None:
        return _notification_not_found(request)
    return _to_read(notification)
