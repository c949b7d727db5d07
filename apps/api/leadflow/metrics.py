from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

lead_expiration_sweeps_total = Counter(
    "lead_expiration_sweeps_total",
    "Total lead expiration sweeps by outcome",
    ["outcome"],
)

lead_expiration_sweep_duration_seconds = Histogram(
    "lead_expiration_sweep_duration_seconds",
    "Lead expiration sweep duration in seconds",
    ["outcome"],
)

leads_expired_total = Counter(
    "leads_expired_total",
    "Total leads transitioned to Expired",
)

lead_notifications_created_total = Counter(
    "lead_notifications_created_total",
    "Total notifications created by the expiration dispatcher",
    ["notification_type"],
)

lead_notifications_deferred_total = Counter(
    "lead_notifications_deferred_total",
    "Total expired leads whose owner notification was deferred",
    ["reason"],
)

lead_notification_owner_failures_total = Counter(
    "lead_notification_owner_failures_total",
    "Total owner groups whose dispatch failed",
)

notification_push_failures_total = Counter(
    "notification_push_failures_total",
    "Total failed best-effort pushes to connected clients",
)

notification_push_dropped_total = Counter(
    "notification_push_dropped_total",
    "Total queued push messages dropped because a client queue was full",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    route_path = getattr(route, "path", None) if route is not None else None
    if isinstance(route_path, str) and route_path:
        return _PATH_PARAM_RE.sub("{id}", route_path)
    return _UUID_RE.sub("{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_sweep(outcome: str, duration: float) -> None:
    lead_expiration_sweeps_total.labels(outcome=outcome).inc()
    lead_expiration_sweep_duration_seconds.labels(outcome=outcome).observe(duration)


def observe_leads_expired(count: int) -> None:
    if count > 0:
        leads_expired_total.inc(count)


def observe_notification_created(notification_type: str) -> None:
    lead_notifications_created_total.labels(notification_type=notification_type).inc()


def observe_notifications_deferred(reason: str, count: int) -> None:
    if count > 0:
        lead_notifications_deferred_total.labels(reason=reason).inc(count)


def observe_owner_dispatch_failure() -> None:
    lead_notification_owner_failures_total.inc()


def observe_push_failure() -> None:
    notification_push_failures_total.inc()


def observe_push_dropped(count: int = 1) -> None:
    if count > 0:
        notification_push_dropped_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
