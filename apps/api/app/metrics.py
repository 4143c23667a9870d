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

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Lead conversion attempts by outcome",
    ["outcome"],
)

crm_lead_conversion_duration_seconds = Histogram(
    "crm_lead_conversion_duration_seconds",
    "Lead conversion duration in seconds",
)

tenant_access_denied_total = Counter(
    "tenant_access_denied_total",
    "Requests denied by the tenant access guard",
    ["resource"],
)

crm_activity_log_failures_total = Counter(
    "crm_activity_log_failures_total",
    "Activity log writes that failed and were skipped",
    ["event_name"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_conversion(outcome: str, duration: float | None = None) -> None:
    crm_lead_conversions_total.labels(outcome=outcome).inc()
    if duration is not None:
        crm_lead_conversion_duration_seconds.observe(duration)


def observe_tenant_access_denied(resource: str) -> None:
    tenant_access_denied_total.labels(resource=resource).inc()


def observe_activity_log_failure(event_name: str) -> None:
    crm_activity_log_failures_total.labels(event_name=event_name).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
