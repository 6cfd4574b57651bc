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

crm_lead_operations_total = Counter(
    "crm_lead_operations_total",
    "Total lead engine operations by outcome",
    ["operation", "outcome"],
)

crm_lead_operation_duration_seconds = Histogram(
    "crm_lead_operation_duration_seconds",
    "Lead engine operation duration in seconds",
    ["operation"],
)

crm_lead_duplicate_blocks_total = Counter(
    "crm_lead_duplicate_blocks_total",
    "Total lead writes blocked as duplicates",
    ["duplicate_type"],
)

crm_lead_routing_assignments_total = Counter(
    "crm_lead_routing_assignments_total",
    "Total leads assigned by routing rules",
    ["assignment_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_operation(operation: str, outcome: str, duration: float) -> None:
    crm_lead_operations_total.labels(operation=operation, outcome=outcome).inc()
    crm_lead_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_duplicate_block(duplicate_type: str) -> None:
    crm_lead_duplicate_blocks_total.labels(duplicate_type=duplicate_type).inc()


def observe_routing_assignment(assignment_type: str) -> None:
    crm_lead_routing_assignments_total.labels(assignment_type=assignment_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
