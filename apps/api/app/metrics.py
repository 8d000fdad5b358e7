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

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Total opportunity stage transitions",
    ["from_stage", "to_stage"],
)

crm_rejected_mutations_total = Counter(
    "crm_rejected_mutations_total",
    "Total rejected opportunity mutations by reason",
    ["reason"],
)

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Total lead to opportunity conversions",
)

revenue_order_recomputes_total = Counter(
    "revenue_order_recomputes_total",
    "Total order and opportunity financial recomputes by trigger",
    ["operation"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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


def observe_stage_transition(from_stage: str, to_stage: str) -> None:
    crm_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def observe_rejected_mutation(reason: str) -> None:
    crm_rejected_mutations_total.labels(reason=reason).inc()


def observe_lead_conversion() -> None:
    crm_lead_conversions_total.inc()


def observe_order_recompute(operation: str) -> None:
    revenue_order_recomputes_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
